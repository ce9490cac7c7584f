"""
access/scope.py -- Decide whether a validated token may read a given resource.

Pure functions, no I/O. Rules:

  full_read_only    any resource type, unless the token carries an allowlist,
                    in which case only the listed types. An empty allowlist
                    permits nothing.
  specific_<kind>   exactly one resource: type == <kind> and
                    id == scope_entity_id. Everything else is denied,
                    including the <kind> collection itself (no id).
  anything else     denied. A scope_type string that is not a ScopeType
                    member -- say, from a row written by a newer release --
                    fails closed.

Note that validation consumes a use BEFORE this check runs, so a request
denied here still counts against the token's max_uses.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from access.errors import ScopeDeniedError
from access.models import SCOPE_ENTITY_KIND, ScopeDescriptor, ScopeType

logger = logging.getLogger("auditgate.scope")

ResourceId = Union[int, str, None]


def _as_int(value: ResourceId) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


def is_allowed(scope: ScopeDescriptor, resource_type: str, resource_id: ResourceId = None) -> bool:
    """Return True if scope permits reading resource_type/resource_id.

    resource_id may be an int or a numeric string (as it arrives from a URL
    path). None means the request targets the collection rather than one item.
    """
    try:
        scope_type = ScopeType(scope.scope_type)
    except ValueError:
        return False

    if scope_type is ScopeType.FULL_READ_ONLY:
        if scope.allowed_resources is None:
            return True
        return resource_type in scope.allowed_resources

    kind = SCOPE_ENTITY_KIND[scope_type]
    if resource_type != kind or scope.scope_entity_id is None:
        return False
    return _as_int(resource_id) == scope.scope_entity_id


def check_access(scope: ScopeDescriptor, resource_type: str, resource_id: ResourceId = None) -> None:
    """Raise ScopeDeniedError unless is_allowed() says yes."""
    if is_allowed(scope, resource_type, resource_id):
        return
    logger.info(
        "Scope denied (token_id=%s scope=%s entity=%s requested=%s/%s)",
        scope.token_id,
        scope.scope_type,
        scope.scope_entity_id,
        resource_type,
        resource_id,
    )
    raise ScopeDeniedError(f"Access denied: {resource_type} is outside the scope of this token.")
