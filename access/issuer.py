"""
access/issuer.py -- Validate an issuance request, then mint and persist a token.

Every precondition is checked before the store is touched, so a rejected
request leaves nothing behind. The raw secret is generated here, fingerprinted,
and handed back exactly once inside IssuedToken. It is never logged and never
written to the audit trail.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from access.errors import TokenValidationError
from access.models import (
    RESOURCE_TYPES,
    AccessToken,
    IssuedToken,
    IssueRequest,
    ScopeType,
    as_utc,
    requires_entity_id,
)
from access.tokens import generate_secret, hash_secret, preview_secret
from core.config import get_settings

if TYPE_CHECKING:
    from access.store import TokenStore
    from audit.store import AuditSink

logger = logging.getLogger("auditgate.issuer")

# Loose shape check (local@domain.tld). Deliverability is not our concern.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _normalize_resources(resources: Optional[list[str]]) -> Optional[list[str]]:
    if resources is None:
        return None
    seen: set[str] = set()
    result: list[str] = []
    for r in resources:
        name = str(r).strip().lower()
        if name not in RESOURCE_TYPES:
            raise TokenValidationError(
                f"Unknown resource type '{r}'. Valid types: {', '.join(RESOURCE_TYPES)}."
            )
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


def validate_request(request: IssueRequest, now: datetime) -> IssueRequest:
    """Return a normalized copy of request, or raise TokenValidationError.

    Normalization: names and purpose stripped, email stripped and lowercased,
    expires_at converted to UTC, allowed_resources lowercased and deduplicated
    in order.
    """
    name = (request.auditor_name or "").strip()
    if not name:
        raise TokenValidationError("Auditor name is required.")

    email = (request.auditor_email or "").strip().lower()
    if not _EMAIL_RE.match(email):
        raise TokenValidationError("A valid auditor email is required.")

    purpose = (request.purpose or "").strip()
    if not purpose:
        raise TokenValidationError("Purpose is required.")

    try:
        scope_type = ScopeType(request.scope_type)
    except ValueError:
        valid = ", ".join(s.value for s in ScopeType)
        raise TokenValidationError(f"Invalid scope type '{request.scope_type}'. Valid scopes: {valid}.") from None

    if requires_entity_id(scope_type):
        if request.scope_entity_id is None:
            raise TokenValidationError(f"Scope type '{scope_type.value}' requires scope_entity_id.")
        if isinstance(request.scope_entity_id, bool) or request.scope_entity_id < 1:
            raise TokenValidationError("scope_entity_id must be a positive integer.")
    elif request.scope_entity_id is not None:
        raise TokenValidationError(f"Scope type '{scope_type.value}' does not take a scope_entity_id.")

    expires_at = as_utc(request.expires_at)
    if expires_at <= now:
        raise TokenValidationError("Expiration date must be in the future.")
    max_lifetime = timedelta(days=get_settings().token_max_lifetime_days)
    if expires_at - now > max_lifetime:
        raise TokenValidationError(
            f"Expiration date may be at most {max_lifetime.days} days in the future."
        )

    if request.max_uses is not None and request.max_uses < 1:
        raise TokenValidationError("max_uses must be a positive integer.")

    return IssueRequest(
        auditor_name=name,
        auditor_email=email,
        auditor_organization=(request.auditor_organization or "").strip() or None,
        purpose=purpose,
        notes=(request.notes or "").strip() or None,
        scope_type=scope_type.value,
        scope_entity_id=request.scope_entity_id,
        allowed_resources=_normalize_resources(request.allowed_resources),
        expires_at=expires_at,
        max_uses=request.max_uses,
    )


def issue_token(
    store: TokenStore,
    request: IssueRequest,
    issued_by: int,
    audit: Optional[AuditSink] = None,
    now: Optional[datetime] = None,
) -> IssuedToken:
    """Validate request, generate a secret, persist the token, return it once.

    Raises TokenValidationError before any write if the request is invalid.
    Raises StoreUnavailableError if the insert cannot reach the database; no
    partial record is left in that case (single INSERT).
    """
    now = as_utc(now)
    req = validate_request(request, now)

    raw_secret = generate_secret()
    token = AccessToken(
        secret_hash=hash_secret(raw_secret),
        secret_preview=preview_secret(raw_secret),
        auditor_name=req.auditor_name,
        auditor_email=req.auditor_email,
        auditor_organization=req.auditor_organization,
        purpose=req.purpose,
        notes=req.notes,
        scope_type=req.scope_type,
        scope_entity_id=req.scope_entity_id,
        allowed_resources=req.allowed_resources,
        expires_at=req.expires_at,
        max_uses=req.max_uses,
        created_by=issued_by,
        created_at=now,
    )
    token_id = store.create(token)

    logger.info(
        "Issued auditor token %d (%s) for %s, scope=%s entity=%s, expires %s",
        token_id,
        token.secret_preview,
        req.auditor_email,
        req.scope_type,
        req.scope_entity_id,
        req.expires_at.isoformat(),
    )
    if audit is not None:
        audit.record(
            f"user:{issued_by}",
            "create",
            entity_id=token_id,
            after={
                "auditor_name": req.auditor_name,
                "auditor_email": req.auditor_email,
                "scope_type": req.scope_type,
                "scope_entity_id": req.scope_entity_id,
                "allowed_resources": req.allowed_resources,
                "expires_at": req.expires_at.isoformat(),
                "max_uses": req.max_uses,
                "purpose": req.purpose,
            },
        )

    return IssuedToken(token_id=token_id, raw_secret=raw_secret, expires_at=req.expires_at)
