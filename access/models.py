"""
access/models.py -- Domain dataclasses for auditor access tokens.

Pattern: Data class (pure data container). Stores and services do the work;
these types only own the domain shape. The scope vocabulary (ScopeType and
the resource-type names) lives here so every layer validates against the
same closed set, along with the one UTC helper every layer shares.

Layer rule: no imports from api/, auth/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Scope vocabulary
# ---------------------------------------------------------------------------


class ScopeType(str, Enum):
    FULL_READ_ONLY = "full_read_only"
    SPECIFIC_AUDIT = "specific_audit"
    SPECIFIC_DOCUMENT = "specific_document"
    SPECIFIC_NCR = "specific_ncr"
    SPECIFIC_CAPA = "specific_capa"


# Resource kind each scope pins to a single entity. None = not entity-pinned.
# A scope requires scope_entity_id exactly when it has an entry other than None.
SCOPE_ENTITY_KIND: dict[ScopeType, Optional[str]] = {
    ScopeType.FULL_READ_ONLY: None,
    ScopeType.SPECIFIC_AUDIT: "audit",
    ScopeType.SPECIFIC_DOCUMENT: "document",
    ScopeType.SPECIFIC_NCR: "ncr",
    ScopeType.SPECIFIC_CAPA: "capa",
}

# Resource types an allowlist may name.
RESOURCE_TYPES: tuple[str, ...] = (
    "audit",
    "document",
    "ncr",
    "capa",
    "equipment",
    "training",
    "audit-finding",
)


def requires_entity_id(scope_type: ScopeType) -> bool:
    return SCOPE_ENTITY_KIND[scope_type] is not None


def as_utc(dt: Optional[datetime] = None) -> datetime:
    """Return dt in UTC (naive values are taken to be UTC), or the current UTC time."""
    if dt is None:
        return datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class AccessToken:
    """A persisted auditor access token.

    secret_hash is HMAC-SHA256(SECRET_KEY, raw_secret) and is the lookup key
    for validation. secret_preview (first 8 + last 4 chars) exists so staff
    can tell tokens apart in listings. The raw secret is never stored.

    allowed_resources is None when no allowlist was given. An empty list is a
    real allowlist that permits nothing.

    All datetimes are timezone-aware UTC. id and created_at are None before
    the record is written to the database.
    """

    secret_hash: str
    secret_preview: str
    auditor_name: str
    auditor_email: str
    purpose: str
    scope_type: str  # ScopeType value; kept as str so unknown legacy rows still load
    expires_at: datetime
    created_by: int
    id: Optional[int] = None
    auditor_organization: Optional[str] = None
    notes: Optional[str] = None
    scope_entity_id: Optional[int] = None
    allowed_resources: Optional[list[str]] = None
    max_uses: Optional[int] = None  # None = unlimited
    current_uses: int = 0
    active: bool = True
    created_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[int] = None
    revocation_reason: Optional[str] = None
    last_used_at: Optional[datetime] = None
    last_used_from: Optional[str] = None  # client address of the last successful use


@dataclass
class IssueRequest:
    """Caller input for a new token. Validated by access/issuer.py before any write."""

    auditor_name: str
    auditor_email: str
    purpose: str
    scope_type: str
    expires_at: datetime
    auditor_organization: Optional[str] = None
    notes: Optional[str] = None
    scope_entity_id: Optional[int] = None
    allowed_resources: Optional[list[str]] = None
    max_uses: Optional[int] = None


@dataclass(frozen=True)
class IssuedToken:
    """Result of a successful issuance. The only place the raw secret ever appears.

    raw_secret is excluded from repr() so an accidental log line or traceback
    never prints it.
    """

    token_id: int
    raw_secret: str = field(repr=False)
    expires_at: datetime


@dataclass(frozen=True)
class ScopeDescriptor:
    """What a validated token may access. Input to access/scope.py.

    token_id and auditor_email identify the caller for access logging; they
    play no part in the allow/deny decision.
    """

    scope_type: str
    scope_entity_id: Optional[int] = None
    allowed_resources: Optional[tuple[str, ...]] = None
    token_id: Optional[int] = None
    auditor_email: Optional[str] = None

    @classmethod
    def from_token(cls, token: AccessToken) -> "ScopeDescriptor":
        """Build a ScopeDescriptor from a stored AccessToken."""
        allowed = tuple(token.allowed_resources) if token.allowed_resources is not None else None
        return cls(
            scope_type=token.scope_type,
            scope_entity_id=token.scope_entity_id,
            allowed_resources=allowed,
            token_id=token.id,
            auditor_email=token.auditor_email,
        )
