"""
API request and response models for the AuditGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in access/models.py,
which own the internal domain representation. Route handlers map between the
two.

Separation of concerns: access/ models = domain truth; api/ models = API contract.

The raw secret appears in exactly one model (TokenIssuedResponse). No model
carries secret_hash.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from access.models import AccessToken, ScopeType
from access.validator import token_status

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class TokenIssueRequest(BaseModel):
    """Request body for POST /api/v1/auditor-tokens.

    Shape and length checks live here. Cross-field rules (entity id required
    for specific_* scopes, expiry in the future and within the maximum
    lifetime, known resource types) are enforced by access.issuer so the CLI
    gets them too.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    auditor_name: str = Field(min_length=2, max_length=255)
    auditor_email: str = Field(min_length=3, max_length=255)
    auditor_organization: Optional[str] = Field(default=None, max_length=255)
    purpose: str = Field(min_length=5, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=2000)
    scope_type: ScopeType
    scope_entity_id: Optional[int] = Field(default=None, ge=1)
    allowed_resources: Optional[list[str]] = Field(default=None, max_length=20)
    expires_at: datetime
    max_uses: Optional[int] = Field(default=None, ge=1)

    @field_validator("allowed_resources", mode="before")
    @classmethod
    def normalize_resources(cls, values: Optional[list]) -> Optional[list[str]]:
        """Lowercase and strip resource type names before validation."""
        if not isinstance(values, list):
            return values
        return [str(v).strip().lower() for v in values]


class RevokeRequest(BaseModel):
    """Request body for PUT /api/v1/auditor-tokens/{token_id}/revoke."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(min_length=5, max_length=500)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenIssuedResponse(BaseModel):
    """Response for POST /api/v1/auditor-tokens -- the only place the secret is shown."""

    model_config = ConfigDict(frozen=True)

    token_id: int
    token: str
    expires_at: datetime
    access_url: Optional[str] = None
    warning: str = "Save this token securely. It will not be shown again."


class TokenResponse(BaseModel):
    """One auditor token as staff see it: preview instead of secret, derived status."""

    model_config = ConfigDict(frozen=True)

    id: int
    token_preview: str
    auditor_name: str
    auditor_email: str
    auditor_organization: Optional[str]
    purpose: str
    notes: Optional[str]
    scope_type: str
    scope_entity_id: Optional[int]
    allowed_resources: Optional[list[str]]
    expires_at: datetime
    max_uses: Optional[int]
    current_uses: int
    active: bool
    status: str
    created_at: Optional[datetime]
    created_by: int
    revoked_at: Optional[datetime]
    revoked_by: Optional[int]
    revocation_reason: Optional[str]
    last_used_at: Optional[datetime]
    last_used_from: Optional[str]

    @classmethod
    def from_token(cls, token: AccessToken, now: datetime) -> "TokenResponse":
        """Build a TokenResponse from a domain AccessToken.

        Factory Method: the mapping lives beside the output model instead of
        being repeated in each route handler.
        """
        return cls(
            id=token.id,
            token_preview=token.secret_preview,
            auditor_name=token.auditor_name,
            auditor_email=token.auditor_email,
            auditor_organization=token.auditor_organization,
            purpose=token.purpose,
            notes=token.notes,
            scope_type=token.scope_type,
            scope_entity_id=token.scope_entity_id,
            allowed_resources=token.allowed_resources,
            expires_at=token.expires_at,
            max_uses=token.max_uses,
            current_uses=token.current_uses,
            active=token.active,
            status=token_status(token, now),
            created_at=token.created_at,
            created_by=token.created_by,
            revoked_at=token.revoked_at,
            revoked_by=token.revoked_by,
            revocation_reason=token.revocation_reason,
            last_used_at=token.last_used_at,
            last_used_from=token.last_used_from,
        )


class TokenListResponse(BaseModel):
    """Response for GET /api/v1/auditor-tokens."""

    model_config = ConfigDict(frozen=True)

    tokens: list[TokenResponse]
    count: int


class RevokeResponse(BaseModel):
    """Response for PUT /api/v1/auditor-tokens/{token_id}/revoke."""

    model_config = ConfigDict(frozen=True)

    message: str
    token: TokenResponse


class CleanupResponse(BaseModel):
    """Response for POST /api/v1/auditor-tokens/cleanup."""

    model_config = ConfigDict(frozen=True)

    message: str
    count: int


class ScopeTypeOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    requires_entity_id: bool
    entity_kind: Optional[str] = None


class TokenOptionsResponse(BaseModel):
    """Response for GET /api/v1/auditor-tokens/options -- form choices for issuers."""

    model_config = ConfigDict(frozen=True)

    scope_types: list[ScopeTypeOption]
    resource_types: list[str]
    default_expiry_hours: list[int]
    max_lifetime_days: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
