"""
api/routes/v1/tokens.py -- Auditor access token management routes.

Routes (in registration order to avoid FastAPI path capture conflicts):
  POST   /auditor-tokens                   -- issue a token (admin, manager)
  GET    /auditor-tokens                   -- list tokens (admin, manager, auditor)
  GET    /auditor-tokens/options           -- issuance form choices (admin, manager)
  POST   /auditor-tokens/cleanup           -- run the expiry sweep now (admin)
  GET    /auditor-tokens/{token_id}        -- token detail (admin, manager, auditor)
  PUT    /auditor-tokens/{token_id}/revoke -- revoke a token (admin, manager)

Domain errors (TokenValidationError, TokenNotFoundError, AlreadyRevokedError,
StoreUnavailableError) are not caught here. api/main.py maps them to the
error envelope so every route reports them identically.

There is deliberately no route that validates a secret and returns its scope.
Auditor tokens are only ever checked by auth.dependencies.auditor_access()
in front of a concrete resource.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from access.issuer import issue_token
from access.models import RESOURCE_TYPES, SCOPE_ENTITY_KIND, IssueRequest, ScopeType, as_utc
from access.revocation import revoke_token
from access.store import TokenStore
from access.sweeper import sweep_expired
from api.limiter import limiter
from api.models import (
    CleanupResponse,
    ErrorDetail,
    RevokeRequest,
    RevokeResponse,
    ScopeTypeOption,
    TokenIssuedResponse,
    TokenIssueRequest,
    TokenListResponse,
    TokenOptionsResponse,
    TokenResponse,
)
from auth.dependencies import require_admin, require_issuer, require_viewer
from auth.models import StaffUser
from core.config import get_settings

router = APIRouter()

_DEFAULT_EXPIRY_HOURS = [24, 48, 72, 168]


# ---------------------------------------------------------------------------
# POST /auditor-tokens -- issue
# ---------------------------------------------------------------------------


@limiter.limit("20/minute")
@router.post("/auditor-tokens", response_model=TokenIssuedResponse, status_code=201)
def create_token(
    request: Request,
    response: Response,
    body: TokenIssueRequest,
    user: StaffUser = Depends(require_issuer),
) -> TokenIssuedResponse:
    """Issue a new auditor access token.

    The raw token is in this response body and nowhere else, ever. The
    response is marked no-store so intermediaries do not keep a copy.
    """
    issued = issue_token(
        request.app.state.token_store,
        IssueRequest(
            auditor_name=body.auditor_name,
            auditor_email=body.auditor_email,
            auditor_organization=body.auditor_organization,
            purpose=body.purpose,
            notes=body.notes,
            scope_type=body.scope_type.value,
            scope_entity_id=body.scope_entity_id,
            allowed_resources=body.allowed_resources,
            expires_at=body.expires_at,
            max_uses=body.max_uses,
        ),
        issued_by=user.user_id,
        audit=request.app.state.audit_sink,
    )
    response.headers["Cache-Control"] = "no-store"
    return TokenIssuedResponse(
        token_id=issued.token_id,
        token=issued.raw_secret,
        expires_at=issued.expires_at,
        access_url=get_settings().auditor_access_url,
    )


# ---------------------------------------------------------------------------
# GET /auditor-tokens -- list
# ---------------------------------------------------------------------------


@router.get("/auditor-tokens", response_model=TokenListResponse)
def list_tokens(
    request: Request,
    active_only: bool = Query(default=False),
    auditor_email: Optional[str] = Query(default=None, max_length=255),
    scope_type: Optional[ScopeType] = Query(default=None),
    user: StaffUser = Depends(require_viewer),
) -> TokenListResponse:
    """Return auditor tokens, newest first, with optional filters."""
    store: TokenStore = request.app.state.token_store
    now = as_utc()
    tokens = store.list_tokens(
        active_only=active_only,
        auditor_email=auditor_email,
        scope_type=scope_type.value if scope_type else None,
        now=now,
    )
    rows = [TokenResponse.from_token(t, now) for t in tokens]
    return TokenListResponse(tokens=rows, count=len(rows))


# ---------------------------------------------------------------------------
# GET /auditor-tokens/options -- must be registered before /{token_id}
# ---------------------------------------------------------------------------


@router.get("/auditor-tokens/options", response_model=TokenOptionsResponse)
def token_options(user: StaffUser = Depends(require_issuer)) -> TokenOptionsResponse:
    """Return the choices an issuance form needs."""
    return TokenOptionsResponse(
        scope_types=[
            ScopeTypeOption(
                value=scope.value,
                requires_entity_id=kind is not None,
                entity_kind=kind,
            )
            for scope, kind in SCOPE_ENTITY_KIND.items()
        ],
        resource_types=list(RESOURCE_TYPES),
        default_expiry_hours=_DEFAULT_EXPIRY_HOURS,
        max_lifetime_days=get_settings().token_max_lifetime_days,
    )


# ---------------------------------------------------------------------------
# POST /auditor-tokens/cleanup -- manual expiry sweep
# ---------------------------------------------------------------------------


@router.post("/auditor-tokens/cleanup", response_model=CleanupResponse)
def cleanup_tokens(request: Request, user: StaffUser = Depends(require_admin)) -> CleanupResponse:
    """Deactivate every token past its expiry. Safe to call repeatedly."""
    count = sweep_expired(
        request.app.state.token_store,
        audit=request.app.state.audit_sink,
        actor=f"user:{user.user_id}",
    )
    return CleanupResponse(message=f"Deactivated {count} expired token(s).", count=count)


# ---------------------------------------------------------------------------
# GET /auditor-tokens/{token_id} -- detail
# ---------------------------------------------------------------------------


@router.get("/auditor-tokens/{token_id}", response_model=TokenResponse)
def get_token(
    request: Request,
    token_id: int,
    user: StaffUser = Depends(require_viewer),
) -> TokenResponse:
    """Return one auditor token by id. The secret is never included, only its preview."""
    store: TokenStore = request.app.state.token_store
    token = store.find_by_id(token_id)
    if token is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(
                code="not_found",
                message=f"Auditor access token {token_id} not found.",
            ).model_dump(),
        )
    return TokenResponse.from_token(token, as_utc())


# ---------------------------------------------------------------------------
# PUT /auditor-tokens/{token_id}/revoke
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.put("/auditor-tokens/{token_id}/revoke", response_model=RevokeResponse)
def revoke(
    request: Request,
    token_id: int,
    body: RevokeRequest,
    user: StaffUser = Depends(require_issuer),
) -> RevokeResponse:
    """Revoke an active token. Revoking twice is a 409, not a silent success."""
    token = revoke_token(
        request.app.state.token_store,
        token_id,
        revoked_by=user.user_id,
        reason=body.reason,
        audit=request.app.state.audit_sink,
    )
    return RevokeResponse(
        message="Auditor access token revoked.",
        token=TokenResponse.from_token(token, as_utc()),
    )
