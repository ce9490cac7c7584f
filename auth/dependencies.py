"""
auth/dependencies.py -- FastAPI Depends() helpers for staff and auditor authentication.

Two distinct credentials, two distinct header schemes:
  1. Authorization: Bearer <JWT>          -- internal staff (management API).
  2. Authorization: AuditorToken <secret> -- external auditors (resource reads).

Staff:
  get_current_staff() raises 401 if the JWT is missing or invalid.
  require_viewer() / require_issuer() / require_admin() add a 403 role check.

Auditors:
  auditor_access("document") returns a dependency for a downstream resource
  route. It enforces read-only access, validates the token (consuming one
  use), then checks the token's scope against the route's resource_id path
  parameter. Every validation failure gets the same 403 body.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi (for Depends/HTTPException/Request) because this module is part of
the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Optional

from fastapi import HTTPException, Request

from access.errors import AuthenticationFailure, ScopeDeniedError
from access.models import ScopeDescriptor
from access.scope import check_access
from access.validator import authenticate
from auth.models import ISSUER_ROLES, VIEWER_ROLES, StaffUser
from auth.tokens import decode_staff_token
from core.config import get_settings

_AUDITOR_SCHEME = "AuditorToken "

# ---------------------------------------------------------------------------
# Staff
# ---------------------------------------------------------------------------


def get_current_staff(request: Request) -> StaffUser:
    """Require a valid staff JWT. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: StaffUser = Depends(get_current_staff)): ...
    """
    auth_header = request.headers.get("Authorization", "")
    user = None
    if auth_header.startswith("Bearer "):
        user = decode_staff_token(auth_header[7:])
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def _require_role(request: Request, roles: frozenset[str], label: str) -> StaffUser:
    user = get_current_staff(request)
    if user.role not in roles:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": f"{label} access required."},
        )
    return user


def require_viewer(request: Request) -> StaffUser:
    """Admin, manager, or internal auditor role. 401 if unauthenticated, 403 otherwise."""
    return _require_role(request, VIEWER_ROLES, "Token viewer")


def require_issuer(request: Request) -> StaffUser:
    """Admin or manager role. 401 if unauthenticated, 403 otherwise."""
    return _require_role(request, ISSUER_ROLES, "Token issuer")


def require_admin(request: Request) -> StaffUser:
    """Admin role only. 401 if unauthenticated, 403 otherwise."""
    return _require_role(request, frozenset({"admin"}), "Admin")


# ---------------------------------------------------------------------------
# Auditors
# ---------------------------------------------------------------------------


def client_address(request: Request) -> Optional[str]:
    """Best-effort origin address for last_used_from and audit entries.

    X-Forwarded-For is client-controlled unless a proxy overwrites it, so it
    is only honoured when TRUST_FORWARDED_FOR=true.
    """
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first[:45]
    return request.client.host if request.client else None


def auditor_access(resource_type: str) -> Callable[[Request], ScopeDescriptor]:
    """Build a dependency that admits an auditor token scoped to resource_type.

    Use on downstream resource routes:
        @router.get("/documents/{resource_id}")
        def get_document(resource_id: int, scope = Depends(auditor_access("document"))): ...

    Order of checks:
      1. Header present                  -> else 401 auditor_token_required
      2. GET request                     -> else 403 read_only (no use consumed)
      3. Token validates (one use spent) -> else 403 invalid_token
      4. Scope covers the resource       -> else 403 scope_denied
    """

    def dependency(request: Request) -> ScopeDescriptor:
        auth_header = request.headers.get("Authorization", "")
        secret = auth_header[len(_AUDITOR_SCHEME):].strip() if auth_header.startswith(_AUDITOR_SCHEME) else ""
        if not secret:
            raise HTTPException(
                status_code=401,
                detail={"code": "auditor_token_required", "message": "Auditor access token required."},
            )

        if request.method != "GET":
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "read_only",
                    "message": "Read-only access: only GET requests are allowed with auditor tokens.",
                },
            )

        try:
            scope = authenticate(
                request.app.state.token_store,
                secret,
                origin=client_address(request),
                audit=request.app.state.audit_sink,
            )
        except AuthenticationFailure as exc:
            raise HTTPException(
                status_code=403,
                detail={"code": "invalid_token", "message": str(exc)},
            ) from None

        try:
            check_access(scope, resource_type, request.path_params.get("resource_id"))
        except ScopeDeniedError as exc:
            raise HTTPException(
                status_code=403,
                detail={"code": "scope_denied", "message": str(exc)},
            ) from None

        request.state.auditor_scope = scope
        return scope

    return dependency
