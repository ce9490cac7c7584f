"""
auth/tokens.py -- Staff JWT encode/decode.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username, role, and expiry. Verification returns None on any
       failure -- the dependency layer turns that into a 401.

  Minting: in production the surrounding identity system issues these. The
       CLI's `staff-token` command and the test suite mint them locally with
       create_staff_token() for operators and fixtures.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup.

Layer rule: no imports from api/, access/, or audit/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from auth.models import StaffUser
from core.config import get_settings

logger = logging.getLogger("auditgate.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"


def create_staff_token(user_id: int, username: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT with staff identity and configurable expiry.

    Args:
        user_id:        Identity-system user ID; recorded as created_by/revoked_by.
        username:       Stored as the JWT subject claim.
        role:           "admin", "manager", "auditor" or "viewer".
        expire_seconds: Lifetime in seconds. If 0 (default), uses
                        Settings.staff_token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.staff_token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_staff_token(token: str) -> Optional[StaffUser]:
    """Decode and verify a staff JWT. Returns the StaffUser or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload or "role" not in payload:
        return None
    try:
        user_id = int(payload["user_id"])
    except (TypeError, ValueError):
        logger.warning("Staff token carries a non-integer user_id claim")
        return None
    return StaffUser(user_id=user_id, username=str(payload.get("sub", "")), role=str(payload["role"]))
