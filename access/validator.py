"""
access/validator.py -- Authenticate a presented auditor secret and record one use.

The check and the increment are a single conditional UPDATE inside
TokenStore.validate_and_consume(). This module never reads a token to decide
whether it is usable and then writes -- that sequence lets two racing
requests both pass a "current_uses < max_uses" check and push the counter
past its limit.

Failure is deliberately uniform. Whether the token does not exist, expired,
was revoked, or ran out of uses, the caller gets None (validate_token) or an
AuthenticationFailure with one fixed message (authenticate). A probing
attacker learns nothing about which tokens exist.

Internally the cause is still useful: after a failed validation a separate,
read-only diagnostic lookup classifies it for the log line and the audit
entry. It runs after the decision and cannot change it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from access.errors import AuthenticationFailure, StoreUnavailableError
from access.models import AccessToken, ScopeDescriptor, as_utc
from access.tokens import hash_secret

if TYPE_CHECKING:
    from access.store import TokenStore
    from audit.store import AuditSink

logger = logging.getLogger("auditgate.validator")


def token_status(token: Optional[AccessToken], now: datetime) -> str:
    """Classify a token as usable, revoked, expired, exhausted, or not_found.

    An inactive token with no revocation metadata was deactivated by the
    expiry sweeper, so it reports as expired rather than revoked.
    """
    if token is None:
        return "not_found"
    if not token.active:
        return "revoked" if token.revoked_at is not None else "expired"
    if token.expires_at <= now:
        return "expired"
    if token.max_uses is not None and token.current_uses >= token.max_uses:
        return "exhausted"
    return "usable"


def _diagnose(store: TokenStore, secret_hash: str, now: datetime) -> tuple[Optional[int], str]:
    try:
        token = store.find_by_hash(secret_hash)
    except StoreUnavailableError:
        return None, "unknown"
    return (token.id if token else None), token_status(token, now)


def validate_token(
    store: TokenStore,
    secret: str,
    origin: Optional[str] = None,
    audit: Optional[AuditSink] = None,
    now: Optional[datetime] = None,
) -> Optional[ScopeDescriptor]:
    """Consume one use of the token behind secret and return its scope.

    Returns None for every disqualifying condition. Never raises for an
    invalid token; StoreUnavailableError still propagates so callers can
    retry or answer 503.
    """
    now = as_utc(now)
    if not secret or not secret.strip():
        logger.info("Auditor token rejected (reason=blank origin=%s)", origin)
        return None

    secret_hash = hash_secret(secret)
    token = store.validate_and_consume(secret_hash, now, origin)

    if token is None:
        token_id, reason = _diagnose(store, secret_hash, now)
        logger.info("Auditor token rejected (reason=%s token_id=%s origin=%s)", reason, token_id, origin)
        if audit is not None:
            audit.record(
                "anonymous",
                "authenticate_failed",
                entity_id=token_id,
                after={"reason": reason, "origin": origin},
            )
        return None

    logger.info(
        "Auditor token %d (%s) authenticated for %s, use %d/%s",
        token.id,
        token.secret_preview,
        token.auditor_email,
        token.current_uses,
        token.max_uses if token.max_uses is not None else "unlimited",
    )
    if audit is not None:
        audit.record(
            f"auditor:{token.auditor_email}",
            "authenticate",
            entity_id=token.id,
            before={"current_uses": token.current_uses - 1},
            after={"current_uses": token.current_uses, "origin": origin},
        )
    return ScopeDescriptor.from_token(token)


def authenticate(
    store: TokenStore,
    secret: str,
    origin: Optional[str] = None,
    audit: Optional[AuditSink] = None,
    now: Optional[datetime] = None,
) -> ScopeDescriptor:
    """Like validate_token(), but raise AuthenticationFailure instead of returning None."""
    scope = validate_token(store, secret, origin=origin, audit=audit, now=now)
    if scope is None:
        raise AuthenticationFailure()
    return scope
