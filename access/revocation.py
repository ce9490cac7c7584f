"""
access/revocation.py -- One-way, explicit deactivation of an auditor token.

Revocation is not idempotent on purpose: revoking a token that is already
inactive raises AlreadyRevokedError, so an accidental double revocation shows
up instead of silently overwriting who revoked it and why.

An exhausted or expired-but-unswept token is still active and can be revoked
normally.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from access.errors import AlreadyRevokedError, TokenNotFoundError, TokenValidationError
from access.models import AccessToken, as_utc

if TYPE_CHECKING:
    from access.store import TokenStore
    from audit.store import AuditSink

logger = logging.getLogger("auditgate.revocation")


def revoke_token(
    store: TokenStore,
    token_id: int,
    revoked_by: int,
    reason: str,
    audit: Optional[AuditSink] = None,
    now: Optional[datetime] = None,
) -> AccessToken:
    """Revoke an active token and return the updated record.

    Raises:
        TokenValidationError: reason is blank (checked before any write).
        TokenNotFoundError:   no token with this id.
        AlreadyRevokedError:  token is already inactive; nothing is modified.
        StoreUnavailableError: database unreachable; nothing is modified.
    """
    reason = (reason or "").strip()
    if not reason:
        raise TokenValidationError("Revocation reason is required.")

    try:
        token = store.revoke_if_active(token_id, revoked_by=revoked_by, reason=reason, now=as_utc(now))
    except (TokenNotFoundError, AlreadyRevokedError) as exc:
        logger.info("Revocation of token %s by user %s refused: %s", token_id, revoked_by, exc)
        raise

    logger.info(
        "Revoked auditor token %d (%s) for %s by user %d",
        token.id,
        token.secret_preview,
        token.auditor_email,
        revoked_by,
    )
    if audit is not None:
        audit.record(
            f"user:{revoked_by}",
            "revoke",
            entity_id=token.id,
            before={"active": True},
            after={
                "active": False,
                "revoked_at": token.revoked_at.isoformat() if token.revoked_at else None,
                "revoked_by": revoked_by,
                "revocation_reason": reason,
            },
        )
    return token
