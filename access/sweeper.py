"""
access/sweeper.py -- Batch deactivation of auditor tokens past their expiry.

Validation already rejects expired tokens on its own, so the sweep is
housekeeping: it makes the active flag match reality for listings and reports.
Swept tokens keep empty revocation fields, which is how reports tell natural
expiry apart from explicit revocation.

Re-entrant: two overlapping sweeps are both correct, since each row can be
flipped only once.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from access.models import as_utc

if TYPE_CHECKING:
    from access.store import TokenStore
    from audit.store import AuditSink

logger = logging.getLogger("auditgate.sweeper")


def sweep_expired(
    store: TokenStore,
    audit: Optional[AuditSink] = None,
    actor: str = "system",
    now: Optional[datetime] = None,
) -> int:
    """Deactivate all active tokens with expires_at <= now. Returns the count."""
    now = as_utc(now)
    count = store.bulk_deactivate_expired(now)
    if count:
        logger.info("Expiry sweep deactivated %d auditor token(s)", count)
    else:
        logger.debug("Expiry sweep found nothing to deactivate")
    if audit is not None:
        audit.record(actor, "sweep", after={"deactivated": count, "swept_at": now.isoformat()})
    return count
