"""
audit/models.py -- Domain dataclass for audit trail entries.

Pattern: Data class (pure data container, zero logic), like access/models.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class AuditEntry:
    """Immutable record of one security-relevant action.

    Entries are never updated or deleted -- only inserted. before/after hold
    the relevant slice of entity state as plain dicts; they must never carry
    a raw secret or a secret fingerprint.

    actor is a free-form principal label: "user:<id>" for staff,
    "auditor:<email>" for token holders, "anonymous" for failed
    authentications, "system" for scheduled work.

    id and created_at are None before the record is written to the database.
    """

    actor: str
    action: str  # "create" | "authenticate" | "authenticate_failed" | "revoke" | "sweep"
    entity_type: str = "AccessToken"
    entity_id: Optional[int] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    id: Optional[int] = None
    created_at: Optional[str] = None  # ISO 8601, set by store on insert
