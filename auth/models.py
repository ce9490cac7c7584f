"""
auth/models.py -- Domain dataclass for the staff identity behind a request.

Pattern: Data class (pure data container, zero logic). Mirrors access/models.py.

AuditGate does not own user accounts. A staff member is whoever presents a
valid JWT signed with SECRET_KEY; the claims are the whole identity.

Layer rule: no imports from api/, access/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass

# Roles that may issue and revoke auditor tokens.
ISSUER_ROLES = frozenset({"admin", "manager"})
# Roles that may list and inspect auditor tokens (internal auditors included).
VIEWER_ROLES = frozenset({"admin", "manager", "auditor"})


@dataclass(frozen=True)
class StaffUser:
    """An internal user identified by a verified staff JWT.

    user_id is the identity system's numeric id. It is what ends up in
    created_by / revoked_by on token records.
    """

    user_id: int
    username: str
    role: str  # "admin" | "manager" | "auditor" | "viewer"
