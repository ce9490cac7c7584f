"""access/ -- Auditor access token lifecycle for AuditGate.

Issue, validate, authorize, revoke, and sweep time-limited, scope-restricted
bearer tokens for external auditors.

Layer rule: access/ imports from core/ and audit/ only. It does NOT import
from api/ or auth/. api/ and auth/ import from access/, not the other way
around.
"""
