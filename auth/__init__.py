"""auth/ -- Request authentication for AuditGate.

Staff callers present a JWT; external auditors present an auditor access
token. Both converge here before any route handler runs.

Layer rule: auth/ imports from core/ and access/ plus third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way
around.
"""
