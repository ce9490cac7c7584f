"""audit/ -- Append-only audit trail for AuditGate.

Layer rule: audit/ imports only stdlib + third-party libraries. It does NOT
import from api/, auth/, or access/. access/ writes to it through AuditSink.
"""
