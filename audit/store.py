"""
audit/store.py -- SQLAlchemy-backed audit trail and its fire-and-forget sink.

AuditLogStore is a plain repository: append() raises on failure like any
other store method. AuditSink wraps it for the token lifecycle code, which
must never fail (or roll back) because the audit trail is unavailable --
AuditSink.record() logs the problem locally and returns.

Pattern: Repository + Data Mapper, same as access/store.py.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from audit.models import AuditEntry

logger = logging.getLogger("auditgate.audit")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'auditgate_audit.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor", String(320), nullable=False),
    Column("action", String(50), nullable=False),
    Column("entity_type", String(50), nullable=False),
    Column("entity_id", Integer),
    Column("before_state", Text),  # JSON object
    Column("after_state", Text),  # JSON object
    Column("created_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode (per connection; PRAGMAs are not inherited)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _dump(state: Optional[dict[str, Any]]) -> Optional[str]:
    # default=str covers datetimes and enums without a custom encoder.
    return json.dumps(state, default=str, sort_keys=True) if state is not None else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditLogStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def append(self, entry: AuditEntry) -> int:
        """Insert an audit entry and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    actor=entry.actor,
                    action=entry.action,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    before_state=_dump(entry.before),
                    after_state=_dump(entry.after),
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_entries(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        action: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Return matching entries in insertion order (oldest first)."""
        stmt = _audit_log.select()
        if entity_type is not None:
            stmt = stmt.where(_audit_log.c.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(_audit_log.c.entity_id == entity_id)
        if action is not None:
            stmt = stmt.where(_audit_log.c.action == action)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_audit_log.c.id)).fetchall()
        return [_row_to_entry(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Fire-and-forget sink
# ---------------------------------------------------------------------------


class AuditSink:
    """Non-blocking front for AuditLogStore used by the token lifecycle.

    record() never raises. A broken audit store must not stop an issuance,
    validation, or revocation that has already been committed.

    Usage:
        sink = AuditSink(AuditLogStore())
        sink.record("user:1", "create", entity_id=7, after={"scope_type": "full_read_only"})
    """

    def __init__(self, store: AuditLogStore) -> None:
        self.store = store

    def record(
        self,
        actor: str,
        action: str,
        entity_id: Optional[int] = None,
        before: Optional[dict[str, Any]] = None,
        after: Optional[dict[str, Any]] = None,
        entity_type: str = "AccessToken",
    ) -> None:
        entry = AuditEntry(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before=before,
            after=after,
        )
        try:
            self.store.append(entry)
        except Exception:
            logger.exception(
                "Audit write failed (actor=%s action=%s %s=%s)", actor, action, entity_type, entity_id
            )


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        actor=row.actor,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        before=json.loads(row.before_state) if row.before_state is not None else None,
        after=json.loads(row.after_state) if row.after_state is not None else None,
        created_at=row.created_at,
    )
