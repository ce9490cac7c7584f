"""
access/store.py -- SQLAlchemy Core persistence layer for auditor access tokens.

Pattern: Repository + Data Mapper. TokenStore is the repository;
_row_to_token is the mapper. Issuer, validator, revocation and sweeper code
never touch SQL directly.

Concurrency:
  Every state change is ONE conditional UPDATE whose WHERE clause carries the
  whole precondition (active, not expired, under max_uses, ...). The database
  serializes writers per row, so two racing validations near exhaustion
  cannot both pass the "current_uses < max_uses" check, and a sweep racing a
  validation at the expiry boundary cannot both succeed. Never split these
  into a SELECT followed by an UPDATE.

  When the caller needs the post-update row, it is re-read on the same
  connection before commit, so it reflects exactly the write that just
  happened.

Timestamps:
  Stored as fixed-width UTC ISO 8601 strings with microseconds
  ("2026-01-01T00:00:00.000000+00:00"). Fixed width makes SQL string
  comparison agree with chronological order, which the expiry predicates
  rely on.

Security:
  All queries use bound parameters. No f-strings in SQL.
  The raw secret never reaches this module -- only its HMAC fingerprint.

DB path: access/auditgate.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError

from access.errors import AlreadyRevokedError, StoreUnavailableError, TokenNotFoundError
from access.models import AccessToken

logger = logging.getLogger("auditgate.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'auditgate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_tokens = Table(
    "auditor_access_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("secret_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("secret_preview", String(20), nullable=False),  # display only
    Column("auditor_name", String(255), nullable=False),
    Column("auditor_email", String(255), nullable=False),
    Column("auditor_organization", String(255)),
    Column("purpose", String(500), nullable=False),
    Column("notes", Text),
    Column("scope_type", String(50), nullable=False),
    Column("scope_entity_id", Integer),
    Column("allowed_resources", Text),  # JSON array; NULL = no allowlist
    Column("expires_at", String(32), nullable=False),
    Column("max_uses", Integer),  # NULL = unlimited
    Column("current_uses", Integer, nullable=False, server_default="0"),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("created_by", Integer, nullable=False),
    Column("revoked_at", String(32)),
    Column("revoked_by", Integer),
    Column("revocation_reason", String(500)),
    Column("last_used_at", String(32)),
    Column("last_used_from", String(45)),  # IPv6 max length
    CheckConstraint("max_uses IS NULL OR max_uses > 0", name="ck_tokens_max_uses_positive"),
    CheckConstraint("max_uses IS NULL OR current_uses <= max_uses", name="ck_tokens_uses_within_limit"),
)

# Sweeper and active-only listings filter on (active, expires_at).
Index("ix_tokens_active_expires", _tokens.c.active, _tokens.c.expires_at)
Index("ix_tokens_auditor_email", _tokens.c.auditor_email)
Index("ix_tokens_created_by", _tokens.c.created_by)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on the validator's writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: datetime) -> str:
    """Serialize to the fixed-width UTC form. Naive datetimes are treated as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Re-raise driver-level connectivity failures as StoreUnavailableError.

    A DBAPIError counts only when the driver reports the connection as
    invalidated. Constraint violations and programming errors pass through
    unchanged.
    """
    try:
        yield
    except OperationalError as exc:
        logger.warning("Token store unavailable during %s: %s", operation, exc.orig)
        raise StoreUnavailableError(f"Token store unavailable during {operation}.") from exc
    except DBAPIError as exc:
        if not exc.connection_invalidated:
            raise
        logger.warning("Token store connection lost during %s: %s", operation, exc.orig)
        raise StoreUnavailableError(f"Token store unavailable during {operation}.") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for AccessToken records.

    Usage:
        store = TokenStore()                                # SQLite default
        store = TokenStore("postgresql://user:pw@host/db")  # PostgreSQL
        token_id = store.create(token)
        token = store.validate_and_consume(secret_hash, now, "203.0.113.9")
        store.revoke_if_active(token_id, revoked_by=1, reason="engagement ended", now=now)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Route handlers run in a thread pool, so one pooled connection
            # may be used from several threads over its lifetime.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, token: AccessToken) -> int:
        """Insert a new token record and return its ID.

        active and current_uses are forced to their initial values regardless
        of what the dataclass carries. Raises sqlalchemy.exc.IntegrityError if
        secret_hash already exists.
        """
        created_at = token.created_at or _now()
        allowed = json.dumps(token.allowed_resources) if token.allowed_resources is not None else None
        with _translate_errors("create"), self.engine.connect() as conn:
            result = conn.execute(
                _tokens.insert().values(
                    secret_hash=token.secret_hash,
                    secret_preview=token.secret_preview,
                    auditor_name=token.auditor_name,
                    auditor_email=token.auditor_email,
                    auditor_organization=token.auditor_organization,
                    purpose=token.purpose,
                    notes=token.notes,
                    scope_type=token.scope_type,
                    scope_entity_id=token.scope_entity_id,
                    allowed_resources=allowed,
                    expires_at=_to_iso(token.expires_at),
                    max_uses=token.max_uses,
                    current_uses=0,
                    active=1,
                    created_at=_to_iso(created_at),
                    created_by=token.created_by,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def validate_and_consume(
        self, secret_hash: str, now: datetime, origin: Optional[str] = None
    ) -> Optional[AccessToken]:
        """Atomically match a usable token by fingerprint and record one use.

        The UPDATE's WHERE clause is the complete usability test. If it
        matches, the same statement increments current_uses and stamps
        last_used_at / last_used_from. Returns the post-update record, or None
        when nothing matched -- without saying why.
        """
        now_iso = _to_iso(now)
        stmt = (
            _tokens.update()
            .where(
                (_tokens.c.secret_hash == secret_hash)
                & (_tokens.c.active == 1)
                & (_tokens.c.expires_at > now_iso)
                & (_tokens.c.max_uses.is_(None) | (_tokens.c.current_uses < _tokens.c.max_uses))
            )
            .values(
                current_uses=_tokens.c.current_uses + 1,
                last_used_at=now_iso,
                last_used_from=origin,
            )
        )
        with _translate_errors("validate"), self.engine.connect() as conn:
            result = conn.execute(stmt)
            if result.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute(_tokens.select().where(_tokens.c.secret_hash == secret_hash)).fetchone()
            conn.commit()
        return _row_to_token(row)

    def revoke_if_active(self, token_id: int, revoked_by: int, reason: str, now: datetime) -> AccessToken:
        """Flip an active token to inactive and stamp the revocation fields.

        One conditional UPDATE guarded by active = 1. When it matches nothing,
        the follow-up read on the same connection tells the two failure modes
        apart without modifying anything:
          - no row at all  -> TokenNotFoundError
          - row exists     -> AlreadyRevokedError (original metadata untouched)
        """
        with _translate_errors("revoke"), self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.id == token_id) & (_tokens.c.active == 1))
                .values(
                    active=0,
                    revoked_at=_to_iso(now),
                    revoked_by=revoked_by,
                    revocation_reason=reason,
                )
            )
            row = conn.execute(_tokens.select().where(_tokens.c.id == token_id)).fetchone()
            conn.commit()
        if result.rowcount == 0:
            if row is None:
                raise TokenNotFoundError(f"Auditor access token {token_id} not found.")
            raise AlreadyRevokedError(f"Auditor access token {token_id} is already revoked.")
        return _row_to_token(row)

    def bulk_deactivate_expired(self, now: datetime) -> int:
        """Deactivate every active token whose expiry has passed. Returns rows updated.

        Revocation fields are left NULL so reports can tell "expired naturally"
        from "explicitly revoked". Safe to re-run: a second pass matches nothing.
        """
        with _translate_errors("sweep"), self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.active == 1) & (_tokens.c.expires_at <= _to_iso(now)))
                .values(active=0)
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_id(self, token_id: int) -> Optional[AccessToken]:
        """Fetch a single token by ID. Returns None if not found."""
        with _translate_errors("find_by_id"), self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.id == token_id)).fetchone()
        return _row_to_token(row) if row is not None else None

    def find_by_hash(self, secret_hash: str) -> Optional[AccessToken]:
        """Fetch a token by fingerprint, whatever its state. O(1) via UNIQUE index.

        For diagnostics only. Authentication must go through
        validate_and_consume(), never through this read.
        """
        with _translate_errors("find_by_hash"), self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.secret_hash == secret_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_tokens(
        self,
        active_only: bool = False,
        created_by: Optional[int] = None,
        auditor_email: Optional[str] = None,
        scope_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[AccessToken]:
        """Return tokens matching every given filter, newest first.

        active_only keeps tokens that are active AND not yet expired, so a
        token past its expiry that the sweeper has not reached yet is excluded.
        """
        stmt = select(_tokens)
        if active_only:
            stmt = stmt.where((_tokens.c.active == 1) & (_tokens.c.expires_at > _to_iso(now or _now())))
        if created_by is not None:
            stmt = stmt.where(_tokens.c.created_by == created_by)
        if auditor_email:
            stmt = stmt.where(_tokens.c.auditor_email == auditor_email.strip().lower())
        if scope_type:
            stmt = stmt.where(_tokens.c.scope_type == scope_type)
        stmt = stmt.order_by(_tokens.c.created_at.desc(), _tokens.c.id.desc())
        with _translate_errors("list"), self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_token(r) for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except OperationalError:
            logger.warning("Token store ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_token(row) -> AccessToken:
    allowed = json.loads(row.allowed_resources) if row.allowed_resources is not None else None
    return AccessToken(
        id=row.id,
        secret_hash=row.secret_hash,
        secret_preview=row.secret_preview,
        auditor_name=row.auditor_name,
        auditor_email=row.auditor_email,
        auditor_organization=row.auditor_organization,
        purpose=row.purpose,
        notes=row.notes,
        scope_type=row.scope_type,
        scope_entity_id=row.scope_entity_id,
        allowed_resources=allowed,
        expires_at=_from_iso(row.expires_at),
        max_uses=row.max_uses,
        current_uses=row.current_uses,
        active=bool(row.active),
        created_at=_from_iso(row.created_at),
        created_by=row.created_by,
        revoked_at=_from_iso(row.revoked_at),
        revoked_by=row.revoked_by,
        revocation_reason=row.revocation_reason,
        last_used_at=_from_iso(row.last_used_at),
        last_used_from=row.last_used_from,
    )
