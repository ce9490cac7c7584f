#!/usr/bin/env python3
"""
AuditGate -- Time-boxed, read-only access tokens for external auditors.

Operator CLI over the same access/ services the HTTP API uses.

Usage:
  python main.py issue --name "Dana Reyes" --email dana@certbody.example \\
        --purpose "ISO 9001 surveillance audit" --scope full_read_only \\
        --resources document,ncr --hours 72 --max-uses 50 --issued-by 1
  python main.py issue ... --scope specific_document --entity-id 42 --hours 24 --issued-by 1
  python main.py list
  python main.py list --active-only --email dana@certbody.example --json
  python main.py show 7
  python main.py revoke 7 --reason "Engagement ended early" --revoked-by 1
  python main.py sweep
  python main.py staff-token --user-id 1 --username admin --role admin

Environment variables:
  DATABASE_URL  SQLAlchemy URL for the token store and audit log.
                Defaults to SQLite files inside the package.
  SECRET_KEY    Required unless DEBUG=true. Keys secret fingerprints and
                staff JWTs, so the CLI and the API must share it.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

from access.errors import AccessTokenError, TokenValidationError
from access.issuer import issue_token
from access.models import RESOURCE_TYPES, AccessToken, IssueRequest, ScopeType, as_utc
from access.revocation import revoke_token
from access.store import TokenStore
from access.sweeper import sweep_expired
from access.validator import token_status
from audit.store import AuditLogStore, AuditSink
from auth.models import ISSUER_ROLES, VIEWER_ROLES
from auth.tokens import create_staff_token
from core.config import get_settings


def _open_stores(db_url: Optional[str]) -> tuple[TokenStore, AuditLogStore]:
    """Open the token store and audit log at db_url, or the configured defaults."""
    url = db_url or get_settings().database_url
    if url:
        return TokenStore(db_url=url), AuditLogStore(db_url=url)
    return TokenStore(), AuditLogStore()


def _parse_expiry(args: argparse.Namespace) -> datetime:
    if args.expires_at:
        try:
            return as_utc(datetime.fromisoformat(args.expires_at))
        except ValueError:
            raise TokenValidationError(f"--expires-at is not an ISO 8601 timestamp: {args.expires_at!r}") from None
    return as_utc() + timedelta(hours=args.hours)


def _token_dict(token: AccessToken, now: datetime) -> dict:
    """Serializable view of a token. The fingerprint is never included."""
    return {
        "id": token.id,
        "token_preview": token.secret_preview,
        "auditor_name": token.auditor_name,
        "auditor_email": token.auditor_email,
        "auditor_organization": token.auditor_organization,
        "purpose": token.purpose,
        "scope_type": token.scope_type,
        "scope_entity_id": token.scope_entity_id,
        "allowed_resources": token.allowed_resources,
        "expires_at": token.expires_at.isoformat(),
        "max_uses": token.max_uses,
        "current_uses": token.current_uses,
        "status": token_status(token, now),
        "created_by": token.created_by,
        "revoked_at": token.revoked_at.isoformat() if token.revoked_at else None,
        "revocation_reason": token.revocation_reason,
        "last_used_at": token.last_used_at.isoformat() if token.last_used_at else None,
    }


def _print_token(token: AccessToken, now: datetime) -> None:
    uses = f"{token.current_uses}/{token.max_uses}" if token.max_uses is not None else f"{token.current_uses}/unlimited"
    scope = token.scope_type
    if token.scope_entity_id is not None:
        scope += f"/{token.scope_entity_id}"
    print(f"  #{token.id:<5} {token.secret_preview:<17} {token_status(token, now):<10} {token.auditor_email}")
    print(f"         scope={scope} resources={token.allowed_resources or '-'} uses={uses}")
    print(f"         expires {token.expires_at.isoformat()}")
    if token.revoked_at is not None:
        print(f"         revoked {token.revoked_at.isoformat()} by {token.revoked_by}: {token.revocation_reason}")


# ---------------------------------------------------------------------------
# Subcommands -- each returns a process exit code
# ---------------------------------------------------------------------------


def cmd_issue(args: argparse.Namespace, store: TokenStore, audit: AuditSink) -> int:
    resources = [r for r in args.resources.split(",") if r.strip()] if args.resources else None
    issued = issue_token(
        store,
        IssueRequest(
            auditor_name=args.name,
            auditor_email=args.email,
            auditor_organization=args.organization,
            purpose=args.purpose,
            notes=args.notes,
            scope_type=args.scope,
            scope_entity_id=args.entity_id,
            allowed_resources=resources,
            expires_at=_parse_expiry(args),
            max_uses=args.max_uses,
        ),
        issued_by=args.issued_by,
        audit=audit,
    )
    print(f"\n  Issued auditor token #{issued.token_id}, expires {issued.expires_at.isoformat()}")
    print(f"\n    {issued.raw_secret}\n")
    print("  Save this token securely. It will not be shown again.\n")
    return 0


def cmd_list(args: argparse.Namespace, store: TokenStore, audit: AuditSink) -> int:
    now = as_utc()
    tokens = store.list_tokens(active_only=args.active_only, auditor_email=args.email, scope_type=args.scope, now=now)
    if args.json:
        print(json.dumps([_token_dict(t, now) for t in tokens], indent=2))
        return 0
    if not tokens:
        print("  No auditor tokens found.")
        return 0
    for token in tokens:
        _print_token(token, now)
    print(f"\n  {len(tokens)} token(s).")
    return 0


def cmd_show(args: argparse.Namespace, store: TokenStore, audit: AuditSink) -> int:
    token = store.find_by_id(args.token_id)
    if token is None:
        print(f"  [!] Auditor token #{args.token_id} not found.")
        return 1
    now = as_utc()
    if args.json:
        print(json.dumps(_token_dict(token, now), indent=2))
    else:
        _print_token(token, now)
    return 0


def cmd_revoke(args: argparse.Namespace, store: TokenStore, audit: AuditSink) -> int:
    token = revoke_token(store, args.token_id, revoked_by=args.revoked_by, reason=args.reason, audit=audit)
    print(f"  Revoked auditor token #{token.id} ({token.secret_preview}).")
    return 0


def cmd_sweep(args: argparse.Namespace, store: TokenStore, audit: AuditSink) -> int:
    count = sweep_expired(store, audit, actor="cli")
    print(f"  Deactivated {count} expired token(s).")
    return 0


def cmd_staff_token(args: argparse.Namespace) -> int:
    print(create_staff_token(args.user_id, args.username, args.role, expire_seconds=args.expire_seconds))
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auditgate",
        description="AuditGate -- issue and manage read-only auditor access tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", metavar="URL", default=None, help="SQLAlchemy database URL (overrides DATABASE_URL)")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("issue", help="Issue a new auditor token and print the secret once")
    p.add_argument("--name", required=True, help="Auditor's full name")
    p.add_argument("--email", required=True, help="Auditor's email address")
    p.add_argument("--organization", default=None, help="Auditor's firm or certification body")
    p.add_argument("--purpose", required=True, help="Why access is granted")
    p.add_argument("--notes", default=None)
    p.add_argument("--scope", required=True, choices=[s.value for s in ScopeType])
    p.add_argument("--entity-id", type=int, default=None, help="Entity id for specific_* scopes")
    p.add_argument(
        "--resources",
        default=None,
        metavar="LIST",
        help=f"Comma-separated resource allowlist for full_read_only ({', '.join(RESOURCE_TYPES)})",
    )
    expiry = p.add_mutually_exclusive_group()
    expiry.add_argument("--hours", type=int, default=72, help="Lifetime in hours (default 72)")
    expiry.add_argument("--expires-at", default=None, metavar="ISO8601", help="Absolute expiry; naive = UTC")
    p.add_argument("--max-uses", type=int, default=None, help="Use limit (default unlimited)")
    p.add_argument("--issued-by", type=int, required=True, help="Staff user id recorded as created_by")

    p = sub.add_parser("list", help="List auditor tokens, newest first")
    p.add_argument("--active-only", action="store_true")
    p.add_argument("--email", default=None, help="Filter by auditor email")
    p.add_argument("--scope", default=None, choices=[s.value for s in ScopeType])
    p.add_argument("--json", action="store_true", help="Output JSON")

    p = sub.add_parser("show", help="Show one auditor token")
    p.add_argument("token_id", type=int)
    p.add_argument("--json", action="store_true", help="Output JSON")

    p = sub.add_parser("revoke", help="Revoke an active auditor token")
    p.add_argument("token_id", type=int)
    p.add_argument("--reason", required=True)
    p.add_argument("--revoked-by", type=int, required=True, help="Staff user id recorded as revoked_by")

    sub.add_parser("sweep", help="Deactivate every token past its expiry")

    p = sub.add_parser("staff-token", help="Mint a staff JWT for the management API")
    p.add_argument("--user-id", type=int, required=True)
    p.add_argument("--username", required=True)
    p.add_argument("--role", required=True, choices=sorted(ISSUER_ROLES | VIEWER_ROLES | {"viewer"}))
    p.add_argument("--expire-seconds", type=int, default=0, help="0 = STAFF_TOKEN_EXPIRE_SECONDS")

    return parser


_COMMANDS = {
    "issue": cmd_issue,
    "list": cmd_list,
    "show": cmd_show,
    "revoke": cmd_revoke,
    "sweep": cmd_sweep,
}


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "staff-token":
        return cmd_staff_token(args)

    store, audit_store = _open_stores(args.db)
    try:
        return _COMMANDS[args.command](args, store, AuditSink(audit_store))
    except AccessTokenError as exc:
        print(f"  [!] {exc}")
        return 1
    finally:
        store.close()
        audit_store.close()


if __name__ == "__main__":
    sys.exit(main())
