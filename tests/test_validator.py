"""Tests for access/validator.py -- consuming a use of an auditor token.

Covers:
- a freshly issued token validates; an altered secret does not
- expired, revoked and exhausted tokens all fail with the same None result
- usage counter and last-used metadata are recorded on success only
- the check-and-increment is atomic under concurrent validation
- token_status() classification
- audit entries for success and failure; a broken audit store never blocks
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError

from access.errors import AuthenticationFailure, StoreUnavailableError
from access.issuer import issue_token
from access.revocation import revoke_token
from access.validator import authenticate, token_status, validate_token
from audit.store import AuditSink


class TestValidateToken:
    def test_fresh_token_validates(self, store, make_request, now):
        issued = issue_token(store, make_request(), issued_by=1, now=now)
        scope = validate_token(store, issued.raw_secret, now=now + timedelta(minutes=5))
        assert scope is not None
        assert scope.token_id == issued.token_id
        assert scope.scope_type == "full_read_only"
        assert scope.auditor_email == "dana@certbody.example"

    def test_altered_secret_fails(self, store, make_request, now):
        issued = issue_token(store, make_request(), issued_by=1, now=now)
        altered = issued.raw_secret[:-1] + ("0" if issued.raw_secret[-1] != "0" else "1")
        assert validate_token(store, altered, now=now) is None

    @pytest.mark.parametrize("secret", ["", "   "])
    def test_blank_secret_fails(self, store, secret):
        assert validate_token(store, secret) is None

    def test_success_records_use_and_origin(self, store, make_request, now):
        issued = issue_token(store, make_request(), issued_by=1, now=now)
        used_at = now + timedelta(minutes=10)
        validate_token(store, issued.raw_secret, origin="203.0.113.9", now=used_at)
        token = store.find_by_id(issued.token_id)
        assert token.current_uses == 1
        assert token.last_used_at == used_at
        assert token.last_used_from == "203.0.113.9"

    def test_failure_records_nothing(self, store, make_request, now):
        issued = issue_token(store, make_request(max_uses=1), issued_by=1, now=now)
        assert validate_token(store, issued.raw_secret, now=now) is not None
        assert validate_token(store, issued.raw_secret, origin="198.51.100.1", now=now) is None
        token = store.find_by_id(issued.token_id)
        assert token.current_uses == 1
        assert token.last_used_from is None

    def test_expired_token_fails_even_if_active_and_unused(self, store, make_request, now):
        issued = issue_token(store, make_request(expires_at=now + timedelta(hours=1), max_uses=10), issued_by=1, now=now)
        assert validate_token(store, issued.raw_secret, now=now + timedelta(hours=1)) is None
        assert validate_token(store, issued.raw_secret, now=now + timedelta(hours=2)) is None
        token = store.find_by_id(issued.token_id)
        assert token.active is True
        assert token.current_uses == 0

    def test_revoked_token_fails(self, store, make_request, now):
        issued = issue_token(store, make_request(), issued_by=1, now=now)
        revoke_token(store, issued.token_id, revoked_by=2, reason="engagement ended", now=now)
        assert validate_token(store, issued.raw_secret, now=now) is None

    def test_exhausted_after_max_uses(self, store, make_request, now):
        issued = issue_token(store, make_request(max_uses=3), issued_by=1, now=now)
        results = [validate_token(store, issued.raw_secret, now=now) for _ in range(5)]
        assert [r is not None for r in results] == [True, True, True, False, False]
        assert store.find_by_id(issued.token_id).current_uses == 3

    def test_unlimited_token_keeps_counting(self, store, make_request, now):
        issued = issue_token(store, make_request(), issued_by=1, now=now)
        for _ in range(25):
            assert validate_token(store, issued.raw_secret, now=now) is not None
        assert store.find_by_id(issued.token_id).current_uses == 25

    def test_store_outage_propagates(self, store, make_request, now, monkeypatch):
        issued = issue_token(store, make_request(), issued_by=1, now=now)

        def broken_connect():
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        monkeypatch.setattr(store.engine, "connect", broken_connect)
        with pytest.raises(StoreUnavailableError):
            validate_token(store, issued.raw_secret, now=now)

    def test_dropped_connection_is_unavailable(self, store, make_request, now, monkeypatch):
        issued = issue_token(store, make_request(), issued_by=1, now=now)

        def dropped_connect():
            raise DBAPIError("UPDATE", {}, Exception("server closed the connection"), connection_invalidated=True)

        monkeypatch.setattr(store.engine, "connect", dropped_connect)
        with pytest.raises(StoreUnavailableError):
            validate_token(store, issued.raw_secret, now=now)

    def test_other_driver_errors_pass_through(self, store, make_request, now, monkeypatch):
        issued = issue_token(store, make_request(), issued_by=1, now=now)

        def failing_connect():
            raise DBAPIError("UPDATE", {}, Exception("syntax error"))

        monkeypatch.setattr(store.engine, "connect", failing_connect)
        with pytest.raises(DBAPIError):
            validate_token(store, issued.raw_secret, now=now)


class TestConcurrentValidation:
    def test_exactly_max_uses_successes_under_contention(self, file_store, make_request, now):
        """K threads race for N uses: exactly N win, and the counter ends at N."""
        max_uses, workers = 5, 12
        issued = issue_token(file_store, make_request(max_uses=max_uses), issued_by=1, now=now)
        barrier = threading.Barrier(workers)

        def attempt(_):
            barrier.wait()
            return validate_token(file_store, issued.raw_secret, now=now)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(attempt, range(workers)))

        successes = [r for r in results if r is not None]
        assert len(successes) == max_uses
        assert len(results) - len(successes) == workers - max_uses
        assert file_store.find_by_id(issued.token_id).current_uses == max_uses


class TestAuthenticate:
    def test_returns_scope_on_success(self, store, make_request, now):
        issued = issue_token(store, make_request(scope_type="specific_ncr", scope_entity_id=8), issued_by=1, now=now)
        scope = authenticate(store, issued.raw_secret, now=now)
        assert scope.scope_type == "specific_ncr"
        assert scope.scope_entity_id == 8

    def test_raises_generic_failure(self, store):
        with pytest.raises(AuthenticationFailure) as excinfo:
            authenticate(store, "aat_doesnotexist")
        assert str(excinfo.value) == "Invalid or expired auditor access token"


class TestTokenStatus:
    def test_not_found(self, now):
        assert token_status(None, now) == "not_found"

    def test_lifecycle_states(self, store, make_request, now):
        usable = issue_token(store, make_request(max_uses=1), issued_by=1, now=now)
        assert token_status(store.find_by_id(usable.token_id), now) == "usable"

        validate_token(store, usable.raw_secret, now=now)
        assert token_status(store.find_by_id(usable.token_id), now) == "exhausted"

        expiring = issue_token(store, make_request(expires_at=now + timedelta(hours=1)), issued_by=1, now=now)
        assert token_status(store.find_by_id(expiring.token_id), now + timedelta(hours=2)) == "expired"

        revoked = issue_token(store, make_request(), issued_by=1, now=now)
        revoke_token(store, revoked.token_id, revoked_by=1, reason="no longer needed", now=now)
        assert token_status(store.find_by_id(revoked.token_id), now) == "revoked"

    def test_swept_token_reports_expired_not_revoked(self, store, make_request, now):
        issued = issue_token(store, make_request(expires_at=now + timedelta(hours=1)), issued_by=1, now=now)
        store.bulk_deactivate_expired(now + timedelta(hours=2))
        assert token_status(store.find_by_id(issued.token_id), now + timedelta(hours=2)) == "expired"


class TestValidationAudit:
    def test_success_and_failure_are_audited(self, store, audit_sink, audit_store, make_request, now):
        issued = issue_token(store, make_request(max_uses=1), issued_by=1, now=now)
        validate_token(store, issued.raw_secret, origin="203.0.113.9", audit=audit_sink, now=now)
        validate_token(store, issued.raw_secret, origin="203.0.113.9", audit=audit_sink, now=now)

        ok = audit_store.list_entries(action="authenticate")
        assert len(ok) == 1
        assert ok[0].actor == "auditor:dana@certbody.example"
        assert ok[0].after == {"current_uses": 1, "origin": "203.0.113.9"}

        failed = audit_store.list_entries(action="authenticate_failed")
        assert len(failed) == 1
        assert failed[0].actor == "anonymous"
        assert failed[0].entity_id == issued.token_id
        assert failed[0].after["reason"] == "exhausted"

    def test_unknown_secret_audited_without_entity(self, store, audit_sink, audit_store):
        validate_token(store, "aat_" + "0" * 64, audit=audit_sink)
        failed = audit_store.list_entries(action="authenticate_failed")
        assert failed[0].entity_id is None
        assert failed[0].after["reason"] == "not_found"

    def test_broken_audit_store_does_not_block_validation(self, store, audit_store, make_request, now, monkeypatch):
        def broken_append(entry):
            raise RuntimeError("audit database gone")

        monkeypatch.setattr(audit_store, "append", broken_append)
        issued = issue_token(store, make_request(), issued_by=1, audit=AuditSink(audit_store), now=now)
        scope = validate_token(store, issued.raw_secret, audit=AuditSink(audit_store), now=now)
        assert scope is not None
        assert store.find_by_id(issued.token_id).current_uses == 1
