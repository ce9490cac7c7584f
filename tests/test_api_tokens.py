"""
tests/test_api_tokens.py -- Integration tests for the /api/v1/auditor-tokens routes.

These tests exercise the full stack: FastAPI routing -> staff JWT dependency
-> access/ services -> TokenStore -> response model serialization -> the
error envelope from api/main.py.

Coverage:
  - Auth failures: 401 without a JWT, 403 for roles below the route's bar
  - Issue: 201 with the one-time secret and no-store, 400 domain errors, 422 schema errors
  - List/detail: preview only (never the fingerprint), filters, 404
  - Revoke: 200, 409 on second revoke, 404 unknown id, 422 short reason
  - Cleanup and options
  - 503 with Retry-After when the store is unavailable

Fixtures used (from conftest.py):
  - api_client: (client, headers) -- headers[role] is a Bearer JWT header;
    user ids are admin=1, manager=2, auditor=3, viewer=4.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from access.errors import StoreUnavailableError
from access.tokens import hash_secret
from api.main import app
from core.config import get_settings


def _body(**overrides) -> dict:
    body = {
        "auditor_name": "Dana Reyes",
        "auditor_email": "dana@certbody.example",
        "auditor_organization": "CertBody Ltd",
        "purpose": "ISO 9001 surveillance audit",
        "scope_type": "full_read_only",
        "allowed_resources": ["document", "ncr"],
        "expires_at": (datetime.now(timezone.utc) + timedelta(days=3)).isoformat(),
        "max_uses": 50,
    }
    body.update(overrides)
    return body


def _issue(client: TestClient, headers: dict, **overrides) -> dict:
    resp = client.post("/api/v1/auditor-tokens", json=_body(**overrides), headers=headers["manager"])
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestAuthFailures:
    def test_list_requires_jwt(self, api_client):
        client, _ = api_client
        resp = client.get("/api/v1/auditor-tokens")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_garbage_bearer_token_rejected(self, api_client):
        client, _ = api_client
        resp = client.get("/api/v1/auditor-tokens", headers={"Authorization": "Bearer nonsense"})
        assert resp.status_code == 401

    def test_auditor_token_is_not_a_staff_credential(self, api_client):
        client, headers = api_client
        issued = _issue(client, headers)
        resp = client.get("/api/v1/auditor-tokens", headers={"Authorization": f"AuditorToken {issued['token']}"})
        assert resp.status_code == 401

    @pytest.mark.parametrize("role", ["auditor", "viewer"])
    def test_issue_requires_issuer_role(self, api_client, role):
        client, headers = api_client
        resp = client.post("/api/v1/auditor-tokens", json=_body(), headers=headers[role])
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_viewer_role_cannot_list(self, api_client):
        client, headers = api_client
        assert client.get("/api/v1/auditor-tokens", headers=headers["viewer"]).status_code == 403

    def test_internal_auditor_can_list(self, api_client):
        client, headers = api_client
        assert client.get("/api/v1/auditor-tokens", headers=headers["auditor"]).status_code == 200

    def test_cleanup_is_admin_only(self, api_client):
        client, headers = api_client
        assert client.post("/api/v1/auditor-tokens/cleanup", headers=headers["manager"]).status_code == 403

    def test_docs_require_jwt(self, api_client):
        client, headers = api_client
        assert client.get("/docs").status_code == 401
        assert client.get("/docs", headers=headers["viewer"]).status_code == 200


class TestIssue:
    def test_issue_returns_secret_once(self, api_client):
        client, headers = api_client
        resp = client.post("/api/v1/auditor-tokens", json=_body(), headers=headers["manager"])
        assert resp.status_code == 201
        assert resp.headers["Cache-Control"] == "no-store"
        data = resp.json()
        assert data["token"].startswith("aat_")
        assert data["access_url"] is None
        assert "not be shown again" in data["warning"]

        detail = client.get(f"/api/v1/auditor-tokens/{data['token_id']}", headers=headers["manager"]).json()
        assert data["token"] not in str(detail)
        assert hash_secret(data["token"]) not in str(detail)
        assert detail["token_preview"] == f"{data['token'][:8]}...{data['token'][-4:]}"
        assert detail["created_by"] == 2
        assert detail["status"] == "usable"
        assert detail["allowed_resources"] == ["document", "ncr"]

    def test_access_url_comes_from_settings(self, api_client, monkeypatch):
        client, headers = api_client
        monkeypatch.setattr(get_settings(), "auditor_access_url", "https://portal.example/auditor-access")
        data = _issue(client, headers)
        assert data["access_url"] == "https://portal.example/auditor-access"

    def test_specific_scope_without_entity_is_400(self, api_client):
        client, headers = api_client
        resp = client.post(
            "/api/v1/auditor-tokens",
            json=_body(scope_type="specific_document", allowed_resources=None),
            headers=headers["admin"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_past_expiry_is_400(self, api_client):
        client, headers = api_client
        past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        resp = client.post("/api/v1/auditor-tokens", json=_body(expires_at=past), headers=headers["admin"])
        assert resp.status_code == 400
        assert "future" in resp.json()["error"]["message"]

    def test_unknown_resource_type_is_400(self, api_client):
        client, headers = api_client
        resp = client.post(
            "/api/v1/auditor-tokens", json=_body(allowed_resources=["payroll"]), headers=headers["admin"]
        )
        assert resp.status_code == 400

    @pytest.mark.parametrize(
        "overrides",
        [
            {"scope_type": "everything"},
            {"purpose": "hi"},
            {"max_uses": 0},
            {"auditor_name": "D"},
            {"scope_entity_id": -1},
            {"allowed_resources": 5},
            {"allowed_resources": "document"},
            {"allowed_resources": {"document": True}},
        ],
    )
    def test_schema_violations_are_422(self, api_client, overrides):
        client, headers = api_client
        resp = client.post("/api/v1/auditor-tokens", json=_body(**overrides), headers=headers["admin"])
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestListAndDetail:
    def test_list_shape_and_filters(self, api_client):
        client, headers = api_client
        _issue(client, headers, auditor_email="filter.me@firm.example")
        _issue(
            client,
            headers,
            auditor_email="filter.me@firm.example",
            scope_type="specific_ncr",
            scope_entity_id=7,
            allowed_resources=None,
        )

        resp = client.get(
            "/api/v1/auditor-tokens",
            params={"auditor_email": "filter.me@firm.example"},
            headers=headers["admin"],
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["count"] == 2
        assert len(data["tokens"]) == 2
        assert all("secret_hash" not in t for t in data["tokens"])

        resp = client.get(
            "/api/v1/auditor-tokens",
            params={"auditor_email": "filter.me@firm.example", "scope_type": "specific_ncr"},
            headers=headers["admin"],
        )
        assert resp.json()["count"] == 1
        assert resp.json()["tokens"][0]["scope_entity_id"] == 7

    def test_active_only_excludes_revoked(self, api_client):
        client, headers = api_client
        issued = _issue(client, headers, auditor_email="active.only@firm.example")
        client.put(
            f"/api/v1/auditor-tokens/{issued['token_id']}/revoke",
            json={"reason": "no longer needed"},
            headers=headers["manager"],
        )
        resp = client.get(
            "/api/v1/auditor-tokens",
            params={"auditor_email": "active.only@firm.example", "active_only": "true"},
            headers=headers["admin"],
        )
        assert resp.json()["count"] == 0

    def test_unknown_id_is_404(self, api_client):
        client, headers = api_client
        resp = client.get("/api/v1/auditor-tokens/999999", headers=headers["admin"])
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestRevoke:
    def test_revoke_then_conflict(self, api_client):
        client, headers = api_client
        issued = _issue(client, headers)
        url = f"/api/v1/auditor-tokens/{issued['token_id']}/revoke"

        resp = client.put(url, json={"reason": "Engagement ended"}, headers=headers["admin"])
        assert resp.status_code == 200
        token = resp.json()["token"]
        assert token["active"] is False
        assert token["status"] == "revoked"
        assert token["revoked_by"] == 1
        assert token["revocation_reason"] == "Engagement ended"

        resp = client.put(url, json={"reason": "Second attempt"}, headers=headers["manager"])
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_revoked"

        detail = client.get(f"/api/v1/auditor-tokens/{issued['token_id']}", headers=headers["admin"]).json()
        assert detail["revocation_reason"] == "Engagement ended"

    def test_revoke_unknown_is_404(self, api_client):
        client, headers = api_client
        resp = client.put("/api/v1/auditor-tokens/999999/revoke", json={"reason": "does not exist"}, headers=headers["admin"])
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_short_reason_is_422(self, api_client):
        client, headers = api_client
        issued = _issue(client, headers)
        resp = client.put(
            f"/api/v1/auditor-tokens/{issued['token_id']}/revoke", json={"reason": "no"}, headers=headers["admin"]
        )
        assert resp.status_code == 422

    def test_revocation_is_audited_with_staff_actor(self, api_client):
        client, headers = api_client
        issued = _issue(client, headers)
        client.put(
            f"/api/v1/auditor-tokens/{issued['token_id']}/revoke", json={"reason": "Contract over"}, headers=headers["admin"]
        )
        entries = app.state.audit_store.list_entries(entity_id=issued["token_id"])
        assert [(e.actor, e.action) for e in entries] == [("user:2", "create"), ("user:1", "revoke")]


class TestCleanupAndOptions:
    def test_cleanup_returns_count(self, api_client):
        client, headers = api_client
        resp = client.post("/api/v1/auditor-tokens/cleanup", headers=headers["admin"])
        assert resp.status_code == 200
        assert resp.json()["count"] >= 0

    def test_cleanup_deactivates_expired_token(self, api_client):
        client, headers = api_client
        store = app.state.token_store
        issued = _issue(client, headers)
        # Expire the token in place; the API refuses past expiries at issuance.
        with store.engine.connect() as conn:
            conn.execute(
                text("UPDATE auditor_access_tokens SET expires_at = :past WHERE id = :id"),
                {"past": "2000-01-01T00:00:00.000000+00:00", "id": issued["token_id"]},
            )
            conn.commit()
        resp = client.post("/api/v1/auditor-tokens/cleanup", headers=headers["admin"])
        assert resp.json()["count"] >= 1
        detail = client.get(f"/api/v1/auditor-tokens/{issued['token_id']}", headers=headers["admin"]).json()
        assert detail["active"] is False
        assert detail["status"] == "expired"
        assert detail["revoked_at"] is None

    def test_options(self, api_client):
        client, headers = api_client
        resp = client.get("/api/v1/auditor-tokens/options", headers=headers["manager"])
        assert resp.status_code == 200
        data = resp.json()
        scopes = {s["value"]: s for s in data["scope_types"]}
        assert scopes["full_read_only"]["requires_entity_id"] is False
        assert scopes["specific_document"]["requires_entity_id"] is True
        assert scopes["specific_document"]["entity_kind"] == "document"
        assert "audit-finding" in data["resource_types"]
        assert data["default_expiry_hours"] == [24, 48, 72, 168]


class TestStoreUnavailable:
    def test_store_outage_is_503_with_retry_after(self, api_client, monkeypatch):
        client, headers = api_client

        def unavailable(token_id):
            raise StoreUnavailableError("Token store unavailable during find_by_id.")

        monkeypatch.setattr(app.state.token_store, "find_by_id", unavailable)
        resp = client.get("/api/v1/auditor-tokens/1", headers=headers["admin"])
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "5"
        assert resp.json()["error"]["code"] == "store_unavailable"
