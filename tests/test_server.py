"""Tests for the guard HTTP endpoints."""

from __future__ import annotations

import pytest
from starlette.testclient import TestClient

from antigravity_guard.engine import SessionGuard
from antigravity_guard.proxy.server import create_app
from antigravity_guard.storage.accounts import save_accounts
from antigravity_guard.types import GuardConfig, TokenRefreshError


@pytest.fixture
def guard(two_accounts, accounts_path, cache_path, cache_config, refresher, clock) -> SessionGuard:
    save_accounts(two_accounts, accounts_path)
    return SessionGuard(
        GuardConfig(signature_cache=cache_config),
        clock=clock,
        refresher=refresher,
        cache_path=cache_path,
        accounts_path=accounts_path,
    )


@pytest.fixture
def client(guard):
    app = create_app(guard=guard)
    with TestClient(app) as c:
        yield c


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "accounts": 2}


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestCredentials:
    def test_authorize(self, client):
        resp = client.post("/v1/credentials/claude")
        assert resp.status_code == 200
        data = resp.json()
        assert data["email"] == "a@example.com"
        assert data["quota_key"] == "claude"
        assert data["headers"]["Authorization"] == f"Bearer {data['access_token']}"
        assert data["switch_reason"] == "initial"

    def test_header_style_selects_quota(self, client):
        resp = client.post("/v1/credentials/gemini", json={"header_style": "gemini-cli"})
        assert resp.json()["quota_key"] == "gemini-cli"

    def test_unknown_family(self, client):
        assert client.post("/v1/credentials/gpt").status_code == 400
        resp = client.post("/v1/credentials/claude", json={"header_style": "vertex"})
        assert resp.status_code == 400

    def test_exhausted_returns_429_with_retry_after(self, client, guard, clock):
        for acc in guard.rotator.accounts:
            acc.rate_limit_reset_times["claude"] = clock.ms + 2_500
        resp = client.post("/v1/credentials/claude")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "3"
        data = resp.json()
        assert data["quota_key"] == "claude"
        assert data["retry_after_ms"] == 2_500
        assert data["reset_at_ms"] == clock.ms + 2_500

    def test_refresh_failure_returns_502(self, guard, refresher):
        refresher.fail_with = TokenRefreshError("invalid_grant", account="a@example.com")
        with TestClient(create_app(guard=guard)) as client:
            resp = client.post("/v1/credentials/claude")
        assert resp.status_code == 502
        assert resp.json()["account"] == "a@example.com"

    def test_rate_limit_switches(self, client, clock):
        resp = client.post("/v1/credentials/claude/rate-limit", json={
            "account": "a@example.com", "retry_after_ms": 10_000,
        })
        assert resp.json() == {
            "switched_to": "b@example.com",
            "exhausted": False,
            "next_reset_at_ms": clock.ms + 10_000,
        }
        assert client.post("/v1/credentials/claude").json()["email"] == "b@example.com"

    def test_rate_limit_all_exhausted(self, client, clock):
        client.post("/v1/credentials/claude/rate-limit", json={"account": "a@example.com"})
        resp = client.post("/v1/credentials/claude/rate-limit", json={
            "account": "b@example.com", "retry_after_ms": 5_000,
        })
        data = resp.json()
        assert data["exhausted"] is True
        assert data["next_reset_at_ms"] == clock.ms + 5_000

    def test_rate_limit_unknown_account_404(self, client):
        resp = client.post("/v1/credentials/claude/rate-limit", json={
            "account": "nobody@example.com",
        })
        assert resp.status_code == 404
        assert resp.json()["account"] == "nobody@example.com"
        assert client.post("/v1/credentials/claude").json()["email"] == "a@example.com"

    def test_rate_limit_requires_account(self, client):
        assert client.post("/v1/credentials/claude/rate-limit", json={}).status_code == 400
        resp = client.post("/v1/credentials/claude/rate-limit", json={
            "account": "a@example.com", "retry_after_ms": "soon",
        })
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


class TestSignatures:
    def test_store_and_verify(self, client):
        resp = client.post("/v1/signatures", json={
            "session_id": "s1", "model": "claude-sonnet", "signature": "sig-1",
        })
        assert resp.json() == {"stored": True}
        ok = client.get("/v1/signatures/s1/claude-sonnet", params={"signature": "sig-1"})
        bad = client.get("/v1/signatures/s1/claude-sonnet", params={"signature": "other"})
        assert ok.json() == {"valid": True}
        assert bad.json() == {"valid": False}
        assert client.get("/v1/signatures/s1/claude-sonnet").json() == {"signature": "sig-1"}

    def test_thinking_lookup(self, client):
        client.post("/v1/signatures", json={
            "session_id": "s1", "model": "m", "signature": "sig",
            "thinking_text": "reasoning", "tool_ids": ["t1"],
        })
        assert client.get("/v1/signatures/s1/m").json() == {
            "signature": "sig", "thinking_text": "reasoning", "tool_ids": ["t1"],
        }

    def test_missing_signature_404(self, client):
        assert client.get("/v1/signatures/nope/m").status_code == 404

    def test_store_requires_fields(self, client):
        assert client.post("/v1/signatures", json={"session_id": "s1"}).status_code == 400
        assert client.post("/v1/signatures", content=b"not json").status_code == 400


# ---------------------------------------------------------------------------
# Messages & recovery
# ---------------------------------------------------------------------------


DANGLING = [
    {"role": "user", "content": "go"},
    {"role": "assistant", "content": [
        {"type": "tool_use", "id": "t1", "name": "bash", "input": {}},
    ]},
]


class TestRecoveryEndpoints:
    def test_repair(self, client):
        resp = client.post("/v1/messages/repair", json={"messages": DANGLING})
        assert resp.status_code == 200
        data = resp.json()
        assert data["report"]["placeholders"] == 1
        assert data["messages"][-1]["content"][0]["tool_use_id"] == "t1"

    def test_repair_requires_messages(self, client):
        assert client.post("/v1/messages/repair", json={"messages": "x"}).status_code == 400

    def test_session_error_and_complete(self, client):
        resp = client.post("/v1/sessions/s1/error", json={
            "error": "tool_use ids were found without tool_result blocks immediately after",
            "messages": DANGLING,
        })
        data = resp.json()
        assert data["kind"] == "tool_result_missing"
        assert data["transitions"] == ["detecting", "repairing", "resuming"]
        assert data["state"] == "resuming"
        assert data["resume_message"]["content"][0]["text"] == "continue"

        again = client.post("/v1/sessions/s1/error", json={"error": "anything"})
        assert again.json()["coalesced"] is True

        assert client.get("/v1/status").json()["sessions"] == {"s1": "resuming"}
        done = client.post("/v1/sessions/s1/complete")
        assert done.json() == {"session_id": "s1", "state": "healthy"}

    def test_session_error_requires_error(self, client):
        assert client.post("/v1/sessions/s1/error", json={"messages": []}).status_code == 400

    def test_status(self, client):
        data = client.get("/v1/status").json()
        assert data["metrics"]["type"] == "snapshot"
        assert len(data["accounts"]) == 2
