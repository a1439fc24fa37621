"""Tests for the FastAPI endpoints."""

from __future__ import annotations

import asyncio

import pytest
from conftest import ORG_ID, openai_text
from fastapi.testclient import TestClient

from messagehub.server import app
from messagehub.services.cache import kb_cache_key

ROWS = f"organizations/{ORG_ID}/knowledgeBases/kb1/rows"


@pytest.fixture
def client(engine_state):
    """FastAPI test client with the engine services wired up."""
    return TestClient(app)


def _console_url(agent_id: str = "agent1") -> str:
    return f"/api/organizations/{ORG_ID}/agents/{agent_id}/test"


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "messagehub-engine"


class TestConsoleEndpoint:
    def test_returns_reply(self, client, http_client, provider_response):
        http_client.post.return_value = provider_response(openai_text("¡Hola! Soy Sofía."))
        response = client.post(
            _console_url(),
            json={"messages": [{"role": "user", "content": "Hola"}], "session_id": "console-1"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data == {"reply": "¡Hola! Soy Sofía.", "session_id": "console-1", "agent_id": "agent1"}

    def test_session_id_is_generated(self, client, http_client, provider_response):
        http_client.post.return_value = provider_response(openai_text("Hola"))
        response = client.post(_console_url(), json={"messages": [{"role": "user", "content": "Hola"}]})
        assert response.status_code == 200
        assert response.json()["session_id"]

    def test_passes_whole_conversation(self, client, http_client, provider_response):
        http_client.post.return_value = provider_response(openai_text("Son $450."))
        client.post(
            _console_url(),
            json={"messages": [
                {"role": "user", "content": "¿Tienen balatas para Sentra?"},
                {"role": "assistant", "content": "Sí, las BAL-210."},
                {"role": "user", "content": "¿Precio?"},
            ]},
        )
        turns = http_client.post.call_args.kwargs["json"]["messages"][1:]
        assert [t["content"] for t in turns] == ["¿Tienen balatas para Sentra?", "Sí, las BAL-210.", "¿Precio?"]

    def test_unknown_agent(self, client):
        response = client.post(_console_url("nope"), json={"messages": [{"role": "user", "content": "Hola"}]})
        assert response.status_code == 404

    def test_agent_without_api_key(self, client, seeded_store):
        asyncio.run(seeded_store.update(f"organizations/{ORG_ID}/aiAgents", "agent1", {"apiKey": ""}))
        response = client.post(_console_url(), json={"messages": [{"role": "user", "content": "Hola"}]})
        assert response.status_code == 422

    def test_provider_error(self, client, http_client, provider_response):
        http_client.post.return_value = provider_response(
            {"error": {"message": "Incorrect API key provided"}}, status_code=401,
        )
        response = client.post(_console_url(), json={"messages": [{"role": "user", "content": "Hola"}]})
        assert response.status_code == 502
        assert response.json()["detail"] == "openai: Incorrect API key provided"

    def test_unexpected_error(self, client, http_client):
        http_client.post.side_effect = RuntimeError("boom")
        response = client.post(_console_url(), json={"messages": [{"role": "user", "content": "Hola"}]})
        assert response.status_code == 500
        assert "boom" not in response.text

    def test_last_turn_must_be_user(self, client):
        response = client.post(
            _console_url(),
            json={"messages": [
                {"role": "user", "content": "Hola"},
                {"role": "assistant", "content": "¿Qué buscas?"},
            ]},
        )
        assert response.status_code == 422

    def test_empty_conversation_rejected(self, client):
        response = client.post(_console_url(), json={"messages": []})
        assert response.status_code == 422

    def test_invalid_role_rejected(self, client):
        response = client.post(_console_url(), json={"messages": [{"role": "system", "content": "x"}]})
        assert response.status_code == 422

    def test_services_not_ready(self, client, engine_state):
        engine_state.console = None
        response = client.post(_console_url(), json={"messages": [{"role": "user", "content": "Hola"}]})
        assert response.status_code == 503


class TestReimportEndpoint:
    URL = f"/api/organizations/{ORG_ID}/knowledge-bases/kb1/rows"

    def test_replaces_rows_and_invalidates_sessions(self, client, seeded_store, engine_state):
        key = kb_cache_key(ORG_ID, "kb1")
        engine_state.console_sessions.cache_for("s1").put(key, {"rows": []})
        engine_state.console_sessions.cache_for("s2")

        response = client.put(self.URL, json={"rows": [{"sku": "AMO-900", "producto": "Amortiguador"}]})

        assert response.status_code == 200
        assert response.json() == {
            "knowledge_base_id": "kb1",
            "rows_imported": 1,
            "sessions_invalidated": 1,
        }
        assert [r["sku"] for r in seeded_store.dump(ROWS)] == ["AMO-900"]
        assert not engine_state.console_sessions.cache_for("s1").has(key)

    def test_explicit_columns(self, client, seeded_store):
        client.put(self.URL, json={"rows": [{"a": 1, "b": 2}], "columns": ["b", "a"]})
        meta = asyncio.run(seeded_store.get(f"organizations/{ORG_ID}/knowledgeBases", "kb1"))
        assert meta["columns"] == ["b", "a"]

    def test_unknown_knowledge_base(self, client):
        response = client.put(f"/api/organizations/{ORG_ID}/knowledge-bases/nope/rows", json={"rows": []})
        assert response.status_code == 404


class TestMiddleware:
    def test_request_id_header_is_generated(self, client):
        response = client.get("/api/health")
        assert "X-Request-ID" in response.headers

    def test_request_id_header_is_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "my-request"})
        assert response.headers["X-Request-ID"] == "my-request"


class TestRootEndpoint:
    def test_root_lists_webhooks(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["health"] == "/api/health"
        assert "/webhooks/whatsapp" in data["webhooks"]
