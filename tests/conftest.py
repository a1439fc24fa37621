"""Shared test fixtures for the MessageHub test suite."""

from __future__ import annotations

import os
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py reads the test values.
    """
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.setdefault("STORE_BACKEND", "memory")
    os.environ.setdefault("META_VERIFY_TOKEN", "test-verify-token")


ORG_ID = "org1"

PRODUCT_ROWS = {
    "row000000": {
        "sku": "FIL-001", "producto": "Filtro de aceite", "marca": "Nissan",
        "modelo": "Tsuru", "años": "2005-2017", "precio": 120,
    },
    "row000001": {
        "sku": "BAL-210", "producto": "Balatas delanteras", "marca": "Nissan",
        "modelo": "Sentra", "años": "2013-2019", "precio": 450,
    },
    "row000002": {
        "sku": "BUJ-330", "producto": "Bujía iridium", "marca": "Toyota",
        "modelo": "Corolla", "años": "2009-2014", "precio": 95,
    },
}


def make_fixture() -> dict:
    """One organization with integrations, an agent and a product base."""
    return {
        "organizations": {ORG_ID: {"name": "Refaccionaria Demo"}},
        f"organizations/{ORG_ID}/integrations": {
            "wa": {"type": "whatsapp", "phoneNumberId": "PN-100"},
            "ig": {"type": "instagram", "pageId": "PAGE-200"},
            "evo": {"type": "evolution", "evolutionInstanceName": "demo-instance"},
        },
        f"organizations/{ORG_ID}/aiAgents": {
            "agent1": {
                "name": "Sofía",
                "provider": "openai",
                "model": "gpt-4o-mini",
                "apiKey": "sk-test",
                "systemPrompt": "Eres Sofía, asesora de ventas de refacciones.",
                "knowledgeBases": ["kb1"],
                "channels": ["whatsapp", "instagram"],
                "active": True,
            },
        },
        f"organizations/{ORG_ID}/knowledgeBases": {
            "kb1": {
                "name": "Productos",
                "description": "Catálogo de refacciones",
                "columns": ["sku", "producto", "marca", "modelo", "años", "precio"],
                "rowCount": len(PRODUCT_ROWS),
            },
        },
        f"organizations/{ORG_ID}/knowledgeBases/kb1/rows": dict(PRODUCT_ROWS),
    }


@pytest.fixture
def store():
    """Empty in-memory document store."""
    from messagehub.services.store import InMemoryStore

    return InMemoryStore()


@pytest.fixture
def seeded_store(store):
    """In-memory store loaded with :func:`make_fixture`."""
    store.load_fixture(make_fixture())
    return store


@pytest.fixture
def provider_response():
    """Factory fixture for real ``httpx.Response`` objects."""

    def _make(data, status_code: int = 200):
        return httpx.Response(
            status_code,
            json=data,
            request=httpx.Request("POST", "https://provider.test/v1"),
        )

    return _make


@pytest.fixture
def http_client():
    """Mock ``httpx.AsyncClient``; script ``http_client.post`` per test."""
    client = MagicMock(spec=httpx.AsyncClient)
    client.post = AsyncMock()
    return client


def openai_text(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def openai_tool_call(name: str, arguments: str, call_id: str = "call_1") -> dict:
    return {
        "choices": [{
            "message": {
                "role": "assistant",
                "content": None,
                "tool_calls": [{
                    "id": call_id,
                    "type": "function",
                    "function": {"name": name, "arguments": arguments},
                }],
            },
        }],
    }


def anthropic_text(content: str) -> dict:
    return {"content": [{"type": "text", "text": content}], "stop_reason": "end_turn"}


def anthropic_tool_use(name: str, arguments: dict, call_id: str = "toolu_1") -> dict:
    return {
        "content": [{"type": "tool_use", "id": call_id, "name": name, "input": arguments}],
        "stop_reason": "tool_use",
    }


@pytest.fixture
def engine_state(seeded_store, http_client):
    """Engine services on ``app.state``, wired the same way the lifespan does."""
    from messagehub.server import app, install_services

    install_services(app, seeded_store, http_client)
    yield app.state
    for name in ("store", "http_client", "ingestion", "responder", "console_sessions", "console"):
        setattr(app.state, name, None)


def whatsapp_payload(
    text: str = "Hola, ¿tienen filtro para Tsuru 2010?",
    *,
    message_id: str | None = "wamid.HBgL001",
    phone_number_id: str = "PN-100",
    sender: str = "5215551234",
    name: str = "Ana",
) -> dict:
    message = {"from": sender, "timestamp": "1760000000", "type": "text", "text": {"body": text}}
    if message_id:
        message["id"] = message_id
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA-1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "5215500000", "phone_number_id": phone_number_id},
                    "contacts": [{"wa_id": sender, "profile": {"name": name}}],
                    "messages": [message],
                },
            }],
        }],
    }


def instagram_payload(
    text: str = "Hola", *, mid: str = "m_ig_001", page_id: str = "PAGE-200", echo: bool = False,
) -> dict:
    message = {"mid": mid, "text": text}
    if echo:
        message["is_echo"] = True
    return {
        "object": "instagram",
        "entry": [{
            "id": page_id,
            "time": 1760000000,
            "messaging": [{
                "sender": {"id": "IGSID-77"},
                "recipient": {"id": page_id},
                "timestamp": 1760000000,
                "message": message,
            }],
        }],
    }


def evolution_payload(
    message: dict | None = None,
    *,
    remote_jid: str = "5215557777@s.whatsapp.net",
    from_me: bool = False,
    instance: str = "demo-instance",
) -> dict:
    return {
        "event": "messages.upsert",
        "instance": instance,
        "data": {
            "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": "3EB0ABC"},
            "pushName": "Carlos",
            "message": message if message is not None else {"conversation": "¿Tienen bujías?"},
            "messageTimestamp": 1760000000,
        },
    }
