"""Tests for the auto-responder triggered by new incoming messages."""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import ORG_ID, openai_text, openai_tool_call

from messagehub.responder import AutoResponder
from messagehub.services import crm

CONVERSATIONS = f"organizations/{ORG_ID}/conversations"
AGENTS = f"organizations/{ORG_ID}/aiAgents"


def _incoming(store, text: str = "¿Tienen balatas para Sentra 2015?", platform: str = "whatsapp"):
    """Store an incoming message the way the webhook path does."""
    conv, _ = asyncio.run(crm.resolve_conversation(
        store, ORG_ID, platform,
        contact_id="5215551234", contact_name="Ana", contact_phone="5215551234",
    ))
    message_id, message = asyncio.run(crm.save_incoming_message(
        store, ORG_ID, conv["id"],
        text=text, sender="5215551234", sender_name="Ana", platform=platform,
    ))
    return conv["id"], message_id, message


def _respond(responder: AutoResponder, conv_id: str, message_id: str, message: dict):
    return asyncio.run(responder.handle_message_created(ORG_ID, conv_id, message_id, message))


def _messages(store, conv_id: str) -> list[dict]:
    return store.dump(f"{CONVERSATIONS}/{conv_id}/messages")


def _outgoing(store, conv_id: str) -> list[dict]:
    return [m for m in _messages(store, conv_id) if m["direction"] == "outgoing"]


@pytest.fixture
def responder(seeded_store, http_client):
    return AutoResponder(seeded_store, http_client)


class TestReply:
    def test_reply_is_saved(self, responder, seeded_store, http_client, provider_response):
        http_client.post.return_value = provider_response(
            openai_text("Sí, las balatas BAL-210 cuestan $450."),
        )
        conv_id, message_id, message = _incoming(seeded_store)

        reply = _respond(responder, conv_id, message_id, message)

        assert reply == "Sí, las balatas BAL-210 cuestan $450."
        [saved] = _outgoing(seeded_store, conv_id)
        assert saved["text"] == reply
        assert saved["sender"] == "agent"
        assert saved["senderName"] == "Sofía"
        assert saved["generatedBy"] == "ai"
        assert saved["status"] == "sent"

        conv = asyncio.run(seeded_store.get(CONVERSATIONS, conv_id))
        assert conv["lastMessage"] == reply
        assert conv["lastMessageBy"] == "ai"

    def test_history_and_relevant_rows_are_sent(self, responder, seeded_store, http_client, provider_response):
        http_client.post.return_value = provider_response(openai_text("Claro."))
        conv_id, _, _ = _incoming(seeded_store, "Hola")
        agent = asyncio.run(crm.load_agent(seeded_store, ORG_ID, "agent1"))
        asyncio.run(crm.save_ai_reply(
            seeded_store, ORG_ID, conv_id,
            text="¡Hola! ¿Qué pieza buscas?", agent=agent, platform="whatsapp",
        ))
        message_id, message = asyncio.run(crm.save_incoming_message(
            seeded_store, ORG_ID, conv_id,
            text="Balatas para Sentra", sender="5215551234", sender_name="Ana", platform="whatsapp",
        ))

        _respond(responder, conv_id, message_id, message)

        body = http_client.post.call_args.kwargs["json"]
        system, *turns = body["messages"]
        assert "BAL-210" in system["content"]
        assert [t["role"] for t in turns] == ["user", "assistant", "user"]
        assert turns[-1]["content"] == "Balatas para Sentra"
        assert [t["function"]["name"] for t in body["tools"]] == [
            "query_database", "save_contact", "create_order",
        ]

    def test_tool_round_links_contact_to_conversation(
        self, responder, seeded_store, http_client, provider_response,
    ):
        http_client.post.side_effect = [
            provider_response(openai_tool_call(
                "save_contact", json.dumps({"name": "Ana Pérez", "phone": "5215551234"}),
            )),
            provider_response(openai_text("Listo, Ana. Ya guardé tus datos.")),
        ]
        conv_id, message_id, message = _incoming(seeded_store, "Soy Ana Pérez")

        _respond(responder, conv_id, message_id, message)

        [contact] = seeded_store.dump(f"organizations/{ORG_ID}/contacts")
        conv = asyncio.run(seeded_store.get(CONVERSATIONS, conv_id))
        assert conv["crmContactId"] == contact["id"]
        assert _outgoing(seeded_store, conv_id)[0]["text"] == "Listo, Ana. Ya guardé tus datos."

    def test_exhausted_loop_saves_nothing(self, responder, seeded_store, http_client, provider_response):
        http_client.post.side_effect = [
            provider_response(openai_tool_call("query_database", json.dumps({"searchQuery": "x"})))
            for _ in range(5)
        ]
        conv_id, message_id, message = _incoming(seeded_store)

        assert _respond(responder, conv_id, message_id, message) is None
        assert _outgoing(seeded_store, conv_id) == []


class TestNoReply:
    def test_ai_disabled(self, responder, seeded_store, http_client):
        conv_id, message_id, message = _incoming(seeded_store)
        asyncio.run(seeded_store.update(CONVERSATIONS, conv_id, {"aiEnabled": False}))

        assert _respond(responder, conv_id, message_id, message) is None
        assert _outgoing(seeded_store, conv_id) == []
        http_client.post.assert_not_called()

    def test_ai_flag_missing(self, responder, seeded_store, http_client):
        seeded_store.load_fixture({CONVERSATIONS: {"legacy": {"platform": "whatsapp", "status": "open"}}})
        message = {"text": "Hola", "direction": "incoming", "sender": "5215551234"}

        assert _respond(responder, "legacy", "m1", message) is None
        http_client.post.assert_not_called()

    def test_outgoing_message(self, responder, seeded_store, http_client):
        conv_id, _, _ = _incoming(seeded_store)
        message = {"text": "Gracias", "direction": "outgoing", "sender": "operator-1"}

        assert _respond(responder, conv_id, "m1", message) is None
        http_client.post.assert_not_called()

    def test_message_from_agent(self, responder, seeded_store, http_client):
        conv_id, _, _ = _incoming(seeded_store)
        message = {"text": "Hola", "direction": "incoming", "sender": "agent"}

        assert _respond(responder, conv_id, "m1", message) is None
        http_client.post.assert_not_called()

    def test_conversation_missing(self, responder, http_client):
        message = {"text": "Hola", "direction": "incoming", "sender": "5215551234"}
        assert _respond(responder, "missing", "m1", message) is None
        http_client.post.assert_not_called()

    def test_no_agent_for_channel(self, responder, seeded_store, http_client):
        conv_id, message_id, message = _incoming(seeded_store, platform="messenger")

        assert _respond(responder, conv_id, message_id, message) is None
        http_client.post.assert_not_called()

    def test_inactive_agent(self, responder, seeded_store, http_client):
        asyncio.run(seeded_store.update(AGENTS, "agent1", {"active": False}))
        conv_id, message_id, message = _incoming(seeded_store)

        assert _respond(responder, conv_id, message_id, message) is None
        http_client.post.assert_not_called()

    def test_agent_without_api_key(self, responder, seeded_store, http_client):
        asyncio.run(seeded_store.update(AGENTS, "agent1", {"apiKey": ""}))
        conv_id, message_id, message = _incoming(seeded_store)

        assert _respond(responder, conv_id, message_id, message) is None
        http_client.post.assert_not_called()

    def test_provider_error_is_swallowed(self, responder, seeded_store, http_client, provider_response):
        http_client.post.return_value = provider_response(
            {"error": {"message": "Incorrect API key provided"}}, status_code=401,
        )
        conv_id, message_id, message = _incoming(seeded_store)

        assert _respond(responder, conv_id, message_id, message) is None
        assert _outgoing(seeded_store, conv_id) == []

    def test_unexpected_error_is_swallowed(self, responder, seeded_store, http_client):
        http_client.post.side_effect = RuntimeError("boom")
        conv_id, message_id, message = _incoming(seeded_store)

        assert _respond(responder, conv_id, message_id, message) is None
