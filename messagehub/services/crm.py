"""CRM persistence operations shared by webhooks, the auto-responder and tools.

None of the read-then-write sequences here run in a transaction:

* :func:`resolve_conversation` (find-or-create) can create two open
  conversations when two first messages from a new contact race.
* :func:`save_or_update_contact` (phone dedup) can create two contacts for
  the same phone under the same race.
* :func:`next_order_number` derives the number from the current order count,
  so concurrent orders can share a number.

These are accepted eventual-consistency trade-offs of the store layout.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from messagehub.models import (
    AGENT_SENDER,
    DEFAULT_FUNNEL_STAGE,
    INCOMING,
    NEW_ORDER_STATUS,
    OUTGOING,
    Agent,
)
from messagehub.services.store import Document, DocumentStore

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "PED-"
LAST_MESSAGE_PREVIEW_CHARS = 200


# ── Paths ────────────────────────────────────────────────────────────


def conversations_path(org_id: str) -> str:
    return f"organizations/{org_id}/conversations"


def messages_path(org_id: str, conversation_id: str) -> str:
    return f"organizations/{org_id}/conversations/{conversation_id}/messages"


def contacts_path(org_id: str) -> str:
    return f"organizations/{org_id}/contacts"


def orders_path(org_id: str) -> str:
    return f"organizations/{org_id}/orders"


def agents_path(org_id: str) -> str:
    return f"organizations/{org_id}/aiAgents"


def knowledge_bases_path(org_id: str) -> str:
    return f"organizations/{org_id}/knowledgeBases"


def kb_rows_path(org_id: str, kb_id: str) -> str:
    return f"organizations/{org_id}/knowledgeBases/{kb_id}/rows"


def webhook_events_path(org_id: str) -> str:
    return f"organizations/{org_id}/webhookEvents"


def _now() -> datetime:
    return datetime.now(UTC)


# ── Organizations ────────────────────────────────────────────────────


async def find_org_by_integration_field(
    store: DocumentStore, field: str, value: str,
) -> Document | None:
    """Find the organization owning an integration with ``field == value``.

    Integrations live at ``organizations/{org}/integrations/{id}``; the org id
    is recovered from the matching document's path.
    """
    matches = await store.find_in_group("integrations", field, value, limit=1)
    if not matches:
        return None

    path, _ = matches[0]
    parts = path.strip("/").split("/")
    if len(parts) < 4 or parts[-4] != "organizations":
        logger.warning("Integration %s is not nested under an organization", path)
        return None

    return await store.get("organizations", parts[-3])


# ── Conversations ────────────────────────────────────────────────────


async def find_open_conversation(
    store: DocumentStore, org_id: str, platform: str, identifier: str,
) -> Document | None:
    """Open conversation for a contact, or ``None``.

    Queries a single equality field (the channel phone for WhatsApp, the
    channel contact id otherwise) and filters platform/status in memory so
    no composite index is required.  Both fields are written once at
    creation; contact linking never touches them.
    """
    field = "externalPhone" if platform == "whatsapp" else "externalContactId"
    candidates = await store.find(conversations_path(org_id), field, identifier)
    for conv in candidates:
        if conv.get("platform") == platform and conv.get("status") == "open":
            return conv
    return None


async def create_conversation(
    store: DocumentStore,
    org_id: str,
    platform: str,
    *,
    contact_id: str,
    contact_name: str | None = None,
    contact_phone: str | None = None,
) -> Document:
    now = _now()
    data: Document = {
        "externalContactId": contact_id,
        "externalPhone": contact_phone or "",
        "contactId": contact_id,
        "contactName": contact_name or contact_id,
        "contactPhone": contact_phone or "",
        "contactEmail": "",
        "platform": platform,
        "status": "open",
        "funnelStage": DEFAULT_FUNNEL_STAGE,
        "createdBy": "webhook",
        "createdAt": now,
        "lastMessage": "",
        "lastMessageAt": now,
        "lastMessageBy": "webhook",
        "unreadCount": 0,
        "aiEnabled": True,
    }
    conv_id = await store.add(conversations_path(org_id), data)
    return {"id": conv_id, **data}


async def resolve_conversation(
    store: DocumentStore,
    org_id: str,
    platform: str,
    *,
    contact_id: str,
    contact_name: str | None = None,
    contact_phone: str | None = None,
) -> tuple[Document, bool]:
    """Find-or-create the open conversation.  Returns ``(conversation, created)``."""
    identifier = contact_phone if platform == "whatsapp" and contact_phone else contact_id
    conv = await find_open_conversation(store, org_id, platform, identifier)
    if conv is not None:
        return conv, False

    conv = await create_conversation(
        store, org_id, platform,
        contact_id=contact_id,
        contact_name=contact_name,
        contact_phone=contact_phone,
    )
    logger.info("New %s conversation %s in org %s", platform, conv["id"], org_id)
    return conv, True


# ── Messages ─────────────────────────────────────────────────────────


async def save_incoming_message(
    store: DocumentStore,
    org_id: str,
    conversation_id: str,
    *,
    text: str,
    sender: str,
    sender_name: str,
    platform: str,
    external_message_id: str | None = None,
) -> tuple[str, Document]:
    """Append an incoming message and refresh the conversation summary."""
    message: Document = {
        "text": text,
        "sender": sender,
        "senderName": sender_name,
        "platform": platform,
        "direction": INCOMING,
        "timestamp": _now(),
        "status": "received",
        "generatedBy": "human",
        "externalMessageId": external_message_id,
    }
    msg_id = await store.add(messages_path(org_id, conversation_id), message)

    await store.update(
        conversations_path(org_id),
        conversation_id,
        {
            "lastMessage": text[:LAST_MESSAGE_PREVIEW_CHARS],
            "lastMessageAt": message["timestamp"],
            "lastMessageBy": sender,
        },
    )
    await store.increment(conversations_path(org_id), conversation_id, "unreadCount")
    return msg_id, message


async def load_conversation_history(
    store: DocumentStore, org_id: str, conversation_id: str, limit: int = 10,
) -> list[dict[str, str]]:
    """Last *limit* messages oldest-first as ``{"role", "content"}`` turns."""
    docs = await store.latest(messages_path(org_id, conversation_id), "timestamp", limit)
    history = []
    for doc in docs:
        outgoing = doc.get("direction") == OUTGOING or doc.get("sender") == AGENT_SENDER
        history.append({
            "role": "assistant" if outgoing else "user",
            "content": doc.get("text") or "",
        })
    return history


async def save_ai_reply(
    store: DocumentStore,
    org_id: str,
    conversation_id: str,
    *,
    text: str,
    agent: Agent,
    platform: str,
) -> str:
    """Persist an AI-generated outgoing message and update the summary."""
    now = _now()
    msg_id = await store.add(
        messages_path(org_id, conversation_id),
        {
            "text": text,
            "sender": AGENT_SENDER,
            "senderName": agent.name,
            "platform": platform,
            "direction": OUTGOING,
            "timestamp": now,
            "status": "sent",
            "generatedBy": "ai",
            "agentId": agent.id,
        },
    )
    await store.update(
        conversations_path(org_id),
        conversation_id,
        {
            "lastMessage": text[:LAST_MESSAGE_PREVIEW_CHARS],
            "lastMessageAt": now,
            "lastMessageBy": "ai",
        },
    )
    return msg_id


# ── Webhook idempotency ──────────────────────────────────────────────


async def claim_webhook_event(store: DocumentStore, org_id: str, event_key: str) -> bool:
    """Record that *event_key* is being ingested.  ``False`` if seen before."""
    return await store.create(
        webhook_events_path(org_id), event_key, {"receivedAt": _now()},
    )


async def release_webhook_event(store: DocumentStore, org_id: str, event_key: str) -> None:
    """Forget *event_key* so a provider redelivery is processed again."""
    await store.delete(webhook_events_path(org_id), event_key)


# ── Agents ───────────────────────────────────────────────────────────


async def find_agent_for_platform(
    store: DocumentStore, org_id: str, platform: str,
) -> Agent | None:
    """First active agent whose channel list includes *platform*."""
    for doc in await store.find(agents_path(org_id), "active", True):
        channels = doc.get("channels") or []
        if isinstance(channels, list) and platform in channels:
            return Agent.from_document(doc)
    return None


async def load_agent(store: DocumentStore, org_id: str, agent_id: str) -> Agent | None:
    doc = await store.get(agents_path(org_id), agent_id)
    return Agent.from_document(doc) if doc else None


# ── Contacts ─────────────────────────────────────────────────────────


async def save_or_update_contact(
    store: DocumentStore,
    org_id: str,
    contact: dict[str, Any],
    *,
    conversation_id: str | None = None,
) -> dict[str, Any]:
    """Create or update a contact, deduplicated by phone number.

    Returns ``{"action": "created"|"updated", "contact_id", "name"}``.
    """
    conv = None
    if conversation_id:
        conv = await store.get(conversations_path(org_id), conversation_id)

    data = {k: v for k, v in contact.items() if v not in (None, "")}
    phone = data.get("phone") or (conv or {}).get("contactPhone") or ""
    if phone:
        data["phone"] = phone

    existing: Document | None = None
    if phone:
        matches = await store.find(contacts_path(org_id), "phone", phone, limit=1)
        existing = matches[0] if matches else None
    elif conv and conv.get("crmContactId"):
        # No phone at all (e.g. Instagram): reuse the contact already linked
        existing = await store.get(contacts_path(org_id), conv["crmContactId"])

    if existing is not None:
        contact_id = existing["id"]
        await store.update(contacts_path(org_id), contact_id, {**data, "updatedAt": _now()})
        action = "updated"
        name = data.get("name") or existing.get("name", "")
    else:
        now = _now()
        contact_id = await store.add(
            contacts_path(org_id),
            {
                **data,
                "phone": phone,
                "funnelStage": DEFAULT_FUNNEL_STAGE,
                "createdAt": now,
                "updatedAt": now,
            },
        )
        action = "created"
        name = data.get("name", "")

    if conv is not None:
        link = {"crmContactId": contact_id, "contactName": name or conv.get("contactName", "")}
        if phone:
            link["contactPhone"] = phone
        await store.update(conversations_path(org_id), conversation_id, link)

    logger.info("Contact %s %s in org %s", contact_id, action, org_id)
    return {"action": action, "contact_id": contact_id, "name": name}


# ── Orders ───────────────────────────────────────────────────────────


async def next_order_number(store: DocumentStore, org_id: str) -> str:
    """``PED-`` + the next sequence number zero-padded to five digits."""
    count = await store.count(orders_path(org_id))
    return f"{ORDER_NUMBER_PREFIX}{count + 1:05d}"


async def create_order(
    store: DocumentStore,
    org_id: str,
    items: list[dict[str, Any]],
    *,
    notes: str = "",
    conversation_id: str | None = None,
) -> dict[str, Any]:
    """Persist an order.  Returns ``{"order_id", "order_number", "total"}``.

    Each item needs ``quantity`` and ``unitPrice``; line totals and the order
    total are computed here, never trusted from the caller.
    """
    lines = []
    for item in items:
        quantity = float(item.get("quantity") or 0)
        unit_price = float(item.get("unitPrice") or 0)
        lines.append({
            "product": item.get("product", ""),
            "sku": item.get("sku") or "",
            "quantity": quantity,
            "unitPrice": unit_price,
            "total": quantity * unit_price,
            "notes": item.get("notes") or "",
        })
    total = sum(line["total"] for line in lines)

    conv = {}
    if conversation_id:
        conv = await store.get(conversations_path(org_id), conversation_id) or {}

    order_number = await next_order_number(store, org_id)
    now = _now()
    order_id = await store.add(
        orders_path(org_id),
        {
            "orderNumber": order_number,
            "items": lines,
            "total": total,
            "notes": notes or "",
            "status": NEW_ORDER_STATUS,
            "conversationId": conversation_id,
            "contactId": conv.get("crmContactId"),
            "contactName": conv.get("contactName") or "Cliente",
            "platform": conv.get("platform") or "manual",
            "createdBy": "ai",
            "createdAt": now,
            "updatedAt": now,
        },
    )
    logger.info("Order %s (%s) created in org %s", order_number, order_id, org_id)
    return {"order_id": order_id, "order_number": order_number, "total": total}
