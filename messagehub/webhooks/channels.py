"""Channel payload parsers.

Each parser turns one provider webhook body into zero or more
:class:`InboundMessage` objects and performs no I/O.  Events the engine does
not handle are dropped here: echoes of our own sends, non-text messages,
delivery/read status updates and Evolution group chats.

* whatsapp: ``object == "whatsapp_business_account"``, org by ``phoneNumberId``
* instagram: ``object == "instagram"``, org by ``pageId``
* messenger: ``object == "page"``, org by ``pageId``
* evolution: ``event == "messages.upsert"``, org by ``evolutionInstanceName``
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundMessage:
    """A customer text message normalized across channels."""

    platform: str
    lookup_field: str
    lookup_value: str
    contact_id: str
    contact_name: str
    text: str
    contact_phone: str | None = None
    external_message_id: str | None = None
    sent_at: str | None = None

    @property
    def event_key(self) -> str:
        """Idempotency key: the provider message id, else a content hash."""
        if self.external_message_id:
            safe_id = self.external_message_id.replace("/", "_")
            return f"{self.platform}-{safe_id}"
        digest = hashlib.sha256(
            "|".join([
                self.platform,
                self.lookup_value,
                self.contact_id,
                self.sent_at or "",
                self.text,
            ]).encode("utf-8")
        ).hexdigest()
        return f"{self.platform}-sha256-{digest}"


def _str(value: Any) -> str:
    return "" if value is None else str(value)


# ── WhatsApp Cloud API ───────────────────────────────────────────────


def parse_whatsapp_cloud(body: dict[str, Any]) -> list[InboundMessage]:
    if body.get("object") != "whatsapp_business_account":
        logger.debug("WhatsApp webhook with object=%r ignored", body.get("object"))
        return []

    messages: list[InboundMessage] = []
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            if change.get("field") != "messages":
                continue
            value = change.get("value") or {}
            phone_number_id = _str((value.get("metadata") or {}).get("phone_number_id"))
            if not phone_number_id:
                continue

            names = {
                c.get("wa_id"): (c.get("profile") or {}).get("name")
                for c in value.get("contacts") or []
            }
            for msg in value.get("messages") or []:
                if msg.get("type") != "text":
                    continue
                sender = _str(msg.get("from"))
                text = _str((msg.get("text") or {}).get("body"))
                if not sender or not text:
                    continue
                messages.append(
                    InboundMessage(
                        platform="whatsapp",
                        lookup_field="phoneNumberId",
                        lookup_value=phone_number_id,
                        contact_id=sender,
                        contact_name=names.get(sender) or sender,
                        contact_phone=sender,
                        text=text,
                        external_message_id=msg.get("id"),
                        sent_at=_str(msg.get("timestamp")) or None,
                    )
                )
    return messages


# ── Instagram / Messenger (Meta messaging platform) ──────────────────


def _parse_meta_messaging(body: dict[str, Any], *, object_type: str, platform: str) -> list[InboundMessage]:
    if body.get("object") != object_type:
        logger.debug("%s webhook with object=%r ignored", platform, body.get("object"))
        return []

    messages: list[InboundMessage] = []
    for entry in body.get("entry") or []:
        page_id = _str(entry.get("id"))
        if not page_id:
            continue
        for event in entry.get("messaging") or []:
            message = event.get("message") or {}
            if message.get("is_echo"):
                continue
            text = _str(message.get("text"))
            sender = _str((event.get("sender") or {}).get("id"))
            if not text or not sender:
                continue
            messages.append(
                InboundMessage(
                    platform=platform,
                    lookup_field="pageId",
                    lookup_value=page_id,
                    # The webhook carries no display name
                    contact_id=sender,
                    contact_name=sender,
                    text=text,
                    external_message_id=message.get("mid"),
                    sent_at=_str(event.get("timestamp")) or None,
                )
            )
    return messages


def parse_instagram(body: dict[str, Any]) -> list[InboundMessage]:
    return _parse_meta_messaging(body, object_type="instagram", platform="instagram")


def parse_messenger(body: dict[str, Any]) -> list[InboundMessage]:
    return _parse_meta_messaging(body, object_type="page", platform="messenger")


# ── WhatsApp via Evolution API ───────────────────────────────────────


def _evolution_text(message: dict[str, Any]) -> str:
    for candidate in (
        message.get("conversation"),
        (message.get("extendedTextMessage") or {}).get("text"),
        (message.get("imageMessage") or {}).get("caption"),
        (message.get("videoMessage") or {}).get("caption"),
    ):
        if candidate:
            return str(candidate)
    return ""


def parse_evolution(body: dict[str, Any]) -> list[InboundMessage]:
    if body.get("event") != "messages.upsert":
        return []

    instance = _str(body.get("instance"))
    data = body.get("data")
    if not instance or not isinstance(data, dict):
        return []

    key = data.get("key") or {}
    if key.get("fromMe") is True:
        return []

    remote_jid = _str(key.get("remoteJid"))
    if not remote_jid or remote_jid.endswith("@g.us"):
        return []

    text = _evolution_text(data.get("message") or {})
    if not text:
        return []

    phone = remote_jid.split("@")[0]
    return [
        InboundMessage(
            platform="whatsapp",
            lookup_field="evolutionInstanceName",
            lookup_value=instance,
            contact_id=phone,
            contact_name=data.get("pushName") or phone,
            contact_phone=phone,
            text=text,
            external_message_id=key.get("id"),
            sent_at=_str(data.get("messageTimestamp")) or None,
        )
    ]


@dataclass(frozen=True)
class Channel:
    name: str
    parse: Callable[[dict[str, Any]], list[InboundMessage]]
    # Meta channels answer the hub.challenge subscription handshake
    verifiable: bool = True


CHANNELS: dict[str, Channel] = {
    "whatsapp": Channel("whatsapp", parse_whatsapp_cloud),
    "instagram": Channel("instagram", parse_instagram),
    "messenger": Channel("messenger", parse_messenger),
    "evolution": Channel("evolution", parse_evolution, verifiable=False),
}
