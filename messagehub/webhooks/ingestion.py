"""Persists inbound channel messages.

For each :class:`InboundMessage`:

1. resolve the owning organization from the integration lookup field
   (unknown → dropped with a warning; multi-tenant fan-out makes these
   expected),
2. claim the idempotency marker ``webhookEvents/{event_key}`` (already
   claimed → duplicate delivery, skipped),
3. find-or-create the open conversation and append the message.

If step 3 fails the marker is released so the provider's redelivery is
processed again, and the failure is reported in :class:`IngestionResult`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from messagehub.services import crm
from messagehub.services.store import DocumentStore
from messagehub.webhooks.channels import InboundMessage

logger = logging.getLogger(__name__)


@dataclass
class StoredMessage:
    org_id: str
    conversation_id: str
    message_id: str
    message: dict[str, Any]
    created_conversation: bool = False


@dataclass
class IngestionResult:
    stored: list[StoredMessage] = field(default_factory=list)
    skipped: int = 0
    failed: int = 0


class IngestionService:
    """Stores inbound messages for whichever organization owns the channel."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def ingest(self, inbound: InboundMessage) -> StoredMessage | None:
        """Store one message.  ``None`` when dropped or already ingested."""
        org = await crm.find_org_by_integration_field(
            self._store, inbound.lookup_field, inbound.lookup_value,
        )
        if org is None:
            logger.warning(
                "No organization for %s %s=%r; event dropped",
                inbound.platform, inbound.lookup_field, inbound.lookup_value,
            )
            return None
        org_id = org["id"]

        event_key = inbound.event_key
        if not await crm.claim_webhook_event(self._store, org_id, event_key):
            logger.info("Duplicate %s delivery %s in org %s skipped", inbound.platform, event_key, org_id)
            return None

        try:
            conv, created = await crm.resolve_conversation(
                self._store, org_id, inbound.platform,
                contact_id=inbound.contact_id,
                contact_name=inbound.contact_name,
                contact_phone=inbound.contact_phone,
            )
            message_id, message = await crm.save_incoming_message(
                self._store, org_id, conv["id"],
                text=inbound.text,
                sender=inbound.contact_id,
                sender_name=inbound.contact_name,
                platform=inbound.platform,
                external_message_id=inbound.external_message_id,
            )
        except Exception:
            try:
                await crm.release_webhook_event(self._store, org_id, event_key)
            except Exception:
                logger.exception("Could not release webhook event %s in org %s", event_key, org_id)
            raise

        logger.info(
            "%s message stored: org=%s conv=%s from=%s",
            inbound.platform, org_id, conv["id"], inbound.contact_id,
        )
        return StoredMessage(
            org_id=org_id,
            conversation_id=conv["id"],
            message_id=message_id,
            message=message,
            created_conversation=created,
        )

    async def ingest_all(self, messages: list[InboundMessage]) -> IngestionResult:
        """Store *messages* in arrival order; one failure does not stop the rest."""
        result = IngestionResult()
        for inbound in messages:
            try:
                stored = await self.ingest(inbound)
            except Exception:
                logger.exception(
                    "Failed to store %s message from %s", inbound.platform, inbound.contact_id,
                )
                result.failed += 1
                continue
            if stored is None:
                result.skipped += 1
            else:
                result.stored.append(stored)
        return result
