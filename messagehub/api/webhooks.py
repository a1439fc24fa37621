"""Inbound webhook endpoints, one per channel.

GET answers Meta's subscription handshake.  POST stores the messages and
returns 200 right away, even for events that were ignored or dropped, so
the provider does not redeliver them; the AI reply is produced afterwards
as a background task.  A 500 is only returned when a message could not be
stored; its idempotency marker has been released by then, so the
redelivery is processed while already-stored messages are skipped.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from messagehub.config import META_VERIFY_TOKEN
from messagehub.responder import AutoResponder
from messagehub.webhooks.channels import CHANNELS, Channel
from messagehub.webhooks.ingestion import IngestionService

logger = logging.getLogger(__name__)

router = APIRouter()


def _make_verify(channel: Channel):
    async def verify_subscription(request: Request):
        mode = request.query_params.get("hub.mode")
        token = request.query_params.get("hub.verify_token")
        challenge = request.query_params.get("hub.challenge", "")

        if mode == "subscribe" and token == META_VERIFY_TOKEN:
            logger.info("%s webhook verified", channel.name)
            return PlainTextResponse(challenge)

        logger.warning("%s webhook verification failed: bad token", channel.name)
        raise HTTPException(status_code=403, detail="Verification failed")

    verify_subscription.__name__ = f"verify_{channel.name}"
    return verify_subscription


def _make_receive(channel: Channel):
    async def receive_event(request: Request, background_tasks: BackgroundTasks):
        try:
            body = await request.json()
        except ValueError:
            logger.warning("%s webhook with unparseable body ignored", channel.name)
            return {"status": "ignored"}
        if not isinstance(body, dict):
            return {"status": "ignored"}

        inbound = channel.parse(body)
        if not inbound:
            return {"status": "ignored"}

        ingestion: IngestionService = request.app.state.ingestion
        responder: AutoResponder = request.app.state.responder

        result = await ingestion.ingest_all(inbound)
        for stored in result.stored:
            background_tasks.add_task(
                responder.handle_message_created,
                stored.org_id,
                stored.conversation_id,
                stored.message_id,
                stored.message,
            )

        if result.failed:
            # Background replies for the stored messages still run
            return JSONResponse(
                status_code=500,
                content={"detail": "Some messages could not be stored"},
                background=background_tasks,
            )
        return {"status": "received", "stored": len(result.stored), "skipped": result.skipped}

    receive_event.__name__ = f"receive_{channel.name}"
    return receive_event


for _channel in CHANNELS.values():
    if _channel.verifiable:
        router.add_api_route(f"/{_channel.name}", _make_verify(_channel), methods=["GET"])
    router.add_api_route(f"/{_channel.name}", _make_receive(_channel), methods=["POST"])
