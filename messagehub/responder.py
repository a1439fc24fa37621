"""Auto-responder: replies to newly persisted incoming messages.

Triggered once per stored message (by the webhook ingestion path as a
FastAPI background task).  Each run is independent and keeps no state
between invocations; its knowledge-base cache lives only for the run.

The trigger never raises.  A missing configuration is "nothing to do", a
provider failure means "no reply this time", and nothing is retried here
so one failing AI call cannot start a retry storm.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from messagehub.agent import Orchestrator
from messagehub.config import KB_CACHE_MAX_BYTES
from messagehub.knowledge import KnowledgeRetriever
from messagehub.models import AGENT_SENDER, INCOMING, AgentConfigurationError
from messagehub.prompts import compose_system_prompt
from messagehub.services import crm
from messagehub.services.cache import LRUCache
from messagehub.services.providers import ProviderError
from messagehub.services.store import DocumentStore
from messagehub.tools.catalog import tools_for_agent
from messagehub.tools.executor import ToolExecutor

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10


class AutoResponder:
    """Generates and stores the AI reply for one incoming message."""

    def __init__(
        self,
        store: DocumentStore,
        http_client: httpx.AsyncClient,
        *,
        cache_max_bytes: int = KB_CACHE_MAX_BYTES,
    ) -> None:
        self._store = store
        self._http = http_client
        self._cache_max_bytes = cache_max_bytes

    async def handle_message_created(
        self,
        org_id: str,
        conversation_id: str,
        message_id: str,
        message: dict[str, Any],
    ) -> str | None:
        """Reply to *message* if an agent should.  Returns the stored reply text."""
        try:
            return await self._respond(org_id, conversation_id, message_id, message)
        except AgentConfigurationError as exc:
            logger.warning(
                "No AI reply for message %s in org %s: %s", message_id, org_id, exc,
            )
        except ProviderError as exc:
            logger.error(
                "AI provider %s failed for message %s in org %s: %s",
                exc.provider or "?", message_id, org_id, exc,
            )
        except Exception:
            logger.exception(
                "Auto-responder failed for message %s (conversation %s, org %s)",
                message_id, conversation_id, org_id,
            )
        return None

    async def _respond(
        self,
        org_id: str,
        conversation_id: str,
        message_id: str,
        message: dict[str, Any],
    ) -> str | None:
        if message.get("direction") != INCOMING:
            return None
        if message.get("sender") == AGENT_SENDER:
            return None

        conv = await self._store.get(crm.conversations_path(org_id), conversation_id)
        if conv is None:
            logger.warning("Conversation %s not found in org %s", conversation_id, org_id)
            return None
        if not conv.get("aiEnabled"):
            logger.debug("AI disabled for conversation %s", conversation_id)
            return None
        platform = conv.get("platform")
        if not platform:
            return None

        agent = await crm.find_agent_for_platform(self._store, org_id, platform)
        if agent is None:
            logger.info("No active agent for %s in org %s", platform, org_id)
            return None
        if not agent.api_key:
            raise AgentConfigurationError(f"Agent {agent.id} has no API key configured")

        history = await crm.load_conversation_history(
            self._store, org_id, conversation_id, HISTORY_LIMIT,
        )

        retriever = KnowledgeRetriever(self._store, LRUCache(max_bytes=self._cache_max_bytes))
        bases = await retriever.retrieve(org_id, agent.knowledge_bases, message.get("text") or "")
        system_prompt = compose_system_prompt(agent.system_prompt, bases)

        executor = ToolExecutor(
            self._store, org_id, retriever, agent.knowledge_bases, conversation_id,
        )
        reply = await Orchestrator(executor, self._http).run(
            agent, system_prompt, history, tools_for_agent(agent.knowledge_bases),
        )
        if not reply:
            logger.info("Agent %s produced no reply for message %s", agent.id, message_id)
            return None

        await crm.save_ai_reply(
            self._store, org_id, conversation_id,
            text=reply, agent=agent, platform=platform,
        )
        logger.info(
            "AI reply stored in conversation %s (org %s, agent %s)",
            conversation_id, org_id, agent.id,
        )
        return reply
