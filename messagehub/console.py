"""Agent test console.

Lets an operator chat with an agent before enabling it on a channel.  The
console runs the same retrieval, prompt composition, tool catalog and
orchestrator as the auto-responder, with three differences:

* knowledge-base snapshots come from a per-session cache that is filled on
  demand and dropped when a base is re-imported;
* ``save_contact`` / ``create_order`` write straight to the organization
  without a conversation in scope;
* failures are raised to the caller instead of being swallowed.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

import httpx

from messagehub.agent import Orchestrator
from messagehub.config import KB_CACHE_MAX_BYTES
from messagehub.knowledge import KnowledgeRetriever
from messagehub.models import AgentConfigurationError
from messagehub.prompts import compose_system_prompt
from messagehub.services import crm
from messagehub.services.cache import LRUCache, kb_cache_key
from messagehub.services.store import DocumentStore
from messagehub.tools.catalog import tools_for_agent
from messagehub.tools.executor import ToolExecutor

logger = logging.getLogger(__name__)

DEFAULT_MAX_SESSIONS = 100


class AgentNotFoundError(LookupError):
    """The requested agent does not exist in the organization."""


class ConsoleSessionRegistry:
    """Knowledge-base caches keyed by console session.

    Holds at most ``max_sessions`` sessions; the least recently used one is
    dropped first.
    """

    def __init__(
        self,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        cache_max_bytes: int = KB_CACHE_MAX_BYTES,
    ) -> None:
        self._max_sessions = max_sessions
        self._cache_max_bytes = cache_max_bytes
        self._sessions: OrderedDict[str, LRUCache] = OrderedDict()
        self._lock = threading.Lock()

    def cache_for(self, session_id: str) -> LRUCache:
        """The session's cache, created on first use."""
        with self._lock:
            cache = self._sessions.get(session_id)
            if cache is None:
                cache = LRUCache(max_bytes=self._cache_max_bytes)
                self._sessions[session_id] = cache
                while len(self._sessions) > self._max_sessions:
                    evicted, _ = self._sessions.popitem(last=False)
                    logger.debug("Console session %s evicted", evicted)
            else:
                self._sessions.move_to_end(session_id)
            return cache

    def end(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def invalidate(self, org_id: str, kb_id: str) -> int:
        """Drop one base from every session.  Returns how many sessions held it."""
        key = kb_cache_key(org_id, kb_id)
        with self._lock:
            caches = list(self._sessions.values())
        dropped = sum(1 for cache in caches if cache.invalidate(key))
        if dropped:
            logger.info(
                "Knowledge base %s of org %s invalidated in %d console session(s)",
                kb_id, org_id, dropped,
            )
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class AgentTestConsole:
    """Runs one console exchange against an agent."""

    def __init__(
        self,
        store: DocumentStore,
        http_client: httpx.AsyncClient,
        sessions: ConsoleSessionRegistry,
    ) -> None:
        self._store = store
        self._http = http_client
        self._sessions = sessions

    async def run(
        self,
        org_id: str,
        agent_id: str,
        messages: list[dict[str, str]],
        session_id: str,
    ) -> str:
        """Reply to the last user turn of *messages*.

        Inactive agents can be tested.  Raises :class:`AgentNotFoundError`,
        :class:`~messagehub.models.AgentConfigurationError` and
        :class:`~messagehub.services.providers.ProviderError`.
        """
        agent = await crm.load_agent(self._store, org_id, agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found in organization {org_id}")
        if not agent.api_key:
            raise AgentConfigurationError(f"Agent {agent.id} has no API key configured")

        query = next(
            (m["content"] for m in reversed(messages) if m.get("role") == "user"), "",
        )
        retriever = KnowledgeRetriever(self._store, self._sessions.cache_for(session_id))
        bases = await retriever.retrieve(org_id, agent.knowledge_bases, query)
        system_prompt = compose_system_prompt(agent.system_prompt, bases)

        executor = ToolExecutor(self._store, org_id, retriever, agent.knowledge_bases)
        reply = await Orchestrator(executor, self._http).run(
            agent, system_prompt, messages, tools_for_agent(agent.knowledge_bases),
        )
        logger.info(
            "Console session %s: agent %s replied (%d chars)", session_id, agent.id, len(reply),
        )
        return reply
