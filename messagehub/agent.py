"""Bounded tool-calling loop shared by the auto-responder and the test console.

Architecture:
  One run is an explicit state machine over provider rounds::

      AWAITING_RESPONSE ──(tool calls)──▶ TOOL_CALLS_PENDING
              ▲                                   │
              └──────(results appended)───────────┘
      AWAITING_RESPONSE ──(no tool calls)──▶ FINAL_TEXT
      any state after MAX_ROUNDS requests ──▶ EXHAUSTED

  * A round is one request to the provider through its adapter.
  * Tool calls of one round are independent and run concurrently; round
    N+1 is only sent once every result of round N has been appended.
  * Tool calls returned by the last allowed round are not executed: no
    further round could report their outcome.
  * ``EXHAUSTED`` yields ``""``, which callers treat as "no reply".

  The final text goes through :func:`sanitize_response` so tool markup or
  process narration the model leaks never reaches the customer.
"""

from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import Any

import httpx

from messagehub.models import Agent
from messagehub.services.providers import get_adapter
from messagehub.tools.catalog import ARGUMENT_MODELS, ToolSpec
from messagehub.tools.executor import ToolExecutor

logger = logging.getLogger(__name__)

MAX_ROUNDS = 5


class LoopState(Enum):
    AWAITING_RESPONSE = "awaiting_response"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    FINAL_TEXT = "final_text"
    EXHAUSTED = "exhausted"


# ── Response sanitizer ───────────────────────────────────────────────

_TOOL_NAMES = "|".join(re.escape(name) for name in ARGUMENT_MODELS)

_TOOL_TAG_BLOCK_RE = re.compile(
    r"<(function_calls|tool_calls?|tool_use|tool_result|invoke)\b[^>]*>.*?</\1>",
    re.IGNORECASE | re.DOTALL,
)
_TOOL_TAG_RE = re.compile(
    r"</?(?:function_calls|tool_calls?|tool_use|tool_result|invoke|parameter|function)\b[^>]*>",
    re.IGNORECASE,
)
_FENCED_BLOCK_RE = re.compile(r"```[\w-]*\s*\n?(.*?)```", re.DOTALL)
_TOOL_FENCE_HINT_RE = re.compile(
    rf"\b(?:{_TOOL_NAMES}|tool_call|tool_use|function_call)\b|\"(?:name|arguments|parameters)\"\s*:",
    re.IGNORECASE,
)

_NARRATION_PATTERNS = [
    # Spanish
    r"(?:d[ée]jame|perm[íi]teme|voy a|d[ée]me un momento para)\s+"
    r"(?:revisar|consultar|buscar|verificar|checar|confirmar)\b[^.!?\n]*[.!?…]*",
    r"(?:estoy|sigo)\s+(?:buscando|revisando|consultando|verificando)\b[^.!?\n]*[.!?…]*",
    r"(?:buscando|consultando|revisando|verificando)\s+(?:en\s+)?(?:la|el|los|las|nuestra|nuestro)\b[^.!?\n]*[.!?…]*",
    r"(?:un momento|un momentito|dame un momento)(?:,?\s*por favor)?[.!…]*",
    # English
    r"(?:let me|i'?ll|i will|i'?m going to)\s+"
    r"(?:check|look|search|verify|query)\b[^.!?\n]*[.!?…]*",
    r"(?:searching|checking|looking up|querying)\s+(?:the|our|for)\b[^.!?\n]*[.!?…]*",
    r"(?:one moment|just a moment)(?:,?\s*please)?[.!…]*",
]
_NARRATION_RE = re.compile(
    r"(?:^|(?<=\n)|(?<=[.!?]\s))[ \t]*(?:" + "|".join(_NARRATION_PATTERNS) + r")[ \t]*",
    re.IGNORECASE,
)
_EXTRA_NEWLINES_RE = re.compile(r"\n{3,}")


def _strip_tool_fence(match: re.Match) -> str:
    return "" if _TOOL_FENCE_HINT_RE.search(match.group(1)) else match.group(0)


def sanitize_response(text: str) -> str:
    """Remove leaked tool markup and process narration from a reply."""
    if not text:
        return ""
    cleaned = _TOOL_TAG_BLOCK_RE.sub("", text)
    cleaned = _TOOL_TAG_RE.sub("", cleaned)
    cleaned = _FENCED_BLOCK_RE.sub(_strip_tool_fence, cleaned)
    cleaned = _NARRATION_RE.sub("", cleaned)
    cleaned = _EXTRA_NEWLINES_RE.sub("\n\n", cleaned)
    return cleaned.strip()


# ── Orchestrator ─────────────────────────────────────────────────────


class Orchestrator:
    """Runs the provider/tool loop for one reply."""

    def __init__(
        self,
        executor: ToolExecutor,
        http_client: httpx.AsyncClient,
        max_rounds: int = MAX_ROUNDS,
    ) -> None:
        self._executor = executor
        self._http = http_client
        self._max_rounds = max_rounds

    async def run(
        self,
        agent: Agent,
        system_prompt: str,
        history: list[dict[str, str]],
        tools: list[ToolSpec],
    ) -> str:
        """Return the sanitized final text, or ``""`` when the loop is exhausted.

        Raises :class:`~messagehub.services.providers.ProviderError` when a
        round fails and :class:`~messagehub.models.AgentConfigurationError`
        when the agent cannot be adapted to a provider.
        """
        adapter = get_adapter(agent, self._http)
        messages: list[dict[str, Any]] = adapter.build_messages(history)

        state = LoopState.AWAITING_RESPONSE
        rounds = 0
        turn = None

        while True:
            if state is LoopState.AWAITING_RESPONSE:
                if rounds >= self._max_rounds:
                    state = LoopState.EXHAUSTED
                    continue
                rounds += 1
                turn = await adapter.complete(system_prompt, messages, tools)
                if turn.tool_calls:
                    state = LoopState.TOOL_CALLS_PENDING
                else:
                    state = LoopState.FINAL_TEXT

            elif state is LoopState.TOOL_CALLS_PENDING:
                if rounds >= self._max_rounds:
                    state = LoopState.EXHAUSTED
                    continue
                logger.debug(
                    "Round %d: executing %s",
                    rounds, ", ".join(c.name for c in turn.tool_calls),
                )
                results = await asyncio.gather(
                    *(self._executor.execute(call) for call in turn.tool_calls)
                )
                adapter.append_tool_results(
                    messages, turn, list(zip(turn.tool_calls, results)),
                )
                state = LoopState.AWAITING_RESPONSE

            elif state is LoopState.FINAL_TEXT:
                logger.debug("Agent %s answered after %d round(s)", agent.id, rounds)
                return sanitize_response(turn.text)

            else:
                logger.warning(
                    "Agent %s still requesting tools after %d rounds; no reply",
                    agent.id, rounds,
                )
                return ""
