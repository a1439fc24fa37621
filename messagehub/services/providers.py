"""Chat-completion adapters for the supported AI providers.

Each adapter owns one wire format.  The orchestrator only talks to the
:class:`ProviderAdapter` interface:

1. :meth:`~ProviderAdapter.build_messages` turns the stored conversation
   history (``{"role", "content"}`` turns) into the provider's message list.
2. :meth:`~ProviderAdapter.complete` sends one round and returns a
   :class:`ProviderTurn` with the visible text and any requested tool calls.
3. :meth:`~ProviderAdapter.append_tool_results` appends the assistant turn
   and the tool outcomes in the shape the provider expects for the next
   round.

The adapter is chosen once per agent by :func:`get_adapter`:

==============  ====================  =======================================
provider        adapter               endpoint
==============  ====================  =======================================
``openai``      OpenAIAdapter         ``OPENAI_API_URL``
``custom``      OpenAIAdapter         the agent's own OpenAI-compatible URL
``anthropic``   AnthropicAdapter      ``ANTHROPIC_API_URL``
==============  ====================  =======================================
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from messagehub.config import (
    ANTHROPIC_API_URL,
    ANTHROPIC_VERSION,
    OPENAI_API_URL,
    PROVIDER_MAX_TOKENS,
)
from messagehub.models import Agent, AgentConfigurationError
from messagehub.services.metrics import metrics
from messagehub.tools.catalog import ToolSpec
from messagehub.tools.executor import ToolCall

logger = logging.getLogger(__name__)

OPENAI_TEMPERATURE = 0.7


class ProviderError(Exception):
    """Raised when a provider call fails (non-2xx, transport or bad body)."""

    def __init__(self, message: str, status_code: int | None = None, provider: str = ""):
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


@dataclass
class ProviderTurn:
    """One provider response, normalized."""

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    # The assistant message in wire format, echoed back before tool results
    assistant_message: dict[str, Any] = field(default_factory=dict)


def _error_message(response: httpx.Response) -> str:
    """The provider's ``error.message`` when present, else ``Error {status}``."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return f"Error {response.status_code}"


class ProviderAdapter(ABC):
    """One provider wire format bound to one agent."""

    def __init__(self, agent: Agent, http_client: httpx.AsyncClient) -> None:
        if not agent.api_key:
            raise AgentConfigurationError(f"Agent {agent.id} has no API key configured")
        self._agent = agent
        self._http = http_client

    @property
    def provider(self) -> str:
        return self._agent.provider

    @abstractmethod
    def build_messages(self, history: list[dict[str, str]]) -> list[dict[str, Any]]:
        """Provider message list for the stored conversation history."""

    @abstractmethod
    async def complete(
        self, system_prompt: str, messages: list[dict[str, Any]], tools: list[ToolSpec],
    ) -> ProviderTurn:
        """Send one round to the provider."""

    @abstractmethod
    def append_tool_results(
        self,
        messages: list[dict[str, Any]],
        turn: ProviderTurn,
        results: list[tuple[ToolCall, str]],
    ) -> None:
        """Append the assistant turn and its tool outcomes to *messages*."""

    async def _post(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> dict[str, Any]:
        t0 = time.perf_counter()
        try:
            response = await self._http.post(url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                self.provider, "chat_completion",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise ProviderError(
                f"Could not reach {self.provider}: {exc}", provider=self.provider,
            ) from exc

        elapsed = (time.perf_counter() - t0) * 1000
        if not response.is_success:
            message = _error_message(response)
            metrics.record_failure(
                self.provider, "chat_completion",
                error_type=f"HTTP{response.status_code}", latency_ms=elapsed,
            )
            logger.error(
                "%s returned %d for agent %s: %s",
                self.provider, response.status_code, self._agent.id, message,
            )
            raise ProviderError(message, response.status_code, self.provider)

        try:
            data = response.json()
        except ValueError as exc:
            metrics.record_failure(
                self.provider, "chat_completion", error_type="InvalidJSON", latency_ms=elapsed,
            )
            raise ProviderError(
                f"{self.provider} returned a non-JSON body",
                response.status_code, self.provider,
            ) from exc

        metrics.record_success(self.provider, "chat_completion", latency_ms=elapsed)
        logger.debug("%s responded in %.0fms", self.provider, elapsed)
        return data


# ── OpenAI-compatible ────────────────────────────────────────────────


class OpenAIAdapter(ProviderAdapter):
    """OpenAI chat completions, also used for OpenAI-compatible endpoints."""

    def __init__(self, agent: Agent, http_client: httpx.AsyncClient) -> None:
        super().__init__(agent, http_client)
        if agent.provider == "custom":
            if not agent.endpoint:
                raise AgentConfigurationError(f"Custom agent {agent.id} has no endpoint")
            self._url = agent.endpoint
        else:
            self._url = OPENAI_API_URL

    def build_messages(self, history: list[dict[str, str]]) -> list[dict[str, Any]]:
        return [{"role": turn["role"], "content": turn["content"]} for turn in history]

    async def complete(
        self, system_prompt: str, messages: list[dict[str, Any]], tools: list[ToolSpec],
    ) -> ProviderTurn:
        body: dict[str, Any] = {
            "model": self._agent.model,
            "messages": [{"role": "system", "content": system_prompt}] + messages,
            "temperature": OPENAI_TEMPERATURE,
            "max_tokens": PROVIDER_MAX_TOKENS,
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]
            body["tool_choice"] = "auto"

        headers = {"Authorization": f"Bearer {self._agent.api_key}"}
        data = await self._post(self._url, headers, body)

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise ProviderError("Response contained no choices", provider=self.provider)
        message = choices[0].get("message") or {}

        raw_calls = message.get("tool_calls") or []
        calls = []
        for index, raw in enumerate(raw_calls):
            function = raw.get("function") or {}
            arguments: dict[str, Any] = {}
            error = None
            try:
                decoded = json.loads(function.get("arguments") or "{}")
                if isinstance(decoded, dict):
                    arguments = decoded
                else:
                    error = "arguments must be a JSON object"
            except json.JSONDecodeError as exc:
                error = f"invalid JSON: {exc.msg}"
            calls.append(
                ToolCall(
                    id=raw.get("id") or f"call_{index}",
                    name=function.get("name", ""),
                    arguments=arguments,
                    error=error,
                )
            )

        return ProviderTurn(
            text=message.get("content") or "",
            tool_calls=calls,
            assistant_message={
                "role": "assistant",
                "content": message.get("content"),
                "tool_calls": raw_calls,
            },
        )

    def append_tool_results(
        self,
        messages: list[dict[str, Any]],
        turn: ProviderTurn,
        results: list[tuple[ToolCall, str]],
    ) -> None:
        messages.append(turn.assistant_message)
        for call, result in results:
            messages.append({"role": "tool", "tool_call_id": call.id, "content": result})


# ── Anthropic ────────────────────────────────────────────────────────


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API."""

    def build_messages(self, history: list[dict[str, str]]) -> list[dict[str, Any]]:
        """Alternating user/assistant turns starting with ``user``.

        Consecutive turns of the same role are merged and leading assistant
        turns are dropped; the Messages API rejects both.
        """
        messages: list[dict[str, Any]] = []
        for turn in history:
            content = turn.get("content") or ""
            if not content:
                continue
            if not messages and turn["role"] != "user":
                continue
            if messages and messages[-1]["role"] == turn["role"]:
                messages[-1]["content"] += "\n" + content
            else:
                messages.append({"role": turn["role"], "content": content})
        return messages

    async def complete(
        self, system_prompt: str, messages: list[dict[str, Any]], tools: list[ToolSpec],
    ) -> ProviderTurn:
        body: dict[str, Any] = {
            "model": self._agent.model,
            "max_tokens": PROVIDER_MAX_TOKENS,
            "system": system_prompt,
            "messages": messages,
        }
        if tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]

        headers = {
            "x-api-key": self._agent.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        data = await self._post(ANTHROPIC_API_URL, headers, body)

        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, list):
            raise ProviderError("Response contained no content blocks", provider=self.provider)

        text = next(
            (b.get("text") or "" for b in content if b.get("type") == "text"), "",
        )
        calls = [
            ToolCall(
                id=b.get("id", ""),
                name=b.get("name", ""),
                arguments=b.get("input") if isinstance(b.get("input"), dict) else {},
            )
            for b in content
            if b.get("type") == "tool_use"
        ]
        return ProviderTurn(
            text=text,
            tool_calls=calls,
            assistant_message={"role": "assistant", "content": content},
        )

    def append_tool_results(
        self,
        messages: list[dict[str, Any]],
        turn: ProviderTurn,
        results: list[tuple[ToolCall, str]],
    ) -> None:
        messages.append(turn.assistant_message)
        messages.append({
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": call.id, "content": result}
                for call, result in results
            ],
        })


_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "custom": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
}


def get_adapter(agent: Agent, http_client: httpx.AsyncClient) -> ProviderAdapter:
    """Adapter for the agent's configured provider."""
    adapter_cls = _ADAPTERS.get(agent.provider)
    if adapter_cls is None:
        raise AgentConfigurationError(f"Unsupported provider {agent.provider!r}")
    return adapter_cls(agent, http_client)
