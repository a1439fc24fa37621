"""Typed views over the store documents the engine reads."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Platform = Literal["whatsapp", "instagram", "messenger"]
Provider = Literal["openai", "anthropic", "custom"]

INCOMING = "incoming"
OUTGOING = "outgoing"
AGENT_SENDER = "agent"
DEFAULT_FUNNEL_STAGE = "curioso"
NEW_ORDER_STATUS = "nuevo"


class Agent(BaseModel):
    """An AI persona configured for an organization (``aiAgents`` doc)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str = "Agente IA"
    provider: Provider = "openai"
    model: str = "gpt-4o-mini"
    api_key: str = Field("", alias="apiKey")
    endpoint: str | None = None
    system_prompt: str = Field("", alias="systemPrompt")
    knowledge_bases: list[str] = Field(default_factory=list, alias="knowledgeBases")
    channels: list[str] = Field(default_factory=list)
    active: bool = False

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> Agent:
        # Agent docs written by the UI may carry nulls for optional strings
        cleaned = {k: v for k, v in doc.items() if v is not None}
        return cls.model_validate(cleaned)


class AgentConfigurationError(Exception):
    """The agent cannot run: missing, inactive for the channel, or incomplete."""
