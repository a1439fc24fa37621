"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class ChatTurn(BaseModel):
    """One turn of a test-console conversation."""

    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1, max_length=4000)


class ConsoleRequest(BaseModel):
    """Conversation so far, ending with the operator's message."""

    messages: list[ChatTurn] = Field(..., min_length=1, max_length=50)
    session_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        min_length=1,
        max_length=100,
        description="Console session; knowledge-base rows are cached per session",
    )

    @field_validator("messages")
    @classmethod
    def _ends_with_user_turn(cls, messages: list[ChatTurn]) -> list[ChatTurn]:
        if messages[-1].role != "user":
            raise ValueError("the last message must come from the user")
        return messages


class ConsoleResponse(BaseModel):
    reply: str = Field(..., description="The agent's sanitized reply (may be empty)")
    session_id: str
    agent_id: str


class ReimportRequest(BaseModel):
    """Already-parsed rows replacing the whole content of a knowledge base."""

    rows: list[dict[str, Any]] = Field(default_factory=list)
    columns: list[str] | None = Field(
        None, description="Column order; defaults to the keys of the first row",
    )


class ReimportResponse(BaseModel):
    knowledge_base_id: str
    rows_imported: int
    sessions_invalidated: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "messagehub-engine"
