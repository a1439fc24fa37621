"""FastAPI route definitions for the operator-facing API."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from messagehub.api.schemas import (
    ConsoleRequest,
    ConsoleResponse,
    HealthResponse,
    ReimportRequest,
    ReimportResponse,
)
from messagehub.console import AgentNotFoundError, AgentTestConsole, ConsoleSessionRegistry
from messagehub.knowledge import replace_rows
from messagehub.models import AgentConfigurationError
from messagehub.services.crm import knowledge_bases_path
from messagehub.services.providers import ProviderError
from messagehub.services.store import DocumentStore

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_state(request: Request, name: str):
    """Retrieve a lifespan-managed resource from app state."""
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return value


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post(
    "/organizations/{org_id}/agents/{agent_id}/test",
    response_model=ConsoleResponse,
)
async def test_agent(org_id: str, agent_id: str, body: ConsoleRequest, http_request: Request):
    """Chat with an agent from the configuration UI.

    Runs the same retrieval, tools and tool loop as the auto-responder.
    ``save_contact`` and ``create_order`` really write to the organization.
    """
    console: AgentTestConsole = _get_state(http_request, "console")
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        reply = await console.run(
            org_id,
            agent_id,
            [turn.model_dump() for turn in body.messages],
            body.session_id,
        )
    except AgentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except AgentConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except ProviderError as e:
        logger.warning("[%s] Provider error in test console: %s", request_id, e)
        raise HTTPException(status_code=502, detail=f"{e.provider or 'provider'}: {e}") from e
    except Exception as e:
        logger.exception("[%s] Error running test console", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ConsoleResponse(reply=reply, session_id=body.session_id, agent_id=agent_id)


@router.put(
    "/organizations/{org_id}/knowledge-bases/{kb_id}/rows",
    response_model=ReimportResponse,
)
async def reimport_rows(org_id: str, kb_id: str, body: ReimportRequest, http_request: Request):
    """Replace every row of a knowledge base and drop cached copies of it."""
    store: DocumentStore = _get_state(http_request, "store")
    sessions: ConsoleSessionRegistry = _get_state(http_request, "console_sessions")

    if await store.get(knowledge_bases_path(org_id), kb_id) is None:
        raise HTTPException(status_code=404, detail=f"Knowledge base {kb_id} not found")

    count = await replace_rows(store, org_id, kb_id, body.rows, columns=body.columns)
    invalidated = sessions.invalidate(org_id, kb_id)
    return ReimportResponse(
        knowledge_base_id=kb_id,
        rows_imported=count,
        sessions_invalidated=invalidated,
    )
