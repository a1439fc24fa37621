"""FastAPI server for the MessageHub response engine.

Run with:
    uv run uvicorn messagehub.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from messagehub.api.routes import router
from messagehub.api.webhooks import router as webhooks_router
from messagehub.config import (
    CORS_ORIGINS,
    FIRESTORE_PROJECT,
    KB_CACHE_MAX_BYTES,
    PROVIDER_TIMEOUT_SECONDS,
    SERVER_HOST,
    SERVER_PORT,
    STORE_BACKEND,
)
from messagehub.console import AgentTestConsole, ConsoleSessionRegistry
from messagehub.responder import AutoResponder
from messagehub.services.store import DocumentStore, create_store
from messagehub.webhooks.ingestion import IngestionService

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def install_services(application: FastAPI, store: DocumentStore, http_client: httpx.AsyncClient) -> None:
    """Attach the engine services to ``app.state``."""
    sessions = ConsoleSessionRegistry(cache_max_bytes=KB_CACHE_MAX_BYTES)
    application.state.store = store
    application.state.http_client = http_client
    application.state.ingestion = IngestionService(store)
    application.state.responder = AutoResponder(store, http_client, cache_max_bytes=KB_CACHE_MAX_BYTES)
    application.state.console_sessions = sessions
    application.state.console = AgentTestConsole(store, http_client, sessions)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: open the store and one shared HTTP client for the providers."""
    store = create_store(STORE_BACKEND, FIRESTORE_PROJECT)
    logger.info("Using %s document store", type(store).__name__)
    async with httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS) as http_client:
        install_services(application, store, http_client)
        logger.info("Response engine ready.")
        yield
    logger.info("Response engine stopped.")


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="MessageHub Response Engine",
    description=(
        "Webhook ingestion and AI auto-replies for WhatsApp, Instagram "
        "and Messenger conversations."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the web console) ────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")
app.include_router(webhooks_router, prefix="/webhooks")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "MessageHub Response Engine",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "webhooks": ["/webhooks/whatsapp", "/webhooks/instagram", "/webhooks/messenger", "/webhooks/evolution"],
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting MessageHub engine on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "messagehub.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
