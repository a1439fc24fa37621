"""CLI test console for MessageHub agents.

A terminal version of the agent test console, for trying an agent's
prompt, knowledge bases and tools during development.  For production, use
the FastAPI server (messagehub/server.py).

Usage:
    uv run python -m messagehub.main --org ORG --agent AGENT
    uv run python -m messagehub.main --org ORG --agent AGENT --seed fixture.json
    uv run python -m messagehub.main --org ORG --agent AGENT --debug

``--seed`` loads ``{collection_path: {doc_id: data}}`` into an in-memory
store instead of using ``STORE_BACKEND``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid

import httpx
from dotenv import load_dotenv

from messagehub.config import FIRESTORE_PROJECT, PROVIDER_TIMEOUT_SECONDS, STORE_BACKEND
from messagehub.console import AgentNotFoundError, AgentTestConsole, ConsoleSessionRegistry
from messagehub.models import AgentConfigurationError
from messagehub.services.providers import ProviderError
from messagehub.services.store import DocumentStore, InMemoryStore, create_store

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("messagehub").setLevel(logging.DEBUG if debug else logging.INFO)


def _build_store(seed_path: str | None) -> DocumentStore:
    if seed_path:
        with open(seed_path, encoding="utf-8") as fh:
            fixture = json.load(fh)
        store = InMemoryStore()
        store.load_fixture(fixture)
        return store
    return create_store(STORE_BACKEND, FIRESTORE_PROJECT)


async def _chat_loop(args: argparse.Namespace) -> None:
    store = _build_store(args.seed)
    sessions = ConsoleSessionRegistry()
    session_id = str(uuid.uuid4())
    history: list[dict[str, str]] = []
    logger.info("Started console session: %s", session_id)

    async with httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS) as http_client:
        console = AgentTestConsole(store, http_client, sessions)

        while True:
            try:
                user_input = (await asyncio.to_thread(input, "Tú: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\n¡Hasta luego!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "q", "salir"):
                print("\n¡Hasta luego!")
                break

            if user_input.lower() in ("new", "nuevo"):
                sessions.end(session_id)
                session_id = str(uuid.uuid4())
                history = []
                print(f"\n>> Nueva sesión: {session_id[:8]}...\n")
                continue

            history.append({"role": "user", "content": user_input})
            try:
                reply = await console.run(args.org, args.agent, history, session_id)
            except (AgentNotFoundError, AgentConfigurationError) as e:
                print(f"\n[config] {e}\n")
                break
            except ProviderError as e:
                history.pop()
                print(f"\n[{e.provider or 'provider'}] {e}\n")
                continue

            if not reply:
                print("\nAgente: (sin respuesta)\n")
                history.pop()
                continue
            history.append({"role": "assistant", "content": reply})
            print(f"\nAgente: {reply}\n")


def main():
    """Run the interactive CLI console."""
    parser = argparse.ArgumentParser(description="MessageHub agent test console")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("--agent", required=True, help="Agent id (aiAgents document)")
    parser.add_argument("--seed", help="JSON fixture to load into an in-memory store")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  MessageHub - Consola de prueba de agentes")
    print("=" * 60)
    print("  Escribe tu mensaje y pulsa Enter.")
    print("  Comandos: 'salir' para terminar, 'nuevo' para otra sesión.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_chat_loop(args))
    except KeyboardInterrupt:
        print("\n\n¡Hasta luego!")


if __name__ == "__main__":
    main()
