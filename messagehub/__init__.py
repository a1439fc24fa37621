"""MessageHub response engine: AI replies for a multi-tenant messaging CRM.

Architecture Overview
=====================

Inbound path (one request per provider webhook)::

    channel payload ─▶ webhooks.channels (parse, drop echoes / non-text)
                    ─▶ webhooks.ingestion (org lookup, idempotency marker,
                       find-or-create conversation, append message)
                    ─▶ 200 OK, then responder.AutoResponder as a background task

Reply path (one run per stored incoming message)::

    last 10 messages ─┐
    knowledge bases ──┴▶ knowledge.KnowledgeRetriever (ranked / fallback rows)
                       ▶ prompts.compose_system_prompt
                       ▶ agent.Orchestrator (≤ 5 provider rounds, tools run
                         per round by tools.executor.ToolExecutor)
                       ▶ sanitized reply stored as an outgoing message

Key Design Decisions
--------------------
- **Providers**: one adapter per wire format (``services/providers.py``),
  chosen once per agent; agents bring their own API key and model.
- **Retrieval**: lexical term/year overlap (``search.py``), no embeddings.
  Prompt size is bounded per base whatever the base size.
- **Tools**: argument contracts are pydantic models rendered to JSON schema
  with LangChain; failures become tool results, never round failures.
- **Storage**: Firestore in production, an in-memory store for tests and
  local development, both behind ``services/store.DocumentStore``.
- **Dual Interface**: FastAPI server (webhooks + operator API) and a CLI
  agent test console.

Package Structure
-----------------
- ``messagehub/config.py``: Centralized configuration (env, SSM)
- ``messagehub/models.py``: Agent model and shared constants
- ``messagehub/search.py``: Search-term expansion and row scoring
- ``messagehub/knowledge.py``: Knowledge-base retrieval and re-import
- ``messagehub/prompts.py``: System prompt composition
- ``messagehub/agent.py``: Tool-calling loop and response sanitizer
- ``messagehub/responder.py``: Auto-responder trigger
- ``messagehub/console.py``: Agent test console
- ``messagehub/server.py``: FastAPI application
- ``messagehub/main.py``: CLI test console
- ``messagehub/services/``: Store, CRM operations, providers, cache, metrics
- ``messagehub/tools/``: Tool catalog and executor
- ``messagehub/webhooks/``: Channel parsers and ingestion
- ``messagehub/api/``: FastAPI routes and Pydantic schemas
"""
