"""Executes tool calls requested by the model.

Every tool returns a human-readable string that is fed back to the model as
the tool result.  A failing tool never fails the round: invalid arguments
and persistence errors are turned into an error string the model can relay
to the customer.

``query_database`` and the SKU price lookup of ``create_order`` only read
knowledge-base snapshots already held by the :class:`KnowledgeRetriever`
cache, so they never hit the store.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from messagehub.knowledge import KnowledgeRetriever, KnowledgeSnapshot
from messagehub.prompts import format_row
from messagehub.search import expand_search_terms, score_row
from messagehub.services import crm
from messagehub.services.metrics import metrics
from messagehub.services.store import DocumentStore
from messagehub.tools.catalog import (
    ARGUMENT_MODELS,
    CREATE_ORDER,
    DEFAULT_QUERY_LIMIT,
    MAX_QUERY_LIMIT,
    QUERY_DATABASE,
    SAVE_CONTACT,
    CreateOrderArgs,
    QueryDatabaseArgs,
    SaveContactArgs,
)

logger = logging.getLogger(__name__)

UNKNOWN_TOOL_RESULT = "Herramienta ejecutada."

_PRICE_COLUMN_KEYWORDS = ("precio_venta", "precio venta", "price", "precio", "pvp", "venta")
_SKU_COLUMN_KEYWORDS = ("sku", "codigo", "código", "code", "clave", "num_parte", "parte_no")


@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    ``error`` is set when the provider sent arguments that could not be
    decoded; the call is then answered with an error result.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


def _find_column(columns: list[str], keywords: tuple[str, ...]) -> str | None:
    lowered = [c.lower() for c in columns]
    for keyword in keywords:
        for column, low in zip(columns, lowered):
            if keyword in low:
                return column
    return None


def _parse_price(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value or "").replace("$", "").replace(",", "").strip()
    try:
        return float(text)
    except ValueError:
        return 0.0


def _matches_filters(row: dict[str, Any], filters: dict[str, str]) -> bool:
    """Case-insensitive substring match of every filter on its column."""
    lowered = {str(k).lower(): v for k, v in row.items()}
    for column, expected in filters.items():
        cell = lowered.get(column)
        if cell is None or expected not in str(cell).lower():
            return False
    return True


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "argumentos"
        parts.append(f"{location}: {err.get('msg', 'inválido')}")
    return "; ".join(parts)


class ToolExecutor:
    """Dispatches tool calls for one organization and conversation scope."""

    def __init__(
        self,
        store: DocumentStore,
        org_id: str,
        retriever: KnowledgeRetriever,
        kb_ids: list[str],
        conversation_id: str | None = None,
    ) -> None:
        self._store = store
        self._org_id = org_id
        self._retriever = retriever
        self._kb_ids = list(kb_ids)
        self._conversation_id = conversation_id
        self._handlers = {
            QUERY_DATABASE: self._query_database,
            SAVE_CONTACT: self._save_contact,
            CREATE_ORDER: self._create_order,
        }

    async def execute(self, call: ToolCall) -> str:
        """Run one tool call and return its textual result."""
        handler = self._handlers.get(call.name)
        if handler is None:
            logger.warning("Model requested unknown tool %r; acknowledging", call.name)
            return UNKNOWN_TOOL_RESULT

        if call.error:
            logger.warning("Undecodable arguments for %s: %s", call.name, call.error)
            return f"Error: los argumentos de {call.name} no son válidos ({call.error})."

        try:
            args = ARGUMENT_MODELS[call.name].model_validate(call.arguments)
        except ValidationError as exc:
            logger.warning("Invalid arguments for %s: %s", call.name, exc)
            return (
                f"Error: los argumentos de {call.name} no son válidos "
                f"({_describe_validation_error(exc)})."
            )

        t0 = time.perf_counter()
        try:
            result = await handler(args)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "tools", call.name, error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.exception("Tool %s failed in org %s", call.name, self._org_id)
            return f"Error al ejecutar {call.name}: {exc}. Informa al cliente e inténtalo de nuevo más tarde."

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("tools", call.name, latency_ms=elapsed)
        return result

    # ── Knowledge lookups ────────────────────────────────────────────

    def _snapshots(self, kb_id: str | None = None) -> list[KnowledgeSnapshot]:
        kb_ids = [kb_id] if kb_id else self._kb_ids
        snapshots = []
        for kb in kb_ids:
            snapshot = self._retriever.cached(self._org_id, kb)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    async def _query_database(self, args: QueryDatabaseArgs) -> str:
        snapshots = self._snapshots(args.knowledge_base_id)
        if not snapshots:
            return "No hay ninguna base de datos cargada para consultar."

        search = expand_search_terms(args.search_query or "")
        filters = {
            k.strip().lower(): v.strip().lower()
            for k, v in (args.filters or {}).items()
            if k.strip() and v and v.strip()
        }
        limit = min(args.limit or DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT)

        scored: list[tuple[int, KnowledgeSnapshot, dict[str, Any]]] = []
        total = 0
        for snapshot in snapshots:
            total += len(snapshot.rows)
            for row in snapshot.rows:
                if filters and not _matches_filters(row, filters):
                    continue
                score = 0
                if not search.is_empty:
                    score = score_row(row, search.terms, search.years)
                    if score == 0:
                        continue
                scored.append((score, snapshot, row))

        if not scored:
            return "No se encontraron resultados para esa búsqueda."

        scored.sort(key=lambda item: item[0], reverse=True)
        selected = scored[:limit]
        lines = [f"Resultados ({len(selected)} de {total} registros):"]
        for index, (_, snapshot, row) in enumerate(selected, start=1):
            lines.append(format_row(index, row, snapshot.display_columns()))
        return "\n".join(lines)

    def _price_for_sku(self, sku: str) -> float | None:
        wanted = sku.strip().upper()
        for snapshot in self._snapshots():
            columns = snapshot.display_columns()
            price_col = _find_column(columns, _PRICE_COLUMN_KEYWORDS)
            sku_col = _find_column(columns, _SKU_COLUMN_KEYWORDS)
            if not price_col or not sku_col:
                continue
            for row in snapshot.rows:
                if str(row.get(sku_col) or "").strip().upper() == wanted:
                    return _parse_price(row.get(price_col))
        return None

    # ── CRM writes ───────────────────────────────────────────────────

    async def _save_contact(self, args: SaveContactArgs) -> str:
        result = await crm.save_or_update_contact(
            self._store,
            self._org_id,
            args.model_dump(),
            conversation_id=self._conversation_id,
        )
        verb = "actualizado" if result["action"] == "updated" else "creado"
        return f"Contacto {verb} correctamente: {result['name']}."

    async def _create_order(self, args: CreateOrderArgs) -> str:
        items = []
        for item in args.items:
            unit_price = item.unit_price
            if unit_price is None and item.sku:
                unit_price = self._price_for_sku(item.sku)
                if unit_price is not None:
                    logger.debug("Price for SKU %s resolved from knowledge base: %s", item.sku, unit_price)
            items.append({
                "product": item.product,
                "sku": item.sku,
                "quantity": item.quantity,
                "unitPrice": unit_price or 0,
                "notes": item.notes,
            })

        result = await crm.create_order(
            self._store,
            self._org_id,
            items,
            notes=args.notes or "",
            conversation_id=self._conversation_id,
        )
        return (
            f"Pedido {result['order_number']} creado correctamente. "
            f"Total: ${result['total']:,.2f}. "
            "Comparte este número de pedido y el total con el cliente tal cual."
        )
