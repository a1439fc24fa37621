"""Tests for the tool catalog and executor."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import ORG_ID

from messagehub.knowledge import KnowledgeRetriever
from messagehub.services import crm
from messagehub.services.cache import LRUCache
from messagehub.tools.catalog import TOOL_CATALOG, tools_for_agent
from messagehub.tools.executor import UNKNOWN_TOOL_RESULT, ToolCall, ToolExecutor

CONTACTS = f"organizations/{ORG_ID}/contacts"
ORDERS = f"organizations/{ORG_ID}/orders"
CONVERSATIONS = f"organizations/{ORG_ID}/conversations"


def _executor(store, *, conversation_id=None, load_kb=True) -> ToolExecutor:
    retriever = KnowledgeRetriever(store)
    if load_kb:
        asyncio.run(retriever.load(ORG_ID, "kb1"))
    return ToolExecutor(store, ORG_ID, retriever, ["kb1"], conversation_id)


def _run(executor: ToolExecutor, name: str, /, **arguments) -> str:
    return asyncio.run(executor.execute(ToolCall(id="c1", name=name, arguments=arguments)))


# ── Catalog ──────────────────────────────────────────────────────────


class TestCatalog:
    def test_three_tools(self):
        assert [t.name for t in TOOL_CATALOG] == ["query_database", "save_contact", "create_order"]

    def test_schemas_use_wire_names(self):
        specs = {t.name: t for t in TOOL_CATALOG}
        assert "searchQuery" in specs["query_database"].parameters["properties"]
        assert set(specs["save_contact"].parameters["required"]) == {"name", "phone"}
        assert specs["create_order"].parameters["required"] == ["items"]

    def test_descriptions_come_from_docstrings(self):
        specs = {t.name: t for t in TOOL_CATALOG}
        assert "pedido" in specs["create_order"].description

    def test_query_database_needs_a_knowledge_base(self):
        assert "query_database" not in [t.name for t in tools_for_agent([])]
        assert len(tools_for_agent(["kb1"])) == 3


# ── Dispatch ─────────────────────────────────────────────────────────


class TestDispatch:
    def test_unknown_tool_is_acknowledged(self, seeded_store):
        result = _run(_executor(seeded_store), "send_invoice", amount=10)
        assert result == UNKNOWN_TOOL_RESULT

    def test_invalid_arguments_become_error_text(self, seeded_store):
        result = _run(_executor(seeded_store), "create_order", items=[])
        assert result.startswith("Error")
        assert seeded_store.dump(ORDERS) == []

    def test_undecodable_arguments_become_error_text(self, seeded_store):
        call = ToolCall(id="c1", name="save_contact", error="invalid JSON")
        result = asyncio.run(_executor(seeded_store).execute(call))
        assert "invalid JSON" in result

    def test_persistence_failure_becomes_error_text(self, seeded_store):
        seeded_store.add = AsyncMock(side_effect=RuntimeError("quota exceeded"))
        result = _run(_executor(seeded_store), "save_contact", name="Ana", phone="5215551234")
        assert "Error al ejecutar save_contact" in result
        assert "quota exceeded" in result


# ── query_database ───────────────────────────────────────────────────


class TestQueryDatabase:
    def test_returns_matching_rows_best_first(self, seeded_store):
        result = _run(_executor(seeded_store), "query_database", searchQuery="balatas sentra")
        lines = result.splitlines()
        assert lines[0].startswith("Resultados (1 de 3")
        assert "sku: BAL-210" in lines[1]

    def test_filters_by_column(self, seeded_store):
        result = _run(_executor(seeded_store), "query_database", filters={"marca": "nissan"})
        assert "FIL-001" in result
        assert "BAL-210" in result
        assert "BUJ-330" not in result

    def test_limit_is_applied(self, seeded_store):
        result = _run(_executor(seeded_store), "query_database", filters={"marca": "n"}, limit=1)
        assert len(result.splitlines()) == 2

    def test_no_results_message(self, seeded_store):
        result = _run(_executor(seeded_store), "query_database", searchQuery="motocicleta")
        assert result == "No se encontraron resultados para esa búsqueda."

    def test_no_loaded_base(self, seeded_store):
        result = _run(
            _executor(seeded_store, load_kb=False), "query_database", searchQuery="filtro",
        )
        assert "No hay ninguna base de datos cargada" in result

    def test_base_too_large_for_the_cache_is_still_searchable(self, seeded_store):
        retriever = KnowledgeRetriever(seeded_store, LRUCache(max_bytes=200))
        [base] = asyncio.run(retriever.retrieve(ORG_ID, ["kb1"], "filtro tsuru"))
        assert base.rows

        executor = ToolExecutor(seeded_store, ORG_ID, retriever, ["kb1"])
        result = _run(executor, "query_database", searchQuery="filtro")
        assert "FIL-001" in result

    def test_does_not_touch_the_store(self, seeded_store):
        executor = _executor(seeded_store)
        seeded_store.list = AsyncMock(side_effect=AssertionError("store hit"))
        seeded_store.get = AsyncMock(side_effect=AssertionError("store hit"))
        result = _run(executor, "query_database", searchQuery="bujía")
        assert "BUJ-330" in result


# ── save_contact ─────────────────────────────────────────────────────


class TestSaveContact:
    def test_creates_contact_with_default_funnel_stage(self, seeded_store):
        result = _run(_executor(seeded_store), "save_contact", name="Ana López", phone="5215551234")

        assert "creado" in result
        contacts = seeded_store.dump(CONTACTS)
        assert len(contacts) == 1
        assert contacts[0]["funnelStage"] == "curioso"

    def test_same_phone_updates_in_place(self, seeded_store):
        executor = _executor(seeded_store)
        _run(executor, "save_contact", name="Ana", phone="5215551234")
        result = _run(executor, "save_contact", name="Ana López", phone="5215551234", company="Taller Ana")

        assert "actualizado" in result
        contacts = seeded_store.dump(CONTACTS)
        assert len(contacts) == 1
        assert contacts[0]["name"] == "Ana López"
        assert contacts[0]["company"] == "Taller Ana"

    def test_links_conversation_and_uses_its_phone(self, seeded_store):
        conv, _ = asyncio.run(crm.resolve_conversation(
            seeded_store, ORG_ID, "whatsapp",
            contact_id="5215550000", contact_name="5215550000", contact_phone="5215550000",
        ))
        executor = _executor(seeded_store, conversation_id=conv["id"])
        _run(executor, "save_contact", name="Luis", phone="")

        contact = seeded_store.dump(CONTACTS)[0]
        assert contact["phone"] == "5215550000"
        linked = asyncio.run(seeded_store.get(CONVERSATIONS, conv["id"]))
        assert linked["crmContactId"] == contact["id"]
        assert linked["contactName"] == "Luis"


# ── create_order ─────────────────────────────────────────────────────


class TestCreateOrder:
    def test_order_number_follows_existing_count(self, seeded_store):
        seeded_store.load_fixture({ORDERS: {f"o{i}": {"orderNumber": f"PED-{i:05d}"} for i in range(1, 8)}})

        result = _run(
            _executor(seeded_store), "create_order",
            items=[{"product": "Filtro de aceite", "quantity": 2, "unitPrice": 120}],
        )

        assert "PED-00008" in result
        order = next(o for o in seeded_store.dump(ORDERS) if o["orderNumber"] == "PED-00008")
        assert order["status"] == "nuevo"
        assert order["total"] == 240

    def test_total_is_sum_of_lines(self, seeded_store):
        result = _run(
            _executor(seeded_store), "create_order",
            items=[
                {"product": "Filtro", "quantity": 2, "unitPrice": 120},
                {"product": "Balatas", "quantity": 1, "unitPrice": 450.5},
            ],
            notes="Entrega en taller",
        )
        assert "PED-00001" in result
        assert "$690.50" in result
        order = seeded_store.dump(ORDERS)[0]
        assert [line["total"] for line in order["items"]] == [240, 450.5]
        assert order["notes"] == "Entrega en taller"

    def test_missing_price_looked_up_by_sku(self, seeded_store):
        _run(
            _executor(seeded_store), "create_order",
            items=[{"product": "Bujía", "sku": "buj-330", "quantity": 4}],
        )
        order = seeded_store.dump(ORDERS)[0]
        assert order["items"][0]["unitPrice"] == 95
        assert order["total"] == 380

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_rejects_non_positive_quantity(self, seeded_store, quantity):
        result = _run(
            _executor(seeded_store), "create_order",
            items=[{"product": "Filtro", "quantity": quantity, "unitPrice": 120}],
        )
        assert result.startswith("Error")
