"""The fixed tool set offered to every agent.

Each tool's parameter contract is a pydantic model; the model docstring is
the description the LLM sees.  Schemas are rendered once, in OpenAI
function format, with LangChain's converter and kept provider-neutral as
:class:`ToolSpec`.  The provider adapters re-shape them for the wire.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ConfigDict, Field

QUERY_DATABASE = "query_database"
SAVE_CONTACT = "save_contact"
CREATE_ORDER = "create_order"

DEFAULT_QUERY_LIMIT = 25
MAX_QUERY_LIMIT = 50


class QueryDatabaseArgs(BaseModel):
    """Consulta la base de datos de productos cuando necesitas precios, SKUs, disponibilidad o características que no están en los datos de referencia. Úsala siempre que el cliente pregunte por un producto concreto y los datos del prompt no sean suficientes."""

    model_config = ConfigDict(title=QUERY_DATABASE, populate_by_name=True)

    knowledge_base_id: str | None = Field(
        None, alias="knowledgeBaseId",
        description="ID de la base de datos a consultar (opcional: por defecto todas)",
    )
    search_query: str | None = Field(
        None, alias="searchQuery",
        description="Texto de búsqueda: producto, marca, modelo, año, SKU u otras características",
    )
    filters: dict[str, str] | None = Field(
        None,
        description="Filtros exactos por columna, p. ej. {\"marca\": \"nissan\"}",
    )
    limit: int | None = Field(
        None, ge=1,
        description=f"Máximo de resultados (default: {DEFAULT_QUERY_LIMIT}, máx: {MAX_QUERY_LIMIT})",
    )


class SaveContactArgs(BaseModel):
    """Registra o actualiza los datos del cliente en el CRM. LLÁMALA INMEDIATAMENTE cuando el cliente mencione su nombre, empresa o cualquier dato personal; no esperes a que haga un pedido."""

    model_config = ConfigDict(title=SAVE_CONTACT, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Nombre completo del cliente o responsable")
    phone: str = Field(..., description="Número de teléfono (vacío si el cliente no lo ha dado)")
    company: str | None = Field(None, description="Nombre del taller, empresa o negocio")
    email: str | None = Field(None, description="Correo electrónico")
    address: str | None = Field(None, description="Dirección completa")
    notes: str | None = Field(None, description="Notas adicionales")


class OrderItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product: str = Field(..., description="Nombre del producto o servicio")
    sku: str | None = Field(None, description="SKU o código tal como aparece en la base de datos")
    quantity: float = Field(1, gt=0, description="Cantidad solicitada")
    unit_price: float | None = Field(
        None, ge=0, alias="unitPrice",
        description="Precio unitario (sin símbolo de moneda)",
    )
    notes: str | None = Field(None, description="Notas adicionales del producto")


class CreateOrderArgs(BaseModel):
    """Crea un nuevo pedido cuando el cliente confirma los productos que desea comprar. Úsala SIEMPRE que el cliente confirme su pedido indicando productos y cantidades. Incluye el precio unitario si lo conoces."""

    model_config = ConfigDict(title=CREATE_ORDER, populate_by_name=True)

    items: list[OrderItem] = Field(..., min_length=1, description="Lista de productos del pedido")
    notes: str | None = Field(None, description="Notas generales del pedido")


@dataclass(frozen=True)
class ToolSpec:
    """Provider-neutral tool definition."""

    name: str
    description: str
    parameters: dict[str, Any]

    @classmethod
    def from_model(cls, model: type[BaseModel]) -> ToolSpec:
        function = convert_to_openai_tool(model)["function"]
        return cls(
            name=function["name"],
            description=function.get("description", ""),
            parameters=function["parameters"],
        )


ARGUMENT_MODELS: dict[str, type[BaseModel]] = {
    QUERY_DATABASE: QueryDatabaseArgs,
    SAVE_CONTACT: SaveContactArgs,
    CREATE_ORDER: CreateOrderArgs,
}

TOOL_CATALOG: list[ToolSpec] = [ToolSpec.from_model(m) for m in ARGUMENT_MODELS.values()]


def tools_for_agent(knowledge_base_ids: list[str]) -> list[ToolSpec]:
    """Catalog offered to an agent; ``query_database`` needs at least one base."""
    if knowledge_base_ids:
        return list(TOOL_CATALOG)
    return [t for t in TOOL_CATALOG if t.name != QUERY_DATABASE]
