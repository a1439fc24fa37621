"""System prompt composition for the AI agents.

:func:`compose_system_prompt` is a pure function: the same agent prompt and
retrieved rows always produce the same string, so prompt assembly can be
tested without a store or a provider.
"""

from __future__ import annotations

from messagehub.knowledge import RetrievedBase

TOOL_RULES = """

REGLAS OBLIGATORIAS DE HERRAMIENTAS:
1. CONTACTO: Si el cliente dice su nombre o empresa en CUALQUIER mensaje, llama a save_contact DE INMEDIATO, sin esperar.
2. CONTACTO: Si llevas 2 o más mensajes sin saber el nombre del cliente, pregúntaselo ("¿Con quién tengo el gusto?" o similar).
3. PEDIDO: SIEMPRE llama primero a save_contact y después a create_order. Nunca al revés.
4. save_contact se puede llamar varias veces para ir actualizando los datos del cliente."""

REFERENCE_HEADER = """

=== DATOS DE REFERENCIA ===
A continuación tienes los datos reales de tus bases de datos. SIEMPRE usa estos datos para responder preguntas sobre productos, precios, disponibilidad, etc.
NUNCA inventes datos. Si el cliente pregunta algo que no está en estos datos, usa query_database o dile que no tienes esa información disponible.

"""

REFERENCE_FOOTER = "=== FIN DE DATOS ===\n"

BEHAVIOR_RULES = """
INSTRUCCIONES IMPORTANTES:
- NUNCA inventes precios, existencias ni números de pedido. Da solo los valores exactos de los datos o de las herramientas.
- Para ejecutar una acción (guardar un contacto, crear un pedido, buscar productos) USA la herramienta correspondiente. Nunca digas que hiciste algo que no ejecutaste con una herramienta.
- Cuando create_order devuelva un número de pedido y un total, compártelos con el cliente tal cual.
- No narres tu proceso interno ("déjame revisar", "estoy buscando..."). Responde directamente con el resultado.
- Nunca muestres al cliente sintaxis de herramientas, JSON, XML ni bloques de código."""


def format_row(index: int, row: dict, columns: list[str]) -> str:
    """``"3. col: value | col: value"``."""
    cells = " | ".join(f"{col}: {'' if row.get(col) is None else row.get(col)}" for col in columns)
    return f"{index}. {cells}"


def _format_base(base: RetrievedBase) -> str:
    lines = [f"--- {base.name.upper()} ---"]
    if base.description:
        lines.append(f"({base.description})")
    lines.append(f"Columnas: {' | '.join(base.columns)}")
    lines.append("")

    if base.total_rows == 0:
        lines.append("(Sin datos cargados en esta base)")
    else:
        lines.append(f"Mostrando {len(base.rows)} de {base.total_rows} registros relevantes:")
        lines.append("")
        lines.extend(format_row(i, row, base.columns) for i, row in enumerate(base.rows, start=1))
    lines.append("")
    return "\n".join(lines) + "\n"


def compose_system_prompt(base_prompt: str, bases: list[RetrievedBase]) -> str:
    """Merge the agent prompt, the retrieved reference data and fixed rules."""
    prompt = (base_prompt or "").rstrip() + TOOL_RULES

    if bases:
        prompt += REFERENCE_HEADER
        prompt += "".join(_format_base(base) for base in bases)
        prompt += REFERENCE_FOOTER

    return prompt + "\n" + BEHAVIOR_RULES.lstrip("\n") + "\n"
