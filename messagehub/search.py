"""Lexical search over loosely-schematized knowledge-base rows.

Two pure building blocks, no I/O:

* :func:`expand_search_terms` turns a customer message into a bag of
  normalized terms plus the model years it mentions.  Customer words are
  widened with the abbreviations catalogs use (``derecho`` also searches
  ``der``) and the reverse.  Years are kept apart from terms because they
  must match as whole numbers (``2015`` is not found inside a ``20150`` SKU).
* :func:`score_row` counts how many of those terms/years a row contains.

Ranking is a stable descending sort, so equal scores keep the original row
order of the knowledge base.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

# Spanish + English function words that carry no product meaning
STOPWORDS = frozenset({
    "el", "la", "los", "las", "un", "una", "unos", "unas", "en", "con",
    "por", "para", "que", "qué", "es", "son", "hay", "tiene", "tienen",
    "me", "te", "se", "le", "lo", "y", "o", "a", "e", "i", "u", "como",
    "cómo", "si", "no", "sí", "más", "muy", "también", "ya", "mi", "tu",
    "su", "al", "de", "del", "quiero", "necesito", "busco", "precio",
    "cuanto", "cuánto", "cuesta", "sus", "este", "esta", "esto", "eso",
    "hola", "buenas", "buenos", "dias", "días", "tardes", "noches", "favor",
    "gracias", "the", "is", "are", "do", "does", "what", "how", "have",
    "has", "and", "for", "you", "your", "with", "any", "can", "this",
    "that", "need", "want", "hello", "please", "thanks",
})

# Customer wording <-> catalog abbreviations, in both directions
TERM_EXPANSIONS: dict[str, tuple[str, ...]] = {
    "electrico": ("elec", "elect"),
    "eléctrico": ("elec", "elect"),
    "electrica": ("elec", "elect"),
    "eléctrica": ("elec", "elect"),
    "electric": ("elec", "elect"),
    "manual": ("man",),
    "derecho": ("r", "der", "dcho", "dere"),
    "derecha": ("r", "der", "dcha", "dere"),
    "right": ("r", "der"),
    "copiloto": ("r", "der", "dcho", "dere"),
    "izquierdo": ("l", "izq", "izqdo"),
    "izquierda": ("l", "izq", "izqda"),
    "left": ("l", "izq"),
    "piloto": ("l", "izq", "izqdo"),
    "delantero": ("del", "front", "frt", "delan"),
    "delantera": ("del", "front", "frt", "delan"),
    "delanteros": ("del",),
    "delanteras": ("del",),
    "trasero": ("tras", "tra", "rear", "post"),
    "trasera": ("tras", "tra", "rear", "post"),
    "traseros": ("tras",),
    "traseras": ("tras",),
    "front": ("del", "frt"),
    "rear": ("tras", "tra"),
    "direccional": ("direcc", "direc", "c/direcc", "c/direc"),
    "direccionales": ("direcc", "c/direcc"),
    "pintar": ("p/pintar", "p/p"),
    "pintada": ("p/pintar", "p/p"),
    "pintura": ("p/pintar", "p/p"),
    "texturizado": ("text", "textu"),
    "texturizada": ("text", "textu"),
    "textured": ("text",),
    "autoabatible": ("autoab", "e/abatible"),
    "autofold": ("autoab", "e/abatible"),
    "abatible": ("autoab", "e/abatible"),
    "control": ("c/cont", "cont"),
    "controlable": ("c/cont",),
    "elec": ("electrico", "eléctrico"),
    "elect": ("electrico", "eléctrico"),
    "man": ("manual",),
    "der": ("derecho", "derecha"),
    "izq": ("izquierdo", "izquierda"),
    "tras": ("trasero", "trasera"),
    "text": ("texturizado", "texturizada"),
    "autoab": ("autoabatible", "abatible"),
    "direcc": ("direccional",),
    "cont": ("control",),
}

_NON_WORD_RE = re.compile(r"[^\w\s]+")
_FOUR_DIGIT_YEAR_RE = re.compile(r"^(?:19[3-9]\d|20[0-2]\d)$")
_TWO_DIGIT_RE = re.compile(r"^\d{2}$")
# "15-18", "2015-2018" inside a row
_YEAR_RANGE_RE = re.compile(r"(?<!\d)(\d{2}|\d{4})-(\d{2}|\d{4})(?!\d)")

MIN_TERM_LENGTH = 3


@dataclass
class SearchTerms:
    """Normalized query: substring terms plus exact-match years."""

    terms: set[str] = field(default_factory=set)
    years: list[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.terms and not self.years


def normalize_year(two_digits: str) -> int:
    """Expand a two-digit year: 00-29 → 20xx, 30-99 → 19xx."""
    n = int(two_digits)
    return 2000 + n if n <= 29 else 1900 + n


def expand_search_terms(text: str | None) -> SearchTerms:
    """Build the term/year index for a free-text query."""
    result = SearchTerms()
    if not text:
        return result

    cleaned = _NON_WORD_RE.sub(" ", text.lower()).replace("_", " ")
    for token in cleaned.split():
        if _FOUR_DIGIT_YEAR_RE.match(token):
            year = int(token)
        elif _TWO_DIGIT_RE.match(token):
            year = normalize_year(token)
        else:
            year = None

        if year is not None:
            if year not in result.years:
                result.years.append(year)
            continue

        if len(token) < MIN_TERM_LENGTH or token in STOPWORDS:
            continue
        result.terms.add(token)
        result.terms.update(
            exp for exp in TERM_EXPANSIONS.get(token, ())
            if len(exp) >= MIN_TERM_LENGTH and exp not in STOPWORDS
        )

    # Plurals: "faros" also matches rows that only say "faro"
    singulars = {
        t[:-1] for t in result.terms
        if len(t) >= 4 and t.endswith("s") and not t[:-1].isdigit()
    }
    result.terms |= singulars
    return result


def row_haystack(row: dict[str, Any]) -> str:
    """Concatenate every value of *row* into one lowercase string."""
    return " ".join("" if v is None else str(v) for v in row.values()).lower()


def extract_year_ranges(text: str) -> list[tuple[int, int]]:
    """Return the ``(from, to)`` model-year ranges written in *text*."""
    ranges: list[tuple[int, int]] = []
    for start_raw, end_raw in _YEAR_RANGE_RE.findall(text):
        start = normalize_year(start_raw) if len(start_raw) == 2 else int(start_raw)
        end = normalize_year(end_raw) if len(end_raw) == 2 else int(end_raw)
        if 1930 <= start <= end <= 2030:
            ranges.append((start, end))
    return ranges


def _whole_number_re(year: int) -> re.Pattern[str]:
    return re.compile(rf"(?<!\d){year}(?!\d)")


def score_row(row: dict[str, Any], terms: Iterable[str], years: Iterable[int]) -> int:
    """Score *row* against a term/year set.

    +1 for every term found as a substring of the row, +1 for every year
    found as a whole number or covered by a year range in the row.
    """
    haystack = row_haystack(row)
    score = sum(1 for term in terms if term in haystack)

    years = list(years)
    if years:
        ranges = extract_year_ranges(haystack)
        for year in years:
            if _whole_number_re(year).search(haystack) or any(lo <= year <= hi for lo, hi in ranges):
                score += 1
    return score


def rank_rows(
    rows: list[dict[str, Any]],
    search: SearchTerms,
    limit: int,
) -> list[dict[str, Any]]:
    """Return up to *limit* rows with a positive score, best first."""
    scored = [(score_row(row, search.terms, search.years), row) for row in rows]
    # sorted() is stable: ties keep knowledge-base order
    scored = sorted(scored, key=lambda pair: pair[0], reverse=True)
    return [row for score, row in scored if score > 0][:limit]
