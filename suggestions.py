"""Advisory column-mapping and categorization suggestions for imports.

Suggestions are optional. The import pipeline works with everything supplied
by hand, and any failure here degrades to "no suggestion".
"""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from rapidfuzz import fuzz, process

from config import get_settings
from models import CategoryType

logger = logging.getLogger(__name__)

HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("date", "data", "posted", "posting date", "data lancamento", "dt"),
    "description": (
        "description",
        "descricao",
        "historico",
        "memo",
        "lancamento",
        "payee",
        "details",
    ),
    "amount": ("amount", "valor", "value", "quantia", "montante", "total"),
    "external_id": (
        "id",
        "identificador",
        "identifier",
        "transaction id",
        "fitid",
        "reference",
        "documento",
    ),
}


@dataclass(frozen=True)
class CategoryOption:
    id: int
    name: str
    type: CategoryType


class SuggestionProvider(Protocol):
    def suggest_column_mapping(
        self, headers: Sequence[str], sample_rows: Sequence[dict[str, str]]
    ) -> dict[str, Optional[str]]: ...

    def suggest_categories(
        self, descriptions: Sequence[str], categories: Sequence[CategoryOption]
    ) -> dict[str, int]: ...


def _normalize(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


class FuzzySuggestionProvider:
    def __init__(
        self,
        known_descriptions: Optional[dict[str, int]] = None,
        min_score: Optional[float] = None,
    ) -> None:
        self.known_descriptions = {
            _normalize(k): v for k, v in (known_descriptions or {}).items()
        }
        self.min_score = (
            min_score if min_score is not None else get_settings().suggestion_min_score
        )

    def suggest_column_mapping(
        self, headers: Sequence[str], sample_rows: Sequence[dict[str, str]]
    ) -> dict[str, Optional[str]]:
        normalized = {_normalize(h): h for h in headers}
        mapping: dict[str, Optional[str]] = {}
        taken: set[str] = set()
        for field, aliases in HEADER_ALIASES.items():
            best_header: Optional[str] = None
            best_score = 0.0
            for norm_header, header in normalized.items():
                if header in taken:
                    continue
                match = process.extractOne(norm_header, aliases, scorer=fuzz.ratio)
                if match and match[1] > best_score:
                    best_score = match[1]
                    best_header = header
            if best_header is not None and best_score >= self.min_score:
                mapping[field] = best_header
                taken.add(best_header)
            else:
                mapping[field] = None
        return mapping

    def suggest_categories(
        self, descriptions: Sequence[str], categories: Sequence[CategoryOption]
    ) -> dict[str, int]:
        valid_ids = {c.id for c in categories}
        names = {c.id: _normalize(c.name) for c in categories}
        known = list(self.known_descriptions.keys())
        suggestions: dict[str, int] = {}
        for description in dict.fromkeys(descriptions):
            norm = _normalize(description)
            if not norm:
                continue
            if known:
                match = process.extractOne(norm, known, scorer=fuzz.token_set_ratio)
                if match and match[1] >= self.min_score:
                    category_id = self.known_descriptions[match[0]]
                    if category_id in valid_ids:
                        suggestions[description] = category_id
                        continue
            if names:
                match = process.extractOne(
                    norm, names, scorer=fuzz.partial_ratio, score_cutoff=self.min_score
                )
                if match:
                    suggestions[description] = match[2]
        return suggestions


def safe_column_mapping(
    provider: Optional[SuggestionProvider],
    headers: Sequence[str],
    sample_rows: Sequence[dict[str, str]],
) -> dict[str, Optional[str]]:
    if provider is None:
        return {}
    try:
        return dict(provider.suggest_column_mapping(headers, sample_rows))
    except Exception as exc:
        logger.warning(f"suggest_column_mapping: failed error={exc!r}")
        return {}


def safe_categories(
    provider: Optional[SuggestionProvider],
    descriptions: Sequence[str],
    categories: Sequence[CategoryOption],
) -> dict[str, int]:
    if provider is None or not descriptions or not categories:
        return {}
    try:
        return dict(provider.suggest_categories(descriptions, categories))
    except Exception as exc:
        logger.warning(f"suggest_categories: failed error={exc!r}")
        return {}
