"""Catalog matching: style code / product name -> provider catalog id.

Matching only ever produces a *suggestion*. Tiers, first hit wins:

1. exact SKU equality                        -> 1.0
2. case-folded, punctuation-stripped SKU     -> 0.95
3. best fuzzy SKU among SKU search results    -> similarity x 0.85 (similarity >= 0.7)
4. best fuzzy name among name search results -> similarity x 0.70 (similarity >= 0.6)

Otherwise the suggestion is unresolved with confidence 0.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import re

SKU_FUZZY_FACTOR = 0.85
NAME_FUZZY_FACTOR = 0.70
SKU_MIN_SIMILARITY = 0.7
NAME_MIN_SIMILARITY = 0.6

_NON_ALNUM = re.compile(r"[^0-9a-z]+")


@dataclass(frozen=True)
class CatalogCandidate:
    """A provider catalog search hit."""

    catalog_id: str
    sku: str | None = None
    name: str | None = None
    brand: str | None = None
    gender: str | None = None


@dataclass(frozen=True)
class CatalogSuggestion:
    catalog_id: str | None
    confidence: float
    method: str  # exact_sku | normalized_sku | fuzzy_sku | fuzzy_name | unresolved
    candidate: CatalogCandidate | None = None

    @property
    def resolved(self) -> bool:
        return self.catalog_id is not None


def normalize_sku(sku: str | None) -> str:
    return _NON_ALNUM.sub("", (sku or "").casefold())


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str | None, b: str | None) -> float:
    """Edit-distance similarity in [0, 1]."""
    a = (a or "").strip().casefold()
    b = (b or "").strip().casefold()
    if not a or not b:
        return 0.0
    longest = max(len(a), len(b))
    return 1.0 - levenshtein(a, b) / longest


def _best(
    candidates: Sequence[CatalogCandidate],
    target: str,
    key: str,
) -> tuple[CatalogCandidate | None, float]:
    best: CatalogCandidate | None = None
    best_score = 0.0
    for candidate in candidates:
        value = getattr(candidate, key)
        score = similarity(normalize_sku(value), target) if key == "sku" else similarity(value, target)
        if score > best_score:
            best, best_score = candidate, score
    return best, best_score


def suggest_catalog_match(
    sku: str | None,
    product_name: str | None,
    sku_results: Sequence[CatalogCandidate],
    name_results: Sequence[CatalogCandidate] = (),
) -> CatalogSuggestion:
    """Score catalog search results against an item. Never commits anything."""
    if sku:
        for candidate in sku_results:
            if candidate.sku and candidate.sku == sku:
                return CatalogSuggestion(candidate.catalog_id, 1.0, "exact_sku", candidate)

        wanted = normalize_sku(sku)
        for candidate in sku_results:
            if wanted and normalize_sku(candidate.sku) == wanted:
                return CatalogSuggestion(candidate.catalog_id, 0.95, "normalized_sku", candidate)

        best, score = _best(sku_results, wanted, "sku")
        if best is not None and score >= SKU_MIN_SIMILARITY:
            return CatalogSuggestion(
                best.catalog_id, round(score * SKU_FUZZY_FACTOR, 4), "fuzzy_sku", best
            )

    if product_name:
        best, score = _best(name_results, product_name, "name")
        if best is not None and score >= NAME_MIN_SIMILARITY:
            return CatalogSuggestion(
                best.catalog_id, round(score * NAME_FUZZY_FACTOR, 4), "fuzzy_name", best
            )

    return CatalogSuggestion(None, 0.0, "unresolved")
