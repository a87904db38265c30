"""Size/variant matching: UK size -> provider size -> provider variant.

Users record UK sizes; StockX and Alias list sneaker variants in US sizes.
Conversion is a lookup in per-brand, per-gender charts, never a formula:
Nike runs one full size off UK while Adidas and New Balance run a half size off,
and the women's/GS charts deviate again.

Failure is explicit:
- NO_SIZE_MATCH: chart exists but has no row for the size, or no variant carries the label
- UNSUPPORTED_SIZE_SYSTEM: no chart for the brand/gender/size-system combination
- AMBIGUOUS_SIZE: one UK size maps to two US sizes (e.g. Nike GS UK 6)

Unknown brands pass the size through verbatim at reduced confidence.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
import logging
import re
from typing import Any

from market_data.services.errors import SizeMatchError

logger = logging.getLogger("uvicorn.error")


class Brand(str, Enum):
    NIKE = "nike"
    JORDAN = "jordan"
    ADIDAS = "adidas"
    YEEZY = "yeezy"
    NEW_BALANCE = "new_balance"
    UNKNOWN = "unknown"


class Gender(str, Enum):
    MEN = "men"
    WOMEN = "women"
    GS = "gs"
    PRESCHOOL = "preschool"
    TODDLER = "toddler"
    INFANT = "infant"


# ============================================================
# Brand / gender detection
# ============================================================

# Literal prefixes; longest match wins ("adidas yeezy" beats "adidas").
BRAND_PREFIXES: dict[str, Brand] = {
    "air jordan": Brand.JORDAN,
    "jordan": Brand.JORDAN,
    "nike": Brand.NIKE,
    "adidas yeezy": Brand.YEEZY,
    "yeezy": Brand.YEEZY,
    "adidas": Brand.ADIDAS,
    "new balance": Brand.NEW_BALANCE,
}

_PREFIXES_LONGEST_FIRST = sorted(BRAND_PREFIXES, key=len, reverse=True)

GENDER_PATTERNS: list[tuple[re.Pattern[str], Gender]] = [
    (re.compile(r"\b(women'?s|womens|wmns)\b|\(w\)", re.IGNORECASE), Gender.WOMEN),
    (re.compile(r"\bgrade[\s-]?school\b|\(gs\)|\bgs\b", re.IGNORECASE), Gender.GS),
    (re.compile(r"\bpre[\s-]?school\b|\(ps\)|\bps\b", re.IGNORECASE), Gender.PRESCHOOL),
    (re.compile(r"\btoddler\b|\(td\)|\btd\b", re.IGNORECASE), Gender.TODDLER),
    (re.compile(r"\binfants?\b", re.IGNORECASE), Gender.INFANT),
]

# Catalog "gender" fields as reported by providers
GENDER_METADATA: dict[str, Gender] = {
    "men": Gender.MEN,
    "mens": Gender.MEN,
    "unisex": Gender.MEN,
    "women": Gender.WOMEN,
    "womens": Gender.WOMEN,
    "youth": Gender.GS,
    "gs": Gender.GS,
    "child": Gender.GS,
    "preschool": Gender.PRESCHOOL,
    "toddler": Gender.TODDLER,
    "infant": Gender.INFANT,
}


def _prefix_brand(text: str | None) -> Brand | None:
    normalized = " ".join((text or "").lower().split())
    for prefix in _PREFIXES_LONGEST_FIRST:
        if normalized.startswith(prefix):
            return BRAND_PREFIXES[prefix]
    return None


def _stored_brand(value: str | None) -> Brand | None:
    try:
        brand = Brand((value or "").strip().lower())
    except ValueError:
        return None
    return None if brand is Brand.UNKNOWN else brand


def detect_brand(brand: str | None = None, title: str | None = None) -> Brand:
    """Detect brand via longest literal prefix of the brand field, then the title.

    A brand field already holding a `Brand` value (as stored on a mapping) is
    taken as-is.
    """
    return _stored_brand(brand) or _prefix_brand(brand) or _prefix_brand(title) or Brand.UNKNOWN


def detect_gender(title: str | None = None, metadata: dict[str, Any] | None = None) -> Gender:
    """Detect gender/segment from catalog metadata or title keywords (default men)."""
    if metadata:
        raw = str(metadata.get("gender") or "").strip().lower()
        if raw in GENDER_METADATA:
            return GENDER_METADATA[raw]
    text = title or ""
    for pattern, gender in GENDER_PATTERNS:
        if pattern.search(text):
            return gender
    return Gender.MEN


# ============================================================
# Size charts (US -> UK, as published by the brands)
# ============================================================

NIKE_MENS_US_TO_UK: dict[str, str] = {
    "3.5": "3", "4": "3", "4.5": "3.5", "5": "4", "5.5": "4.5", "6": "5",
    "6.5": "5.5", "7": "6", "7.5": "6.5", "8": "7", "8.5": "7.5", "9": "8",
    "9.5": "8.5", "10": "9", "10.5": "9.5", "11": "10", "11.5": "10.5",
    "12": "11", "12.5": "11.5", "13": "12", "14": "13", "15": "14",
    "16": "15", "17": "16", "18": "17",
}

NIKE_WOMENS_US_TO_UK: dict[str, str] = {
    "5": "2.5", "5.5": "3", "6": "3.5", "6.5": "4", "7": "4.5", "7.5": "5",
    "8": "5.5", "8.5": "6", "9": "6.5", "9.5": "7", "10": "7.5", "10.5": "8",
    "11": "8.5", "11.5": "9", "12": "9.5", "12.5": "10",
}

# UK 6 appears twice (EU 39 and EU 40).
NIKE_GS_US_TO_UK: dict[str, str] = {
    "3.5": "3", "4": "3.5", "4.5": "4", "5": "4.5", "5.5": "5", "6": "5.5",
    "6.5": "6", "7": "6",
}

ADIDAS_MENS_US_TO_UK: dict[str, str] = {
    "4": "3.5", "4.5": "4", "5": "4.5", "5.5": "5", "6": "5.5", "6.5": "6",
    "7": "6.5", "7.5": "7", "8": "7.5", "8.5": "8", "9": "8.5", "9.5": "9",
    "10": "9.5", "10.5": "10", "11": "10.5", "11.5": "11", "12": "11.5",
    "12.5": "12", "13": "12.5", "14": "13.5", "15": "14.5",
}

ADIDAS_WOMENS_US_TO_UK: dict[str, str] = {
    "5": "3.5", "5.5": "4", "6": "4.5", "6.5": "5", "7": "5.5", "7.5": "6",
    "8": "6.5", "8.5": "7", "9": "7.5", "9.5": "8", "10": "8.5", "10.5": "9",
    "11": "9.5", "11.5": "10", "12": "10.5",
}

NEW_BALANCE_MENS_US_TO_UK: dict[str, str] = {
    "4": "3.5", "4.5": "4", "5": "4.5", "5.5": "5", "6": "5.5", "6.5": "6",
    "7": "6.5", "7.5": "7", "8": "7.5", "8.5": "8", "9": "8.5", "9.5": "9",
    "10": "9.5", "10.5": "10", "11": "10.5", "11.5": "11", "12": "11.5",
    "12.5": "12", "13": "12.5", "14": "13", "15": "14", "16": "15",
}

NEW_BALANCE_WOMENS_US_TO_UK: dict[str, str] = {
    "5": "3", "5.5": "3.5", "6": "4", "6.5": "4.5", "7": "5", "7.5": "5.5",
    "8": "6", "8.5": "6.5", "9": "7", "9.5": "7.5", "10": "8", "10.5": "8.5",
    "11": "9", "11.5": "9.5", "12": "10",
}

_CHART_FAMILY: dict[Brand, str] = {
    Brand.NIKE: "nike",
    Brand.JORDAN: "nike",
    Brand.ADIDAS: "adidas",
    Brand.YEEZY: "adidas",
    Brand.NEW_BALANCE: "new_balance",
}

SIZE_CHARTS: dict[tuple[str, Gender], dict[str, str]] = {
    ("nike", Gender.MEN): NIKE_MENS_US_TO_UK,
    ("nike", Gender.WOMEN): NIKE_WOMENS_US_TO_UK,
    ("nike", Gender.GS): NIKE_GS_US_TO_UK,
    ("adidas", Gender.MEN): ADIDAS_MENS_US_TO_UK,
    ("adidas", Gender.WOMEN): ADIDAS_WOMENS_US_TO_UK,
    ("new_balance", Gender.MEN): NEW_BALANCE_MENS_US_TO_UK,
    ("new_balance", Gender.WOMEN): NEW_BALANCE_WOMENS_US_TO_UK,
}


def _invert(chart: dict[str, str]) -> dict[str, list[str]]:
    inverted: dict[str, list[str]] = {}
    for us, uk in chart.items():
        inverted.setdefault(uk, []).append(us)
    return inverted


UK_TO_US_CHARTS: dict[tuple[str, Gender], dict[str, list[str]]] = {
    key: _invert(chart) for key, chart in SIZE_CHARTS.items()
}


# ============================================================
# Size labels
# ============================================================

_SIZE_PREFIX = re.compile(r"^(us|uk|eu|m|w|y|size)\s*", re.IGNORECASE)


def canonical_size_label(value: Any) -> str:
    """Format a size for exact comparison: "10.0" -> "10", "US 9.50" -> "9.5".

    Non-numeric labels (e.g. "XL") are returned stripped and upper-cased.
    """
    text = str(value).strip()
    stripped = _SIZE_PREFIX.sub("", text)
    try:
        number = Decimal(stripped)
    except InvalidOperation:
        return text.upper()
    if not number.is_finite():
        return text.upper()
    return format(number.normalize(), "f")


def size_numeric(value: Any) -> float | None:
    label = canonical_size_label(value)
    try:
        return float(label)
    except ValueError:
        return None


# ============================================================
# Conversion and variant resolution
# ============================================================


@dataclass(frozen=True)
class SizeConversion:
    """Result of converting a user size into a provider's size system."""

    source_size: str
    target_size: str
    target_system: str
    brand: Brand
    gender: Gender
    confidence: float
    method: str  # "chart" | "same_system" | "passthrough"


def convert_uk_size(
    uk_size: Any,
    brand: Brand,
    gender: Gender,
    *,
    source_system: str = "UK",
    target_system: str = "US",
) -> SizeConversion:
    """Convert a user size to the provider's size system via the static charts.

    Raises:
        SizeMatchError: NO_SIZE_MATCH, UNSUPPORTED_SIZE_SYSTEM or AMBIGUOUS_SIZE.
    """
    source = canonical_size_label(uk_size)
    source_system = source_system.upper()
    target_system = target_system.upper()

    if source_system == target_system:
        return SizeConversion(source, source, target_system, brand, gender, 1.0, "same_system")

    if (source_system, target_system) != ("UK", "US"):
        raise SizeMatchError(
            SizeMatchError.UNSUPPORTED_SIZE_SYSTEM,
            f"no conversion from {source_system} to {target_system}",
        )

    if brand == Brand.UNKNOWN:
        logger.warning(f"Size conversion: unknown brand, passing UK {source} through unconverted")
        return SizeConversion(source, source, target_system, brand, gender, 0.5, "passthrough")

    family = _CHART_FAMILY[brand]
    chart = UK_TO_US_CHARTS.get((family, gender))
    if chart is None:
        raise SizeMatchError(
            SizeMatchError.UNSUPPORTED_SIZE_SYSTEM,
            f"no {source_system}->{target_system} chart for {brand.value}/{gender.value}",
        )

    candidates = chart.get(source)
    if not candidates:
        raise SizeMatchError(
            SizeMatchError.NO_SIZE_MATCH,
            f"UK {source} not in {brand.value}/{gender.value} chart",
        )
    if len(candidates) > 1:
        raise SizeMatchError(
            SizeMatchError.AMBIGUOUS_SIZE,
            f"UK {source} maps to US {', '.join(candidates)} for {brand.value}/{gender.value}",
        )
    return SizeConversion(source, candidates[0], target_system, brand, gender, 1.0, "chart")


@dataclass(frozen=True)
class VariantMatch:
    variant_id: str
    size_label: str


def resolve_variant(variants: Iterable[tuple[str, Any]], target_size: Any) -> VariantMatch:
    """Find the variant whose size label equals the target exactly.

    Args:
        variants: (variant_id, size_label) pairs from the provider catalog.
        target_size: Converted size in the provider's system.

    Raises:
        SizeMatchError: NO_SIZE_MATCH when nothing matches, AMBIGUOUS_SIZE when
            several distinct variants carry the label.
    """
    wanted = canonical_size_label(target_size)
    matches: dict[str, str] = {}
    for variant_id, label in variants:
        if label is None:
            continue
        if canonical_size_label(label) == wanted:
            matches[variant_id] = wanted
    if not matches:
        raise SizeMatchError(SizeMatchError.NO_SIZE_MATCH, f"no variant with size {wanted}")
    if len(matches) > 1:
        raise SizeMatchError(
            SizeMatchError.AMBIGUOUS_SIZE,
            f"{len(matches)} variants carry size {wanted}",
        )
    variant_id = next(iter(matches))
    return VariantMatch(variant_id=variant_id, size_label=wanted)
