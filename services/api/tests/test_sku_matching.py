from market_data.services.sku_matching import (
    CatalogCandidate,
    levenshtein,
    normalize_sku,
    similarity,
    suggest_catalog_match,
)


def test_levenshtein() -> None:
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert levenshtein("same", "same") == 0


def test_similarity_bounds() -> None:
    assert similarity("DD1391-100", "dd1391-100") == 1.0
    assert similarity("", "abc") == 0.0
    assert 0.0 < similarity("DD1391-100", "DD1391-101") < 1.0


def test_normalize_sku_strips_punctuation_and_case() -> None:
    assert normalize_sku("DD1391-100") == "dd1391100"
    assert normalize_sku(" dd1391 100 ") == "dd1391100"
    assert normalize_sku(None) == ""


def test_exact_sku_wins() -> None:
    results = [
        CatalogCandidate("p-2", sku="DD1391-101", name="Nike Dunk Low"),
        CatalogCandidate("p-1", sku="DD1391-100", name="Nike Dunk Low Panda"),
    ]
    suggestion = suggest_catalog_match("DD1391-100", None, results)
    assert suggestion.catalog_id == "p-1"
    assert suggestion.method == "exact_sku"
    assert suggestion.confidence == 1.0


def test_normalized_sku_match() -> None:
    results = [CatalogCandidate("p-1", sku="dd1391 100")]
    suggestion = suggest_catalog_match("DD1391-100", None, results)
    assert suggestion.catalog_id == "p-1"
    assert suggestion.method == "normalized_sku"
    assert suggestion.confidence == 0.95


def test_fuzzy_sku_match_is_discounted() -> None:
    results = [CatalogCandidate("p-1", sku="DD1391-10")]
    suggestion = suggest_catalog_match("DD1391-100", None, results)
    assert suggestion.catalog_id == "p-1"
    assert suggestion.method == "fuzzy_sku"
    assert suggestion.confidence < 0.85


def test_fuzzy_name_fallback() -> None:
    name_results = [
        CatalogCandidate("p-9", sku="XYZ", name="Nike Dunk Low Retro White Black"),
        CatalogCandidate("p-8", sku="ABC", name="Adidas Samba OG"),
    ]
    suggestion = suggest_catalog_match(
        "NOPE-000", "Nike Dunk Low Retro White Black Panda", [], name_results
    )
    assert suggestion.catalog_id == "p-9"
    assert suggestion.method == "fuzzy_name"
    assert suggestion.confidence <= 0.70


def test_unresolved_when_nothing_is_close() -> None:
    results = [CatalogCandidate("p-1", sku="ZZZZZZ", name="Something else")]
    suggestion = suggest_catalog_match("DD1391-100", "Nike Dunk", results, results)
    assert not suggestion.resolved
    assert suggestion.method == "unresolved"
    assert suggestion.confidence == 0.0
