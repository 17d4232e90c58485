"""Relevance scoring for search results."""

from typing import Sequence, TypeVar

EXACT_COMBINED = 100
EXACT_BRAND = 50
EXACT_NAME = 50
BRAND_CONTAINS_WORD = 10
NAME_CONTAINS_WORD = 15
WORD_STARTS_WITH = 20
CONTAINS_FULL_QUERY = 30

MAX_RELEVANCE = EXACT_COMBINED
MIN_RELEVANCE = 5

T = TypeVar("T")


def calculate_relevance(query: str, brand: str, name: str) -> int:
    """
    Score how well a brand/name pair matches a query, from 0 to 100.

    An exact ``"<brand> <name>"`` match scores 100 outright. Otherwise partial
    credit accumulates for exact brand or name matches, for each query word
    (longer than two characters) found in the brand, in the name, or at the
    start of any word, and for the whole query appearing as a substring.
    """
    query_lower = query.lower().strip()
    brand_lower = brand.lower().strip()
    name_lower = name.lower().strip()
    combined = f"{brand_lower} {name_lower}"

    if combined == query_lower:
        return MAX_RELEVANCE

    score = 0
    if brand_lower == query_lower:
        score += EXACT_BRAND
    if name_lower == query_lower:
        score += EXACT_NAME

    query_words = [w for w in query_lower.split() if len(w) > 2]
    combined_words = combined.split()

    for word in query_words:
        if word in brand_lower:
            score += BRAND_CONTAINS_WORD
        if word in name_lower:
            score += NAME_CONTAINS_WORD
        if any(w.startswith(word) for w in combined_words):
            score += WORD_STARTS_WITH

    if query_lower and query_lower in combined:
        score += CONTAINS_FULL_QUERY

    return min(score, MAX_RELEVANCE)


def rank_results(query: str, results: Sequence[T], min_relevance: int = MIN_RELEVANCE) -> list[T]:
    """
    Drop results below the relevance floor and sort the rest best-first.

    ``results`` items need ``brand`` and ``name`` attributes. Ties keep their
    original order.
    """
    scored = [(calculate_relevance(query, r.brand, r.name), r) for r in results]
    kept = [(score, r) for score, r in scored if score >= min_relevance]
    kept.sort(key=lambda pair: pair[0], reverse=True)
    return [r for _, r in kept]
