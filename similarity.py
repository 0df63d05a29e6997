"""
similarity.py - Pluggable name similarity.

The scorer and the duplicate detector only depend on the `NameSimilarity`
contract: `similarity(a, b) -> float in [0, 1]`. Both names are passed raw;
each implementation applies `normalize_name` itself.

Available implementations:
    token_set      RapidFuzz token_set_ratio (default). Tolerates extra words
                   such as "Acme Corp West" vs "Acme Corp - West Division".
    levenshtein    RapidFuzz normalized Levenshtein similarity. Stricter,
                   character-level.
    token_overlap  Share of significant words (3+ chars) found on both sides,
                   with long words allowed to match by containment.
"""

from __future__ import annotations

import os
from typing import Protocol

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from logging_config import get_logger
from normalize import normalize_name

logger = get_logger(__name__)

SIMILARITY_ENV = "RECON_NAME_SIMILARITY"
DEFAULT_SIMILARITY = "token_set"


class NameSimilarity(Protocol):
    """Anything that can compare two names on a 0-1 scale."""

    name: str

    def similarity(self, a: str, b: str) -> float:
        ...


class TokenSetSimilarity:
    name = "token_set"

    def similarity(self, a: str, b: str) -> float:
        left = normalize_name(a)
        right = normalize_name(b)
        if not left or not right:
            return 0.0
        if left == right:
            return 1.0
        return max(0.0, min(1.0, fuzz.token_set_ratio(left, right) / 100.0))


class LevenshteinSimilarity:
    name = "levenshtein"

    def similarity(self, a: str, b: str) -> float:
        left = normalize_name(a)
        right = normalize_name(b)
        if not left or not right:
            return 0.0
        return max(0.0, min(1.0, Levenshtein.normalized_similarity(left, right)))


class TokenOverlapSimilarity:
    """Word-overlap measure.

    Names containing each other score 0.9. Otherwise the score is the number
    of matched significant words over the larger significant word count.
    """

    name = "token_overlap"
    min_word_length = 3
    containment_length = 6

    def similarity(self, a: str, b: str) -> float:
        left = normalize_name(a)
        right = normalize_name(b)
        if not left or not right:
            return 0.0
        if left == right:
            return 1.0
        if left in right or right in left:
            return 0.9

        left_words = [word for word in left.split() if len(word) >= self.min_word_length]
        right_words = [word for word in right.split() if len(word) >= self.min_word_length]
        largest = max(len(left_words), len(right_words))
        if largest == 0:
            return 0.0

        matched = 0
        for word in left_words:
            for other in right_words:
                if (
                    word == other
                    or (len(word) >= self.containment_length and word in other)
                    or (len(other) >= self.containment_length and other in word)
                ):
                    matched += 1
                    break
        return matched / largest


SIMILARITIES: dict[str, type] = {
    TokenSetSimilarity.name: TokenSetSimilarity,
    LevenshteinSimilarity.name: LevenshteinSimilarity,
    TokenOverlapSimilarity.name: TokenOverlapSimilarity,
}


def get_similarity(name: str | None = None) -> NameSimilarity:
    """Build a similarity by name; falls back to `RECON_NAME_SIMILARITY`, then token_set."""
    key = (name or os.getenv(SIMILARITY_ENV, "") or DEFAULT_SIMILARITY).strip().lower()
    try:
        implementation = SIMILARITIES[key]
    except KeyError:
        raise ValueError(
            f"Unknown name similarity {key!r}; choose one of {sorted(SIMILARITIES)}"
        ) from None
    logger.debug("similarity_selected | name=%s", key)
    return implementation()
