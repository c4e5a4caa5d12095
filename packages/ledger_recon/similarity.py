"""Bounded string similarity over comparison keys.

``similarity(a, b)`` compares ``normalize_for_compare`` keys with rapidfuzz's
length-normalized Levenshtein score, so the result is in ``[0, 1]`` and
symmetric. Callers pre-filter candidates with exact or rounded keys before
making pairwise calls.
"""

from __future__ import annotations

from rapidfuzz.distance import Levenshtein

from .normalizers import NameNormalizer, default_normalizer


def levenshtein(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def key_similarity(key_a: str, key_b: str) -> float:
    """Similarity of two already-normalized comparison keys.

    Equal keys (both empty included) score 1.0; one empty key scores 0.0.
    """

    if key_a == key_b:
        return 1.0
    if not key_a or not key_b:
        return 0.0
    return Levenshtein.normalized_similarity(key_a, key_b)


def similarity(a: str | None, b: str | None, *, normalizer: NameNormalizer | None = None) -> float:
    n = normalizer or default_normalizer()
    return key_similarity(n.normalize_for_compare(a), n.normalize_for_compare(b))


__all__ = ["key_similarity", "levenshtein", "similarity"]
