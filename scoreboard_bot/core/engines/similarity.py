from __future__ import annotations

from rapidfuzz.distance import Levenshtein

CONTAINMENT_SCORE = 0.95
LENGTH_BONUS_WEIGHT = 0.1


def levenshtein(a: str, b: str) -> int:
    """Edit distance (insert/delete/substitute, unit cost)."""
    return Levenshtein.distance(a, b)


def similarity(a: str, b: str) -> float:
    """
    Score two normalised nicknames in [0, 1].

    Equal strings score 1.0, non-empty containment scores 0.95, everything else
    scores ``1 - d / max_len`` plus a small bonus for similar lengths, capped at 1.0.
    """
    if a == b:
        return 1.0
    if a and b and (a in b or b in a):
        return CONTAINMENT_SCORE

    max_len = max(len(a), len(b))
    base = 1.0 - levenshtein(a, b) / max_len
    length_similarity = 1.0 - abs(len(a) - len(b)) / max_len
    return min(1.0, base + LENGTH_BONUS_WEIGHT * length_similarity)
