"""
similarity.py - String distance primitives shared by matching and learning.

    edit_distance(a, b)          -> Levenshtein distance
    similarity(a, b)             -> 1 - distance / max(len(a), len(b))
    token_similarity(query, t)   -> length-weighted best-token similarity

rapidfuzz does the distance computation; the normalization to [0, 1] is done
here explicitly so that empty-string behavior is fixed:
two empty strings are identical (1.0), one empty string matches nothing (0.0).
"""

from __future__ import annotations

import re

from rapidfuzz.distance import Levenshtein

_TOKEN_SPLIT = re.compile(r"\s+")


def edit_distance(a: str, b: str) -> int:
    """Number of single-character insertions, deletions or substitutions."""
    return Levenshtein.distance(a or "", b or "")


def similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1]."""
    a = a or ""
    b = b or ""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    longest = max(len(a), len(b))
    return 1.0 - edit_distance(a, b) / longest


def token_similarity(query: str, target: str) -> float:
    """Score each token of `target` against its closest token in `query`.

    Scores are averaged weighted by target token length, so long tokens
    ("mustermann") count more than short ones ("str"). Extra tokens in the
    query do not lower the score; missing tokens in the query do.
    """
    target_tokens = [tok for tok in _TOKEN_SPLIT.split((target or "").strip()) if tok]
    query_tokens = [tok for tok in _TOKEN_SPLIT.split((query or "").strip()) if tok]
    if not target_tokens and not query_tokens:
        return 1.0
    if not target_tokens or not query_tokens:
        return 0.0

    weighted = 0.0
    total_weight = 0
    for token in target_tokens:
        best = max(similarity(token, candidate) for candidate in query_tokens)
        weighted += best * len(token)
        total_weight += len(token)
    return weighted / total_weight
