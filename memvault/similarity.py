"""
Token-set similarity for near-duplicate memory detection.

Memories are compared as sets of lowercase word tokens; order, punctuation
and repetition are ignored. Used by the prune analysis to flag the weaker of
two near-identical memories.

Author: memvault contributors
"""

from __future__ import annotations

import re
import string
from typing import FrozenSet, Iterable, List, Sequence, Tuple

_PUNCT_TABLE = str.maketrans(string.punctuation, " " * len(string.punctuation))

_WS_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, turn punctuation into spaces, collapse whitespace."""
    text = text.lower().translate(_PUNCT_TABLE)
    return _WS_RE.sub(" ", text).strip()


def token_set(text: str) -> FrozenSet[str]:
    """Distinct word tokens of *text* after normalization."""
    norm = normalize(text)
    return frozenset(norm.split()) if norm else frozenset()


def jaccard_sets(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    """|A ∩ B| / |A ∪ B|; 1.0 when both are empty, 0.0 when only one is."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def jaccard(a: str, b: str) -> float:
    """Token Jaccard similarity of two texts."""
    return jaccard_sets(token_set(a), token_set(b))


def similar_pairs(
    texts: Sequence[str],
    threshold: float,
    groups: Iterable[str] = (),
) -> List[Tuple[int, int]]:
    """Index pairs (i < j) whose Jaccard similarity is >= *threshold*.

    When *groups* is given (one label per text), only texts sharing a label
    are compared.
    """
    labels = list(groups) or [""] * len(texts)
    if len(labels) != len(texts):
        raise ValueError("groups must have one label per text")
    sets = [token_set(t) for t in texts]
    pairs = []
    for i in range(len(sets)):
        for j in range(i + 1, len(sets)):
            if labels[i] != labels[j]:
                continue
            if jaccard_sets(sets[i], sets[j]) >= threshold:
                pairs.append((i, j))
    return pairs
