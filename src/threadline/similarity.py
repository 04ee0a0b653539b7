"""Similarity primitives used for assignment scoring and the merge pass."""

from __future__ import annotations

import logging
import math
from typing import Collection, Iterable, Sequence

logger = logging.getLogger(__name__)


def cosine_similarity(vec_a: Sequence[float] | None, vec_b: Sequence[float] | None) -> float:
    """Return the cosine of two vectors, or 0.0 when it is undefined."""

    if not vec_a or not vec_b:
        return 0.0
    if len(vec_a) != len(vec_b):
        logger.debug("similarity.dimension_mismatch a=%s b=%s", len(vec_a), len(vec_b))
        return 0.0
    dot = sum(float(a) * float(b) for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(float(a) * float(a) for a in vec_a))
    norm_b = math.sqrt(sum(float(b) * float(b) for b in vec_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    result = dot / (norm_a * norm_b)
    if not math.isfinite(result):
        return 0.0
    return result


def _filtered(words: Iterable[str], denylist: Collection[str]) -> set[str]:
    return {word.lower() for word in words if word and word.lower() not in denylist}


def keyword_overlap_ratio(
    keywords_a: Iterable[str],
    keywords_b: Iterable[str],
    denylist: Collection[str] = (),
) -> float:
    """``|A ∩ B| / max(|A|, |B|, 1)`` over lower-cased, denylist-filtered keywords."""

    set_a = _filtered(keywords_a, denylist)
    set_b = _filtered(keywords_b, denylist)
    return len(set_a & set_b) / max(len(set_a), len(set_b), 1)


def participant_overlap_ratio(candidate: Collection[str], reference: Collection[str]) -> float:
    """Fraction of ``candidate`` participants that also appear in ``reference``."""

    members = set(candidate)
    if not members:
        return 0.0
    return len(members & set(reference)) / len(members)
