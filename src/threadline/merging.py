"""Merge pass that reconciles over-fragmented threads."""

from __future__ import annotations

import logging
from typing import Callable

from .config import EngineConfig
from .index import ThreadIndex
from .models import MergeReport, Thread
from .similarity import cosine_similarity, keyword_overlap_ratio, participant_overlap_ratio

logger = logging.getLogger(__name__)

MergeCallback = Callable[[Thread, Thread], None]


def should_merge(earlier: Thread, later: Thread, config: EngineConfig) -> bool:
    """Return True when ``later`` belongs in ``earlier``.

    Enough of the later thread's participants must already be in the earlier
    one, and the two must share topic: keyword overlap at or above the ratio,
    or centroids closer than the merge similarity threshold.
    """

    if participant_overlap_ratio(later.participants, earlier.participants) < config.merge_participant_ratio:
        return False
    overlap = keyword_overlap_ratio(earlier.keywords, later.keywords, config.tables.overlap_denylist)
    if overlap >= config.merge_keyword_ratio:
        return True
    if earlier.centroid is not None and later.centroid is not None:
        return cosine_similarity(earlier.centroid, later.centroid) > config.merge_similarity_threshold
    return False


def merge_pass(index: ThreadIndex, config: EngineConfig, on_merge: MergeCallback | None = None) -> list[tuple[int, int]]:
    """Run one all-pairs scan, merging later threads into earlier ones in place."""

    threads = list(index)
    retired: set[int] = set()
    merged: list[tuple[int, int]] = []
    for position, earlier in enumerate(threads):
        if earlier.id in retired:
            continue
        for later in threads[position + 1 :]:
            if later.id in retired or not should_merge(earlier, later, config):
                continue
            earlier.absorb(later)
            index.remove(later.id)
            retired.add(later.id)
            merged.append((earlier.id, later.id))
            logger.debug("merge.pair kept=%s retired=%s", earlier.id, later.id)
            if on_merge is not None:
                on_merge(earlier, later)
    return merged


def merge_until_stable(
    index: ThreadIndex,
    config: EngineConfig,
    on_merge: MergeCallback | None = None,
) -> MergeReport:
    """Repeat merge passes until one makes no merge or ``max_merge_passes`` is reached."""

    report = MergeReport(converged=len(index) < 2)
    while not report.converged and report.passes < config.max_merge_passes:
        pairs = merge_pass(index, config, on_merge)
        report.passes += 1
        report.merges += len(pairs)
        report.merged_pairs.extend(pairs)
        if not pairs or len(index) < 2:
            report.converged = True
    if not report.converged:
        logger.info(
            "merge.bound_reached passes=%s merges=%s threads=%s",
            report.passes,
            report.merges,
            len(index),
        )
    return report
