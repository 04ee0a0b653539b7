from __future__ import annotations

import logging

import pytest

from threadline.config import EngineConfig
from threadline.index import InMemoryThreadIndex
from threadline.merging import merge_pass, merge_until_stable, should_merge
from threadline.models import Thread

U = [1.0, 0.0]
V = [0.0, 1.0]


def _thread(make_message, thread_id, participants, keywords, centroid=None, seconds=0):
    message = make_message(f"t{thread_id}", "some content here", author=participants[0], seconds=seconds)
    return Thread.seed(thread_id, [message], participants=participants, keywords=keywords, centroid=centroid)


def _index(*threads: Thread) -> InMemoryThreadIndex:
    index = InMemoryThreadIndex()
    for thread in threads:
        index.add(thread)
    return index


def test_half_of_later_participants_is_enough(make_message) -> None:
    earlier = _thread(make_message, 0, ["alice", "bob"], {"chess"})
    later = _thread(make_message, 1, ["alice", "carol"], {"chess"}, seconds=10)

    assert should_merge(earlier, later, EngineConfig())


def test_too_few_shared_participants_blocks_merge(make_message) -> None:
    earlier = _thread(make_message, 0, ["alice", "bob"], {"chess"}, centroid=U)
    later = _thread(make_message, 1, ["carol", "dave", "alice"], {"chess"}, centroid=U, seconds=10)

    assert not should_merge(earlier, later, EngineConfig())


def test_denylisted_keywords_do_not_count(make_message) -> None:
    earlier = _thread(make_message, 0, ["alice"], {"lol", "lets"})
    later = _thread(make_message, 1, ["alice"], {"lol", "lets"}, seconds=10)

    assert not should_merge(earlier, later, EngineConfig())


@pytest.mark.parametrize(("centroid_a", "centroid_b", "expected"), [(U, U, True), (U, V, False), (None, U, False)])
def test_centroid_similarity_can_justify_merge(make_message, centroid_a, centroid_b, expected) -> None:
    earlier = _thread(make_message, 0, ["alice"], set(), centroid=centroid_a)
    later = _thread(make_message, 1, ["alice"], set(), centroid=centroid_b, seconds=10)

    assert should_merge(earlier, later, EngineConfig()) is expected


def test_merge_keeps_earlier_identity(make_message, base_time) -> None:
    earlier = _thread(make_message, 0, ["alice"], {"chess"}, seconds=30)
    later = _thread(make_message, 1, ["alice", "bob"], {"chess", "rook"}, centroid=U, seconds=0)
    index = _index(earlier, later)
    reparented: list[tuple[int, int]] = []

    pairs = merge_pass(index, EngineConfig(), lambda kept, retired: reparented.append((kept.id, retired.id)))

    assert pairs == [(0, 1)]
    assert reparented == [(0, 1)]
    assert len(index) == 1
    merged = index.get(0)
    assert merged.message_ids == ["t1", "t0"]
    assert merged.participants == ["alice", "bob"]
    assert merged.keywords == {"chess", "rook"}
    assert merged.centroid == U
    assert merged.start_time == base_time


def _chain(make_message) -> InMemoryThreadIndex:
    # Thread 1 only matches thread 0 after absorbing thread 2.
    return _index(
        _thread(make_message, 0, ["alice"], {"chess", "rook", "pawn"}, seconds=0),
        _thread(make_message, 1, ["alice", "bob"], {"openings"}, centroid=U, seconds=10),
        _thread(make_message, 2, ["bob"], {"chess", "rook", "pawn"}, centroid=U, seconds=20),
    )


def test_merge_repeats_until_stable(make_message) -> None:
    index = _chain(make_message)

    report = merge_until_stable(index, EngineConfig())

    assert report.converged
    assert report.merges == 2
    assert report.merged_pairs == [(1, 2), (0, 1)]
    assert [thread.id for thread in index] == [0]


def test_merge_stops_at_pass_bound(make_message, caplog) -> None:
    index = _chain(make_message)

    with caplog.at_level(logging.INFO, logger="threadline.merging"):
        report = merge_until_stable(index, EngineConfig(max_merge_passes=1))

    assert not report.converged
    assert report.passes == 1
    assert report.merges == 1
    assert len(index) == 2
    assert any("merge.bound_reached" in record.getMessage() for record in caplog.records)


def test_merge_is_idempotent(make_message) -> None:
    index = _chain(make_message)
    merge_until_stable(index, EngineConfig())
    snapshot = [(thread.id, thread.message_ids) for thread in index]

    report = merge_until_stable(index, EngineConfig())

    assert report.merges == 0
    assert [(thread.id, thread.message_ids) for thread in index] == snapshot
