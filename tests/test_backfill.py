import asyncio

import pytest

from stream_indexer.models import GapState
from stream_indexer.services.chain import iter_chunks

from conftest import ALICE, BOB


def test_iter_chunks_covers_inclusive_range():
    assert list(iter_chunks(1000, 1099, 25)) == [
        (1000, 1024), (1025, 1049), (1050, 1074), (1075, 1099)
    ]
    assert list(iter_chunks(0, 10, 100)) == [(0, 10)]
    assert list(iter_chunks(5, 5, 3)) == [(5, 5)]
    assert list(iter_chunks(10, 9, 3)) == []


def test_iter_chunks_rejects_non_positive_size():
    with pytest.raises(ValueError):
        list(iter_chunks(0, 10, 0))


@pytest.mark.asyncio
async def test_failing_chunk_is_isolated_and_recorded(chain, scanner, store, state_manager):
    chain.add_stream(1, worker=ALICE, block=1010)
    chain.add_stream(2, worker=BOB, block=1030)
    chain.add_stream(3, worker=ALICE, block=1060)
    chain.add_stream(4, worker=BOB, block=1080)
    chain.failing_ranges.add((1050, 1074))

    result = await scanner.scan(1000, 1099, 25)

    assert chain.log_queries == [(1000, 1024), (1025, 1049), (1050, 1074), (1075, 1099)]
    assert result.chunks_total == 4
    assert result.chunks_done == 3
    assert result.failed_chunks == [(1050, 1074)]
    assert result.streams_created == 3
    assert store.list_stream_ids() == {1, 2, 4}

    gaps = state_manager.list_pending_gaps()
    assert [(g.from_block, g.to_block, g.state) for g in gaps] == [(1050, 1074, GapState.PENDING.value)]


@pytest.mark.asyncio
async def test_rescan_gap_resolves_after_success(chain, scanner, store, state_manager):
    chain.add_stream(3, block=1060)
    chain.failing_ranges.add((1050, 1074))
    await scanner.scan(1000, 1099, 25)

    assert await scanner.rescan_gap(1050, 1074) is False
    assert state_manager.list_pending_gaps()[0].attempt_count == 2

    chain.failing_ranges.clear()
    assert await scanner.rescan_gap(1050, 1074) is True
    assert state_manager.list_pending_gaps() == []
    assert store.list_stream_ids() == {3}


@pytest.mark.asyncio
async def test_replayed_history_is_idempotent(chain, scanner, store):
    chain.add_stream(1, block=10)
    chain.add_stream(2, block=20)

    first = await scanner.scan(0, 99)
    second = await scanner.scan(0, 99)

    assert first.streams_created == 2
    assert second.events_found == 2
    assert second.streams_created == 0
    assert len(store.list_transactions()) == 2


@pytest.mark.asyncio
async def test_concurrent_scan_is_dropped(chain, scanner):
    chain.logs_gate = asyncio.Event()
    first = asyncio.create_task(scanner.scan(0, 99))
    while not chain.log_queries:
        await asyncio.sleep(0)

    assert scanner.in_progress
    assert await scanner.scan(0, 99) is None
    assert await scanner.scan_recent() is None

    chain.logs_gate.set()
    result = await first
    assert result is not None
    assert result.chunks_total == 4
    assert not scanner.in_progress


@pytest.mark.asyncio
async def test_scan_recent_uses_lookback_window(chain, scanner):
    chain.head = 5040

    result = await scanner.scan_recent(lookback_blocks=50)

    assert (result.from_block, result.to_block) == (4990, 5040)
    assert chain.log_queries[:2] == [(4990, 4999), (5000, 5024)]

    chain.log_queries.clear()
    chain.head = 30
    result = await scanner.scan_recent()
    assert (result.from_block, result.to_block) == (0, 30)


@pytest.mark.asyncio
async def test_scan_writes_run_log_and_refreshes_stats(chain, scanner, store, state_manager):
    chain.add_stream(1, block=10)
    chain.failing_ranges.add((25, 49))

    await scanner.scan(0, 99)

    run = state_manager.latest_runs(1)[0]
    assert run.task_name == "backfill"
    assert run.status == "partial"
    assert run.entities_processed == 3
    assert run.entities_failed == 1
    assert run.task_metrics["streams_created"] == 1
    assert run.error_summary == {"failed_chunks": [[25, 49]]}
    assert store.get_stats().last_updated_block == 99


def test_aligned_chunks_end_on_chunk_boundaries():
    assert list(iter_chunks(4990, 5040, 25, aligned=True)) == [(4990, 4999), (5000, 5024), (5025, 5040)]
    assert list(iter_chunks(1000, 1099, 25, aligned=True)) == list(iter_chunks(1000, 1099, 25))


@pytest.mark.asyncio
async def test_failing_block_keeps_one_gap_as_head_advances(chain, scanner, state_manager):
    chain.failing_blocks.add(1050)
    pending = []

    for head in (1500, 1510, 1520, 1530):
        chain.head = head
        await scanner.scan_recent(lookback_blocks=1000)
        pending.append(len(state_manager.list_pending_gaps()))

    assert pending == [1, 1, 1, 1]
    gap = state_manager.list_pending_gaps()[0]
    assert (gap.from_block, gap.to_block) == (1050, 1074)
    assert gap.attempt_count == 4


def test_overlapping_failures_merge_into_pending_gap(state_manager):
    state_manager.record_gap(100, 124, "timeout")
    state_manager.record_gap(110, 130, "timeout")
    state_manager.record_gap(200, 224, "timeout")

    gaps = state_manager.list_pending_gaps()
    assert [(g.from_block, g.to_block, g.attempt_count) for g in gaps] == [(100, 130, 2), (200, 224, 1)]


@pytest.mark.asyncio
async def test_merged_gap_resolves_on_rescan(chain, scanner, store, state_manager):
    chain.add_stream(5, block=120)
    state_manager.record_gap(100, 124, "timeout")
    state_manager.record_gap(110, 130, "timeout")

    assert await scanner.rescan_gap(100, 130) is True
    assert chain.log_queries == [(100, 130)]
    assert state_manager.list_pending_gaps() == []
    assert store.list_stream_ids() == {5}
