import asyncio

import pytest

from stream_indexer.config.settings import Settings
from stream_indexer.database.connection import DatabaseConnection
from stream_indexer.indexer import StreamIndexer

from conftest import CONTRACT


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("CONTRACT_ADDRESS", CONTRACT)
    monkeypatch.setenv("RPC_URL", "wss://rpc.example")
    settings = Settings(str(tmp_path / "absent.yaml"))
    settings.backfill.chunk_delay_seconds = 0
    return settings


@pytest.fixture
def indexer(settings, db, chain, enricher):
    return StreamIndexer(settings, db=db, chain=chain, enricher=enricher)


@pytest.mark.asyncio
async def test_start_backfills_reconciles_and_listens(indexer, chain):
    chain.add_stream(0, block=120)
    chain.add_stream(1, block=140)

    await indexer.start()
    try:
        assert indexer.supervisor.listening
        assert sorted(indexer.store.list_stream_ids()) == [0, 1]
        assert [run.task_name for run in indexer.state_manager.latest_runs()] == ["reconcile", "backfill"]
        assert indexer.store.get_stats().total_streams == 2
    finally:
        await indexer.stop()

    assert not indexer.supervisor.listening
    assert chain.disconnect_calls == 1


@pytest.mark.asyncio
async def test_run_forever_stops_on_request(indexer, chain):
    task = asyncio.create_task(indexer.run_forever())
    while not indexer.supervisor.listening:
        await asyncio.sleep(0.01)

    indexer.request_stop()
    await asyncio.wait_for(task, timeout=2)

    assert chain.connect_calls == 1
    assert chain.disconnect_calls == 1


@pytest.mark.asyncio
async def test_connected_context_disconnects(indexer, chain):
    async with indexer.connected():
        assert chain.connected

    assert not chain.connected


def count_dispose_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(DatabaseConnection, "dispose", lambda self: calls.append(self))
    return calls


@pytest.mark.asyncio
async def test_stop_closes_database_it_created(settings, chain, enricher, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    calls = count_dispose_calls(monkeypatch)
    indexer = StreamIndexer(settings, chain=chain, enricher=enricher)

    await indexer.stop()

    assert calls == [indexer.db]


@pytest.mark.asyncio
async def test_stop_leaves_supplied_database_open(indexer, monkeypatch):
    calls = count_dispose_calls(monkeypatch)

    await indexer.stop()

    assert calls == []
