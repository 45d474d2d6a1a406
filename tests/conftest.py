import asyncio
from typing import Dict, List, Optional, Set, Tuple

import pytest

from stream_indexer.config.settings import BackfillConfig, LabelConfig, ReconcileConfig, SupervisorConfig
from stream_indexer.database.connection import DatabaseConnection
from stream_indexer.database.state_manager import SyncStateManager
from stream_indexer.database.stream_store import StreamStore
from stream_indexer.exceptions import ChainConnectionError, ChainReadError
from stream_indexer.models import StreamState, StreamType
from stream_indexer.services.chain import (
    AggregateStats,
    ChainEvent,
    StreamRecord,
    StreamSnapshot,
    STREAM_CREATED,
)
from stream_indexer.services.identity import Identity, IdentityEnricher
from stream_indexer.tasks.backfill import BackfillScanner
from stream_indexer.tasks.projector import Projector
from stream_indexer.tasks.reconciler import DriftReconciler

CONTRACT = "0x00000000000000000000000000000000000000c0"
ALICE = "0x00000000000000000000000000000000000000A1"
BOB = "0x00000000000000000000000000000000000000B2"
TAX = "0x00000000000000000000000000000000000000F3"


class FakeChain:
    """In-memory stand-in for ChainHandle."""

    def __init__(self):
        self.head = 0
        self.snapshots: Dict[int, StreamSnapshot] = {}
        self.records: Dict[int, StreamRecord] = {}
        self.logs: List[ChainEvent] = []
        self.failing_ranges: Set[Tuple[int, int]] = set()
        self.failing_blocks: Set[int] = set()
        self.failing_reads: Set[int] = set()
        self.stats = AggregateStats(available_balance=1000, total_allocated=500)
        self.stream_count: Optional[int] = None

        self.log_queries: List[Tuple[int, int]] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.connect_failures = 0
        self.connected = False

        self.live_events: "asyncio.Queue[Optional[ChainEvent]]" = asyncio.Queue()
        self.logs_gate: Optional[asyncio.Event] = None

    def add_stream(
        self,
        stream_id: int,
        worker: str = ALICE,
        deposit: int = 1000,
        withdrawn: int = 0,
        state: StreamState = StreamState.ACTIVE,
        block: Optional[int] = None,
        tx_hash: Optional[str] = None,
        total_paused_duration: int = 0
    ) -> None:
        self.snapshots[stream_id] = StreamSnapshot(
            worker=worker,
            deposit=deposit,
            withdrawn=withdrawn,
            rate_per_second=10,
            start_time=1_700_000_000,
            end_time=1_700_000_100,
            stream_type=StreamType.CONTINUOUS,
            state=state
        )
        self.records[stream_id] = StreamRecord(total_paused_duration=total_paused_duration)
        if block is not None:
            self.logs.append(ChainEvent(
                name=STREAM_CREATED,
                args={"streamId": stream_id, "worker": worker, "amount": deposit},
                tx_hash=tx_hash or f"0x{stream_id:064x}",
                block_number=block
            ))
            self.head = max(self.head, block)

    def set_onchain(self, stream_id: int, **changes) -> None:
        snapshot = self.snapshots[stream_id]
        for key, value in changes.items():
            setattr(snapshot, key, value)

    async def connect(self):
        self.connect_calls += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ChainConnectionError("connection refused")
        self.connected = True

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    async def get_block_number(self) -> int:
        return self.head

    async def get_stream_snapshot(self, stream_id: int) -> StreamSnapshot:
        if stream_id in self.failing_reads or stream_id not in self.snapshots:
            raise ChainReadError(f"getStreamInfo({stream_id}) failed")
        snapshot = self.snapshots[stream_id]
        return StreamSnapshot(**vars(snapshot))

    async def get_stream_record(self, stream_id: int) -> StreamRecord:
        if stream_id in self.failing_reads or stream_id not in self.records:
            raise ChainReadError(f"streams({stream_id}) failed")
        return self.records[stream_id]

    async def get_aggregate_stats(self) -> AggregateStats:
        return self.stats

    async def get_stream_count(self) -> int:
        return self.stream_count if self.stream_count is not None else len(self.snapshots)

    async def get_logs_in_range(self, event_name: str, from_block: int, to_block: int) -> List[ChainEvent]:
        self.log_queries.append((from_block, to_block))
        if self.logs_gate is not None:
            await self.logs_gate.wait()
        if (from_block, to_block) in self.failing_ranges or any(
            from_block <= block <= to_block for block in self.failing_blocks
        ):
            raise ChainReadError(f"query returned more than 10000 results ({from_block}-{to_block})")
        return [
            event for event in self.logs
            if event.name == event_name and from_block <= event.block_number <= to_block
        ]

    async def events(self):
        while True:
            event = await self.live_events.get()
            if event is None:
                raise ChainConnectionError("subscription closed")
            yield event


class FakeIdentityStore:
    def __init__(self, identities: Optional[Dict[str, Identity]] = None):
        self.identities = {k.lower(): v for k, v in (identities or {}).items()}
        self.fail = False
        self.lookups = 0

    async def lookup(self, address: str) -> Optional[Identity]:
        self.lookups += 1
        if self.fail:
            raise RuntimeError("identity store unavailable")
        return self.identities.get(address.lower())


@pytest.fixture
def db():
    connection = DatabaseConnection("sqlite://")
    connection.create_all_tables()
    yield connection
    connection.dispose()


@pytest.fixture
def store(db):
    return StreamStore(db, CONTRACT)


@pytest.fixture
def state_manager(db):
    return SyncStateManager(db)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def identity_store():
    return FakeIdentityStore({ALICE: Identity(name="Alice", email="alice@example.com")})


@pytest.fixture
def enricher(identity_store):
    return IdentityEnricher(identity_store)


@pytest.fixture
def label_config():
    return LabelConfig(default_label="employee", tax_address=TAX.lower())


@pytest.fixture
def projector(chain, store, enricher, label_config):
    return Projector(chain, store, enricher, label_config)


@pytest.fixture
def backfill_config():
    return BackfillConfig(
        lookback_blocks=1000,
        reconnect_lookback_blocks=100,
        chunk_size=25,
        chunk_delay_seconds=0,
        progress_log_every=2
    )


@pytest.fixture
def scanner(chain, projector, state_manager, backfill_config):
    return BackfillScanner(chain, projector, state_manager, backfill_config)


@pytest.fixture
def reconciler(chain, store, projector, scanner, enricher, state_manager):
    return DriftReconciler(
        chain, store, projector, scanner, enricher, state_manager,
        ReconcileConfig(interval_minutes=10, enumerate_stream_count=True, retry_gaps=True),
        lookback_blocks=1000
    )


@pytest.fixture
def fast_supervisor_config():
    return SupervisorConfig(reconnect_delay_seconds=0, backoff_multiplier=1.0, max_reconnect_delay_seconds=0)
