"""
Stream indexer - wires the chain handle, mirror store and tasks together and
runs the live indexing service.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from stream_indexer.config.settings import Settings
from stream_indexer.database.connection import DatabaseConnection
from stream_indexer.database.state_manager import SyncStateManager
from stream_indexer.database.stream_store import StreamStore
from stream_indexer.services.chain import ChainHandle
from stream_indexer.services.identity import IdentityEnricher, create_identity_enricher
from stream_indexer.tasks.backfill import BackfillScanner
from stream_indexer.tasks.projector import Projector
from stream_indexer.tasks.reconciler import DriftReconciler
from stream_indexer.tasks.subscriber import LiveSubscriber
from stream_indexer.tasks.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


class StreamIndexer:
    """Owns every component and the long-running background tasks."""

    def __init__(
        self,
        settings: Settings,
        db: Optional[DatabaseConnection] = None,
        chain: Optional[ChainHandle] = None,
        enricher: Optional[IdentityEnricher] = None
    ):
        self.settings = settings
        self._owns_db = db is None
        self.db = db or DatabaseConnection(settings.get_database_url(), settings.database)
        self.chain = chain or ChainHandle(settings.chain)

        self.store = StreamStore(self.db, settings.chain.contract_address)
        self.state_manager = SyncStateManager(self.db)
        self.enricher = enricher or create_identity_enricher(settings.identity, self.db)

        self.projector = Projector(self.chain, self.store, self.enricher, settings.label)
        self.scanner = BackfillScanner(self.chain, self.projector, self.state_manager, settings.backfill)
        self.subscriber = LiveSubscriber(self.projector)
        self.supervisor = ConnectionSupervisor(
            self.chain,
            self.subscriber,
            self.scanner,
            settings.supervisor,
            reconnect_lookback_blocks=settings.backfill.reconnect_lookback_blocks
        )
        self.reconciler = DriftReconciler(
            self.chain,
            self.store,
            self.projector,
            self.scanner,
            self.enricher,
            self.state_manager,
            settings.reconcile,
            lookback_blocks=settings.backfill.lookback_blocks
        )

        self._reconcile_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Connect, catch up and schedule the periodic reconciler.

        Raises:
            ChainConnectionError: If the chain cannot be reached at startup
        """
        self._stop_event.clear()
        await self.supervisor.start()

        try:
            await self.scanner.scan_recent()
        except Exception as e:
            logger.error(f"Initial backfill failed: {e}")

        try:
            await self.reconciler.run_once(backfill=False)
        except Exception as e:
            logger.exception(f"Initial reconciliation failed: {e}")

        self._reconcile_task = asyncio.create_task(self.reconciler.run_periodically(), name="reconciler")
        logger.info("Stream indexer started")

    async def stop(self) -> None:
        if self._reconcile_task and not self._reconcile_task.done():
            self._reconcile_task.cancel()
            await asyncio.gather(self._reconcile_task, return_exceptions=True)
        await self.supervisor.stop()
        if self._owns_db:
            self.db.dispose()
        logger.info("Stream indexer stopped")

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run_forever(self) -> None:
        """Start the service and block until request_stop() is called."""
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    @asynccontextmanager
    async def connected(self) -> AsyncIterator["StreamIndexer"]:
        """Chain connection for one-shot commands that do not listen."""
        await self.chain.connect()
        try:
            yield self
        finally:
            await self.chain.disconnect()
