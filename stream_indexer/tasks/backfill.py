"""
Historical backfill scanner - replays StreamCreated logs from past blocks.

Scans an inclusive block range in fixed-size chunks sized to the provider's
eth_getLogs cap. A failing chunk is logged, recorded as a backfill gap and
skipped. Only one scan runs at a time; a request made while a scan is in
flight is dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from stream_indexer.config.settings import BackfillConfig
from stream_indexer.database.state_manager import SyncStateManager
from stream_indexer.services.chain import ChainEvent, ChainHandle, STREAM_CREATED, iter_chunks
from stream_indexer.tasks.common import TaskBase
from stream_indexer.tasks.projector import Projector

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    from_block: int
    to_block: int
    chunks_total: int = 0
    chunks_done: int = 0
    failed_chunks: List[Tuple[int, int]] = field(default_factory=list)
    events_found: int = 0
    streams_created: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed_chunks


class BackfillScanner(TaskBase):
    """Chunked, throttled, single-flight StreamCreated scanner."""

    def __init__(
        self,
        chain: ChainHandle,
        projector: Projector,
        state_manager: SyncStateManager,
        config: Optional[BackfillConfig] = None
    ):
        super().__init__("backfill", state_manager)
        self.chain = chain
        self.projector = projector
        self.config = config or BackfillConfig()
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def scan(
        self,
        from_block: int,
        to_block: int,
        chunk_size: Optional[int] = None
    ) -> Optional[ScanResult]:
        """Scan an inclusive block range.

        Returns:
            ScanResult, or None if another scan was already running
        """
        if self._lock.locked():
            logger.info(f"Backfill already in progress, dropping request for blocks {from_block}-{to_block}")
            return None

        async with self._lock:
            return await self._scan(from_block, to_block, chunk_size or self.config.chunk_size, aligned=True)

    async def scan_recent(self, lookback_blocks: Optional[int] = None) -> Optional[ScanResult]:
        """Scan [max(0, head - lookback), head].

        Raises:
            ChainReadError: If the chain head cannot be read
        """
        if self._lock.locked():
            logger.info("Backfill already in progress, dropping lookback request")
            return None

        lookback = self.config.lookback_blocks if lookback_blocks is None else lookback_blocks
        head = await self.chain.get_block_number()
        return await self.scan(max(0, head - lookback), head)

    async def rescan_gap(self, from_block: int, to_block: int) -> Optional[bool]:
        """Rescan a recorded gap as a single chunk and resolve it on success.

        Returns:
            True if resolved, False if it failed again, None if a scan was already running
        """
        if self._lock.locked():
            logger.info(f"Backfill already in progress, dropping gap rescan {from_block}-{to_block}")
            return None

        async with self._lock:
            result = await self._scan(from_block, to_block, to_block - from_block + 1, aligned=False)
        if result.complete:
            self.state_manager.resolve_gap(from_block, to_block)
            return True
        return False

    async def _scan(self, from_block: int, to_block: int, chunk_size: int, aligned: bool) -> ScanResult:
        chunks = list(iter_chunks(from_block, to_block, chunk_size, aligned))
        result = ScanResult(from_block=from_block, to_block=to_block, chunks_total=len(chunks))
        task_log = self.start_task_logging({
            "from_block": from_block,
            "to_block": to_block,
            "chunk_size": chunk_size
        })
        logger.info(f"Backfilling blocks {from_block}-{to_block} in {len(chunks)} chunks of {chunk_size}")

        try:
            for index, (start, end) in enumerate(chunks, start=1):
                try:
                    events = await self.chain.get_logs_in_range(STREAM_CREATED, start, end)
                except Exception as e:
                    logger.error(f"Backfill chunk {start}-{end} failed: {e}")
                    self.state_manager.record_gap(start, end, str(e))
                    self.failed_entities.append((start, end))
                    result.failed_chunks.append((start, end))
                else:
                    self.processed_entities += 1
                    result.chunks_done += 1
                    result.events_found += len(events)
                    for event in events:
                        if await self._replay(event):
                            result.streams_created += 1

                if index % self.config.progress_log_every == 0:
                    logger.info(f"Backfill progress: {index / len(chunks) * 100:.1f}% ({index}/{len(chunks)} chunks)")

                if index < len(chunks) and self.config.chunk_delay_seconds > 0:
                    await asyncio.sleep(self.config.chunk_delay_seconds)

        except asyncio.CancelledError:
            self.complete_task_logging(task_log, "cancelled", self._metrics(result))
            raise
        except Exception as e:
            logger.error(f"Backfill {from_block}-{to_block} aborted: {e}")
            self.complete_task_logging(task_log, "failed", self._metrics(result), {"error": str(e)})
            raise

        status = self.completion_status() if chunks else "completed"
        error_summary = {"failed_chunks": result.failed_chunks} if result.failed_chunks else None
        self.complete_task_logging(task_log, status, self._metrics(result), error_summary)

        logger.info(
            f"Backfill {from_block}-{to_block} done: {result.events_found} StreamCreated events, "
            f"{result.streams_created} new streams, {len(result.failed_chunks)} failed chunks"
        )
        if result.streams_created:
            await self.projector.refresh_stats(block_number=to_block)
        return result

    async def _replay(self, event: ChainEvent) -> bool:
        """Send a historical StreamCreated through the live creation path."""
        try:
            return await self.projector.on_stream_created(
                event.args["streamId"], event.args.get("worker"), event.args.get("amount"),
                event.tx_hash, event.block_number
            )
        except Exception as e:
            logger.error(f"Replay of StreamCreated {event.args.get('streamId')} failed: {e}")
            return False

    @staticmethod
    def _metrics(result: ScanResult) -> dict:
        return {
            "chunks_total": result.chunks_total,
            "chunks_done": result.chunks_done,
            "events_found": result.events_found,
            "streams_created": result.streams_created
        }
