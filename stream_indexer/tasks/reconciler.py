"""
Drift reconciler - periodic safety net against missed or abandoned events.

Each pass re-reads every non-terminal stream from the chain and corrects the
mirrored state/withdrawn values, retries identity enrichment for unnamed
workers, runs a deep backfill, rescans recorded backfill gaps, creates any
stream id below streamCount() that is still missing and refreshes the
contract stats.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from stream_indexer.config.settings import ReconcileConfig
from stream_indexer.database.state_manager import SyncStateManager
from stream_indexer.database.stream_store import StreamStore
from stream_indexer.models import Stream
from stream_indexer.services.chain import ChainHandle
from stream_indexer.services.identity import IdentityEnricher, needs_identity
from stream_indexer.tasks.backfill import BackfillScanner, ScanResult
from stream_indexer.tasks.common import TaskBase
from stream_indexer.tasks.projector import Projector

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    streams_checked: int = 0
    streams_corrected: int = 0
    identities_resolved: int = 0
    streams_failed: int = 0
    backfill: Optional[ScanResult] = None
    gaps_resolved: int = 0
    gaps_failed: int = 0
    streams_synced: int = 0
    sync_failed: int = 0
    stats_refreshed: bool = False

    def as_metrics(self) -> Dict[str, Any]:
        return {
            "streams_checked": self.streams_checked,
            "streams_corrected": self.streams_corrected,
            "identities_resolved": self.identities_resolved,
            "streams_failed": self.streams_failed,
            "backfill_streams_created": self.backfill.streams_created if self.backfill else None,
            "backfill_failed_chunks": len(self.backfill.failed_chunks) if self.backfill else None,
            "gaps_resolved": self.gaps_resolved,
            "gaps_failed": self.gaps_failed,
            "streams_synced": self.streams_synced,
            "sync_failed": self.sync_failed,
            "stats_refreshed": self.stats_refreshed
        }


class DriftReconciler(TaskBase):
    """Converges the mirror to the chain's authoritative state."""

    def __init__(
        self,
        chain: ChainHandle,
        store: StreamStore,
        projector: Projector,
        scanner: BackfillScanner,
        enricher: IdentityEnricher,
        state_manager: SyncStateManager,
        config: Optional[ReconcileConfig] = None,
        lookback_blocks: int = 100000
    ):
        super().__init__("reconcile", state_manager)
        self.chain = chain
        self.store = store
        self.projector = projector
        self.scanner = scanner
        self.enricher = enricher
        self.config = config or ReconcileConfig()
        self.lookback_blocks = lookback_blocks

    async def run_periodically(self) -> None:
        """Run a pass every interval until cancelled. A failed pass never stops the loop."""
        interval = self.config.interval_minutes * 60
        logger.info(f"Reconciler scheduled every {self.config.interval_minutes} minutes")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Reconciliation pass failed: {e}")

    async def run_once(self, backfill: bool = True) -> ReconcileResult:
        """Run one full reconciliation pass."""
        result = ReconcileResult()
        task_log = self.start_task_logging({"backfill": backfill, "lookback_blocks": self.lookback_blocks})
        logger.info("Running stream reconciliation")

        try:
            await self._sweep(result)

            if backfill:
                try:
                    result.backfill = await self.scanner.scan_recent(self.lookback_blocks)
                except Exception as e:
                    logger.error(f"Deep backfill during reconciliation failed: {e}")

            if self.config.retry_gaps:
                await self.retry_gaps(result)

            if self.config.enumerate_stream_count:
                await self.sync_all_streams(result)

            result.stats_refreshed = await self.projector.refresh_stats(include_count=True)

        except asyncio.CancelledError:
            self.complete_task_logging(task_log, "cancelled", result.as_metrics())
            raise
        except Exception as e:
            self.complete_task_logging(task_log, "failed", result.as_metrics(), {"error": str(e)})
            raise

        self.complete_task_logging(
            task_log,
            self.completion_status(),
            result.as_metrics(),
            {"failed_streams": self.failed_entities} if self.failed_entities else None
        )
        logger.info(
            f"Reconciliation done: {result.streams_checked} checked, {result.streams_corrected} corrected, "
            f"{result.identities_resolved} identities resolved, {result.streams_failed} failed, "
            f"{result.gaps_resolved} gaps resolved, {result.streams_synced} streams synced"
        )
        return result

    async def _sweep(self, result: ReconcileResult) -> None:
        for stream in self.store.list_non_terminal_streams():
            result.streams_checked += 1
            try:
                changed = await self.verify_stream(stream, result)
            except Exception as e:
                logger.error(f"Error verifying stream {stream.stream_id}: {e}")
                result.streams_failed += 1
                self.failed_entities.append(stream.stream_id)
                continue

            self.processed_entities += 1
            if changed:
                result.streams_corrected += 1

    async def verify_stream(self, stream: Stream, result: Optional[ReconcileResult] = None) -> bool:
        """Compare one mirrored stream with the chain and correct drift.

        Returns:
            True if the row was updated

        Raises:
            ChainReadError: If the stream cannot be read from the chain
        """
        snapshot = await self.chain.get_stream_snapshot(stream.stream_id)
        changes: Dict[str, Any] = {}

        if stream.state != snapshot.state.value:
            changes["state"] = snapshot.state.value
        if stream.withdrawn != str(snapshot.withdrawn):
            changes["withdrawn"] = str(snapshot.withdrawn)

        if snapshot.withdrawn > snapshot.deposit:
            logger.warning(
                f"Stream {stream.stream_id} withdrawn {snapshot.withdrawn} exceeds deposit {snapshot.deposit}"
            )

        if needs_identity(stream.worker_name):
            identity = await self.enricher.resolve(stream.worker_address)
            if not identity.is_unknown:
                changes["worker_name"] = identity.name
                changes["worker_email"] = identity.email
                logger.info(f"Resolved identity for stream {stream.stream_id}: {identity.name}")
                if result is not None:
                    result.identities_resolved += 1

        if not changes:
            return False

        logger.warning(f"Drift found for stream {stream.stream_id}: {sorted(changes)}")
        self.store.update_stream_fields(stream.stream_id, changes)
        return True

    async def retry_gaps(self, result: Optional[ReconcileResult] = None) -> None:
        """Rescan every pending backfill gap."""
        gaps = self.state_manager.list_pending_gaps()
        if not gaps:
            return

        logger.info(f"Retrying {len(gaps)} backfill gaps")
        for gap in gaps:
            resolved = await self.scanner.rescan_gap(gap.from_block, gap.to_block)
            if resolved is None:
                logger.info("Scanner busy, leaving remaining gaps for the next pass")
                break
            if result is not None:
                if resolved:
                    result.gaps_resolved += 1
                else:
                    result.gaps_failed += 1

    async def sync_all_streams(self, result: Optional[ReconcileResult] = None) -> Dict[str, int]:
        """Create every stream id in [0, streamCount()) that is missing from the mirror.

        Returns:
            Counts of on-chain, missing, created and failed streams
        """
        try:
            count = await self.chain.get_stream_count()
        except Exception as e:
            logger.error(f"Could not read streamCount(): {e}")
            return {"on_chain": 0, "missing": 0, "created": 0, "failed": 0}

        existing = self.store.list_stream_ids()
        missing = [stream_id for stream_id in range(count) if stream_id not in existing]
        created = 0
        failed = 0

        for stream_id in missing:
            try:
                ok = await self.projector.on_stream_created(stream_id)
            except Exception as e:
                logger.error(f"Error syncing stream {stream_id}: {e}")
                ok = False

            if ok:
                created += 1
            else:
                failed += 1

        if missing:
            logger.info(f"Stream count sync: {count} on chain, {len(missing)} missing, {created} created, {failed} failed")
        if result is not None:
            result.streams_synced += created
            result.sync_failed += failed
        return {"on_chain": count, "missing": len(missing), "created": created, "failed": failed}
