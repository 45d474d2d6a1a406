"""
State manager for sync bookkeeping.
Tracks failed backfill chunk ranges and logs every backfill / reconciliation run.
"""

import logging
from datetime import datetime
from typing import List, Dict, Any, Optional
from sqlalchemy import and_
from sqlmodel import Session, select, col

from stream_indexer.database.connection import DatabaseConnection
from stream_indexer.models import BackfillGap, GapState, SyncRunLog

logger = logging.getLogger(__name__)


class SyncStateManager:
    """Manages the backfill gap ledger and the sync run log."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    # Backfill gaps

    def record_gap(self, from_block: int, to_block: int, error_message: str) -> BackfillGap:
        """Record (or re-open) a block range whose log query failed.

        A range overlapping a pending gap is merged into it, so a block that
        keeps failing under shifting scan windows stays a single gap.

        Args:
            from_block: First block of the failed chunk
            to_block: Last block of the failed chunk
            error_message: Error returned by the provider

        Returns:
            BackfillGap record
        """
        with self.db.get_session() as session:
            existing_gap = self._find_gap(session, from_block, to_block)
            if existing_gap is None:
                existing_gap = self._find_overlapping_pending_gap(session, from_block, to_block)
                if existing_gap is not None:
                    self._widen_gap(session, existing_gap, from_block, to_block)
            now = datetime.utcnow()

            if existing_gap:
                existing_gap.state = GapState.PENDING.value
                existing_gap.attempt_count += 1
                existing_gap.error_message = error_message[:1000]
                existing_gap.updated_at = now
                existing_gap.resolved_at = None
                gap = existing_gap
            else:
                gap = BackfillGap(
                    from_block=from_block,
                    to_block=to_block,
                    state=GapState.PENDING.value,
                    attempt_count=1,
                    error_message=error_message[:1000],
                    created_at=now,
                    updated_at=now
                )

            session.add(gap)
            session.commit()
            session.refresh(gap)
            return gap

    def resolve_gap(self, from_block: int, to_block: int) -> bool:
        """Mark a gap as resolved after a successful rescan.

        Returns:
            True if a pending gap matched the range
        """
        with self.db.get_session() as session:
            gap = self._find_gap(session, from_block, to_block)
            if not gap or gap.state == GapState.RESOLVED.value:
                return False

            now = datetime.utcnow()
            gap.state = GapState.RESOLVED.value
            gap.resolved_at = now
            gap.updated_at = now
            session.add(gap)
            session.commit()
            logger.info(f"Backfill gap {from_block}-{to_block} resolved")
            return True

    def list_pending_gaps(self, limit: Optional[int] = None) -> List[BackfillGap]:
        """Get gaps that still need a rescan, oldest block first."""
        with self.db.get_session() as session:
            query = select(BackfillGap).where(
                BackfillGap.state == GapState.PENDING.value
            ).order_by(BackfillGap.from_block)
            if limit:
                query = query.limit(limit)
            return list(session.exec(query).all())

    def _find_gap(self, session: Session, from_block: int, to_block: int) -> Optional[BackfillGap]:
        return session.exec(
            select(BackfillGap).where(
                and_(
                    BackfillGap.from_block == from_block,
                    BackfillGap.to_block == to_block
                )
            )
        ).first()

    def _find_overlapping_pending_gap(self, session: Session, from_block: int, to_block: int) -> Optional[BackfillGap]:
        return session.exec(
            select(BackfillGap).where(
                and_(
                    BackfillGap.state == GapState.PENDING.value,
                    BackfillGap.from_block <= to_block,
                    BackfillGap.to_block >= from_block
                )
            ).order_by(BackfillGap.from_block)
        ).first()

    def _widen_gap(self, session: Session, gap: BackfillGap, from_block: int, to_block: int) -> None:
        new_from = min(gap.from_block, from_block)
        new_to = max(gap.to_block, to_block)
        if (new_from, new_to) == (gap.from_block, gap.to_block):
            return

        # A resolved row may already hold the widened range
        stale = self._find_gap(session, new_from, new_to)
        if stale is not None:
            session.delete(stale)
            session.flush()

        logger.debug(f"Merging failed range {from_block}-{to_block} into gap {gap.from_block}-{gap.to_block}")
        gap.from_block = new_from
        gap.to_block = new_to

    # Run log

    def log_run_start(
        self,
        task_name: str,
        run_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SyncRunLog:
        """Log the start of a backfill or reconciliation run.

        Args:
            task_name: Name of the task
            run_id: Unique run identifier
            metadata: Optional run parameters

        Returns:
            SyncRunLog record
        """
        with self.db.get_session() as session:
            log_entry = SyncRunLog(
                task_name=task_name,
                run_id=run_id,
                started_at=datetime.utcnow(),
                status="running",
                task_metrics=metadata
            )

            session.add(log_entry)
            session.commit()
            session.refresh(log_entry)
            return log_entry

    def log_run_completion(
        self,
        log_id: int,
        status: str,
        entities_processed: int = 0,
        entities_failed: int = 0,
        task_metrics: Optional[Dict[str, Any]] = None,
        error_summary: Optional[Dict[str, Any]] = None
    ) -> Optional[SyncRunLog]:
        """Log the completion of a run.

        Args:
            log_id: ID of the SyncRunLog record
            status: Final status of the run
            entities_processed: Number of chunks or streams processed
            entities_failed: Number of chunks or streams that failed
            task_metrics: Run-specific metrics
            error_summary: Summary of errors if any

        Returns:
            Updated SyncRunLog record
        """
        with self.db.get_session() as session:
            log_entry = session.get(SyncRunLog, log_id)
            if log_entry:
                now = datetime.utcnow()
                log_entry.completed_at = now
                log_entry.duration_seconds = (now - log_entry.started_at).total_seconds()
                log_entry.status = status
                log_entry.entities_processed = entities_processed
                log_entry.entities_failed = entities_failed
                log_entry.task_metrics = task_metrics
                log_entry.error_summary = error_summary

                session.add(log_entry)
                session.commit()
                session.refresh(log_entry)

            return log_entry

    def latest_runs(self, limit: int = 10) -> List[SyncRunLog]:
        with self.db.get_session() as session:
            return list(session.exec(
                select(SyncRunLog).order_by(col(SyncRunLog.started_at).desc()).limit(limit)
            ).all())
