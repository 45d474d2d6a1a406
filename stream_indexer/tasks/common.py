"""
Common base class for indexer tasks.
Provides consistent run logging to the sync_runs table and per-run metrics.
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, Any, List, Optional

from stream_indexer.database.state_manager import SyncStateManager
from stream_indexer.models import SyncRunLog

logger = logging.getLogger(__name__)


def new_run_id(task_name: str) -> str:
    return f"{task_name}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"


class TaskBase:
    """Base class for backfill and reconciliation runs."""

    def __init__(self, task_name: str, state_manager: SyncStateManager):
        """
        Initialize base task.

        Args:
            task_name: Name of the task for logging and run tracking
            state_manager: Gap ledger and run log
        """
        self.task_name = task_name
        self.state_manager = state_manager
        self._reset_metrics()

    def _reset_metrics(self):
        self.run_id = new_run_id(self.task_name)
        self.processed_entities = 0
        self.failed_entities: List[Any] = []

    def start_task_logging(self, metadata: Optional[Dict[str, Any]] = None) -> SyncRunLog:
        """Start a run: fresh metrics and a "running" row in the run log."""
        self._reset_metrics()
        logger.debug(f"Starting {self.task_name} run {self.run_id}")
        return self.state_manager.log_run_start(
            task_name=self.task_name,
            run_id=self.run_id,
            metadata=metadata or {}
        )

    def complete_task_logging(
        self,
        task_log: SyncRunLog,
        status: str,
        task_metrics: Optional[Dict[str, Any]] = None,
        error_summary: Optional[Dict[str, Any]] = None
    ):
        """Complete run logging."""
        self.state_manager.log_run_completion(
            log_id=task_log.id,
            status=status,
            entities_processed=self.processed_entities,
            entities_failed=len(self.failed_entities),
            task_metrics=task_metrics,
            error_summary=error_summary
        )

    def completion_status(self) -> str:
        if not self.failed_entities:
            return "completed"
        return "partial" if self.processed_entities else "failed"
