"""
Read-only status API for the indexer.
Reports database health, mirror counts, contract stats, pending backfill gaps
and the most recent sync runs.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from stream_indexer import __version__
from stream_indexer.database.connection import DatabaseConnection
from stream_indexer.database.state_manager import SyncStateManager
from stream_indexer.database.stream_store import StreamStore

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    database: Dict[str, Any]


class GapInfo(BaseModel):
    from_block: int
    to_block: int
    attempt_count: int
    error_message: Optional[str] = None


class RunInfo(BaseModel):
    task_name: str
    run_id: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    entities_processed: int = 0
    entities_failed: int = 0


class StatusResponse(BaseModel):
    contract_address: str
    counts: Dict[str, Any]
    stats: Optional[Dict[str, Any]] = None
    pending_gaps: List[GapInfo]
    recent_runs: List[RunInfo]


def collect_status(store: StreamStore, state_manager: SyncStateManager, runs: int = 10) -> StatusResponse:
    """Gather the mirror status from the database."""
    stats = store.get_stats()
    return StatusResponse(
        contract_address=store.contract_address,
        counts=store.get_counts(),
        stats={
            "available_balance": stats.available_balance,
            "total_allocated": stats.total_allocated,
            "total_streams": stats.total_streams,
            "last_updated_block": stats.last_updated_block,
            "updated_at": stats.updated_at.isoformat()
        } if stats else None,
        pending_gaps=[
            GapInfo(
                from_block=gap.from_block,
                to_block=gap.to_block,
                attempt_count=gap.attempt_count,
                error_message=gap.error_message
            )
            for gap in state_manager.list_pending_gaps()
        ],
        recent_runs=[
            RunInfo(
                task_name=run.task_name,
                run_id=run.run_id,
                status=run.status,
                started_at=run.started_at,
                completed_at=run.completed_at,
                entities_processed=run.entities_processed,
                entities_failed=run.entities_failed
            )
            for run in state_manager.latest_runs(runs)
        ]
    )


def create_app(db: DatabaseConnection, store: StreamStore, state_manager: SyncStateManager) -> FastAPI:
    """Build the status app around an existing database connection."""
    app = FastAPI(title="Stream Indexer Status", version=__version__)

    @app.get("/")
    async def root():
        return {
            "message": "Payment stream indexer status API",
            "version": __version__,
            "contract_address": store.contract_address
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        database = db.health_check()
        return HealthResponse(
            status=database["status"],
            timestamp=datetime.utcnow().isoformat(),
            database=database
        )

    @app.get("/status", response_model=StatusResponse)
    async def status(runs: int = 10):
        try:
            return collect_status(store, state_manager, runs)
        except Exception as e:
            logger.error(f"Failed to collect status: {e}")
            raise HTTPException(status_code=503, detail="Status unavailable")

    return app
