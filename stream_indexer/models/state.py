"""
Sync state SQLModel schemas: backfill gap ledger and sync run log.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import SQLModel, Field, Column, Index

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class GapState(str, Enum):
    """State of a block range that failed to scan."""
    PENDING = "pending"
    RESOLVED = "resolved"


class BackfillGap(SQLModel, table=True):
    """Backfill gaps table - chunk ranges whose log query failed."""

    __tablename__ = "backfill_gaps"
    __table_args__ = (
        UniqueConstraint("from_block", "to_block", name="uq_backfill_gaps_range"),
        Index("idx_backfill_gaps_state", "state"),
    )

    id: Optional[int] = Field(default=None, primary_key=True, description="Auto-increment ID")

    # Inclusive block range
    from_block: int = Field(description="First block of the failed chunk")
    to_block: int = Field(description="Last block of the failed chunk")

    state: str = Field(default=GapState.PENDING.value, max_length=20, description="pending or resolved")
    attempt_count: int = Field(default=1, description="Number of failed scan attempts")
    error_message: Optional[str] = Field(default=None, max_length=1000, description="Last error message")

    created_at: datetime = Field(default_factory=datetime.utcnow, description="When the gap was first recorded")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="When the gap was last touched")
    resolved_at: Optional[datetime] = Field(default=None, description="When a rescan succeeded")


class SyncRunLog(SQLModel, table=True):
    """Sync run log - tracks backfill and reconciliation executions."""

    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("idx_sync_runs_task_name", "task_name"),
        Index("idx_sync_runs_started_at", "started_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True, description="Auto-increment ID")

    task_name: str = Field(max_length=50, description="backfill or reconcile")
    run_id: str = Field(max_length=100, description="Unique run identifier")

    started_at: datetime = Field(default_factory=datetime.utcnow, description="When the run started")
    completed_at: Optional[datetime] = Field(default=None, description="When the run completed")
    duration_seconds: Optional[float] = Field(default=None, description="Total run duration")

    status: str = Field(max_length=20, description="running, completed, partial, failed or cancelled")
    entities_processed: int = Field(default=0, description="Chunks or streams processed")
    entities_failed: int = Field(default=0, description="Chunks or streams that failed")

    task_metrics: Optional[dict] = Field(default=None, sa_column=Column(JSONVariant), description="JSON run metrics")
    error_summary: Optional[dict] = Field(default=None, sa_column=Column(JSONVariant), description="JSON error summary")
