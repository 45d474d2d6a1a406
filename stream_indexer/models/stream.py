"""
Stream SQLModel schema - one row per on-chain payment stream.
Amounts are stored as decimal strings to keep full uint256 precision.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field, Index


class StreamType(str, Enum):
    """Stream type as encoded by the contract (index order matters)."""
    CONTINUOUS = "Continuous"
    ONE_TIME = "OneTime"

    @classmethod
    def from_index(cls, index: int) -> "StreamType":
        return list(cls)[int(index)]


class StreamState(str, Enum):
    """Stream state as encoded by the contract (index order matters)."""
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    PAUSED = "Paused"

    @classmethod
    def from_index(cls, index: int) -> "StreamState":
        return list(cls)[int(index)]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({StreamState.COMPLETED, StreamState.CANCELLED})


class StreamLabel(str, Enum):
    """Sticky classification set once when a stream is first mirrored."""
    EMPLOYEE = "employee"
    TAX = "tax"
    FUNDING = "funding"
    OTHER = "other"


class Stream(SQLModel, table=True):
    """Streams table - mirrored state of each payment stream."""

    __tablename__ = "streams"
    __table_args__ = (
        Index("idx_streams_worker_address", "worker_address"),
        Index("idx_streams_state", "state"),
        Index("idx_streams_label", "label"),
    )

    # Primary key - the contract's stream id
    stream_id: int = Field(
        primary_key=True,
        sa_column_kwargs={"autoincrement": False},
        description="On-chain stream id"
    )

    # Parties
    worker_address: str = Field(max_length=42, description="Worker wallet address (lower-case)")

    # Amounts (wei, decimal strings)
    deposit: str = Field(max_length=80, description="Total deposit in wei")
    withdrawn: str = Field(default="0", max_length=80, description="Cumulative withdrawn amount in wei")
    rate_per_second: Optional[str] = Field(default=None, max_length=80, description="Vesting rate in wei per second")

    # Schedule
    start_time: Optional[int] = Field(default=None, description="Unix start time")
    end_time: Optional[int] = Field(default=None, description="Unix end time")
    total_paused_duration: int = Field(default=0, description="Cumulative paused seconds")

    # Classification
    stream_type: str = Field(default=StreamType.CONTINUOUS.value, max_length=20, description="Continuous or OneTime")
    state: str = Field(default=StreamState.ACTIVE.value, max_length=20, description="Active, Paused, Completed or Cancelled")
    label: str = Field(default=StreamLabel.EMPLOYEE.value, max_length=20, description="Sticky label set on insert")

    # Provenance
    tx_hash: Optional[str] = Field(default=None, max_length=100, description="Creation transaction hash or synthetic key")
    block_number: Optional[int] = Field(default=None, description="Creation block number")

    # Enrichment
    worker_name: Optional[str] = Field(default=None, max_length=255, description="Display name from identity store")
    worker_email: Optional[str] = Field(default=None, max_length=255, description="Email from identity store")

    # Metadata
    created_at: datetime = Field(default_factory=datetime.utcnow, description="When the stream was first mirrored")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="When the row was last written")
