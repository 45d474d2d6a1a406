"""
Transaction ledger SQLModel schema - append-only record of observed chain activity.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field, Index


class TransactionType(str, Enum):
    STREAM_CREATED = "StreamCreated"
    WITHDRAWAL = "Withdrawal"
    STATE_CHANGE = "StateChange"
    FUNDING = "Funding"
    EMERGENCY = "Emergency"


class ChainTransaction(SQLModel, table=True):
    """Transactions table - one row per distinct transaction hash."""

    __tablename__ = "transactions"
    __table_args__ = (
        Index("idx_transactions_stream_id", "stream_id"),
        Index("idx_transactions_type", "type"),
        Index("idx_transactions_timestamp", "timestamp"),
    )

    # Primary key - tx_hash ensures deduplication
    tx_hash: str = Field(primary_key=True, max_length=100, description="Transaction hash or synthetic key")

    type: str = Field(max_length=20, description="Transaction type")
    stream_id: Optional[int] = Field(default=None, description="Related stream id, if any")
    sender: Optional[str] = Field(default=None, max_length=42, description="Sender address (lower-case)")
    receiver: Optional[str] = Field(default=None, max_length=42, description="Receiver address (lower-case)")
    amount: Optional[str] = Field(default=None, max_length=80, description="Amount in wei")
    status: str = Field(default="Confirmed", max_length=20, description="Transaction status")
    label: str = Field(default="other", max_length=20, description="Label inherited from the stream")
    block_number: Optional[int] = Field(default=None, description="Block the event was emitted in")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="When the event was observed")
