"""
Contract aggregate stats SQLModel schema - a cache of balances readable from the chain.
"""

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field


class ContractStats(SQLModel, table=True):
    """Contract stats table - one row per indexed contract."""

    __tablename__ = "contract_stats"

    contract_address: str = Field(primary_key=True, max_length=42, description="Contract address (lower-case)")
    available_balance: str = Field(default="0", max_length=80, description="Unallocated balance in wei")
    total_allocated: str = Field(default="0", max_length=80, description="Allocated to streams in wei")
    total_streams: Optional[int] = Field(default=None, description="streamCount() at last refresh")
    last_updated_block: Optional[int] = Field(default=None, description="Block that triggered the last refresh")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="When stats were last refreshed")
