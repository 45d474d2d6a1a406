"""
Read model of the user directory owned by the payroll API.
The indexer only reads it to resolve worker display names.
"""

from typing import Optional
from sqlmodel import SQLModel, Field, Index


class User(SQLModel, table=True):
    """Users table - employee directory keyed by wallet address."""

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_wallet_address", "wallet_address"),
    )

    id: Optional[int] = Field(default=None, primary_key=True, description="Auto-increment ID")
    name: str = Field(max_length=255, description="Display name")
    email: str = Field(max_length=255, description="Email address")
    wallet_address: Optional[str] = Field(default=None, max_length=42, description="Wallet address, any case")
    active: bool = Field(default=True, description="Whether the user is active")
