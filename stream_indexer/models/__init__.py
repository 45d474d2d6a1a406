"""
SQLModel database models for the payment stream indexer.
"""

from .stream import Stream, StreamType, StreamState, StreamLabel, TERMINAL_STATES
from .transaction import ChainTransaction, TransactionType
from .stats import ContractStats
from .identity import User
from .state import BackfillGap, GapState, SyncRunLog

__all__ = [
    # Mirror
    "Stream",
    "StreamType",
    "StreamState",
    "StreamLabel",
    "TERMINAL_STATES",
    "ChainTransaction",
    "TransactionType",
    "ContractStats",
    # Identity read model
    "User",
    # Sync bookkeeping
    "BackfillGap",
    "GapState",
    "SyncRunLog",
]
