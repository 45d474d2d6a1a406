"""
Mirror store for streams, transactions and contract stats.
Every write is an idempotent upsert, insert-if-absent or update-where so that
replayed and reordered events converge to the same rows.
"""

import logging
from datetime import datetime
from typing import List, Dict, Any, Optional, Set
from sqlalchemy import update, func
from sqlmodel import select, col

from stream_indexer.database.connection import DatabaseConnection
from stream_indexer.database.operations import insert_if_absent, upsert_record
from stream_indexer.models import (
    Stream,
    StreamState,
    ChainTransaction,
    ContractStats,
    TERMINAL_STATES,
)

logger = logging.getLogger(__name__)

# Written once when the row is inserted
_INSERT_ONLY_STREAM_COLUMNS = ("stream_id", "label", "created_at")
_TERMINAL_VALUES = [state.value for state in TERMINAL_STATES]


class StreamStore:
    """Read/write access to the mirrored stream tables."""

    def __init__(self, db: DatabaseConnection, contract_address: str):
        """Initialize the store.

        Args:
            db: Database connection manager
            contract_address: Indexed contract, key of the stats row
        """
        self.db = db
        self.contract_address = contract_address.lower()

    # Streams

    def get_stream(self, stream_id: int) -> Optional[Stream]:
        with self.db.get_session() as session:
            return session.get(Stream, stream_id)

    def list_stream_ids(self) -> Set[int]:
        with self.db.get_session() as session:
            return set(session.exec(select(Stream.stream_id)).all())

    def list_non_terminal_streams(self) -> List[Stream]:
        """Streams that can still change on chain (Active or Paused)."""
        with self.db.get_session() as session:
            return list(session.exec(
                select(Stream)
                .where(col(Stream.state).not_in(_TERMINAL_VALUES))
                .order_by(Stream.stream_id)
            ).all())

    def upsert_stream(self, stream_id: int, fields: Dict[str, Any], default_label: str) -> Stream:
        """Insert the stream or refresh its chain-derived fields.

        The label is only written when the row is inserted, so a label set
        earlier (e.g. "tax") survives every later projection.

        Args:
            stream_id: On-chain stream id
            fields: Column values fetched from the chain and identity store
            default_label: Label to use if the stream is new

        Returns:
            The stored Stream row
        """
        now = datetime.utcnow()
        values = dict(fields)
        values.update(stream_id=stream_id, label=default_label, created_at=now, updated_at=now)
        update_columns = [c for c in values if c not in _INSERT_ONLY_STREAM_COLUMNS]

        with self.db.get_session() as session:
            upsert_record(session, Stream, values, "stream_id", update_columns)
            session.commit()
            return session.get(Stream, stream_id)

    def update_stream_fields(self, stream_id: int, fields: Dict[str, Any]) -> bool:
        """Update fields of an existing stream without assuming it exists.

        A terminal state (Completed, Cancelled) is never replaced by a
        non-terminal one.

        Returns:
            True if the stream exists in the mirror
        """
        values = dict(fields)
        new_state = values.pop("state", None)
        now = datetime.utcnow()

        with self.db.get_session() as session:
            result = session.execute(
                update(Stream)
                .where(col(Stream.stream_id) == stream_id)
                .values(**values, updated_at=now)
            )
            matched = result.rowcount > 0

            if matched and new_state is not None:
                state_result = session.execute(
                    update(Stream)
                    .where(col(Stream.stream_id) == stream_id)
                    .where(col(Stream.state).not_in(_TERMINAL_VALUES))
                    .values(state=new_state)
                )
                if state_result.rowcount == 0 and new_state not in _TERMINAL_VALUES:
                    logger.warning(f"Stream {stream_id} is terminal in the mirror, ignoring state {new_state}")

            session.commit()
            return matched

    # Transactions

    def record_transaction(self, values: Dict[str, Any]) -> bool:
        """Insert a transaction unless its hash is already recorded.

        Returns:
            True if a new row was written, False for an already-seen hash
        """
        with self.db.get_session() as session:
            inserted = insert_if_absent(session, ChainTransaction, values, "tx_hash")
            session.commit()

        if not inserted:
            logger.debug(f"Transaction {values['tx_hash']} already recorded")
        return inserted

    def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]:
        with self.db.get_session() as session:
            return session.get(ChainTransaction, tx_hash)

    def list_transactions(self, stream_id: Optional[int] = None) -> List[ChainTransaction]:
        with self.db.get_session() as session:
            query = select(ChainTransaction)
            if stream_id is not None:
                query = query.where(ChainTransaction.stream_id == stream_id)
            return list(session.exec(query.order_by(ChainTransaction.timestamp)).all())

    # Labels

    def relabel_worker_streams(self, worker_address: str, label: str) -> Dict[str, int]:
        """Set the label of every stream paid to an address and of its transactions.

        This is an administrative correction, not a projection.
        """
        address = worker_address.lower()
        now = datetime.utcnow()

        with self.db.get_session() as session:
            stream_ids = list(session.exec(
                select(Stream.stream_id).where(Stream.worker_address == address)
            ).all())

            updated = 0
            transactions_updated = 0
            if stream_ids:
                result = session.execute(
                    update(Stream)
                    .where(col(Stream.stream_id).in_(stream_ids))
                    .where(col(Stream.label) != label)
                    .values(label=label, updated_at=now)
                )
                updated = result.rowcount
                tx_result = session.execute(
                    update(ChainTransaction)
                    .where(col(ChainTransaction.stream_id).in_(stream_ids))
                    .values(label=label)
                )
                transactions_updated = tx_result.rowcount
            session.commit()

        logger.info(f"Relabelled {updated}/{len(stream_ids)} streams for {address} as {label}")
        return {
            "matched": len(stream_ids),
            "updated": updated,
            "transactions_updated": transactions_updated
        }

    # Contract stats

    def upsert_stats(
        self,
        available_balance: int,
        total_allocated: int,
        total_streams: Optional[int] = None,
        block_number: Optional[int] = None
    ) -> None:
        """Write the aggregate balance snapshot for the indexed contract."""
        values: Dict[str, Any] = {
            "contract_address": self.contract_address,
            "available_balance": str(available_balance),
            "total_allocated": str(total_allocated),
            "updated_at": datetime.utcnow()
        }
        if total_streams is not None:
            values["total_streams"] = total_streams
        if block_number is not None:
            values["last_updated_block"] = block_number

        with self.db.get_session() as session:
            upsert_record(session, ContractStats, values, "contract_address")
            session.commit()

    def get_stats(self) -> Optional[ContractStats]:
        with self.db.get_session() as session:
            return session.get(ContractStats, self.contract_address)

    # Monitoring

    def get_counts(self) -> Dict[str, Any]:
        """Row counts for status reporting."""
        with self.db.get_session() as session:
            by_state = dict(session.exec(
                select(Stream.state, func.count(Stream.stream_id)).group_by(Stream.state)
            ).all())
            transactions = session.exec(select(func.count(ChainTransaction.tx_hash))).one()

        return {
            "streams": sum(by_state.values()),
            "streams_by_state": {state.value: by_state.get(state.value, 0) for state in StreamState},
            "transactions": transactions
        }
