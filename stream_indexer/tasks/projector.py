"""
Projector - turns contract events into mirrored rows.

Every projection re-reads the authoritative stream state from the chain and
writes it with an idempotent upsert, update-where or insert-if-absent, so
replayed, duplicated and reordered events converge to the same rows. A failed
chain read abandons the projection and leaves the drift to the reconciler.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from stream_indexer.config.settings import LabelConfig
from stream_indexer.database.stream_store import StreamStore
from stream_indexer.exceptions import ChainConnectionError, ChainReadError
from stream_indexer.models import Stream, StreamLabel, TransactionType
from stream_indexer.services.chain import ChainHandle, StreamSnapshot
from stream_indexer.services.identity import IdentityEnricher

logger = logging.getLogger(__name__)


def snapshot_fields(snapshot: StreamSnapshot) -> Dict[str, Any]:
    """Stream column values taken from a getStreamInfo snapshot."""
    return {
        "worker_address": snapshot.worker.lower(),
        "deposit": str(snapshot.deposit),
        "withdrawn": str(snapshot.withdrawn),
        "rate_per_second": str(snapshot.rate_per_second),
        "start_time": snapshot.start_time,
        "end_time": snapshot.end_time,
        "stream_type": snapshot.stream_type.value,
        "state": snapshot.state.value,
    }


class Projector:
    """Projects contract events into the stream mirror."""

    def __init__(
        self,
        chain: ChainHandle,
        store: StreamStore,
        enricher: IdentityEnricher,
        label_config: Optional[LabelConfig] = None
    ):
        self.chain = chain
        self.store = store
        self.enricher = enricher
        self.label_config = label_config or LabelConfig()

    def default_label(self, worker_address: Optional[str]) -> str:
        tax_address = self.label_config.tax_address
        if tax_address and worker_address and worker_address.lower() == tax_address.lower():
            return StreamLabel.TAX.value
        return self.label_config.default_label

    async def on_stream_created(
        self,
        stream_id: int,
        worker: Optional[str] = None,
        amount: Optional[int] = None,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None
    ) -> bool:
        """Mirror a new stream and its creation transaction.

        A stream that is already mirrored is not re-read; only a missing
        creation transaction is written for it.
        """
        stream_id = int(stream_id)
        existing = self.store.get_stream(stream_id)
        if existing is not None:
            inserted = self._record_creation(existing, amount, block_number)
            if inserted:
                logger.warning(f"Stream {stream_id} was mirrored without its creation transaction, recorded it")
            else:
                logger.debug(f"Stream {stream_id} already mirrored, skipping creation")
            return inserted

        try:
            snapshot = await self.chain.get_stream_snapshot(stream_id)
            record = await self.chain.get_stream_record(stream_id)
        except (ChainReadError, ChainConnectionError) as e:
            logger.error(f"Abandoning StreamCreated projection for stream {stream_id}: {e}")
            return False

        fields = snapshot_fields(snapshot)
        worker_address = fields["worker_address"] or (worker or "").lower()
        identity = await self.enricher.resolve(worker_address)

        fields.update(
            worker_address=worker_address,
            total_paused_duration=record.total_paused_duration,
            tx_hash=tx_hash or f"stream-{stream_id}",
            block_number=block_number,
            worker_name=identity.name,
            worker_email=identity.email
        )
        stream = self.store.upsert_stream(stream_id, fields, self.default_label(worker_address))
        self._record_creation(stream, amount, block_number)

        logger.info(f"Stream {stream_id} mirrored (worker {worker_address}, label {stream.label})")
        return True

    def _record_creation(self, stream: Stream, amount: Optional[int], block_number: Optional[int]) -> bool:
        return self.store.record_transaction({
            "tx_hash": stream.tx_hash or f"stream-{stream.stream_id}",
            "type": TransactionType.STREAM_CREATED.value,
            "stream_id": stream.stream_id,
            "sender": self.store.contract_address,
            "receiver": stream.worker_address,
            "amount": str(stream.deposit if amount is None else amount),
            "label": stream.label,
            "block_number": stream.block_number if block_number is None else block_number,
            "timestamp": datetime.utcnow()
        })

    async def on_withdrawn(
        self,
        stream_id: int,
        amount: int,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None
    ) -> bool:
        """Refresh withdrawn/state from the chain and record the withdrawal.

        The stored withdrawn value is always the chain's current total, so a
        replayed event cannot add the amount twice.
        """
        stream_id = int(stream_id)
        try:
            snapshot = await self.chain.get_stream_snapshot(stream_id)
        except (ChainReadError, ChainConnectionError) as e:
            logger.error(f"Abandoning Withdrawn projection for stream {stream_id}: {e}")
            return False

        mirrored = self.store.update_stream_fields(stream_id, {
            "withdrawn": str(snapshot.withdrawn),
            "state": snapshot.state.value
        })
        if not mirrored:
            logger.warning(f"Withdrawn for stream {stream_id} which is not mirrored yet")

        stream = self.store.get_stream(stream_id) if mirrored else None
        label = stream.label if stream else self.default_label(snapshot.worker)

        inserted = self.store.record_transaction({
            "tx_hash": tx_hash or f"withdrawal-{stream_id}-{snapshot.withdrawn}",
            "type": TransactionType.WITHDRAWAL.value,
            "stream_id": stream_id,
            "sender": self.store.contract_address,
            "receiver": stream.worker_address if stream else snapshot.worker.lower(),
            "amount": str(amount),
            "label": label,
            "block_number": block_number,
            "timestamp": datetime.utcnow()
        })
        logger.info(
            f"Stream {stream_id} withdrawn {amount}, total {snapshot.withdrawn}"
            f"{'' if inserted else ' (transaction already recorded)'}"
        )
        return True

    async def on_state_changed(
        self,
        stream_id: int,
        new_state: int,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None
    ) -> bool:
        """Refresh state, end time and paused duration from the chain.

        The snapshot state wins over the event argument: a later read is
        never older than the event that triggered it.
        """
        stream_id = int(stream_id)
        try:
            snapshot = await self.chain.get_stream_snapshot(stream_id)
            record = await self.chain.get_stream_record(stream_id)
        except (ChainReadError, ChainConnectionError) as e:
            logger.error(f"Abandoning StreamStateChanged projection for stream {stream_id}: {e}")
            return False

        logger.info(f"Stream {stream_id} state changed (event index {new_state}, chain {snapshot.state.value})")
        mirrored = self.store.update_stream_fields(stream_id, {
            "state": snapshot.state.value,
            "end_time": snapshot.end_time,
            "total_paused_duration": record.total_paused_duration
        })
        if not mirrored:
            logger.warning(f"StreamStateChanged for stream {stream_id} which is not mirrored yet")

        stream = self.store.get_stream(stream_id) if mirrored else None
        self.store.record_transaction({
            "tx_hash": tx_hash or f"state-{stream_id}-{snapshot.state.value}-{record.total_paused_duration}",
            "type": TransactionType.STATE_CHANGE.value,
            "stream_id": stream_id,
            "label": stream.label if stream else self.default_label(snapshot.worker),
            "block_number": block_number,
            "timestamp": datetime.utcnow()
        })
        return True

    async def on_funded(
        self,
        sender: str,
        amount: int,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None
    ) -> bool:
        sender = sender.lower()
        inserted = self.store.record_transaction({
            "tx_hash": tx_hash or f"fund-{sender}-{amount}-{block_number}",
            "type": TransactionType.FUNDING.value,
            "sender": sender,
            "receiver": self.store.contract_address,
            "amount": str(amount),
            "label": StreamLabel.FUNDING.value,
            "block_number": block_number,
            "timestamp": datetime.utcnow()
        })
        if inserted:
            logger.info(f"Contract funded with {amount} by {sender}")
        return True

    async def on_emergency_withdraw(
        self,
        owner: str,
        amount: int,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None
    ) -> bool:
        owner = owner.lower()
        inserted = self.store.record_transaction({
            "tx_hash": tx_hash or f"emergency-{owner}-{amount}-{block_number}",
            "type": TransactionType.EMERGENCY.value,
            "sender": self.store.contract_address,
            "receiver": owner,
            "amount": str(amount),
            "label": StreamLabel.OTHER.value,
            "block_number": block_number,
            "timestamp": datetime.utcnow()
        })
        if inserted:
            logger.warning(f"Emergency withdrawal of {amount} by {owner}")
        return True

    async def refresh_stats(self, block_number: Optional[int] = None, include_count: bool = False) -> bool:
        """Re-read the contract balances into contract_stats.

        Returns:
            False if the chain could not be read
        """
        try:
            stats = await self.chain.get_aggregate_stats()
            total_streams = await self.chain.get_stream_count() if include_count else None
        except (ChainReadError, ChainConnectionError) as e:
            logger.error(f"Failed to refresh contract stats: {e}")
            return False

        self.store.upsert_stats(
            available_balance=stats.available_balance,
            total_allocated=stats.total_allocated,
            total_streams=total_streams,
            block_number=block_number
        )
        logger.debug(f"Contract stats refreshed: available {stats.available_balance}, allocated {stats.total_allocated}")
        return True
