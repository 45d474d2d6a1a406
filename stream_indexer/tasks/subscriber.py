"""
Live subscriber - routes live contract events to the projector.
"""

import logging
from typing import Awaitable, Callable, Dict

from stream_indexer.services.chain import (
    ChainEvent,
    ChainHandle,
    STREAM_CREATED,
    WITHDRAWN,
    STREAM_STATE_CHANGED,
    FUNDED,
    EMERGENCY_WITHDRAW,
)
from stream_indexer.tasks.projector import Projector

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChainEvent], Awaitable[bool]]


class LiveSubscriber:
    """One handler per contract event; stats are refreshed after each projection that wrote."""

    def __init__(self, projector: Projector):
        self.projector = projector
        self.handlers: Dict[str, EventHandler] = {}
        self.events_handled = 0

    def register_handlers(self) -> None:
        """(Re-)attach the handler table. Safe to call after every reconnect."""
        self.handlers = {
            STREAM_CREATED: self._on_stream_created,
            WITHDRAWN: self._on_withdrawn,
            STREAM_STATE_CHANGED: self._on_state_changed,
            FUNDED: self._on_funded,
            EMERGENCY_WITHDRAW: self._on_emergency_withdraw,
        }
        logger.debug(f"Registered handlers for {', '.join(self.handlers)}")

    async def listen(self, chain: ChainHandle) -> None:
        """Consume the chain's event stream until it fails or ends.

        Transport errors propagate to the supervisor.
        """
        async for event in chain.events():
            await self.handle(event)

    async def handle(self, event: ChainEvent) -> bool:
        handler = self.handlers.get(event.name)
        if handler is None:
            logger.debug(f"Ignoring unhandled event {event.name}")
            return False

        self.events_handled += 1
        try:
            applied = await handler(event)
        except Exception as e:
            logger.exception(f"Handler for {event.name} (tx {event.tx_hash}) failed: {e}")
            return False

        if applied:
            await self.projector.refresh_stats(block_number=event.block_number)
        return applied

    async def _on_stream_created(self, event: ChainEvent) -> bool:
        logger.info(f"StreamCreated {event.args.get('streamId')} in block {event.block_number}")
        return await self.projector.on_stream_created(
            event.args["streamId"], event.args.get("worker"), event.args.get("amount"),
            event.tx_hash, event.block_number
        )

    async def _on_withdrawn(self, event: ChainEvent) -> bool:
        return await self.projector.on_withdrawn(
            event.args["streamId"], event.args["amount"], event.tx_hash, event.block_number
        )

    async def _on_state_changed(self, event: ChainEvent) -> bool:
        return await self.projector.on_state_changed(
            event.args["streamId"], event.args["newState"], event.tx_hash, event.block_number
        )

    async def _on_funded(self, event: ChainEvent) -> bool:
        return await self.projector.on_funded(
            event.args["sender"], event.args["amount"], event.tx_hash, event.block_number
        )

    async def _on_emergency_withdraw(self, event: ChainEvent) -> bool:
        return await self.projector.on_emergency_withdraw(
            event.args["owner"], event.args["amount"], event.tx_hash, event.block_number
        )
