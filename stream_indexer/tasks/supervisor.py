"""
Connection supervisor - owns the chain handle lifecycle.

Connects on start, runs the live subscriber as a background task and, when
the subscription fails, schedules exactly one reconnect at a time. A
reconnect retries forever with exponential back-off, re-registers the
handlers, restarts listening and runs a shallow catch-up backfill.
"""

import asyncio
import logging
from typing import Optional

from tenacity import AsyncRetrying, RetryCallState

from stream_indexer.config.settings import SupervisorConfig
from stream_indexer.services.chain import ChainHandle
from stream_indexer.tasks.backfill import BackfillScanner
from stream_indexer.tasks.subscriber import LiveSubscriber

logger = logging.getLogger(__name__)


class ConnectionSupervisor:
    """Keeps the live subscription alive across transport failures."""

    def __init__(
        self,
        chain: ChainHandle,
        subscriber: LiveSubscriber,
        scanner: BackfillScanner,
        config: Optional[SupervisorConfig] = None,
        reconnect_lookback_blocks: int = 2000
    ):
        self.chain = chain
        self.subscriber = subscriber
        self.scanner = scanner
        self.config = config or SupervisorConfig()
        self.reconnect_lookback_blocks = reconnect_lookback_blocks

        self.reconnect_count = 0
        self._listen_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._catchup_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def listening(self) -> bool:
        return self._listen_task is not None and not self._listen_task.done()

    async def start(self) -> None:
        """Connect and start listening.

        Raises:
            ChainConnectionError: If the first connection fails
        """
        self._stopping = False
        await self.chain.connect()
        self.subscriber.register_handlers()
        self._start_listening()
        logger.info("Connection supervisor started")

    async def stop(self) -> None:
        self._stopping = True
        tasks = [t for t in (self._listen_task, self._reconnect_task, self._catchup_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.chain.disconnect()
        logger.info("Connection supervisor stopped")

    def schedule_reconnect(self, reason: str = "") -> bool:
        """Schedule a reconnect unless one is already pending.

        Returns:
            True if a reconnect was scheduled
        """
        if self._stopping:
            return False
        if self.reconnect_pending:
            logger.info(f"Reconnect already pending, ignoring trigger ({reason})")
            return False

        logger.warning(f"Connection lost ({reason}), scheduling reconnect")
        self._reconnect_task = asyncio.create_task(self._reconnect(), name="chain-reconnect")
        return True

    def reconnect_delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect attempt number `attempt` (1-based)."""
        base = self.config.reconnect_delay_seconds
        multiplier = self.config.backoff_multiplier
        if multiplier <= 1:
            return base
        return min(base * multiplier ** (attempt - 1), self.config.max_reconnect_delay_seconds)

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        # The first attempt has already waited reconnect_delay(1)
        return self.reconnect_delay(retry_state.attempt_number + 1)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.error(
            f"Reconnect attempt {retry_state.attempt_number} failed: {retry_state.outcome.exception()}; "
            f"retrying in {retry_state.next_action.sleep:.1f}s"
        )

    def _start_listening(self) -> None:
        self._listen_task = asyncio.create_task(self._listen(), name="chain-listener")

    async def _listen(self) -> None:
        try:
            await self.subscriber.listen(self.chain)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Event subscription failed: {e}")
            self.schedule_reconnect(str(e))
        else:
            logger.warning("Event subscription ended")
            self.schedule_reconnect("subscription closed")

    async def _reconnect(self) -> None:
        delay = self.reconnect_delay(1)
        logger.info(f"Reconnecting in {delay:.1f}s")
        await asyncio.sleep(delay)

        async for attempt in AsyncRetrying(wait=self._retry_wait, before_sleep=self._log_retry):
            with attempt:
                await self.chain.disconnect()
                await self.chain.connect()

        self.reconnect_count += 1
        logger.info(f"Reconnected to chain (reconnect #{self.reconnect_count})")
        self.subscriber.register_handlers()
        self._start_listening()
        self._catchup_task = asyncio.create_task(self._catch_up(), name="reconnect-catchup")

    async def _catch_up(self) -> None:
        """Backfill the blocks that may have been missed while disconnected."""
        try:
            result = await self.scanner.scan_recent(self.reconnect_lookback_blocks)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Catch-up backfill after reconnect failed: {e}")
            return

        if result is None:
            logger.info("Catch-up backfill skipped, another scan is running")
