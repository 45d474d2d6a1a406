"""
Chain handle for the payroll streaming contract.
Wraps an AsyncWeb3 connection with typed contract reads, log queries and an
event iterator. Every read is bounded by a timeout and retried with tenacity.
"""

import os
import json
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential
from web3 import AsyncWeb3, Web3
from web3.providers import AsyncHTTPProvider, WebSocketProvider

from stream_indexer.config.settings import ChainConfig
from stream_indexer.exceptions import ChainConnectionError, ChainReadError, ConfigurationError
from stream_indexer.models import StreamState, StreamType

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ABI_PATH = os.path.join(os.path.dirname(__file__), "..", "abi", "stream_payroll.json")

STREAM_CREATED = "StreamCreated"
WITHDRAWN = "Withdrawn"
STREAM_STATE_CHANGED = "StreamStateChanged"
FUNDED = "Funded"
EMERGENCY_WITHDRAW = "EmergencyWithdraw"

EVENT_NAMES = (STREAM_CREATED, WITHDRAWN, STREAM_STATE_CHANGED, FUNDED, EMERGENCY_WITHDRAW)


@dataclass
class ChainEvent:
    """A decoded contract event with its provenance."""
    name: str
    args: Dict[str, Any]
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    log_index: Optional[int] = None


@dataclass
class StreamSnapshot:
    """Result of getStreamInfo(id)."""
    worker: str
    deposit: int
    withdrawn: int
    rate_per_second: int
    start_time: int
    end_time: int
    stream_type: StreamType
    state: StreamState


@dataclass
class StreamRecord:
    """Fields of streams(id) that getStreamInfo does not return."""
    total_paused_duration: int
    last_pause_time: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AggregateStats:
    available_balance: int
    total_allocated: int


def load_abi(abi_path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Load the contract ABI, unwrapping build artifacts that nest it under "abi"."""
    path = abi_path or DEFAULT_ABI_PATH
    with open(path, 'r') as file:
        abi = json.load(file)
    if isinstance(abi, dict) and "abi" in abi:
        abi = abi["abi"]
    return abi


def event_topics(abi: List[Dict[str, Any]]) -> Dict[str, str]:
    """Map topic0 hashes to event names for every event in the ABI."""
    topics = {}
    for entry in abi:
        if entry.get("type") != "event":
            continue
        signature = f"{entry['name']}({','.join(i['type'] for i in entry['inputs'])})"
        topics[Web3.to_hex(Web3.keccak(text=signature)).lower()] = entry["name"]
    return topics


def iter_chunks(from_block: int, to_block: int, chunk_size: int, aligned: bool = False) -> Iterator[Tuple[int, int]]:
    """Split [from_block, to_block] into consecutive inclusive chunks of at most chunk_size blocks.

    With aligned=True chunks end on multiples of chunk_size, so the same block
    always falls in the same chunk whatever the range start.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    start = from_block
    while start <= to_block:
        if aligned:
            end = start - start % chunk_size + chunk_size - 1
        else:
            end = start + chunk_size - 1
        end = min(end, to_block)
        yield start, end
        start = end + 1


class ChainHandle:
    """Connection to an RPC endpoint and the indexed contract.

    WebSocket URLs (ws://, wss://) get a log subscription; any other URL is
    treated as HTTP and new logs are polled every chain.poll_interval_seconds.
    """

    def __init__(self, config: ChainConfig):
        self.config = config
        self.abi = load_abi(config.abi_path)
        self._topics = event_topics(self.abi)
        self._w3: Optional[AsyncWeb3] = None
        self._contract = None
        self._address = None
        self._poll_cursor: Optional[int] = None
        if config.contract_address:
            if not Web3.is_address(config.contract_address):
                raise ConfigurationError(f"Invalid contract address: {config.contract_address}")
            self._address = Web3.to_checksum_address(config.contract_address)

    @property
    def is_websocket(self) -> bool:
        return (self.config.rpc_url or "").startswith(("ws://", "wss://"))

    @property
    def is_connected(self) -> bool:
        return self._w3 is not None

    async def connect(self) -> None:
        """Open the provider and bind the contract.

        Raises:
            ChainConnectionError: If the endpoint cannot be reached
        """
        url = self.config.rpc_url
        if not url or not self._address:
            raise ChainConnectionError("RPC URL and contract address are required to connect")

        try:
            if self.is_websocket:
                w3 = await asyncio.wait_for(
                    AsyncWeb3(WebSocketProvider(url)),
                    timeout=self.config.request_timeout_seconds
                )
            else:
                w3 = AsyncWeb3(AsyncHTTPProvider(
                    url, request_kwargs={"timeout": self.config.request_timeout_seconds}
                ))
                connected = await asyncio.wait_for(w3.is_connected(), timeout=self.config.request_timeout_seconds)
                if not connected:
                    raise ChainConnectionError(f"RPC endpoint {url} is not reachable")
        except ChainConnectionError:
            raise
        except Exception as e:
            raise ChainConnectionError(f"Failed to connect to {url}: {e}") from e

        self._w3 = w3
        self._contract = w3.eth.contract(address=self._address, abi=self.abi)
        logger.info(f"Connected to {'websocket' if self.is_websocket else 'http'} RPC, contract {self._address}")

    async def disconnect(self) -> None:
        if self._w3 is None:
            return

        w3, self._w3, self._contract = self._w3, None, None
        if self.is_websocket:
            try:
                await w3.provider.disconnect()
            except Exception as e:
                logger.warning(f"Error while closing websocket provider: {e}")
        logger.info("Disconnected from RPC")

    def _require_connection(self) -> AsyncWeb3:
        if self._w3 is None:
            raise ChainConnectionError("Chain handle is not connected")
        return self._w3

    async def _call(self, description: str, request: Callable[[], Awaitable[T]]) -> T:
        """Run one chain request with a timeout and bounded retries.

        Raises:
            ChainReadError: When every attempt failed or timed out
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, self.config.read_attempts)),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                reraise=True
            ):
                with attempt:
                    return await asyncio.wait_for(request(), timeout=self.config.request_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ChainReadError(f"{description} timed out after {self.config.request_timeout_seconds}s") from e
        except ChainConnectionError:
            raise
        except Exception as e:
            raise ChainReadError(f"{description} failed: {e}") from e

    # Contract reads

    async def get_block_number(self) -> int:
        w3 = self._require_connection()

        async def request():
            return await w3.eth.block_number

        return int(await self._call("eth_blockNumber", request))

    async def get_stream_snapshot(self, stream_id: int) -> StreamSnapshot:
        self._require_connection()
        result = await self._call(
            f"getStreamInfo({stream_id})",
            lambda: self._contract.functions.getStreamInfo(stream_id).call()
        )
        return self._snapshot_from_result(stream_id, self._named_outputs("getStreamInfo", result))

    async def get_stream_record(self, stream_id: int) -> StreamRecord:
        self._require_connection()
        result = await self._call(
            f"streams({stream_id})",
            lambda: self._contract.functions.streams(stream_id).call()
        )
        values = self._named_outputs("streams", result)
        return StreamRecord(
            total_paused_duration=int(values.get("totalPausedDuration", 0)),
            last_pause_time=int(values.get("lastPauseTime", 0)),
            extra=values
        )

    async def get_aggregate_stats(self) -> AggregateStats:
        self._require_connection()
        available = await self._call(
            "availableBalance()", lambda: self._contract.functions.availableBalance().call()
        )
        allocated = await self._call(
            "totalAllocated()", lambda: self._contract.functions.totalAllocated().call()
        )
        return AggregateStats(available_balance=int(available), total_allocated=int(allocated))

    async def get_stream_count(self) -> int:
        self._require_connection()
        count = await self._call("streamCount()", lambda: self._contract.functions.streamCount().call())
        return int(count)

    async def get_logs_in_range(self, event_name: str, from_block: int, to_block: int) -> List[ChainEvent]:
        """Query and decode one event's logs in an inclusive block range."""
        w3 = self._require_connection()
        topic = self._topic_for(event_name)
        filter_params = {
            "address": self._address,
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [topic]
        }
        logs = await self._call(
            f"eth_getLogs {event_name} {from_block}-{to_block}",
            lambda: w3.eth.get_logs(filter_params)
        )
        return [event for event in (self.decode_log(log) for log in logs) if event is not None]

    # Events

    async def events(self) -> AsyncIterator[ChainEvent]:
        """Yield contract events as they are observed.

        Raises:
            ChainConnectionError: When the subscription ends
        """
        self._require_connection()
        if self.is_websocket:
            async for event in self._subscription_events():
                yield event
        else:
            async for event in self._polled_events():
                yield event
        raise ChainConnectionError("Event subscription closed")

    async def _subscription_events(self) -> AsyncIterator[ChainEvent]:
        w3 = self._require_connection()
        subscription_id = await w3.eth.subscribe(
            "logs", {"address": self._address, "topics": [list(self._topics)]}
        )
        logger.info(f"Subscribed to contract logs (subscription {subscription_id})")

        async for payload in w3.socket.process_subscriptions():
            log = payload.get("result") if isinstance(payload, dict) else None
            if log is None:
                continue
            event = self.decode_log(log)
            if event is not None:
                yield event

    async def _polled_events(self) -> AsyncIterator[ChainEvent]:
        """Poll new blocks in chunks of at most chain.log_range_blocks.

        The cursor survives reconnects of the same handle, so polling resumes
        after the last fully delivered chunk instead of at the new head.
        """
        w3 = self._require_connection()
        if self._poll_cursor is None:
            self._poll_cursor = await self.get_block_number()
        logger.info(f"Polling contract logs every {self.config.poll_interval_seconds}s from block {self._poll_cursor}")

        while True:
            await asyncio.sleep(self.config.poll_interval_seconds)
            head = await self.get_block_number()
            if head <= self._poll_cursor:
                continue

            for start, end in iter_chunks(self._poll_cursor + 1, head, self.config.log_range_blocks, aligned=True):
                filter_params = {
                    "address": self._address,
                    "fromBlock": start,
                    "toBlock": end,
                    "topics": [list(self._topics)]
                }
                logs = await self._call(
                    f"eth_getLogs {start}-{end}",
                    lambda: w3.eth.get_logs(filter_params)
                )
                for log in logs:
                    event = self.decode_log(log)
                    if event is not None:
                        yield event
                self._poll_cursor = end

    # Decoding

    def decode_log(self, log: Dict[str, Any]) -> Optional[ChainEvent]:
        """Decode a raw log of the indexed contract, or None if it is not one of ours."""
        topics = log.get("topics") or []
        if not topics:
            return None

        name = self._topics.get(Web3.to_hex(topics[0]).lower())
        if name is None:
            logger.debug(f"Ignoring log with unknown topic {Web3.to_hex(topics[0])}")
            return None

        contract = self._contract or Web3().eth.contract(abi=self.abi)
        try:
            decoded = contract.events[name]().process_log(log)
        except Exception as e:
            logger.warning(f"Failed to decode {name} log: {e}")
            return None

        tx_hash = decoded.get("transactionHash")
        return ChainEvent(
            name=name,
            args=dict(decoded["args"]),
            tx_hash=Web3.to_hex(tx_hash) if tx_hash is not None else None,
            block_number=decoded.get("blockNumber"),
            log_index=decoded.get("logIndex")
        )

    def _topic_for(self, event_name: str) -> str:
        for topic, name in self._topics.items():
            if name == event_name:
                return topic
        raise ValueError(f"Event {event_name} is not in the contract ABI")

    def _named_outputs(self, function_name: str, result: Any) -> Dict[str, Any]:
        """Pair a call result tuple with the output names declared in the ABI."""
        for entry in self.abi:
            if entry.get("type") == "function" and entry.get("name") == function_name:
                names = [output["name"] for output in entry["outputs"]]
                break
        else:
            raise ChainReadError(f"Function {function_name} is not in the contract ABI")

        if not isinstance(result, (list, tuple)):
            result = [result]
        if len(result) != len(names):
            raise ChainReadError(f"{function_name} returned {len(result)} values, expected {len(names)}")
        return dict(zip(names, result))

    @staticmethod
    def _snapshot_from_result(stream_id: int, values: Dict[str, Any]) -> StreamSnapshot:
        try:
            return StreamSnapshot(
                worker=str(values["worker"]),
                deposit=int(values["deposit"]),
                withdrawn=int(values["withdrawn"]),
                rate_per_second=int(values["ratePerSecond"]),
                start_time=int(values["startTime"]),
                end_time=int(values["endTime"]),
                stream_type=StreamType.from_index(values["streamType"]),
                state=StreamState.from_index(values["state"])
            )
        except (KeyError, IndexError, ValueError) as e:
            raise ChainReadError(f"Unexpected getStreamInfo({stream_id}) result: {e}") from e
