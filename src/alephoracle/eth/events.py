"""
alephoracle/eth/events.py

Order event sources.

An event source delivers OrderEvent messages onto a trio memory channel.
The watcher consumes the other end, so ordering and backpressure are
those of the channel.

RpcLogEventSource polls a JSON-RPC log filter for the order contract's
"order placed" event. The log's ABI-encoded data carries the order id and
the content reference text:

    OrderPlaced(uint256 orderId, string contentRef)

orderId may also be indexed, in which case it is read from topics[1].
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import trio

from ..concurrency import gather_dict, run_blocking
from ..config import DEFAULT_POLL_INTERVAL
from ..errors import (
    ConnectError,
    OracleError,
    RejectedError,
    RpcError,
    SubscriptionLost,
    TimeoutExceeded,
)
from .client import EthRpcClient

logger = logging.getLogger("alephoracle.eth.events")

WORD_SIZE = 32


@dataclass
class OrderEvent:
    """An "order placed" event as seen by the watcher."""
    order_id: Optional[int]
    content_reference_text: str
    event_id: Optional[str] = None      # tx_hash:log_index, unique per chain
    block_number: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderEvent":
        return cls(
            order_id=data.get("orderId"),
            content_reference_text=data.get("contentReferenceText", ""),
            event_id=data.get("eventId"),
            block_number=data.get("blockNumber"),
            raw=dict(data),
        )


class EventDecodeError(OracleError):
    """A log could not be decoded as an order event."""
    pass


def _word(data: bytes, index: int) -> int:
    start = index * WORD_SIZE
    chunk = data[start:start + WORD_SIZE]
    if len(chunk) != WORD_SIZE:
        raise EventDecodeError(f"log data too short for word {index}")
    return int.from_bytes(chunk, "big")


def _decode_string(data: bytes, offset: int) -> str:
    if offset % WORD_SIZE or offset + WORD_SIZE > len(data):
        raise EventDecodeError(f"bad string offset {offset}")
    length = int.from_bytes(data[offset:offset + WORD_SIZE], "big")
    start = offset + WORD_SIZE
    if start + length > len(data):
        raise EventDecodeError(f"string length {length} overruns log data")
    try:
        return data[start:start + length].decode("utf-8")
    except UnicodeDecodeError as e:
        raise EventDecodeError(f"content reference is not UTF-8: {e}") from e


def _hex_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16)


def decode_order_placed(log: Dict[str, Any]) -> OrderEvent:
    """
    Decode an eth_getFilterChanges log entry.

    Raises:
        EventDecodeError: If the log data does not match the event layout
    """
    data_hex = log.get("data") or "0x"
    try:
        data = bytes.fromhex(data_hex[2:] if data_hex.startswith("0x") else data_hex)
    except ValueError as e:
        raise EventDecodeError(f"log data is not hex: {e}") from e

    topics = log.get("topics") or []
    try:
        if len(topics) >= 2:
            order_id = int(topics[1], 16)
            text = _decode_string(data, _word(data, 0))
        else:
            order_id = _word(data, 0)
            text = _decode_string(data, _word(data, 1))

        event_id = None
        if log.get("transactionHash") is not None:
            event_id = f"{log['transactionHash']}:{_hex_int(log.get('logIndex'))}"
        block_number = _hex_int(log.get("blockNumber"))
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"malformed log fields: {e}") from e

    return OrderEvent(
        order_id=order_id,
        content_reference_text=text,
        event_id=event_id,
        block_number=block_number,
        raw=log,
    )


class EventSource(ABC):
    """
    Push-based source of order events.

    run() sends events until unsubscribe() is called or the subscription
    fails; the caller owns (and closes) the send channel.
    """

    endpoint: str = ""

    @abstractmethod
    async def connect(self) -> Dict[str, Any]:
        """Check that the source is live; return its status."""

    @abstractmethod
    async def run(self, send_channel: trio.MemorySendChannel) -> None:
        """Deliver events onto `send_channel` until unsubscribed."""

    @abstractmethod
    def unsubscribe(self) -> None:
        """Stop delivering events. Idempotent."""


class RpcLogEventSource(EventSource):
    """
    Order events from an Ethereum log filter.

    Attributes:
        client: JSON-RPC client
        contract_address: Contract to watch (all if None)
        event_topic: Event signature hash for topics[0] (any if None)
    """

    def __init__(
        self,
        client: EthRpcClient,
        contract_address: Optional[str] = None,
        event_topic: Optional[str] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        call_timeout: float = 5.0,
        failure_threshold: int = 3,
    ):
        self.client = client
        self.endpoint = client.url
        self.contract_address = contract_address
        self.event_topic = event_topic
        self.poll_interval = poll_interval
        self.call_timeout = call_timeout
        self.failure_threshold = failure_threshold

        self._filter_id: Optional[str] = None
        self._cancel_scope: Optional[trio.CancelScope] = None
        self._unsubscribed = False

        # Stats
        self._events_delivered = 0
        self._events_undecodable = 0
        self._events_removed = 0
        self._poll_failures = 0

    async def _rpc(self, fn, *args) -> Any:
        return await run_blocking(fn, *args, timeout=self.call_timeout)

    async def status(self) -> Dict[str, Any]:
        """Fetch listening flag, client version and block height concurrently."""
        return await gather_dict({
            "listening": lambda: self._rpc(self.client.is_listening),
            "client_version": lambda: self._rpc(self.client.client_version),
            "block_number": lambda: self._rpc(self.client.block_number),
        })

    async def connect(self) -> Dict[str, Any]:
        """
        Verify the RPC endpoint is live.

        Raises:
            ConnectError: If the node is unreachable or not listening
        """
        try:
            status = await self.status()
        except (RpcError, RejectedError) as e:
            raise ConnectError(self.endpoint, str(e)) from e

        if not status["listening"]:
            raise ConnectError(self.endpoint, "node is not listening")

        logger.info(
            f"Connected to ethereum RPC {self.endpoint} "
            f"({status['client_version']}, block {status['block_number']})"
        )
        return status

    async def run(self, send_channel: trio.MemorySendChannel) -> None:
        """
        Poll the log filter and send decoded events.

        Raises:
            SubscriptionLost: If the filter cannot be installed, disappears,
                or polling fails `failure_threshold` times in a row
        """
        topics = [self.event_topic] if self.event_topic else None

        try:
            self._filter_id = await self._rpc(
                self.client.new_filter, self.contract_address, topics
            )
        except OracleError as e:
            raise SubscriptionLost(self.endpoint, f"could not install filter: {e}") from e

        logger.info(f"Watching order events (filter {self._filter_id})")

        try:
            with trio.CancelScope() as cancel_scope:
                self._cancel_scope = cancel_scope
                if self._unsubscribed:
                    cancel_scope.cancel()
                await self._poll_loop(send_channel)
        finally:
            self._cancel_scope = None
            await self._uninstall_filter()

    async def _poll_loop(self, send_channel: trio.MemorySendChannel) -> None:
        consecutive_failures = 0

        while True:
            try:
                logs = await self._rpc(self.client.get_filter_changes, self._filter_id)
                consecutive_failures = 0
            except RpcError as e:
                # Filter expired or node restarted
                raise SubscriptionLost(self.endpoint, str(e)) from e
            except (ConnectError, TimeoutExceeded, RejectedError) as e:
                consecutive_failures += 1
                self._poll_failures += 1
                logger.warning(
                    f"Poll of {self.endpoint} failed "
                    f"({consecutive_failures}/{self.failure_threshold}): {e}"
                )
                if consecutive_failures >= self.failure_threshold:
                    raise SubscriptionLost(self.endpoint, str(e)) from e
                await trio.sleep(self.poll_interval)
                continue

            for log in logs:
                if log.get("removed"):
                    # Reverted by a chain reorganisation
                    self._events_removed += 1
                    logger.info(f"Ignoring removed log {log.get('transactionHash')}")
                    continue
                try:
                    event = decode_order_placed(log)
                except EventDecodeError as e:
                    self._events_undecodable += 1
                    logger.warning(f"Dropping undecodable log {log.get('transactionHash')}: {e}")
                    continue
                await send_channel.send(event)
                self._events_delivered += 1

            await trio.sleep(self.poll_interval)

    async def _uninstall_filter(self) -> None:
        if self._filter_id is None:
            return
        filter_id, self._filter_id = self._filter_id, None
        with trio.CancelScope(shield=True):
            try:
                await self._rpc(self.client.uninstall_filter, filter_id)
            except OracleError as e:
                logger.debug(f"Could not uninstall filter {filter_id}: {e}")

    def unsubscribe(self) -> None:
        self._unsubscribed = True
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "subscribed": self._filter_id is not None,
            "events_delivered": self._events_delivered,
            "events_undecodable": self._events_undecodable,
            "events_removed": self._events_removed,
            "poll_failures": self._poll_failures,
        }
