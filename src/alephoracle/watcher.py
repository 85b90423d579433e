"""
alephoracle/watcher.py

Watch session and event watcher.

The watcher consumes OrderEvent messages from a trio memory channel,
validates each event's content reference and publishes it into the
session's namespace. Every event is processed in its own task, with at
most `max_concurrent` tasks in flight; while they are all busy the
watcher stops reading and the bounded channel fills up. Per-event
failures are logged and contained so one bad event never stops the
session.

Retry policy:
    ConnectError, TimeoutExceeded -> retried with backoff up to max_attempts
    RejectedError                 -> never retried
    InvalidReference              -> dropped before any network call
"""

import logging
import threading
import time
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Set

import trio

from . import multihash
from .concurrency import RetryPolicy
from .config import DEFAULT_MAX_CONCURRENT_EVENTS, DEFAULT_SEEN_LIMIT
from .errors import InvalidReference, RejectedError, SessionError
from .eth.events import OrderEvent
from .multihash import ContentReference
from .publication import PublicationClient, PublishOutcome

logger = logging.getLogger("alephoracle.watcher")


class WatchState(Enum):
    """
    Watcher lifecycle.

    IDLE: Not consuming events yet
    SUBSCRIBED: Consuming events, none in flight
    PROCESSING: Consuming events, at least one in flight
    STOPPED: Terminal
    """
    IDLE = auto()
    SUBSCRIBED = auto()
    PROCESSING = auto()
    STOPPED = auto()


class WatchSession:
    """
    "Subscribed to source S, publishing into namespace N via node P".

    At most one open session per namespace per process. Sessions are
    opened with WatchSession.open() and ended with stop(), which is
    idempotent.
    """

    _active_namespaces: Set[str] = set()
    _registry_lock = threading.Lock()

    def __init__(
        self,
        namespace: str,
        event_endpoint: str,
        node_endpoint: str,
        seen_limit: int = DEFAULT_SEEN_LIMIT,
    ):
        self.namespace = namespace
        self.event_endpoint = event_endpoint
        self.node_endpoint = node_endpoint
        self.seen_limit = seen_limit

        self._stopped = False
        self._seen_events: Dict[str, float] = {}  # event id -> first seen
        self._stop_callbacks: List[Callable[[], None]] = []

    @classmethod
    def open(
        cls,
        namespace: str,
        event_endpoint: str,
        node_endpoint: str,
        seen_limit: int = DEFAULT_SEEN_LIMIT,
    ) -> "WatchSession":
        """
        Open a session for `namespace`.

        Raises:
            SessionError: If a session for `namespace` is already open
        """
        with cls._registry_lock:
            if namespace in cls._active_namespaces:
                raise SessionError(f"A watch session for namespace {namespace!r} is already open")
            cls._active_namespaces.add(namespace)

        logger.info(f"Opened watch session for {namespace} ({event_endpoint} -> {node_endpoint})")
        return cls(namespace, event_endpoint, node_endpoint, seen_limit)

    @classmethod
    def is_open(cls, namespace: str) -> bool:
        with cls._registry_lock:
            return namespace in cls._active_namespaces

    @property
    def active(self) -> bool:
        return not self._stopped

    def on_stop(self, callback: Callable[[], None]) -> None:
        """Register a callback to run once when the session stops."""
        if self._stopped:
            callback()
        else:
            self._stop_callbacks.append(callback)

    def mark_seen(self, event_id: str) -> bool:
        """
        Record an event id.

        Only the most recent `seen_limit` ids are kept; once the limit is
        exceeded the oldest half is forgotten.

        Returns:
            False if the event was already seen in this session
        """
        if event_id in self._seen_events:
            return False
        self._seen_events[event_id] = time.monotonic()
        self._prune_seen()
        return True

    def _prune_seen(self) -> None:
        if len(self._seen_events) > self.seen_limit:
            # Dicts keep insertion order, so the first half is the oldest
            keep = list(self._seen_events.items())[len(self._seen_events) // 2:]
            self._seen_events = dict(keep)
            logger.debug(f"Pruned seen events for {self.namespace}, {len(keep)} kept")

    @property
    def seen_count(self) -> int:
        return len(self._seen_events)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        with self._registry_lock:
            self._active_namespaces.discard(self.namespace)

        callbacks, self._stop_callbacks = self._stop_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Stop callback error: {e}")

        logger.info(f"Stopped watch session for {self.namespace}")

    def __enter__(self) -> "WatchSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def __repr__(self) -> str:
        status = "active" if self.active else "stopped"
        return f"WatchSession({self.namespace}, {status})"


class EventWatcher:
    """
    Turns order events into published statements.

    Usage:
        watcher = EventWatcher(publisher, RetryPolicy(max_attempts=3))
        async with trio.open_nursery() as nursery:
            nursery.start_soon(watcher.run, session, receive_channel)
    """

    def __init__(
        self,
        publisher: PublicationClient,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_EVENTS,
    ):
        self.publisher = publisher
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrent = max_concurrent

        # Held by each in-flight event; while all are taken the channel fills up
        self._limiter = trio.CapacityLimiter(max_concurrent)

        self._state = WatchState.IDLE
        self._in_flight = 0

        # Stats
        self._events_received = 0
        self._published = 0
        self._dropped_invalid = 0
        self._dropped_rejected = 0
        self._dropped_exhausted = 0
        self._dropped_stopped = 0
        self._duplicates = 0
        self._retries = 0

    @property
    def state(self) -> WatchState:
        if self._state == WatchState.SUBSCRIBED and self._in_flight:
            return WatchState.PROCESSING
        return self._state

    async def run(self, session: WatchSession, receive_channel: trio.MemoryReceiveChannel) -> None:
        """
        Consume events until the channel closes.

        Events still buffered after the session stops are dropped; in-flight
        publishes finish before run() returns.
        """
        if self._state == WatchState.STOPPED:
            raise SessionError("Watcher already stopped")

        self._state = WatchState.SUBSCRIBED
        logger.info(f"Watching for order events, publishing into {session.namespace}")

        try:
            async with trio.open_nursery() as nursery:
                async with receive_channel:
                    async for event in receive_channel:
                        self._events_received += 1
                        if not session.active:
                            self._drop_stopped(event)
                            continue
                        token = object()
                        await self._limiter.acquire_on_behalf_of(token)
                        if not session.active:
                            self._limiter.release_on_behalf_of(token)
                            self._drop_stopped(event)
                            continue
                        nursery.start_soon(self._process, session, event, token)
        finally:
            self._state = WatchState.STOPPED

    def _drop_stopped(self, event: OrderEvent) -> None:
        self._dropped_stopped += 1
        logger.info(f"Session stopped, dropping order {event.order_id}")

    async def _process(self, session: WatchSession, event: OrderEvent, token: object) -> None:
        self._in_flight += 1
        try:
            await self.handle_event(session, event)
        except Exception as e:
            logger.error(f"Unexpected error processing order {event.order_id}: {type(e).__name__}: {e}")
        finally:
            self._in_flight -= 1
            self._limiter.release_on_behalf_of(token)

    async def handle_event(self, session: WatchSession, event: OrderEvent) -> Optional[PublishOutcome]:
        """
        Validate and publish a single event.

        Returns:
            The final PublishOutcome, or None if the event was dropped
            before publishing
        """
        try:
            reference = multihash.parse(event.content_reference_text)
        except InvalidReference as e:
            self._dropped_invalid += 1
            logger.warning(f"Dropping order {event.order_id}: {e}")
            return None

        if event.event_id is not None and not session.mark_seen(event.event_id):
            self._duplicates += 1
            logger.debug(f"Ignoring redelivered event {event.event_id}")
            return None

        fields: Dict[str, Any] = {}
        if event.order_id is not None:
            fields["orderId"] = event.order_id

        return await self.publish_with_retry(session, reference, **fields)

    async def publish_with_retry(
        self,
        session: WatchSession,
        reference: ContentReference,
        **fields: Any,
    ) -> PublishOutcome:
        """Publish `reference`, retrying transient failures per the policy."""
        policy = self.retry_policy
        outcome: Optional[PublishOutcome] = None

        for attempt in range(policy.max_attempts):
            if attempt and not session.active:
                logger.warning(
                    f"Session stopped, not retrying {reference.text} "
                    f"after {attempt} attempt(s)"
                )
                self._dropped_stopped += 1
                return outcome

            outcome = await self.publisher.publish(session.namespace, reference, **fields)

            if outcome.ok:
                self._published += 1
                logger.info(f"Published {reference.text} to {session.namespace}: {outcome.response}")
                return outcome

            if isinstance(outcome.error, RejectedError):
                self._dropped_rejected += 1
                logger.error(
                    f"Node rejected statement {outcome.statement.to_body()} "
                    f"for namespace {session.namespace}: {outcome.message}"
                )
                return outcome

            if attempt + 1 < policy.max_attempts:
                delay = policy.delay(attempt)
                self._retries += 1
                logger.warning(
                    f"Publish of {reference.text} failed ({outcome.error_kind}: {outcome.message}), "
                    f"attempt {attempt + 1}/{policy.max_attempts}, retrying in {delay:.1f}s"
                )
                await trio.sleep(delay)

        self._dropped_exhausted += 1
        logger.error(
            f"Dropping {reference.text} after {policy.max_attempts} attempts: "
            f"{outcome.error_kind}: {outcome.message}"
        )
        return outcome

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.name,
            "in_flight": self._in_flight,
            "max_concurrent": self.max_concurrent,
            "events_received": self._events_received,
            "published": self._published,
            "dropped_invalid": self._dropped_invalid,
            "dropped_rejected": self._dropped_rejected,
            "dropped_exhausted": self._dropped_exhausted,
            "dropped_stopped": self._dropped_stopped,
            "duplicates": self._duplicates,
            "retries": self._retries,
        }

    def __repr__(self) -> str:
        return f"EventWatcher({self.state.name}, published={self._published})"
