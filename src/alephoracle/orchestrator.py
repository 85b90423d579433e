"""
alephoracle/orchestrator.py

Startup sequencing and lifecycle for the oracle bridge.

Order of operations:
    1. Identify the local peer node          (fatal on failure)
    2. Connect to the remote peer, if any    (warning on failure/absence)
    3. Connect to the event source           (fatal on failure)
    4. Open the watch session and run the watcher until stopped

The event source is never contacted if step 1 fails.
"""

import logging
from typing import Any, Dict, Optional

import trio

from .concurrency import RetryPolicy, bounded
from .config import OracleConfig
from .errors import OracleError, StartupError, SubscriptionLost
from .eth.client import EthRpcClient
from .eth.events import EventSource, RpcLogEventSource
from .publication import PeerNodeClient, PublicationClient
from .watcher import EventWatcher, WatchSession

logger = logging.getLogger("alephoracle.orchestrator")


class BridgeOrchestrator:
    """
    Owns the bridge's collaborators and the watch session.

    Usage:
        config = OracleConfig(namespace="images.dpla")
        orchestrator = BridgeOrchestrator.from_config(config)
        trio.run(orchestrator.run)
    """

    def __init__(
        self,
        config: OracleConfig,
        node: PeerNodeClient,
        publisher: PublicationClient,
        event_source: EventSource,
        watcher: Optional[EventWatcher] = None,
    ):
        self.config = config
        self.node = node
        self.publisher = publisher
        self.event_source = event_source
        self.watcher = watcher or EventWatcher(
            publisher,
            RetryPolicy(
                max_attempts=config.max_attempts,
                base_delay=config.retry_base_delay,
                max_delay=config.retry_max_delay,
            ),
            max_concurrent=config.max_concurrent_events,
        )

        self.session: Optional[WatchSession] = None
        self.node_info: Dict[str, Any] = {}
        self.source_status: Dict[str, Any] = {}
        self.detached = False
        self._stop_requested = False

    @classmethod
    def from_config(cls, config: OracleConfig) -> "BridgeOrchestrator":
        """Build the default collaborators for `config`."""
        timeout = config.call_timeout
        rpc = EthRpcClient(config.rpc_url, timeout=timeout)
        return cls(
            config=config,
            node=PeerNodeClient(config.node_url, timeout=timeout),
            publisher=PublicationClient(config.node_url, timeout=timeout),
            event_source=RpcLogEventSource(
                rpc,
                contract_address=config.contract_address,
                event_topic=config.event_topic,
                poll_interval=config.poll_interval,
                call_timeout=timeout,
                failure_threshold=config.poll_failure_threshold,
            ),
        )

    # ========================================================================
    # STARTUP
    # ========================================================================

    async def connect_node(self) -> Dict[str, Any]:
        """Step 1: the local node must answer before anything else starts."""
        try:
            self.node_info = await bounded(self.node.identify, self.config.call_timeout)
        except OracleError as e:
            raise StartupError("peer node", self.config.node_url, str(e)) from e

        logger.info(f"Connected to peer node {self.config.node_url}: {self.node_info.get('id', '?')}")
        return self.node_info

    async def connect_remote_peer(self) -> bool:
        """Step 2: optional; failure only degrades the bridge."""
        if not self.config.remote_peer:
            self.detached = True
            logger.warning("No remote peer specified, running in detached mode")
        else:
            try:
                await bounded(self.node.connect_remote, self.config.call_timeout, self.config.remote_peer)
                logger.info(f"Connected to remote peer {self.config.remote_peer}")
            except OracleError as e:
                self.detached = True
                logger.warning(
                    f"Unable to connect to remote peer {self.config.remote_peer}, "
                    f"running in detached mode: {e}"
                )

        if not self.config.directory:
            logger.warning("No directory specified, running without directory")

        return not self.detached

    async def connect_event_source(self) -> Dict[str, Any]:
        """Step 3: the event source must be live before subscribing."""
        try:
            self.source_status = await bounded(self.event_source.connect, self.config.call_timeout)
        except OracleError as e:
            raise StartupError("ethereum RPC", self.event_source.endpoint, str(e)) from e
        return self.source_status

    async def start(self) -> WatchSession:
        """Run steps 1-3 and open the watch session."""
        await self.connect_node()
        await self.connect_remote_peer()
        await self.connect_event_source()

        self.session = WatchSession.open(
            self.config.namespace,
            self.event_source.endpoint,
            self.config.node_url,
            seen_limit=self.config.seen_limit,
        )
        self.session.on_stop(self.event_source.unsubscribe)
        if self._stop_requested:
            self.session.stop()
        return self.session

    # ========================================================================
    # WATCH LOOP
    # ========================================================================

    async def run(self) -> None:
        """
        Start the bridge and watch until stopped.

        Raises:
            StartupError: If the node or event source is unavailable at startup
            SubscriptionLost: If the event subscription fails while watching
        """
        session = await self.start()
        try:
            await self.watch(session)
        finally:
            session.stop()

    async def watch(self, session: WatchSession) -> None:
        """Step 4: pump events from the source into the watcher."""
        send_channel, receive_channel = trio.open_memory_channel(self.config.queue_size)
        failure: Optional[SubscriptionLost] = None

        async def pump() -> None:
            nonlocal failure
            async with send_channel:
                try:
                    await self.event_source.run(send_channel)
                except SubscriptionLost as e:
                    failure = e
                    logger.error(str(e))
                    session.stop()

        async with trio.open_nursery() as nursery:
            nursery.start_soon(pump)
            nursery.start_soon(self.watcher.run, session, receive_channel)

        if failure is not None:
            raise failure

    @property
    def stopping(self) -> bool:
        return self._stop_requested

    def stop(self) -> None:
        """Stop the watch session. Idempotent; in-flight publishes finish."""
        self._stop_requested = True
        if self.session is not None:
            self.session.stop()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "namespace": self.config.namespace,
            "detached": self.detached,
            "session_active": self.session is not None and self.session.active,
            "node": self.node_info,
            "watcher": self.watcher.get_stats(),
            "publisher": self.publisher.get_stats(),
        }
