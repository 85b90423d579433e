"""
alephoracle/config.py

Configuration constants and the OracleConfig data class.
"""

from dataclasses import dataclass
from typing import Optional

from .errors import OracleError


# Local aleph node REST endpoint
DEFAULT_NODE_URL = "http://localhost:9002"

# Ethereum JSON-RPC endpoint
DEFAULT_RPC_URL = "http://localhost:8545"

# Per-call timeout for every network request
DEFAULT_CALL_TIMEOUT_MS = 5000

# Seconds between eth_getFilterChanges polls
DEFAULT_POLL_INTERVAL = 2.0

# Buffered events between the event source and the watcher
DEFAULT_QUEUE_SIZE = 100

# Events published concurrently; further events wait in the queue
DEFAULT_MAX_CONCURRENT_EVENTS = 10

# Event ids remembered per session for redelivery checks
DEFAULT_SEEN_LIMIT = 10000

# Environment variable prefix for CLI options
ENV_PREFIX = "ALEPH_ORACLE_"

# Publish retry settings
RETRY_PARAMS = {
    "max_attempts": 3,              # Total publish attempts per event
    "base_delay": 1.0,              # seconds
    "max_delay": 30.0,              # seconds
    "exponential_base": 2.0,
}


@dataclass
class OracleConfig:
    """
    Settings consumed by the bridge orchestrator at startup.

    Usage:
        config = OracleConfig(namespace="images.dpla", rpc_url="http://localhost:8545")
        config.validate()
    """

    # Namespace statements are published into
    namespace: str = ""

    # Event source (chain RPC)
    rpc_url: str = DEFAULT_RPC_URL
    contract_address: Optional[str] = None
    event_topic: Optional[str] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_failure_threshold: int = 3

    # Peer network
    node_url: str = DEFAULT_NODE_URL
    remote_peer: Optional[str] = None      # multiaddr; absent = detached mode
    directory: Optional[str] = None        # multiaddr of a directory server

    # Timeouts and retries
    call_timeout_ms: int = DEFAULT_CALL_TIMEOUT_MS
    max_attempts: int = RETRY_PARAMS["max_attempts"]
    retry_base_delay: float = RETRY_PARAMS["base_delay"]
    retry_max_delay: float = RETRY_PARAMS["max_delay"]

    # Flow control
    queue_size: int = DEFAULT_QUEUE_SIZE
    max_concurrent_events: int = DEFAULT_MAX_CONCURRENT_EVENTS
    seen_limit: int = DEFAULT_SEEN_LIMIT

    @property
    def call_timeout(self) -> float:
        """Per-call timeout in seconds."""
        return self.call_timeout_ms / 1000.0

    def validate(self) -> None:
        """
        Check required settings.

        Raises:
            OracleError: On a missing or out-of-range setting
        """
        if not self.namespace:
            raise OracleError("namespace is required")
        if not self.rpc_url:
            raise OracleError("rpc_url is required")
        if not self.node_url:
            raise OracleError("node_url is required")
        if self.call_timeout_ms <= 0:
            raise OracleError("call_timeout_ms must be positive")
        if self.max_attempts < 1:
            raise OracleError("max_attempts must be at least 1")
        if self.poll_interval <= 0:
            raise OracleError("poll_interval must be positive")
        if self.queue_size < 1:
            raise OracleError("queue_size must be at least 1")
        if self.max_concurrent_events < 1:
            raise OracleError("max_concurrent_events must be at least 1")
        if self.seen_limit < 1:
            raise OracleError("seen_limit must be at least 1")
