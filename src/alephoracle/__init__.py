"""
alephoracle - Ethereum order events to aleph namespaces

Watches an ethereum contract for "order placed" events and publishes a
statement referencing the order's pre-stored content into a namespace
on the aleph peer network.

- Content references are base58 multihashes, validated locally
- Every network call is bounded by a per-call timeout
- Transient publish failures are retried with backoff

Usage:
    import trio
    from alephoracle import BridgeOrchestrator, OracleConfig

    config = OracleConfig(namespace="images.dpla", rpc_url="http://localhost:8545")
    orchestrator = BridgeOrchestrator.from_config(config)
    trio.run(orchestrator.run)

Publishing directly:
    from alephoracle import PublicationClient, multihash

    client = PublicationClient("http://localhost:9002")
    outcome = await client.publish("images.dpla", multihash.parse("QmF00..."))
"""

from . import multihash
from .multihash import ContentReference
from .concurrency import RetryPolicy, bounded, gather_dict, run_blocking
from .config import OracleConfig
from .errors import (
    ConnectError,
    InvalidReference,
    OracleError,
    RejectedError,
    RpcError,
    SessionError,
    StartupError,
    SubscriptionLost,
    TimeoutExceeded,
)
from .publication import PeerNodeClient, PublicationClient, PublishOutcome, Statement
from .eth import EthRpcClient, EventSource, OrderEvent, RpcLogEventSource
from .watcher import EventWatcher, WatchSession, WatchState
from .orchestrator import BridgeOrchestrator

__version__ = "1.0.0"
__all__ = [
    # Content addressing
    "multihash",
    "ContentReference",
    # Concurrency
    "RetryPolicy",
    "bounded",
    "gather_dict",
    "run_blocking",
    # Config
    "OracleConfig",
    # Errors
    "OracleError",
    "InvalidReference",
    "ConnectError",
    "RejectedError",
    "TimeoutExceeded",
    "RpcError",
    "SessionError",
    "StartupError",
    "SubscriptionLost",
    # Publication
    "PublicationClient",
    "PeerNodeClient",
    "PublishOutcome",
    "Statement",
    # Event source
    "EthRpcClient",
    "EventSource",
    "OrderEvent",
    "RpcLogEventSource",
    # Watching
    "EventWatcher",
    "WatchSession",
    "WatchState",
    "BridgeOrchestrator",
]
