"""
alephoracle/eth - Ethereum event source for the oracle bridge.

Provides a minimal JSON-RPC client and the log-filter event source that
turns "order placed" logs into OrderEvent messages.
"""

from .client import EthRpcClient
from .events import (
    EventDecodeError,
    EventSource,
    OrderEvent,
    RpcLogEventSource,
    decode_order_placed,
)

__all__ = [
    "EthRpcClient",
    "EventDecodeError",
    "EventSource",
    "OrderEvent",
    "RpcLogEventSource",
    "decode_order_placed",
]
