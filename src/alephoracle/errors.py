"""
alephoracle/errors.py

Exception hierarchy for the oracle bridge.

Per-event errors (InvalidReference, ConnectError, RejectedError,
TimeoutExceeded) are contained by the watcher. StartupError and
SubscriptionLost end the watch session and the process.
"""

from typing import Any, Optional


class OracleError(Exception):
    """Base class for all oracle errors."""
    pass


class InvalidReference(OracleError, ValueError):
    """A content identifier failed multihash validation."""

    def __init__(self, text: str, reason: str):
        self.text = text
        self.reason = reason
        super().__init__(f"Invalid content reference {text!r}: {reason}")


class ConnectError(OracleError, ConnectionError):
    """An endpoint could not be reached."""

    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Unable to reach {endpoint}: {reason}")


class RejectedError(OracleError):
    """The remote endpoint answered with a non-success status."""

    def __init__(self, endpoint: str, status: int, body: Any = None):
        self.endpoint = endpoint
        self.status = status
        self.body = body
        super().__init__(f"{endpoint} rejected request with status {status}: {body}")


class TimeoutExceeded(OracleError, TimeoutError):
    """A bounded operation did not finish in time."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Timeout of {timeout * 1000:.0f}ms exceeded")


class RpcError(OracleError):
    """The chain RPC endpoint returned a JSON-RPC error object."""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.code = code
        super().__init__(f"RPC {method} failed: {message}")


class SessionError(OracleError):
    """A watch session could not be opened."""
    pass


class StartupError(OracleError):
    """A required endpoint was unavailable during startup."""

    def __init__(self, component: str, endpoint: str, reason: str):
        self.component = component
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Unable to connect to {component} at {endpoint}: {reason}")


class SubscriptionLost(OracleError):
    """The event source subscription dropped while watching."""

    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Lost event subscription on {endpoint}: {reason}")
