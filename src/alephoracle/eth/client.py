"""
alephoracle/eth/client.py

Minimal Ethereum JSON-RPC client over HTTP.

Provides only what the order watcher needs:
- Liveness checks (net_listening, web3_clientVersion, eth_blockNumber)
- Log filters (eth_newFilter, eth_getFilterChanges, eth_uninstallFilter)

Calls are blocking; the event source runs them in worker threads.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..config import DEFAULT_RPC_URL
from ..errors import ConnectError, RejectedError, RpcError, TimeoutExceeded

logger = logging.getLogger("alephoracle.eth.client")


class EthRpcClient:
    """
    JSON-RPC client for an Ethereum node.

    Example:
        client = EthRpcClient("http://localhost:8545")
        if client.is_listening():
            filter_id = client.new_filter(address="0x...")
            logs = client.get_filter_changes(filter_id)
    """

    def __init__(
        self,
        url: str = DEFAULT_RPC_URL,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            url: RPC endpoint URL
            timeout: Per-request timeout in seconds
            session: Optional requests session (created if None)
        """
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._request_id = 0

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _call(self, method: str, *params) -> Any:
        """
        Make a JSON-RPC call.

        Raises:
            ConnectError: Endpoint unreachable
            TimeoutExceeded: No response within the timeout
            RejectedError: Non-2xx HTTP status
            RpcError: JSON-RPC error object in the response
        """
        request = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": list(params),
        }

        try:
            response = self._session.post(self.url, json=request, timeout=self.timeout)
        except requests.Timeout as e:
            raise TimeoutExceeded(self.timeout) from e
        except requests.RequestException as e:
            raise ConnectError(self.url, str(e)) from e

        if not 200 <= response.status_code < 300:
            raise RejectedError(self.url, response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            raise RpcError(method, f"invalid JSON response: {e}") from e

        if not isinstance(payload, dict):
            raise RpcError(method, f"unexpected response: {payload!r}")

        error = payload.get("error")
        if error:
            if isinstance(error, dict):
                raise RpcError(method, error.get("message", str(error)), error.get("code"))
            raise RpcError(method, str(error))

        return payload.get("result")

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    def is_listening(self) -> bool:
        """Return the node's net_listening flag."""
        return bool(self._call("net_listening"))

    def client_version(self) -> str:
        return str(self._call("web3_clientVersion"))

    def block_number(self) -> int:
        result = self._call("eth_blockNumber")
        return int(result, 16)

    def new_filter(
        self,
        address: Optional[str] = None,
        topics: Optional[List[Optional[str]]] = None,
        from_block: str = "latest",
    ) -> str:
        """
        Install a log filter.

        Args:
            address: Contract address to watch (all contracts if None)
            topics: Topic filter list; topics[0] is the event signature hash
            from_block: Starting block tag or hex number

        Returns:
            Filter id
        """
        criteria: Dict[str, Any] = {"fromBlock": from_block}
        if address:
            criteria["address"] = address
        if topics:
            criteria["topics"] = topics

        filter_id = self._call("eth_newFilter", criteria)
        logger.debug(f"Installed log filter {filter_id} on {self.url}")
        return filter_id

    def get_filter_changes(self, filter_id: str) -> List[Dict[str, Any]]:
        """Return logs matched since the last poll."""
        result = self._call("eth_getFilterChanges", filter_id)
        return result or []

    def uninstall_filter(self, filter_id: str) -> bool:
        return bool(self._call("eth_uninstallFilter", filter_id))

    def close(self) -> None:
        self._session.close()

    def __repr__(self) -> str:
        return f"EthRpcClient({self.url})"
