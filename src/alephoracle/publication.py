"""
alephoracle/publication.py

REST clients for the local aleph peer node.

PublicationClient delivers statements to the node's namespace endpoint:

    POST {node_url}/namespace/{namespace}
    {"object": "<base58 multihash>", ...}

PeerNodeClient covers the node calls the orchestrator needs at startup
(identity check and remote peer connection).

Every request runs in a worker thread bounded by the call timeout. No
retries happen here; the caller decides whether republishing is safe.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from multiaddr import Multiaddr

from .concurrency import run_blocking
from .config import DEFAULT_CALL_TIMEOUT_MS, DEFAULT_NODE_URL
from .errors import ConnectError, OracleError, RejectedError, TimeoutExceeded
from .multihash import ContentReference

logger = logging.getLogger("alephoracle.publication")

USER_AGENT = "alephoracle/1.0"


@dataclass
class Statement:
    """A statement to publish: namespace plus content reference."""
    namespace: str
    object: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_body(self) -> Dict[str, Any]:
        body = dict(self.fields)
        body["object"] = self.object
        return body


@dataclass
class PublishOutcome:
    """Result of a single publish attempt."""
    statement: Statement
    response: Any = None
    error: Optional[OracleError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    @property
    def message(self) -> str:
        return str(self.error) if self.error is not None else "ok"

    def to_dict(self) -> dict:
        return {
            "namespace": self.statement.namespace,
            "object": self.statement.object,
            "ok": self.ok,
            "error_kind": self.error_kind,
            "message": self.message,
            "response": self.response,
        }


class NodeRestClient:
    """
    Base REST client for an aleph node.

    The requests session is shared read-only across concurrent calls;
    each call is stateless at this level.
    """

    def __init__(
        self,
        node_url: str = DEFAULT_NODE_URL,
        timeout: float = DEFAULT_CALL_TIMEOUT_MS / 1000.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            node_url: Base URL of the node's REST API
            timeout: Per-call timeout in seconds
            session: Optional requests session (created if None)
        """
        self.node_url = node_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)

    def _url(self, path: str) -> str:
        return f"{self.node_url}/{path.lstrip('/')}"

    def _send(self, method: str, url: str, body: Optional[dict]) -> requests.Response:
        """Blocking request; runs in a worker thread."""
        return self._session.request(method, url, json=body, timeout=self.timeout)

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        """
        Make one bounded request and decode the response.

        Raises:
            ConnectError: Transport failure
            RejectedError: Non-2xx status
            TimeoutExceeded: No response within the call timeout
        """
        url = self._url(path)
        try:
            response = await run_blocking(
                self._send, method, url, body, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise TimeoutExceeded(self.timeout) from e
        except requests.RequestException as e:
            raise ConnectError(url, str(e)) from e

        if not 200 <= response.status_code < 300:
            raise RejectedError(url, response.status_code, _decode_body(response))

        return _decode_body(response)

    def close(self) -> None:
        self._session.close()


def _decode_body(response: requests.Response) -> Any:
    """Decode a JSON body, falling back to text."""
    try:
        return response.json()
    except ValueError:
        return response.text


class PublicationClient(NodeRestClient):
    """
    Publishes statements into a namespace on the peer network.

    Example:
        client = PublicationClient("http://localhost:9002", timeout=5.0)
        ref = multihash.parse("QmF00...")
        outcome = await client.publish("images.dpla", ref)
        if outcome.ok:
            print(outcome.response)
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._published = 0
        self._failed = 0

    async def publish(
        self,
        namespace: str,
        reference: ContentReference,
        **fields: Any,
    ) -> PublishOutcome:
        """
        Publish one statement. Exactly one outbound request per call.

        Args:
            namespace: Target namespace
            reference: Content reference of the pre-stored statement body
            **fields: Extra descriptive fields to include in the statement

        Returns:
            PublishOutcome with the node's acknowledgement, or the error
        """
        statement = Statement(namespace=namespace, object=reference.text, fields=fields)
        path = f"namespace/{quote(namespace, safe='')}"

        try:
            response = await self._request("POST", path, statement.to_body())
        except (ConnectError, RejectedError, TimeoutExceeded) as e:
            self._failed += 1
            logger.debug(f"Publish of {reference.text} to {namespace} failed: {e}")
            return PublishOutcome(statement=statement, error=e)

        self._published += 1
        logger.debug(f"Published {reference.text} to {namespace}: {response}")
        return PublishOutcome(statement=statement, response=response)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "node_url": self.node_url,
            "published": self._published,
            "failed": self._failed,
        }


class PeerNodeClient(NodeRestClient):
    """Startup checks against the local node."""

    async def identify(self) -> Dict[str, Any]:
        """
        Fetch the node's identity (GET /id).

        Returns:
            Identity info as returned by the node
        """
        result = await self._request("GET", "id")
        if not isinstance(result, dict):
            result = {"id": result}
        return result

    async def connect_remote(self, address: str) -> Any:
        """
        Ask the node to open a connection to a remote peer.

        Args:
            address: Remote peer multiaddr, including its /p2p/ peer id

        Raises:
            OracleError: If `address` is not a valid multiaddr
        """
        try:
            maddr = Multiaddr(address)
        except Exception as e:
            raise OracleError(f"Invalid remote peer multiaddr {address!r}: {e}") from e

        return await self._request("POST", "net/connect", {"multiaddr": str(maddr)})


def format_response(response: Any) -> str:
    """Render a node response for terminal output."""
    if isinstance(response, (dict, list)):
        return json.dumps(response, indent=2)
    return str(response)
