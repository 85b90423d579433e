"""
Tests for alephoracle/publication.py
"""

import time
from unittest.mock import MagicMock

import pytest
import requests

from alephoracle import multihash
from alephoracle.errors import ConnectError, OracleError, RejectedError, TimeoutExceeded
from alephoracle.publication import (
    PeerNodeClient,
    PublicationClient,
    PublishOutcome,
    Statement,
    format_response,
)

from conftest import make_response


NODE_URL = "http://node.test:9002"
REF = multihash.digest_of(b"statement body")


def make_session(*responses, side_effect=None):
    session = MagicMock()
    session.headers = {}
    if side_effect is not None:
        session.request.side_effect = side_effect
    elif len(responses) == 1:
        session.request.return_value = responses[0]
    else:
        session.request.side_effect = list(responses)
    return session


# ============================================================================
# DATA STRUCTURES
# ============================================================================

class TestStatement:
    """Tests for Statement and PublishOutcome."""

    def test_body(self):
        statement = Statement("images.dpla", REF.text)
        assert statement.to_body() == {"object": REF.text}

    def test_body_with_fields(self):
        statement = Statement("images.dpla", REF.text, {"orderId": 7})
        assert statement.to_body() == {"orderId": 7, "object": REF.text}

    def test_fields_cannot_override_object(self):
        statement = Statement("ns", REF.text, {"object": "other"})
        assert statement.to_body()["object"] == REF.text

    def test_success_outcome(self):
        outcome = PublishOutcome(Statement("ns", REF.text), response={"ok": True})
        assert outcome.ok is True
        assert outcome.error_kind is None
        assert outcome.message == "ok"

    def test_failure_outcome(self):
        outcome = PublishOutcome(Statement("ns", REF.text), error=RejectedError("url", 400, "bad"))
        assert outcome.ok is False
        assert outcome.error_kind == "RejectedError"
        assert "400" in outcome.message
        assert outcome.to_dict()["ok"] is False

    def test_format_response(self):
        assert format_response({"a": 1}) == '{\n  "a": 1\n}'
        assert format_response("plain") == "plain"


# ============================================================================
# PUBLICATION CLIENT
# ============================================================================

class TestPublicationClient:
    """Tests for PublicationClient.publish."""

    @pytest.mark.trio
    async def test_publish_success(self):
        session = make_session(make_response(200, {"statements": ["abc"]}))
        client = PublicationClient(NODE_URL, timeout=5.0, session=session)

        outcome = await client.publish("images.dpla", REF)

        assert outcome.ok is True
        assert outcome.response == {"statements": ["abc"]}
        assert outcome.statement.namespace == "images.dpla"
        assert outcome.statement.object == REF.text
        session.request.assert_called_once_with(
            "POST",
            f"{NODE_URL}/namespace/images.dpla",
            json={"object": REF.text},
            timeout=5.0,
        )
        assert client.get_stats()["published"] == 1

    @pytest.mark.trio
    async def test_publish_extra_fields(self):
        session = make_session(make_response(201, {"ok": True}))
        client = PublicationClient(NODE_URL, session=session)

        await client.publish("ns", REF, orderId=42)

        assert session.request.call_args.kwargs["json"] == {"orderId": 42, "object": REF.text}

    @pytest.mark.trio
    async def test_namespace_is_quoted(self):
        session = make_session(make_response(200, {}))
        client = PublicationClient(NODE_URL + "/", session=session)

        await client.publish("a/b c", REF)

        assert session.request.call_args.args[1] == f"{NODE_URL}/namespace/a%2Fb%20c"

    @pytest.mark.trio
    async def test_text_response(self):
        session = make_session(make_response(200, text="QmStatementId"))
        client = PublicationClient(NODE_URL, session=session)

        outcome = await client.publish("ns", REF)
        assert outcome.response == "QmStatementId"

    @pytest.mark.trio
    async def test_rejected(self):
        session = make_session(make_response(400, {"error": "unknown namespace"}))
        client = PublicationClient(NODE_URL, session=session)

        outcome = await client.publish("ns", REF)

        assert outcome.ok is False
        assert isinstance(outcome.error, RejectedError)
        assert outcome.error.status == 400
        assert outcome.error.body == {"error": "unknown namespace"}
        assert client.get_stats()["failed"] == 1

    @pytest.mark.trio
    async def test_connection_error(self):
        session = make_session(side_effect=requests.ConnectionError("refused"))
        client = PublicationClient(NODE_URL, session=session)

        outcome = await client.publish("ns", REF)

        assert isinstance(outcome.error, ConnectError)
        assert "refused" in outcome.message

    @pytest.mark.trio
    async def test_requests_timeout(self):
        session = make_session(side_effect=requests.ReadTimeout("slow"))
        client = PublicationClient(NODE_URL, timeout=2.0, session=session)

        outcome = await client.publish("ns", REF)

        assert isinstance(outcome.error, TimeoutExceeded)
        assert outcome.error.timeout == 2.0

    @pytest.mark.trio
    @pytest.mark.timeout(10)
    async def test_bounded_timeout(self):
        def hang(*args, **kwargs):
            time.sleep(1.0)
            return make_response(200, {})

        session = make_session(side_effect=hang)
        client = PublicationClient(NODE_URL, timeout=0.05, session=session)

        outcome = await client.publish("ns", REF)

        assert isinstance(outcome.error, TimeoutExceeded)

    @pytest.mark.trio
    async def test_exactly_one_request_on_failure(self):
        session = make_session(side_effect=requests.ConnectionError("down"))
        client = PublicationClient(NODE_URL, session=session)

        await client.publish("ns", REF)
        assert session.request.call_count == 1


# ============================================================================
# PEER NODE CLIENT
# ============================================================================

class TestPeerNodeClient:
    """Tests for PeerNodeClient."""

    @pytest.mark.trio
    async def test_identify(self):
        session = make_session(make_response(200, {"id": "QmPeer", "publisher": "4XTTM"}))
        client = PeerNodeClient(NODE_URL, session=session)

        info = await client.identify()

        assert info["id"] == "QmPeer"
        session.request.assert_called_once_with("GET", f"{NODE_URL}/id", json=None, timeout=client.timeout)

    @pytest.mark.trio
    async def test_identify_plain_text(self):
        session = make_session(make_response(200, text="QmPeer"))
        client = PeerNodeClient(NODE_URL, session=session)

        assert await client.identify() == {"id": "QmPeer"}

    @pytest.mark.trio
    async def test_identify_unreachable(self):
        session = make_session(side_effect=requests.ConnectionError("refused"))
        client = PeerNodeClient(NODE_URL, session=session)

        with pytest.raises(ConnectError) as exc_info:
            await client.identify()
        assert exc_info.value.endpoint == f"{NODE_URL}/id"

    @pytest.mark.trio
    async def test_connect_remote(self):
        session = make_session(make_response(200, {"connected": True}))
        client = PeerNodeClient(NODE_URL, session=session)

        await client.connect_remote("/ip4/127.0.0.1/tcp/9001")

        args, kwargs = session.request.call_args
        assert args == ("POST", f"{NODE_URL}/net/connect")
        assert kwargs["json"] == {"multiaddr": "/ip4/127.0.0.1/tcp/9001"}

    @pytest.mark.trio
    async def test_connect_remote_invalid_address(self):
        session = make_session(make_response(200, {}))
        client = PeerNodeClient(NODE_URL, session=session)

        with pytest.raises(OracleError, match="Invalid remote peer"):
            await client.connect_remote("not a multiaddr")
        session.request.assert_not_called()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
