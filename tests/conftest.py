"""
Shared fixtures for alephoracle tests.
"""

from typing import List, Optional

import pytest
import trio
from unittest.mock import Mock

from alephoracle.eth.events import EventSource, OrderEvent
from alephoracle.watcher import WatchSession


@pytest.fixture(autouse=True)
def reset_sessions():
    """Each test starts with no open watch sessions."""
    WatchSession._active_namespaces.clear()
    yield
    WatchSession._active_namespaces.clear()


def make_response(status: int = 200, body=None, text: str = ""):
    """Build a requests.Response stand-in."""
    response = Mock()
    response.status_code = status
    if body is None:
        response.json.side_effect = ValueError("no JSON")
        response.text = text
    else:
        response.json.return_value = body
        response.text = text or str(body)
    return response


class FakeEventSource(EventSource):
    """Delivers scripted events, then waits to be unsubscribed."""

    def __init__(self, events: List[OrderEvent], fail_with: Optional[Exception] = None):
        self.endpoint = "http://rpc.test:8545"
        self.events = events
        self.fail_with = fail_with
        self.connect_calls = 0
        self.unsubscribed = trio.Event()

    async def connect(self):
        self.connect_calls += 1
        return {"listening": True, "client_version": "fake", "block_number": 1}

    async def run(self, send_channel):
        for event in self.events:
            await send_channel.send(event)
        if self.fail_with is not None:
            raise self.fail_with
        await self.unsubscribed.wait()

    def unsubscribe(self):
        self.unsubscribed.set()
