"""Shared fakes for the agentrelay tests."""

import asyncio
import base64
import json

import pytest

from agentrelay.agent.connector import AgentLeg
from agentrelay.config import ConnectionMode
from agentrelay.errors import PeerClosed
from agentrelay.transports.base import BaseTransport

_CLOSE = object()


class FakeTransport(BaseTransport):
    """In-memory transport: tests push inbound frames, inspect outbound ones."""

    def __init__(self, name="fake"):
        self.name = name
        self.sent = []
        self.pings = 0
        self.disconnect_calls = 0
        self.connected = True
        self.send_error = None
        self.ping_error = None
        self._inbox = asyncio.Queue()

    # Test-side helpers

    def feed(self, message):
        """Queue an inbound frame. Dicts are JSON-encoded."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def hang_up(self):
        """Make the next recv() report a normal close."""
        self._inbox.put_nowait(_CLOSE)

    def break_with(self, error):
        """Make the next recv() raise ``error`` after any queued frames."""
        self._inbox.put_nowait(error)

    @property
    def sent_json(self):
        return [json.loads(m) for m in self.sent]

    # BaseTransport

    async def connect(self, **kwargs):
        self.connected = True

    async def send(self, data):
        if not self.connected:
            raise PeerClosed(f"{self.name} is closed")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(data)

    async def recv(self):
        if not self.connected:
            raise PeerClosed(f"{self.name} is closed")
        item = await self._inbox.get()
        if item is _CLOSE:
            self.connected = False
            raise PeerClosed(f"{self.name} hung up", code=1000)
        if isinstance(item, Exception):
            raise item
        return item

    async def ping(self):
        self.pings += 1
        if self.ping_error is not None:
            raise self.ping_error

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    def is_connected(self):
        return self.connected


class FakeConnector:
    """Stands in for AgentConnector; hands out a FakeTransport or raises."""

    def __init__(self, transport=None, error=None, send_initial_config=True, delay=0.0):
        self.transport = transport or FakeTransport("agent")
        self.error = error
        self.send_initial_config = send_initial_config
        self.delay = delay
        self.calls = 0

    async def connect(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AgentLeg(
            transport=self.transport,
            send_initial_config=self.send_initial_config,
            mode=ConnectionMode.SIGNED_URL if self.send_initial_config else ConnectionMode.DIRECT,
            initial_config=json.dumps({"type": "conversation_initiation_client_data"}),
        )


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def twilio_start(stream_sid="SID1", call_sid="CA1"):
    return {
        "event": "start",
        "streamSid": stream_sid,
        "start": {"streamSid": stream_sid, "callSid": call_sid, "customParameters": {}},
    }


def twilio_media(data: bytes, stream_sid="SID1"):
    return {"event": "media", "streamSid": stream_sid, "media": {"payload": b64(data)}}


async def wait_until(predicate, timeout=2.0):
    """Poll until ``predicate()`` is truthy or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def call_leg():
    return FakeTransport("call")


@pytest.fixture
def agent_leg():
    return FakeTransport("agent")
