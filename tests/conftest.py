"""Pytest configuration and shared fixtures."""

import asyncio
import json
from collections import namedtuple
from unittest.mock import AsyncMock, Mock

import aiohttp
import pytest

from castlink.auth import AuthenticationFlow
from castlink.channel import SignalingChannel
from castlink.config import ChannelConfig
from castlink.errors import PermissionDeniedError
from castlink.protocols import LocalMedia

FakeMessage = namedtuple("FakeMessage", ["type", "data"])

OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\n"

# Local description after gathering: two m-sections, three candidates
LOCAL_SDP = (
    "v=0\r\n"
    "o=- 1 1 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 96\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=mid:0\r\n"
    "a=candidate:1 1 udp 2130706431 192.168.1.5 50000 typ host\r\n"
    "a=candidate:2 1 udp 1694498815 203.0.113.7 50000 typ srflx raddr 192.168.1.5 rport 50000\r\n"
    "a=end-of-candidates\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=mid:1\r\n"
    "a=candidate:3 1 udp 2130706431 192.168.1.5 50001 typ host\r\n"
)

FAST_CHANNEL = ChannelConfig(keepalive_interval=0.02, reconnect_delay=0.05, connect_timeout=1.0)


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from castlink.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


async def settle(rounds: int = 10) -> None:
    """Let background receive loops and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeWebSocket:
    """In-memory stand-in for aiohttp.ClientWebSocketResponse."""

    def __init__(self):
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def feed(self, payload: dict | str) -> None:
        """Deliver a message from the receiver."""
        text = payload if isinstance(payload, str) else json.dumps(payload)
        self._incoming.put_nowait(FakeMessage(aiohttp.WSMsgType.TEXT, text))

    def drop(self) -> None:
        """Simulate the receiver closing the socket."""
        self.closed = True
        self._incoming.put_nowait(None)

    def exception(self):
        return None

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._incoming.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


class FakeConnector:
    """Connector that hands out FakeWebSockets.

    Attributes:
        failures: Number of upcoming connects that fail.
        gate: When set to an unset Event, connects block until it is set.
    """

    def __init__(self):
        self.urls: list[str] = []
        self.sockets: list[FakeWebSocket] = []
        self.failures = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise aiohttp.ClientConnectionError("Connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]


class FakeTrack:
    """Media track that records stop()."""

    def __init__(self, kind: str):
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeMediaProducer:
    """LocalMediaProducer returning FakeTracks or raising a configured error."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0
        self.tracks: list[FakeTrack] = []

    async def get_local_media(self, options) -> LocalMedia:
        self.calls += 1
        if self.error is not None:
            raise self.error
        self.tracks = [FakeTrack("video"), FakeTrack("audio")]
        return LocalMedia(tracks=list(self.tracks))


def make_mock_pc():
    """Mock RTCPeerConnection capturing event handlers."""
    mock_pc = AsyncMock()
    mock_pc.connectionState = "new"
    mock_pc.localDescription = None
    mock_pc.addTrack = Mock()

    mock_offer = Mock()
    mock_offer.sdp = OFFER_SDP
    mock_offer.type = "offer"
    mock_pc.createOffer = AsyncMock(return_value=mock_offer)

    async def set_local_description(description):
        mock_pc.localDescription = Mock(sdp=LOCAL_SDP, type="offer")

    mock_pc.setLocalDescription = AsyncMock(side_effect=set_local_description)
    mock_pc.setRemoteDescription = AsyncMock()
    mock_pc.addIceCandidate = AsyncMock()
    mock_pc.close = AsyncMock()

    handlers = {}

    def mock_on(event):
        def decorator(fn):
            handlers[event] = fn
            return fn

        return decorator

    mock_pc.on = mock_on
    mock_pc.handlers = handlers
    return mock_pc


class PcFactory:
    """pc_factory that records every config and returns fresh mock pcs."""

    def __init__(self):
        self.configs = []
        self.pcs = []

    def __call__(self, config):
        self.configs.append(config)
        pc = make_mock_pc()
        self.pcs.append(pc)
        return pc

    @property
    def last(self):
        return self.pcs[-1]


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
async def channel(connector):
    """SignalingChannel on fast timers, shut down after the test."""
    channel = SignalingChannel(config=FAST_CHANNEL, connector=connector)
    yield channel
    await channel.shutdown()


@pytest.fixture
def pc_factory():
    return PcFactory()


@pytest.fixture
def producer():
    return FakeMediaProducer()


@pytest.fixture
def denied_producer():
    return FakeMediaProducer(error=PermissionDeniedError("Capture refused"))


@pytest.fixture
async def authenticated(channel, connector):
    """Open channel with a completed credential exchange.

    Returns:
        (channel, auth, websocket)
    """
    auth = AuthenticationFlow()
    channel.subscribe(auth.handle_message)
    await channel.connect("0A0A0A01")
    await auth.authenticate(channel, "123456")
    ws = connector.last
    ws.feed({"type": "auth_success"})
    await settle()
    assert auth.is_authenticated
    return channel, auth, ws
