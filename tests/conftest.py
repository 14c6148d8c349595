"""Shared fakes for chatroom-rtc tests.

- FakePeerConnection: the slice of aiortc's RTCPeerConnection the mesh uses,
  with real signaling-state transitions and pyee-style ``on`` registration.
- MemoryConnection / MemoryNetwork: an in-memory websocket whose server end
  is a real RoomRelay.
"""

import asyncio
import inspect
import json

import pytest
from aiortc import RTCSessionDescription
from websockets.exceptions import ConnectionClosed

from chatroom_rtc.client.media import LocalMedia
from chatroom_rtc.client.room_session import RoomSession
from chatroom_rtc.config import Config
from chatroom_rtc.relay import RoomRelay


# ── Peer connections ─────────────────────────────────────────────────────────


class FakePeerConnection:
    """Offer/answer state machine without any networking."""

    _ids = 0

    def __init__(self):
        FakePeerConnection._ids += 1
        self.id = FakePeerConnection._ids
        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.added_candidates = []
        self.tracks = []
        self.close_calls = 0
        self._handlers = {}
        self._descriptions = 0

    def on(self, event, f=None):
        def register(func):
            self._handlers.setdefault(event, []).append(func)
            return func

        return register(f) if f is not None else register

    async def emit(self, event, *args):
        for handler in list(self._handlers.get(event, [])):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    async def set_connection_state(self, state):
        self.connectionState = state
        await self.emit("connectionstatechange")

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        self._descriptions += 1
        return RTCSessionDescription(sdp=f"offer-{self.id}-{self._descriptions}", type="offer")

    async def createAnswer(self):
        self._descriptions += 1
        return RTCSessionDescription(sdp=f"answer-{self.id}-{self._descriptions}", type="answer")

    async def setLocalDescription(self, description):
        await asyncio.sleep(0)
        if description.type == "offer":
            if self.signalingState not in ("stable", "have-local-offer"):
                raise RuntimeError(f"Cannot set local offer in {self.signalingState}")
            self.signalingState = "have-local-offer"
        else:
            if self.signalingState != "have-remote-offer":
                raise RuntimeError(f"Cannot set local answer in {self.signalingState}")
            self.signalingState = "stable"
        self.localDescription = description
        self._maybe_connect()

    async def setRemoteDescription(self, description):
        await asyncio.sleep(0)
        if description.type == "offer":
            if self.signalingState not in ("stable", "have-remote-offer"):
                raise RuntimeError(f"Cannot set remote offer in {self.signalingState}")
            self.signalingState = "have-remote-offer"
        else:
            if self.signalingState != "have-local-offer":
                raise RuntimeError(f"Cannot set remote answer in {self.signalingState}")
            self.signalingState = "stable"
        self.remoteDescription = description
        self._maybe_connect()

    def _maybe_connect(self):
        if (
            self.signalingState == "stable"
            and self.localDescription is not None
            and self.remoteDescription is not None
            and self.connectionState in ("new", "connecting")
        ):
            self.connectionState = "connected"
            asyncio.ensure_future(self.emit("connectionstatechange"))

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise RuntimeError("addIceCandidate before remote description")
        self.added_candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        self.signalingState = "closed"
        self.connectionState = "closed"


class PeerConnectionFactory:
    """Connection factory recording every connection it builds."""

    def __init__(self):
        self.created = []

    def __call__(self):
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc


# ── In-memory relay transport ────────────────────────────────────────────────

_CLOSED = object()


class _ServerEnd:
    """What the relay sees as the client's websocket."""

    def __init__(self, client):
        self.client = client

    async def send(self, raw):
        if not self.client.closed:
            self.client.inbox.put_nowait(raw)


class MemoryConnection:
    """Client end of an in-memory websocket.

    Frames the client sends are handed to ``relay`` (when there is one) and
    recorded in ``sent``. Frames the relay sends arrive through iteration.
    """

    def __init__(self, relay=None):
        self.relay = relay
        self.inbox = asyncio.Queue()
        self.sent = []
        self.closed = False
        self.server_end = _ServerEnd(self)

    async def send(self, raw):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(raw))
        if self.relay is not None:
            await self.relay.handle_message(self.server_end, raw)

    def inject(self, raw):
        """Deliver a raw frame to the client as if the relay sent it."""
        self.inbox.put_nowait(raw)

    def drain(self):
        """Return every frame received so far, parsed, without waiting."""
        frames = []
        while not self.inbox.empty():
            raw = self.inbox.get_nowait()
            if raw is not _CLOSED:
                frames.append(json.loads(raw))
        return frames

    def sent_events(self, event):
        return [frame for frame in self.sent if frame["type"] == event]

    async def _shutdown(self):
        if self.closed:
            return
        self.closed = True
        self.inbox.put_nowait(_CLOSED)
        if self.relay is not None:
            await self.relay.handle_disconnect(self.server_end)

    async def close(self):
        await self._shutdown()

    async def drop(self):
        """Simulate an abrupt loss of the socket."""
        await self._shutdown()

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self.inbox.get()
        if raw is _CLOSED:
            raise StopAsyncIteration
        return raw


class MemoryNetwork:
    """A RoomRelay plus a connect function producing MemoryConnections."""

    def __init__(self):
        self.relay = RoomRelay()
        self.connections = []

    async def connect(self, url):
        conn = MemoryConnection(self.relay)
        self.connections.append(conn)
        return conn


# ── Fixtures ─────────────────────────────────────────────────────────────────


def make_config():
    config = Config()
    config.signaling_websocket = "ws://relay.test"
    config.max_reconnect_attempts = 0
    config.reconnect_delay = 0.0
    config.join_timeout = 2.0
    return config


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def network():
    return MemoryNetwork()


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


@pytest.fixture
def session_factory(network):
    """Build RoomSessions wired to the in-memory relay."""

    def factory(local_media=None):
        return RoomSession(
            config=make_config(),
            local_media=local_media or LocalMedia(),
            connection_factory=PeerConnectionFactory(),
            connect_fn=network.connect,
        )

    return factory


@pytest.fixture
def wait_for():
    """Poll ``predicate`` on the event loop until it holds."""

    async def _wait_for(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait_for


HOST_CANDIDATE = "candidate:{n} 1 udp 2130706431 192.0.2.{n} {port} typ host"


@pytest.fixture
def candidate_dict():
    """Browser-style candidate dicts with distinguishable ports."""

    def _candidate(n, mid="0", index=0):
        return {
            "candidate": HOST_CANDIDATE.format(n=n, port=5000 + n),
            "sdpMid": mid,
            "sdpMLineIndex": index,
        }

    return _candidate
