"""Tests for SignalingChannel routing, sending and reconnection."""

import asyncio
import json

import pytest

from chatroom_rtc.client.signaling_channel import SignalingChannel
from chatroom_rtc.exceptions import NotConnectedError
from chatroom_rtc.protocol import EVT_CONNECTED, EVT_DISCONNECTED, build_envelope

from conftest import MemoryConnection


class Connector:
    """connect_fn handing out MemoryConnections, optionally failing first."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0
        self.connections = []

    async def __call__(self, url):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise OSError("relay unreachable")
        conn = MemoryConnection()
        self.connections.append(conn)
        return conn


def make_channel(connector, attempts=0):
    return SignalingChannel(
        "ws://relay.test",
        max_reconnect_attempts=attempts,
        reconnect_delay=0,
        connect_fn=connector,
    )


@pytest.mark.asyncio
async def test_send_before_connect_raises():
    """Sending without a socket is an error, never a silent drop."""
    channel = make_channel(Connector())
    with pytest.raises(NotConnectedError):
        await channel.send("join-room", {"roomId": "R1"})


@pytest.mark.asyncio
async def test_send_writes_envelope():
    connector = Connector()
    channel = make_channel(connector)
    await channel.connect()

    await channel.send("join-room", {"roomId": "R1", "userId": "alice"})

    assert connector.connections[0].sent == [
        {"type": "join-room", "roomId": "R1", "userId": "alice"}
    ]
    await channel.close()


@pytest.mark.asyncio
async def test_connect_emits_connected():
    channel = make_channel(Connector())
    seen = []
    channel.subscribe(EVT_CONNECTED, seen.append)

    await channel.connect()

    assert channel.is_connected
    assert seen == [{}]
    await channel.close()


@pytest.mark.asyncio
async def test_events_delivered_in_order_to_all_handlers(wait_for):
    connector = Connector()
    channel = make_channel(connector)
    received = []

    async def async_handler(payload):
        await asyncio.sleep(0)
        received.append(("async", payload["n"]))

    channel.subscribe("user-typing", lambda payload: received.append(("sync", payload["n"])))
    channel.subscribe("user-typing", async_handler)
    await channel.connect()

    for n in range(3):
        connector.connections[0].inject(build_envelope("user-typing", {"n": n}))
    await wait_for(lambda: len(received) == 6)

    assert received == [
        ("sync", 0), ("async", 0),
        ("sync", 1), ("async", 1),
        ("sync", 2), ("async", 2),
    ]
    await channel.close()


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_routing(wait_for):
    connector = Connector()
    channel = make_channel(connector)
    received = []

    def broken(payload):
        raise RuntimeError("observer bug")

    channel.subscribe("error", broken)
    channel.subscribe("error", received.append)
    await channel.connect()

    connector.connections[0].inject(build_envelope("error", {"message": "one"}))
    connector.connections[0].inject(build_envelope("error", {"message": "two"}))
    await wait_for(lambda: len(received) == 2)

    assert [p["message"] for p in received] == ["one", "two"]
    await channel.close()


@pytest.mark.asyncio
async def test_malformed_frame_is_dropped(wait_for):
    connector = Connector()
    channel = make_channel(connector)
    received = []
    channel.subscribe("error", received.append)
    await channel.connect()

    conn = connector.connections[0]
    conn.inject("{not json")
    conn.inject(json.dumps({"message": "no type"}))
    conn.inject(build_envelope("error", {"message": "ok"}))
    await wait_for(lambda: received)

    assert received == [{"message": "ok"}]
    assert channel.is_connected
    await channel.close()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(wait_for):
    connector = Connector()
    channel = make_channel(connector)
    first, second = [], []
    channel.subscribe("error", first.append)
    channel.subscribe("error", second.append)
    channel.unsubscribe("error", first.append)
    channel.unsubscribe("error", lambda payload: None)
    await channel.connect()

    connector.connections[0].inject(build_envelope("error", {"message": "x"}))
    await wait_for(lambda: second)

    assert first == []
    await channel.close()


@pytest.mark.asyncio
async def test_reconnects_after_unexpected_drop(wait_for):
    connector = Connector()
    channel = make_channel(connector, attempts=3)
    events = []
    channel.subscribe(EVT_CONNECTED, lambda p: events.append("connected"))
    channel.subscribe(EVT_DISCONNECTED, lambda p: events.append("disconnected"))
    await channel.connect()

    connector.failures = 1
    await connector.connections[0].drop()
    await wait_for(lambda: len(events) == 3)

    assert events == ["connected", "disconnected", "connected"]
    assert connector.calls == 3
    assert channel.is_connected

    # The new socket is live and routed
    received = []
    channel.subscribe("error", received.append)
    connector.connections[1].inject(build_envelope("error", {"message": "again"}))
    await wait_for(lambda: received)
    await channel.close()


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(wait_for):
    connector = Connector()
    channel = make_channel(connector, attempts=2)
    disconnected = []
    channel.subscribe(EVT_DISCONNECTED, disconnected.append)
    await channel.connect()

    connector.failures = 5
    await connector.connections[0].drop()
    await wait_for(lambda: connector.calls == 3)
    await asyncio.sleep(0.05)

    assert len(disconnected) == 1
    assert not channel.is_connected
    with pytest.raises(NotConnectedError):
        await channel.send("join-room", {})
    await channel.close()


@pytest.mark.asyncio
async def test_close_does_not_emit_disconnected():
    connector = Connector()
    channel = make_channel(connector, attempts=3)
    disconnected = []
    channel.subscribe(EVT_DISCONNECTED, disconnected.append)
    await channel.connect()

    await channel.close()
    await asyncio.sleep(0.01)

    assert disconnected == []
    assert connector.calls == 1
    assert connector.connections[0].closed
    assert not channel.is_connected


@pytest.mark.asyncio
async def test_send_on_closed_socket_raises_not_connected():
    connector = Connector()
    channel = make_channel(connector)
    await channel.connect()
    connector.connections[0].closed = True

    with pytest.raises(NotConnectedError):
        await channel.send("join-room", {})
    await channel.close()
