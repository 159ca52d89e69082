# tests/unit/test_broadcast.py
# Unit tests for the broadcast message codec and the in-process bus

import asyncio
import json

import pytest

from app.sync.broadcast import (
    BroadcastHub,
    LocalBroadcaster,
    NullBroadcaster,
    RedisBroadcaster,
    channel_name,
    decode_message,
    encode_message,
)
from session_fakes import silent_redis_url


class TestCodec:

    def test_encode_decode(self):
        message = encode_message({"tempo": 120}, 4)

        assert message == {"type": "state-update", "state": {"tempo": 120}, "version": 4}
        assert decode_message(json.loads(json.dumps(message))) == ({"tempo": 120}, 4)

    @pytest.mark.parametrize("payload", [
        None,
        "state-update",
        {"type": "other", "state": {}, "version": 1},
        {"type": "state-update", "state": {"tempo": 1}},
        {"type": "state-update", "state": {"tempo": 1}, "version": "2"},
        {"type": "state-update", "state": {"tempo": 1}, "version": True},
        {"type": "state-update", "state": {"tempo": "fast"}, "version": 2},
        {"type": "state-update", "state": [1, 2], "version": 2},
    ])
    def test_malformed_messages_are_dropped(self, payload):
        assert decode_message(payload) is None

    def test_channel_name_uses_prefix(self):
        assert channel_name("abc", "bus-") == "bus-abc"


class TestLocalBroadcaster:

    @pytest.mark.asyncio
    async def test_peer_receives_but_sender_does_not(self):
        hub = BroadcastHub()
        sender, receiver = LocalBroadcaster(hub), LocalBroadcaster(hub)
        sent, received = [], []
        await sender.open("S1", lambda s, v: sent.append((s, v)))
        await receiver.open("S1", lambda s, v: received.append((s, v)))

        await sender.publish({"tempo": 99}, 3)
        await asyncio.sleep(0)

        assert received == [({"tempo": 99}, 3)]
        assert sent == []

    @pytest.mark.asyncio
    async def test_other_sessions_are_isolated(self):
        hub = BroadcastHub()
        a, b = LocalBroadcaster(hub), LocalBroadcaster(hub)
        received = []
        await a.open("S1", lambda s, v: None)
        await b.open("S2", lambda s, v: received.append(v))

        await a.publish({"tempo": 1}, 1)
        await asyncio.sleep(0)

        assert received == []

    @pytest.mark.asyncio
    async def test_receiver_messages_are_independent_copies(self):
        hub = BroadcastHub()
        a, b, c = LocalBroadcaster(hub), LocalBroadcaster(hub), LocalBroadcaster(hub)
        got_b, got_c = [], []
        await a.open("S1", lambda s, v: None)
        await b.open("S1", lambda s, v: got_b.append(s))
        await c.open("S1", lambda s, v: got_c.append(s))

        await a.publish({"tempo": 1}, 1)
        await asyncio.sleep(0)

        assert got_b == got_c == [{"tempo": 1}]
        assert got_b[0] is not got_c[0]

    @pytest.mark.asyncio
    async def test_close_unsubscribes_and_drops_queued(self):
        hub = BroadcastHub()
        a, b = LocalBroadcaster(hub), LocalBroadcaster(hub)
        received = []
        await a.open("S1", lambda s, v: None)
        await b.open("S1", lambda s, v: received.append(v))

        await a.publish({"tempo": 1}, 1)
        await b.close()  # before the queued delivery runs
        await asyncio.sleep(0)

        assert received == []
        assert hub.peers("trill-session-S1") == 1

    @pytest.mark.asyncio
    async def test_publish_before_open_is_noop(self):
        hub = BroadcastHub()
        a = LocalBroadcaster(hub)
        await a.publish({"tempo": 1}, 1)

        assert hub.peers("trill-session-S1") == 0


class TestRedisBroadcasterHandle:
    """Message filtering only; the pub/sub round trip runs in integration tests."""

    def _make(self):
        received = []
        bus = RedisBroadcaster(redis_url="redis://unused:6379/0")
        bus._on_message = lambda s, v: received.append((s, v))
        return bus, received

    def test_own_messages_are_ignored(self):
        bus, received = self._make()
        message = encode_message({"tempo": 1}, 2)
        message["origin"] = bus.origin

        bus._handle(json.dumps(message))

        assert received == []

    def test_foreign_messages_are_delivered(self):
        bus, received = self._make()
        message = encode_message({"tempo": 1}, 2)
        message["origin"] = "someone-else"

        bus._handle(json.dumps(message))

        assert received == [({"tempo": 1}, 2)]

    def test_garbage_is_ignored(self):
        bus, received = self._make()

        bus._handle("not json")
        bus._handle(None)

        assert received == []


class TestRedisBroadcasterDeadline:

    @pytest.mark.asyncio
    async def test_unresponsive_server_degrades_to_noop(self):
        async with silent_redis_url() as url:
            bus = RedisBroadcaster(redis_url=url, timeout=0.2)

            await asyncio.wait_for(bus.open("S1", lambda s, v: None), timeout=5)
            await asyncio.wait_for(bus.publish({"tempo": 1}, 1), timeout=5)

            assert bus._channel is None
            assert bus._listener is None
            await bus.aclose()


@pytest.mark.asyncio
async def test_null_broadcaster_is_silent():
    bus = NullBroadcaster()
    await bus.open("S1", lambda s, v: None)
    await bus.publish({"tempo": 1}, 1)
    await bus.aclose()
