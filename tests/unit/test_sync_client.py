# tests/unit/test_sync_client.py
# Unit tests for SessionSyncClient against an in-memory API double

import asyncio

import httpx
import pytest

from app.sync.broadcast import BroadcastHub, LocalBroadcaster, RedisBroadcaster
from app.sync.client import SessionSyncClient, SyncEventKind
from app.sync.members import SessionMember
from app.sync.state import StateValidationError
from session_fakes import FakeClock, FakeSessionApi, make_snapshot, silent_redis_url

BOB = SessionMember(user_id="u-bob", username="bob")
CAROL = SessionMember(user_id="u-carol", username="carol")


def make_client(api, broadcaster=None, clock=None, **overrides):
    # Long poll/heartbeat intervals: tests drive polling explicitly
    params = dict(poll_interval=60, heartbeat_interval=60, lock_window=1.2, send_debounce=0.01)
    params.update(overrides)
    return SessionSyncClient(api, broadcaster, clock=clock or FakeClock(0.0), **params)


def kinds(events):
    return [e.kind for e in events]


class TestJoinLeave:

    @pytest.mark.asyncio
    async def test_join_loads_snapshot_and_seeds_members(self):
        sessions = {"S1": make_snapshot("S1", "Jam", {"tempo": 120}, 3, members=[BOB])}
        api = FakeSessionApi(sessions)
        client = make_client(api)
        events = []
        client.add_listener(events.append)

        await client.join("S1")

        assert client.connected
        assert client.is_in_session("S1")
        assert client.session_name == "Jam"
        assert client.shared_state == {"tempo": 120}
        assert client.state_version == 3
        assert {m.user_id for m in client.members} == {"u-bob", "u-alice"}
        # The first member list never produces joined/left notices
        assert kinds(events) == [SyncEventKind.STATE_CHANGED, SyncEventKind.JOINED]
        assert events[-1].message == 'Joined session "Jam"'
        assert api.heartbeats == ["S1"]
        await client.close()

    @pytest.mark.asyncio
    async def test_leave_resets_mirrors_and_notifies(self):
        sessions = {"S1": make_snapshot("S1", "Jam", {"tempo": 120}, 3)}
        api = FakeSessionApi(sessions)
        client = make_client(api)
        events = []
        client.add_listener(events.append)
        await client.join("S1")

        await client.leave()
        await client.leave()  # second call is a no-op

        assert api.leaves == ["S1"]
        assert not client.connected
        assert client.session_id is None
        assert client.shared_state == {}
        assert client.state_version == 0
        assert client.member_count == 0
        assert kinds(events) == [SyncEventKind.STATE_CHANGED, SyncEventKind.JOINED, SyncEventKind.LEFT]
        assert events[-1].message == 'Left session "Jam"'
        await client.close()

    @pytest.mark.asyncio
    async def test_leave_succeeds_when_server_unreachable(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        client = make_client(api)
        await client.join("S1")
        api.fail_with = httpx.ConnectError("down")

        await client.leave()

        assert client.session_id is None
        assert not client.connected
        await client.close()

    @pytest.mark.asyncio
    async def test_join_other_session_leaves_first(self):
        sessions = {"S1": make_snapshot("S1", "One"), "S2": make_snapshot("S2", "Two", {"tempo": 90}, 7)}
        api = FakeSessionApi(sessions)
        client = make_client(api)
        events = []
        client.add_listener(events.append)

        await client.join("S1")
        await client.join("S2")

        assert api.leaves == ["S1"]
        assert kinds(events) == [
            SyncEventKind.JOINED,
            SyncEventKind.LEFT,
            SyncEventKind.STATE_CHANGED,
            SyncEventKind.JOINED,
        ]
        assert client.is_in_session("S2")
        assert client.state_version == 7
        await client.close()

    @pytest.mark.asyncio
    async def test_join_while_server_unreachable_still_connects(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        api.fail_with = httpx.ConnectError("down")
        client = make_client(api)
        events = []
        client.add_listener(events.append)

        await client.join("S1")

        assert client.connected
        assert client.shared_state == {}
        assert events[0].message == 'Joined session "S1"'
        await client.close()

    @pytest.mark.asyncio
    async def test_leave_stops_background_tasks(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        client = make_client(api, poll_interval=0.01)
        await client.join("S1")
        await asyncio.sleep(0.05)
        polls_while_joined = api.polls

        await client.leave()
        await asyncio.sleep(0.05)

        assert polls_while_joined >= 2
        assert api.polls == polls_while_joined
        await client.close()

    @pytest.mark.asyncio
    async def test_close_releases_api(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        client = make_client(api)
        await client.join("S1")

        await client.close()

        assert api.closed
        assert api.leaves == ["S1"]


class TestLocalWrites:

    @pytest.mark.asyncio
    async def test_burst_of_updates_sends_one_merged_write(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        client = make_client(api)
        await client.join("S1")

        client.update_state({"tempo": 100})
        client.update_state({"selectedKey": "D"})
        client.update_state({"tempo": 110})

        # Applied locally at once, sent later
        assert client.shared_state == {"tempo": 110, "selectedKey": "D"}
        assert client.pending_changes == {"tempo": 110, "selectedKey": "D"}
        assert api.puts == []

        await asyncio.sleep(0.05)

        assert api.puts == [("S1", {"tempo": 110, "selectedKey": "D"})]
        assert client.pending_changes == {}
        assert client.state_version == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_each_update_emits_state_changed(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        client = make_client(api)
        await client.join("S1")
        events = []
        client.add_listener(events.append)

        client.update_state({"tempo": 100})
        client.update_state({"tempo": 101})

        assert kinds(events) == [SyncEventKind.STATE_CHANGED, SyncEventKind.STATE_CHANGED]
        await client.close()

    @pytest.mark.asyncio
    async def test_update_outside_session_is_ignored(self):
        api = FakeSessionApi({})
        client = make_client(api)

        client.update_state({"tempo": 100})

        assert client.shared_state == {}
        assert client.pending_changes == {}
        await client.close()

    @pytest.mark.asyncio
    async def test_invalid_update_raises_and_queues_nothing(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        client = make_client(api)
        await client.join("S1")

        with pytest.raises(StateValidationError):
            client.update_state({"tempo": "fast"})

        assert client.pending_changes == {}
        await asyncio.sleep(0.03)
        assert api.puts == []
        await client.close()

    @pytest.mark.asyncio
    async def test_failed_write_is_dropped_silently(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        client = make_client(api)
        await client.join("S1")
        api.fail_with = httpx.ConnectError("down")

        client.update_state({"tempo": 100})
        await asyncio.sleep(0.05)

        assert client.pending_changes == {}
        assert client.state_version == 0
        assert client.shared_state == {"tempo": 100}
        await client.close()

    @pytest.mark.asyncio
    async def test_write_response_never_lowers_version(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        client = make_client(api)
        await client.join("S1")
        client._on_broadcast({"selectedKey": "E"}, 10)

        client.update_state({"tempo": 100})
        await asyncio.sleep(0.05)

        assert api.puts
        assert client.state_version == 10
        await client.close()


class TestRemoteState:

    @pytest.mark.asyncio
    async def test_locked_field_survives_newer_poll_until_window_passes(self):
        clock = FakeClock(0.0)
        sessions = {"S1": make_snapshot("S1")}
        api = FakeSessionApi(sessions)
        client = make_client(api, clock=clock, send_debounce=60)
        await client.join("S1")

        client.update_state({"tempo": 140})
        sessions["S1"].state = {"tempo": 100, "selectedKey": "D"}
        sessions["S1"].state_version = 5

        await client._poll_state()

        assert client.shared_state == {"tempo": 140, "selectedKey": "D"}
        assert client.state_version == 5

        sessions["S1"].state["tempo"] = 101
        sessions["S1"].state_version = 6
        await client._poll_state()

        assert client.shared_state["tempo"] == 140
        assert client.state_version == 6

        client._on_broadcast({"tempo": 102}, 7)
        sessions["S1"].state["tempo"] = 102
        sessions["S1"].state_version = 7

        assert client.shared_state["tempo"] == 140
        assert client.state_version == 7

        # No newer version after the window: the same snapshot still repairs the field
        clock.advance(1.3)
        await client._poll_state()

        assert client.shared_state == {"tempo": 102, "selectedKey": "D"}
        assert client.state_version == 7
        await client.close()

    @pytest.mark.asyncio
    async def test_dropped_write_is_repaired_without_a_newer_version(self):
        clock = FakeClock(0.0)
        sessions = {"S1": make_snapshot("S1", state={"tempo": 88}, version=1)}
        api = FakeSessionApi(sessions)
        client = make_client(api, clock=clock)
        await client.join("S1")
        api.fail_with = httpx.ConnectError("down")

        client.update_state({"tempo": 1, "selectedKey": "F"})
        await asyncio.sleep(0.05)
        api.fail_with = None
        await client._poll_state()

        assert client.shared_state == {"tempo": 1, "selectedKey": "F"}

        events = []
        client.add_listener(events.append)
        clock.advance(1.3)
        await client._poll_state()

        # Keys the server never accepted are dropped, the rest take the server value
        assert client.shared_state == {"tempo": 88}
        assert client.state_version == 1
        assert kinds(events) == [SyncEventKind.STATE_CHANGED]

        await client._poll_state()
        assert kinds(events) == [SyncEventKind.STATE_CHANGED]
        await client.close()

    @pytest.mark.asyncio
    async def test_field_overwritten_while_locked_converges_after_window(self):
        clock = FakeClock(0.0)
        sessions = {"S1": make_snapshot("S1")}
        api = FakeSessionApi(sessions)
        client = make_client(api, clock=clock)
        await client.join("S1")

        client.update_state({"tempo": 150})
        await asyncio.sleep(0.05)
        assert client.state_version == 1

        # Another writer lands on the same field while ours is still locked
        sessions["S1"].state["tempo"] = 90
        sessions["S1"].state_version = 2
        await client._poll_state()

        assert client.shared_state == {"tempo": 150}
        assert client.state_version == 2

        clock.advance(1.3)
        await client._poll_state()

        assert client.shared_state == {"tempo": 90}
        assert client.state_version == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_partial_broadcast_does_not_drop_unconfirmed_keys(self):
        clock = FakeClock(0.0)
        api = FakeSessionApi({"S1": make_snapshot("S1", state={"tempo": 88}, version=1)})
        client = make_client(api, clock=clock)
        await client.join("S1")
        api.fail_with = httpx.ConnectError("down")
        client.update_state({"selectedKey": "F"})
        await asyncio.sleep(0.05)
        clock.advance(1.3)

        # A broadcast carries only the changed fields; it cannot tell what the server lacks
        client._on_broadcast({"tempo": 90}, 2)

        assert client.shared_state == {"tempo": 90, "selectedKey": "F"}
        await client.close()

    @pytest.mark.asyncio
    async def test_same_or_older_version_is_ignored(self):
        api = FakeSessionApi({"S1": make_snapshot("S1", state={"tempo": 120}, version=5)})
        client = make_client(api)
        await client.join("S1")
        events = []
        client.add_listener(events.append)

        client._on_broadcast({"tempo": 1}, 5)
        client._on_broadcast({"tempo": 2}, 4)

        assert client.shared_state == {"tempo": 120}
        assert events == []

        client._on_broadcast({"tempo": 3}, 6)

        assert client.shared_state == {"tempo": 3}
        assert client.state_version == 6
        assert kinds(events) == [SyncEventKind.STATE_CHANGED]
        await client.close()

    @pytest.mark.asyncio
    async def test_newer_version_without_changes_is_silent(self):
        api = FakeSessionApi({"S1": make_snapshot("S1", state={"tempo": 120}, version=1)})
        client = make_client(api)
        await client.join("S1")
        events = []
        client.add_listener(events.append)

        client._on_broadcast({"tempo": 120}, 2)

        assert client.state_version == 2
        assert events == []
        await client.close()

    @pytest.mark.asyncio
    async def test_poll_reports_member_changes(self):
        sessions = {"S1": make_snapshot("S1", members=[BOB])}
        api = FakeSessionApi(sessions)
        client = make_client(api)
        await client.join("S1")
        events = []
        client.add_listener(events.append)

        sessions["S1"].members = [api.member, CAROL]
        await client._poll_state()

        messages = {(e.kind, e.message) for e in events}
        assert messages == {
            (SyncEventKind.MEMBER_JOINED, "carol joined the session"),
            (SyncEventKind.MEMBER_LEFT, "bob left the session"),
        }
        assert client.member_count == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_stop_others(self):
        api = FakeSessionApi({"S1": make_snapshot("S1")})
        client = make_client(api)
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        client.add_listener(broken)
        client.add_listener(seen.append)
        await client.join("S1")

        assert kinds(seen) == [SyncEventKind.JOINED]
        client.remove_listener(broken)
        await client.close()


class TestBroadcastBetweenPeers:

    @pytest.mark.asyncio
    async def test_peer_sees_write_before_next_poll(self):
        hub = BroadcastHub()
        sessions = {"S1": make_snapshot("S1")}
        alice = make_client(FakeSessionApi(sessions, "u-alice", "alice"), LocalBroadcaster(hub))
        bob = make_client(FakeSessionApi(sessions, "u-bob", "bob"), LocalBroadcaster(hub))
        await alice.join("S1")
        await bob.join("S1")

        alice.update_state({"tempo": 77})
        await asyncio.sleep(0.05)

        assert bob.shared_state == {"tempo": 77}
        assert bob.state_version == 1
        await alice.close()
        await bob.close()

    @pytest.mark.asyncio
    async def test_stale_broadcast_does_not_overwrite_newer_state(self):
        hub = BroadcastHub()
        sessions = {"S1": make_snapshot("S1", state={"tempo": 120}, version=9)}
        client = make_client(FakeSessionApi(sessions), LocalBroadcaster(hub))
        await client.join("S1")
        other = LocalBroadcaster(hub)
        await other.open("S1", lambda s, v: None)

        await other.publish({"tempo": 60}, 3)
        await asyncio.sleep(0)

        assert client.shared_state == {"tempo": 120}
        assert client.state_version == 9
        await other.close()
        await client.close()


class TestTransportDeadlines:

    @pytest.mark.asyncio
    async def test_join_does_not_wait_on_unresponsive_bus(self):
        api = FakeSessionApi({"S1": make_snapshot("S1", state={"tempo": 120}, version=2)})
        async with silent_redis_url() as url:
            client = make_client(api, RedisBroadcaster(redis_url=url, timeout=0.2))

            await asyncio.wait_for(client.join("S1"), timeout=5)

            assert client.connected
            assert client.shared_state == {"tempo": 120}
            assert api.heartbeats == ["S1"]
            await client.close()

    @pytest.mark.asyncio
    async def test_slow_tick_does_not_stretch_the_period(self):
        client = make_client(FakeSessionApi({}))
        loop = asyncio.get_running_loop()
        starts = []

        async def slow_tick():
            starts.append(loop.time())
            await asyncio.sleep(0.08)

        task = asyncio.create_task(client._every(0.1, slow_tick))
        for _ in range(200):
            if len(starts) >= 4:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert len(gaps) >= 3
        # Sleeping a full interval after each tick would space them 0.18 s apart
        assert sum(gaps) / len(gaps) < 0.15
        await client.close()
