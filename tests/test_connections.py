import asyncio
import re

import pytest

from conftest import FakeTransport, StuckTransport
from drivewatch.connections import ConnectionRegistry


def _registry(clock, auto_stop=True):
    orphaned = []
    registry = ConnectionRegistry(on_session_orphaned=orphaned.append, auto_stop=auto_stop, clock=clock)
    return registry, orphaned


def test_register_generates_connection_ids(clock):
    registry, _ = _registry(clock)
    a = registry.register(FakeTransport())
    b = registry.register(FakeTransport())
    assert re.match(r"^conn_\d+_[0-9a-f]{9}$", a.connection_id)
    assert a.connection_id != b.connection_id
    assert len(registry) == 2
    assert a.connection_id in registry


def test_duplicate_connection_id_rejected(clock):
    registry, _ = _registry(clock)
    registry.register(FakeTransport(), connection_id="conn_1")
    with pytest.raises(ValueError):
        registry.register(FakeTransport(), connection_id="conn_1")


def test_subscription_moves_between_sessions(clock):
    registry, _ = _registry(clock)
    cid = registry.register(FakeTransport()).connection_id

    assert registry.subscribe(cid, "session1") is None
    assert registry.connections_for("session1") == {cid}

    assert registry.subscribe(cid, "session2") == "session1"
    assert registry.connections_for("session1") == set()
    assert registry.connections_for("session2") == {cid}
    assert registry.session_of(cid) == "session2"

    assert registry.unsubscribe(cid) == "session2"
    assert registry.subscriber_count("session2") == 0
    assert registry.session_of(cid) is None


def test_unknown_connection(clock):
    registry, _ = _registry(clock)
    with pytest.raises(KeyError):
        registry.subscribe("conn_missing", "session1")
    with pytest.raises(KeyError):
        registry.unsubscribe("conn_missing")
    assert registry.unregister("conn_missing") is None


def test_last_subscriber_leaving_orphans_session(clock):
    registry, orphaned = _registry(clock)
    a = registry.register(FakeTransport()).connection_id
    b = registry.register(FakeTransport()).connection_id
    registry.subscribe(a, "session1")
    registry.subscribe(b, "session1")

    registry.unregister(a)
    assert orphaned == []
    assert registry.connections_for("session1") == {b}

    registry.unregister(b)
    assert orphaned == ["session1"]


def test_auto_stop_disabled_keeps_session(clock):
    registry, orphaned = _registry(clock, auto_stop=False)
    a = registry.register(FakeTransport()).connection_id
    registry.subscribe(a, "session1")
    registry.unregister(a)
    assert orphaned == []


def test_unsubscribe_does_not_orphan(clock):
    registry, orphaned = _registry(clock)
    a = registry.register(FakeTransport()).connection_id
    registry.subscribe(a, "session1")
    registry.unsubscribe(a)
    assert orphaned == []


def test_touch_updates_activity(clock):
    registry, _ = _registry(clock)
    entry = registry.register(FakeTransport())
    clock.advance(5000)
    registry.touch(entry.connection_id)
    assert entry.last_activity_at == clock.now
    assert entry.messages_received == 1


def test_sweep_closes_stale_and_pings_the_rest(clock):
    registry, orphaned = _registry(clock)
    stale_t, fresh_t = FakeTransport(), FakeTransport()
    stale = registry.register(stale_t).connection_id
    fresh = registry.register(fresh_t).connection_id
    registry.subscribe(stale, "session1")

    clock.advance(61_000)
    registry.touch(fresh)

    removed = asyncio.run(registry.sweep_stale(60_000))

    assert removed == [stale]
    assert stale_t.closed_with == (1001, "Connection timed out")
    assert stale not in registry
    assert fresh in registry
    assert fresh_t.pings == 1
    assert stale_t.pings == 0
    assert orphaned == ["session1"]


def test_sweep_with_nothing_stale(clock):
    registry, _ = _registry(clock)
    t = FakeTransport()
    registry.register(t)
    clock.advance(59_000)
    assert asyncio.run(registry.sweep_stale(60_000)) == []
    assert t.pings == 1


def test_sweep_survives_close_failure(clock):
    class BrokenClose(FakeTransport):
        async def close(self, code=1000, reason=""):
            raise ConnectionError("already gone")

    registry, _ = _registry(clock)
    cid = registry.register(BrokenClose()).connection_id
    clock.advance(120_000)
    assert asyncio.run(registry.sweep_stale(60_000)) == [cid]
    assert len(registry) == 0


def test_listen_only_connection_survives_sweeps(clock):
    registry, orphaned = _registry(clock)
    t = FakeTransport()
    cid = registry.register(t).connection_id
    registry.subscribe(cid, "session1")

    for _ in range(5):
        clock.advance(30_000)
        assert asyncio.run(registry.sweep_stale(60_000)) == []

    entry = registry.get(cid)
    assert entry.last_activity_at == clock.now
    assert entry.messages_received == 0
    assert t.pings == 5
    assert t.closed_with is None
    assert orphaned == []


def test_unanswered_heartbeat_leads_to_eviction(clock):
    registry = ConnectionRegistry(clock=clock, heartbeat_timeout_s=0.05)
    t = StuckTransport()
    cid = registry.register(t).connection_id
    connected_at = clock.now

    clock.advance(30_000)
    assert asyncio.run(registry.sweep_stale(60_000)) == []
    assert registry.get(cid).last_activity_at == connected_at

    clock.advance(31_000)
    assert asyncio.run(registry.sweep_stale(60_000)) == [cid]
    assert t.closed_with == (1001, "Connection timed out")
    assert cid not in registry


def test_failing_heartbeat_does_not_refresh_activity(clock):
    class BrokenPing(FakeTransport):
        async def ping(self):
            raise ConnectionError("reset by peer")

    registry, _ = _registry(clock)
    cid = registry.register(BrokenPing()).connection_id
    connected_at = clock.now
    clock.advance(30_000)
    assert asyncio.run(registry.sweep_stale(60_000)) == []
    assert registry.get(cid).last_activity_at == connected_at
