import asyncio
import re

import pytest

from conftest import MemoryStore, make_alert, make_sample
from drivewatch.storage import SqlTelemetryStore


@pytest.fixture
def sql_store(tmp_path):
    s = SqlTelemetryStore(f"sqlite:///{tmp_path / 'drivewatch.db'}")
    s.initialize()
    yield s
    s.close()


def test_create_and_find_session(sql_store):
    record = asyncio.run(sql_store.create_session("abc12345", "rainy", "city"))
    assert record.session_id == "abc12345"
    assert record.status == "active"

    found = asyncio.run(sql_store.find_session("abc12345"))
    assert found.weather == "rainy"
    assert found.road_type == "city"
    assert found.end_time is None
    assert found.start_time.tzinfo is not None
    assert asyncio.run(sql_store.find_session("missing1")) is None


def test_generated_session_id(sql_store):
    record = asyncio.run(sql_store.create_session(None, "sunny", "highway"))
    assert re.match(r"^ws[0-9a-f]{12}$", record.session_id)


def test_duplicate_session_id_fails(sql_store):
    asyncio.run(sql_store.create_session("abc12345", "sunny", "highway"))
    with pytest.raises(Exception):
        asyncio.run(sql_store.create_session("abc12345", "sunny", "highway"))
    assert sql_store.error_count == 1


def test_end_session_is_stable(sql_store):
    asyncio.run(sql_store.create_session("abc12345", "sunny", "highway"))
    first = asyncio.run(sql_store.end_session("abc12345"))
    second = asyncio.run(sql_store.end_session("abc12345"))
    assert first.status == "completed"
    assert first.end_time == second.end_time
    assert first.duration_ms() >= 0
    assert asyncio.run(sql_store.end_session("missing1")) is None


def test_telemetry_and_alerts_roundtrip(sql_store):
    async def scenario():
        await sql_store.save_telemetry(make_sample(speed=80.0, now_ms=1000.0))
        await sql_store.save_telemetry(make_sample(speed=90.0, now_ms=2000.0))
        await sql_store.save_alert("abc12345", make_alert())

    asyncio.run(scenario())

    rows = sql_store.recent_telemetry("abc12345")
    assert [r["speed"] for r in rows] == [90.0, 80.0]
    assert rows[0]["gps"] == {"lat": 40.7128, "lng": -74.006}

    alerts = sql_store.alerts_for("abc12345")
    assert len(alerts) == 1
    assert alerts[0]["kind"] == "emergency_brake"
    assert alerts[0]["severity"] == "critical"
    assert alerts[0]["triggerSnapshot"]["obstacleDistance"] == 4.0

    stats = sql_store.get_stats()
    assert stats["telemetry"] == 2
    assert stats["alerts"] == 1
    assert stats["writes"] == 3


def test_in_memory_database_shared_across_threads():
    s = SqlTelemetryStore("sqlite://")
    s.initialize()
    asyncio.run(s.create_session("abc12345", "sunny", "highway"))
    assert asyncio.run(s.find_session("abc12345")) is not None
    s.close()


def test_store_without_counters_reports_empty_stats():
    assert MemoryStore().get_stats() == {}
