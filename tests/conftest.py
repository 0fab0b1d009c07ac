"""Fakes shared by the DriveWatch test-suite: clock, ticker, transport, store."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from drivewatch.connections import Transport
from drivewatch.models import (
    AlertKind,
    GPSPoint,
    HazardAlert,
    SessionRecord,
    Severity,
    TelemetrySample,
    TriggerSnapshot,
    utc_from_ms,
)
from drivewatch.simulation import Ticker
from drivewatch.storage import TelemetryStore, generate_session_id


class FakeClock:
    def __init__(self, start_ms: float = 1_700_000_000_000.0) -> None:
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class ManualTicker(Ticker):
    """Only ticks when the test calls fire()."""

    def __init__(self, interval_ms, callback) -> None:
        super().__init__(interval_ms, callback)
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return self.started and not self.cancelled

    async def fire(self):
        return await self.callback()


class TickerRecorder:
    """Ticker factory remembering every ticker it built."""

    def __init__(self) -> None:
        self.tickers: List[ManualTicker] = []

    def __call__(self, interval_ms, callback) -> ManualTicker:
        ticker = ManualTicker(interval_ms, callback)
        self.tickers.append(ticker)
        return ticker


class FakeTransport(Transport):
    def __init__(self, fail: bool = False) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.open = True
        self.fail = fail
        self.closed_with: Optional[tuple] = None
        self.pings = 0

    async def send(self, message: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket broken")
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.open = False
        self.closed_with = (code, reason)

    async def ping(self) -> None:
        self.pings += 1

    @property
    def is_open(self) -> bool:
        return self.open

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]

    def last(self, msg_type: Optional[str] = None) -> Dict[str, Any]:
        for message in reversed(self.sent):
            if msg_type is None or message["type"] == msg_type:
                return message
        raise AssertionError(f"no {msg_type or 'message'} sent; got {self.types()}")


class StuckTransport(FakeTransport):
    """Peer that stopped reading: sends and pings never complete."""

    def __init__(self) -> None:
        super().__init__()
        self.attempts: List[Dict[str, Any]] = []

    async def send(self, message: Dict[str, Any]) -> None:
        self.attempts.append(message)
        await asyncio.Event().wait()

    async def ping(self) -> None:
        self.pings += 1
        await asyncio.Event().wait()


class MemoryStore(TelemetryStore):
    def __init__(self) -> None:
        self.sessions: Dict[str, SessionRecord] = {}
        self.telemetry: List[TelemetrySample] = []
        self.alerts: List[tuple] = []
        self.fail_writes = False
        self.fail_reads = False

    async def save_telemetry(self, sample):
        if self.fail_writes:
            raise RuntimeError("disk full")
        self.telemetry.append(sample)

    async def save_alert(self, session_id, alert):
        if self.fail_writes:
            raise RuntimeError("disk full")
        self.alerts.append((session_id, alert))

    async def find_session(self, session_id):
        if self.fail_reads:
            raise RuntimeError("database unavailable")
        return self.sessions.get(session_id)

    async def create_session(self, session_id, weather, road_type):
        record = SessionRecord(
            session_id=session_id or generate_session_id(),
            weather=weather,
            road_type=road_type,
            start_time=datetime.now(timezone.utc),
        )
        self.sessions[record.session_id] = record
        return record

    async def end_session(self, session_id):
        record = self.sessions.get(session_id)
        if record is None:
            return None
        if record.end_time is None:
            record = record.model_copy(update={"end_time": datetime.now(timezone.utc)})
            self.sessions[session_id] = record
        return record


def make_sample(speed=80.0, obstacle=150.0, session_id="abc12345", now_ms=0.0) -> TelemetrySample:
    return TelemetrySample(
        session_id=session_id,
        timestamp=utc_from_ms(now_ms),
        speed=speed,
        gps=GPSPoint(lat=40.7128, lng=-74.006),
        obstacle_distance=obstacle,
    )


def make_alert(severity=Severity.CRITICAL, kind=AlertKind.EMERGENCY_BRAKE) -> HazardAlert:
    return HazardAlert(
        kind=kind,
        severity=severity,
        message="test alert",
        timestamp=utc_from_ms(0),
        trigger_snapshot=TriggerSnapshot(
            speed=80.0, obstacle_distance=4.0, gps=GPSPoint(lat=40.7128, lng=-74.006),
        ),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tickers():
    return TickerRecorder()


@pytest.fixture
def store():
    return MemoryStore()
