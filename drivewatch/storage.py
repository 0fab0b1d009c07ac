"""
============================================================
 DriveWatch — Persistence (SQLAlchemy)
 Sessions, telemetry logs and hazard alerts.

 The simulation treats this as a write-behind sink: every
 coroutine below pushes the blocking SQLAlchemy work onto a
 worker thread so the event loop (and the tick cadence) is
 never held up by the database.
============================================================
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, create_engine, func
from sqlalchemy.orm import declarative_base, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from drivewatch import config
from drivewatch.models import HazardAlert, SessionRecord, TelemetrySample, as_utc

log = logging.getLogger(__name__)

Base = declarative_base()


def _naive_utc(value: Optional[datetime] = None) -> datetime:
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def generate_session_id() -> str:
    return f"ws{uuid.uuid4().hex[:12]}"


# ── Tables ────────────────────────────────────────────────────────────
class SessionRow(Base):
    """One driving run and its environment."""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), unique=True, index=True, nullable=False)
    start_time = Column(DateTime, default=lambda: _naive_utc(), nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    weather = Column(String(20), nullable=False)
    road_type = Column(String(20), nullable=False)

    def __repr__(self):
        return f"<Session {self.session_id} [{self.weather}/{self.road_type}] @ {self.start_time}>"

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            session_id=self.session_id,
            weather=self.weather,
            road_type=self.road_type,
            start_time=as_utc(self.start_time),
            end_time=as_utc(self.end_time),
        )


class TelemetryRow(Base):
    __tablename__ = "telemetry_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), index=True, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    speed = Column(Float, nullable=False)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    obstacle_distance = Column(Float, nullable=False)

    def to_dict(self):
        return {
            "sessionId": self.session_id,
            "timestamp": as_utc(self.timestamp).isoformat(),
            "speed": self.speed,
            "gps": {"lat": self.lat, "lng": self.lng},
            "obstacleDistance": self.obstacle_distance,
        }


class AlertRow(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), index=True, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    speed = Column(Float, nullable=True)
    obstacle_distance = Column(Float, nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)

    def to_dict(self):
        return {
            "sessionId": self.session_id,
            "timestamp": as_utc(self.timestamp).isoformat(),
            "kind": self.kind,
            "severity": self.severity,
            "message": self.message,
            "triggerSnapshot": {
                "speed": self.speed,
                "obstacleDistance": self.obstacle_distance,
                "gps": {"lat": self.lat, "lng": self.lng},
            },
        }


# ── Store Interface ───────────────────────────────────────────────────
class TelemetryStore(ABC):
    """Storage collaborator consumed by the simulation core."""

    def initialize(self) -> None:
        pass

    def close(self) -> None:
        pass

    def get_stats(self) -> dict:
        """Row counts and write/error counters; empty when not tracked."""
        return {}

    @abstractmethod
    async def save_telemetry(self, sample: TelemetrySample) -> None:
        pass

    @abstractmethod
    async def save_alert(self, session_id: str, alert: HazardAlert) -> None:
        pass

    @abstractmethod
    async def find_session(self, session_id: str) -> Optional[SessionRecord]:
        pass

    @abstractmethod
    async def create_session(self, session_id: Optional[str], weather: str, road_type: str) -> SessionRecord:
        pass

    @abstractmethod
    async def end_session(self, session_id: str) -> Optional[SessionRecord]:
        pass


class SqlTelemetryStore(TelemetryStore):
    """SQLAlchemy-backed store (SQLite by default)."""

    def __init__(self, uri: str = config.DATABASE_URI, echo: bool = False) -> None:
        self.uri = uri
        engine_kwargs: Dict[str, Any] = {"echo": echo}
        if uri.startswith("sqlite"):
            # writes arrive from worker threads
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if uri in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(uri, **engine_kwargs)
        self._Session = scoped_session(sessionmaker(bind=self.engine, expire_on_commit=False))
        self.write_count = 0
        self.error_count = 0

    def initialize(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(self.engine)
        log.info("[DB] Ready: %s", self.uri)

    def close(self) -> None:
        self._Session.remove()
        self.engine.dispose()

    # ── async facade ──────────────────────────────────────────────────

    async def save_telemetry(self, sample: TelemetrySample) -> None:
        await asyncio.to_thread(self._save_telemetry, sample)

    async def save_alert(self, session_id: str, alert: HazardAlert) -> None:
        await asyncio.to_thread(self._save_alert, session_id, alert)

    async def find_session(self, session_id: str) -> Optional[SessionRecord]:
        return await asyncio.to_thread(self._find_session, session_id)

    async def create_session(self, session_id: Optional[str], weather: str, road_type: str) -> SessionRecord:
        return await asyncio.to_thread(self._create_session, session_id, weather, road_type)

    async def end_session(self, session_id: str) -> Optional[SessionRecord]:
        return await asyncio.to_thread(self._end_session, session_id)

    # ── blocking implementations ──────────────────────────────────────

    def _write(self, row: Base) -> None:
        session = self._Session()
        try:
            session.add(row)
            session.commit()
            self.write_count += 1
        except Exception:
            session.rollback()
            self.error_count += 1
            raise
        finally:
            self._Session.remove()

    def _save_telemetry(self, sample: TelemetrySample) -> None:
        self._write(TelemetryRow(
            session_id=sample.session_id,
            timestamp=_naive_utc(sample.timestamp),
            speed=sample.speed,
            lat=sample.gps.lat,
            lng=sample.gps.lng,
            obstacle_distance=sample.obstacle_distance,
        ))

    def _save_alert(self, session_id: str, alert: HazardAlert) -> None:
        snap = alert.trigger_snapshot
        self._write(AlertRow(
            session_id=session_id,
            timestamp=_naive_utc(alert.timestamp),
            kind=alert.kind.value,
            severity=alert.severity.value,
            message=alert.message,
            speed=snap.speed,
            obstacle_distance=snap.obstacle_distance,
            lat=snap.gps.lat,
            lng=snap.gps.lng,
        ))

    def _find_session(self, session_id: str) -> Optional[SessionRecord]:
        session = self._Session()
        try:
            row = session.query(SessionRow).filter(SessionRow.session_id == session_id).one_or_none()
            return row.to_record() if row else None
        finally:
            self._Session.remove()

    def _create_session(self, session_id: Optional[str], weather: str, road_type: str) -> SessionRecord:
        row = SessionRow(
            session_id=session_id or generate_session_id(),
            start_time=_naive_utc(),
            end_time=None,
            weather=weather,
            road_type=road_type,
        )
        self._write(row)
        log.info("[DB] Created session %s (%s/%s)", row.session_id, weather, road_type)
        return row.to_record()

    def _end_session(self, session_id: str) -> Optional[SessionRecord]:
        session = self._Session()
        try:
            row = session.query(SessionRow).filter(SessionRow.session_id == session_id).one_or_none()
            if row is None:
                return None
            if row.end_time is None:
                row.end_time = _naive_utc()
                session.commit()
                self.write_count += 1
            return row.to_record()
        except Exception:
            session.rollback()
            self.error_count += 1
            raise
        finally:
            self._Session.remove()

    # ── read helpers (analytics / debugging) ─────────────────────────

    def recent_telemetry(self, session_id: str, limit: int = 100) -> List[dict]:
        """Most recent telemetry rows for a session, newest first."""
        session = self._Session()
        try:
            rows = (
                session.query(TelemetryRow)
                .filter(TelemetryRow.session_id == session_id)
                .order_by(TelemetryRow.timestamp.desc(), TelemetryRow.id.desc())
                .limit(limit)
                .all()
            )
            return [r.to_dict() for r in rows]
        finally:
            self._Session.remove()

    def alerts_for(self, session_id: str, limit: int = 100) -> List[dict]:
        session = self._Session()
        try:
            rows = (
                session.query(AlertRow)
                .filter(AlertRow.session_id == session_id)
                .order_by(AlertRow.timestamp.desc(), AlertRow.id.desc())
                .limit(limit)
                .all()
            )
            return [r.to_dict() for r in rows]
        finally:
            self._Session.remove()

    def get_stats(self) -> dict:
        session = self._Session()
        try:
            return {
                "sessions": session.query(func.count(SessionRow.id)).scalar() or 0,
                "telemetry": session.query(func.count(TelemetryRow.id)).scalar() or 0,
                "alerts": session.query(func.count(AlertRow.id)).scalar() or 0,
                "writes": self.write_count,
                "errors": self.error_count,
            }
        finally:
            self._Session.remove()
