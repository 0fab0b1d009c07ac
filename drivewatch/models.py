"""
============================================================
 DriveWatch — Data Models
 Telemetry samples, hazard alerts, session records and the
 {type, data} JSON envelope spoken over the /ws endpoint.
============================================================
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from drivewatch import config

_SESSION_ID_RE = re.compile(config.SESSION_ID_PATTERN)


def utc_from_ms(ms: float) -> datetime:
    """Epoch milliseconds → timezone-aware UTC datetime."""
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Enumerations ──────────────────────────────────────────────────────
class AlertKind(str, Enum):
    EMERGENCY_BRAKE = "emergency_brake"
    COLLISION_WARNING = "collision_warning"
    SPEED_WARNING = "speed_warning"


class Severity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MessageType(str, Enum):
    """Commands a client may send over the socket."""
    START_SESSION = "start_session"
    STOP_SESSION = "stop_session"
    SUBSCRIBE_TELEMETRY = "subscribe_telemetry"
    UNSUBSCRIBE_TELEMETRY = "unsubscribe_telemetry"
    REQUEST_SESSION_STATUS = "request_session_status"
    PING = "ping"


SUPPORTED_TYPES = [t.value for t in MessageType]


# ── Telemetry ─────────────────────────────────────────────────────────
class GPSPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class TelemetrySample(BaseModel):
    """One tick of simulated vehicle data. Immutable once produced."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    timestamp: datetime
    speed: float                                   # km/h
    gps: GPSPoint
    obstacle_distance: float = Field(alias="obstacleDistance")   # metres

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TriggerSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    speed: float
    obstacle_distance: float = Field(alias="obstacleDistance")
    gps: GPSPoint


class HazardAlert(BaseModel):
    """Output of the hazard classifier, at most one per tick."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: AlertKind
    severity: Severity
    message: str
    timestamp: datetime
    trigger_snapshot: TriggerSnapshot = Field(alias="triggerSnapshot")

    @property
    def is_critical(self) -> bool:
        return self.severity == Severity.CRITICAL

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ── Sessions ──────────────────────────────────────────────────────────
class SessionRecord(BaseModel):
    """Detached view of a persisted driving session."""

    session_id: str
    weather: str
    road_type: str
    start_time: datetime
    end_time: Optional[datetime] = None

    @property
    def status(self) -> str:
        return "completed" if self.end_time else "active"

    def duration_ms(self, now: Optional[datetime] = None) -> int:
        end = self.end_time or now or datetime.now(timezone.utc)
        return int((as_utc(end) - as_utc(self.start_time)).total_seconds() * 1000)


# ── Inbound Payloads ──────────────────────────────────────────────────
class ClientMessage(BaseModel):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class StartSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    weather: str = config.DEFAULT_WEATHER
    road_type: str = Field(default=config.DEFAULT_ROAD_TYPE, alias="roadType")
    simulation_speed: int = Field(
        default=config.DEFAULT_TICK_MS,
        alias="simulationSpeed",
        ge=config.MIN_TICK_MS,
        le=config.MAX_TICK_MS,
    )

    @field_validator("session_id", mode="before")
    @classmethod
    def _check_session_id(cls, v: Any) -> Any:
        if v is None:
            return None
        v = str(v).strip()
        if not v:
            return None
        if not _SESSION_ID_RE.match(v):
            raise ValueError("Session ID must be alphanumeric and at least 6 characters long")
        return v

    @field_validator("weather", mode="before")
    @classmethod
    def _check_weather(cls, v: Any) -> Any:
        if v is None:
            return config.DEFAULT_WEATHER
        v = str(v).strip().lower()
        if v not in config.WEATHER_TYPES:
            raise ValueError(f"Weather must be one of: {', '.join(config.WEATHER_TYPES)}")
        return v

    @field_validator("road_type", mode="before")
    @classmethod
    def _check_road_type(cls, v: Any) -> Any:
        if v is None:
            return config.DEFAULT_ROAD_TYPE
        v = str(v).strip().lower()
        if v not in config.ROAD_TYPES:
            raise ValueError(f"Road type must be one of: {', '.join(config.ROAD_TYPES)}")
        return v

    @field_validator("simulation_speed", mode="before")
    @classmethod
    def _default_speed(cls, v: Any) -> Any:
        return config.DEFAULT_TICK_MS if v is None else v


class SessionQuery(BaseModel):
    """Payload carrying just a session id (subscribe / status)."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)


def envelope(msg_type: str | Enum, data: Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(msg_type, Enum):
        msg_type = msg_type.value
    return {"type": msg_type, "data": data}
