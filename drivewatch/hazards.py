"""
============================================================
 DriveWatch — Hazard Classifier
 Rule-based, deterministic mapping from one telemetry
 sample to at most one alert. No I/O, no randomness.
============================================================
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from drivewatch import config
from drivewatch.models import (
    AlertKind,
    HazardAlert,
    Severity,
    TelemetrySample,
    TriggerSnapshot,
    utc_from_ms,
)


@dataclass
class CooldownState:
    """Per-session suppression window between two alerts."""
    last_alert_at: Optional[float] = None     # epoch ms of last emitted alert
    window_ms: float = config.ALERT_COOLDOWN_MS

    def active(self, now_ms: float) -> bool:
        if self.last_alert_at is None:
            return False
        return (now_ms - self.last_alert_at) < self.window_ms

    def remaining_ms(self, now_ms: float) -> float:
        if not self.active(now_ms):
            return 0.0
        return self.window_ms - (now_ms - self.last_alert_at)


def stopping_distance(speed_kmh: float, decel_ms2: float = config.BRAKE_DECEL_MS2) -> float:
    """Braking distance in metres: v² / 2a."""
    speed_ms = speed_kmh / 3.6
    return (speed_ms * speed_ms) / (2 * decel_ms2)


def classify(speed: float, obstacle_distance: float) -> Optional[Tuple[AlertKind, Severity, str]]:
    """
    Apply the rule ladder; first match wins.
    Returns (kind, severity, message) or None when the road is safe.
    """
    stop_m = stopping_distance(speed)

    # 1. Obstacle practically touching the bumper
    if obstacle_distance <= config.EMERGENCY_DISTANCE_M:
        return (
            AlertKind.EMERGENCY_BRAKE,
            Severity.CRITICAL,
            "EMERGENCY: Immediate braking required!",
        )

    # 2. Not enough room to stop
    if obstacle_distance <= stop_m * config.STOPPING_MARGIN:
        return (
            AlertKind.COLLISION_WARNING,
            Severity.HIGH,
            f"Collision risk: obstacle {obstacle_distance:.1f}m ahead, "
            f"stopping distance {stop_m:.1f}m",
        )

    # 3. Over the speed limit
    if speed > config.SPEED_LIMIT_KMH:
        return (
            AlertKind.SPEED_WARNING,
            Severity.MEDIUM,
            f"Speed warning: {speed:.1f} km/h exceeds safe limits",
        )

    # 4. Fast and close
    if obstacle_distance < config.CLOSE_OBSTACLE_M and speed > config.CLOSE_OBSTACLE_SPEED_KMH:
        return (
            AlertKind.COLLISION_WARNING,
            Severity.HIGH,
            f"Reduce speed: high speed with obstacle at {obstacle_distance:.1f}m",
        )

    # 5. Tailgating
    if obstacle_distance < config.TAILGATE_DISTANCE_M:
        return (
            AlertKind.COLLISION_WARNING,
            Severity.MEDIUM,
            f"Keep a safe distance: following too closely at {obstacle_distance:.1f}m",
        )

    return None


def evaluate(sample: TelemetrySample, cooldown: CooldownState, now_ms: float) -> Optional[HazardAlert]:
    """
    Classify ``sample`` unless the session is still inside its cooldown
    window. A suppressed tick leaves ``cooldown`` untouched.
    """
    if cooldown.active(now_ms):
        return None

    verdict = classify(sample.speed, sample.obstacle_distance)
    if verdict is None:
        return None

    kind, severity, message = verdict
    cooldown.last_alert_at = now_ms
    return HazardAlert(
        kind=kind,
        severity=severity,
        message=message,
        timestamp=utc_from_ms(now_ms),
        trigger_snapshot=TriggerSnapshot(
            speed=sample.speed,
            obstacle_distance=sample.obstacle_distance,
            gps=sample.gps,
        ),
    )
