"""
============================================================
 DriveWatch — Motion Model
 Random-walk vehicle kinematics: speed trend persistence,
 heading oscillation along a pseudo route, equirectangular
 GPS drift and traffic "scenario" jumps in obstacle range.

 advance() is the only mutator; state is owned by exactly
 one running simulation so in-place updates are safe.
============================================================
"""

import math
import random
from dataclasses import dataclass, field

from drivewatch import config
from drivewatch.hazards import CooldownState
from drivewatch.models import GPSPoint, TelemetrySample, utc_from_ms


@dataclass
class SimulationState:
    speed: float                 # km/h, clamped to [SPEED_MIN_KMH, SPEED_MAX_KMH]
    lat: float
    lng: float
    obstacle_distance: float     # metres, clamped to [OBSTACLE_MIN_M, OBSTACLE_MAX_M]
    speed_trend: int             # +1 accelerating, -1 decelerating
    started_at_ms: float
    route_progress: float = 0.0  # cumulative metres travelled
    tick_count: int = 0
    cooldown: CooldownState = field(default_factory=CooldownState)

    def sample(self, session_id: str, now_ms: float) -> TelemetrySample:
        return TelemetrySample(
            session_id=session_id,
            timestamp=utc_from_ms(now_ms),
            speed=round(self.speed, 2),
            gps=GPSPoint(lat=round(self.lat, 6), lng=round(self.lng, 6)),
            obstacle_distance=round(self.obstacle_distance, 2),
        )


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def initial_state(rng: random.Random, now_ms: float) -> SimulationState:
    """Fresh vehicle somewhere plausible: 60-100 km/h, obstacle 50-250 m ahead."""
    base_lat, base_lng = config.START_POSITION
    jitter = config.START_JITTER_DEG
    return SimulationState(
        speed=rng.uniform(*config.INITIAL_SPEED_RANGE),
        lat=base_lat + rng.uniform(-jitter, jitter),
        lng=base_lng + rng.uniform(-jitter, jitter),
        obstacle_distance=rng.uniform(*config.INITIAL_OBSTACLE_RANGE),
        speed_trend=rng.choice((1, -1)),
        started_at_ms=now_ms,
    )


def heading_at(elapsed_s: float) -> float:
    """Slowly swinging bearing (degrees) so the track looks like a route."""
    return config.HEADING_BASE_DEG + math.sin(elapsed_s * config.HEADING_RATE) * config.HEADING_SWING_DEG


def _advance_obstacle(distance: float, rng: random.Random) -> float:
    if rng.random() < config.OBSTACLE_SCENARIO_PROB:
        if distance > config.OBSTACLE_CLEAR_THRESHOLD_M and rng.random() < config.OBSTACLE_CUT_IN_PROB:
            # car cutting in / sudden jam
            distance = rng.uniform(*config.OBSTACLE_CUT_IN_RANGE)
        elif distance < config.OBSTACLE_CLOSE_THRESHOLD_M and rng.random() < config.OBSTACLE_CLEAR_PROB:
            # road opens up again
            distance = rng.uniform(*config.OBSTACLE_OPEN_RANGE)
        else:
            jitter = config.OBSTACLE_EVENT_JITTER_M
            distance += rng.uniform(-jitter, jitter)
    else:
        jitter = config.OBSTACLE_JITTER_M
        distance += rng.uniform(-jitter, jitter)
    return _clamp(distance, config.OBSTACLE_MIN_M, config.OBSTACLE_MAX_M)


def advance(state: SimulationState, elapsed_ms: float, rng: random.Random, now_ms: float) -> SimulationState:
    """Move the vehicle forward by one tick of ``elapsed_ms``."""
    if rng.random() < config.SPEED_TREND_FLIP_PROB:
        state.speed_trend *= -1

    step = rng.uniform(*config.SPEED_STEP_RANGE)
    state.speed = _clamp(state.speed + state.speed_trend * step, config.SPEED_MIN_KMH, config.SPEED_MAX_KMH)

    speed_ms = state.speed / 3.6
    distance_m = speed_ms * (elapsed_ms / 1000.0)

    bearing = math.radians(heading_at((now_ms - state.started_at_ms) / 1000.0))
    lat_change = distance_m * math.cos(bearing) / config.METERS_PER_DEG_LAT
    lng_change = distance_m * math.sin(bearing) / (
        config.METERS_PER_DEG_LAT * math.cos(math.radians(state.lat))
    )
    state.lat += lat_change
    state.lng += lng_change
    state.route_progress += distance_m

    state.obstacle_distance = _advance_obstacle(state.obstacle_distance, rng)
    state.tick_count += 1
    return state
