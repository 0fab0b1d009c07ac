"""
============================================================
 DriveWatch — Central Configuration
 All tunable thresholds and constants live here.
 Every value can be overridden from the environment / .env
============================================================
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


# ── Version ─────────────────────────────────────────────────
VERSION = "1.0.0"

# ── Server ──────────────────────────────────────────────────
HOST = os.getenv("DRIVEWATCH_HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
CORS_ORIGINS = [o.strip() for o in os.getenv("DRIVEWATCH_CORS_ORIGINS", "*").split(",") if o.strip()]
WS_PATH = "/ws"

# ── Logging ─────────────────────────────────────────────────
LOG_LEVEL = os.getenv("DRIVEWATCH_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("DRIVEWATCH_LOG_FILE", "drivewatch.log")

# ── Database ────────────────────────────────────────────────
DATABASE_URI = os.getenv("DATABASE_URI", "sqlite:///drivewatch.db")

# ── Simulation Tick ─────────────────────────────────────────
DEFAULT_TICK_MS = int(os.getenv("DRIVEWATCH_TICK_MS", 1000))
MIN_TICK_MS = 50
MAX_TICK_MS = 60_000

# ── Motion Model ────────────────────────────────────────────
SPEED_MIN_KMH = 20.0
SPEED_MAX_KMH = 140.0
INITIAL_SPEED_RANGE = (60.0, 100.0)
SPEED_TREND_FLIP_PROB = 0.10
SPEED_STEP_RANGE = (0.5, 2.5)          # km/h change per tick

OBSTACLE_MIN_M = 5.0
OBSTACLE_MAX_M = 300.0
INITIAL_OBSTACLE_RANGE = (50.0, 250.0)
OBSTACLE_SCENARIO_PROB = 0.15          # chance of a traffic "event" per tick
OBSTACLE_CUT_IN_PROB = 0.30            # clear road → car cuts in
OBSTACLE_CLEAR_PROB = 0.40             # close obstacle → road opens up
OBSTACLE_CLEAR_THRESHOLD_M = 100.0
OBSTACLE_CLOSE_THRESHOLD_M = 50.0
OBSTACLE_CUT_IN_RANGE = (10.0, 40.0)
OBSTACLE_OPEN_RANGE = (80.0, 230.0)
OBSTACLE_EVENT_JITTER_M = 10.0
OBSTACLE_JITTER_M = 2.5

HEADING_BASE_DEG = 45.0
HEADING_SWING_DEG = 30.0
HEADING_RATE = 0.01                    # rad of oscillation per elapsed second
START_POSITION = (40.7128, -74.0060)
START_JITTER_DEG = 0.005
METERS_PER_DEG_LAT = 111_320.0

# ── Hazard Rules ────────────────────────────────────────────
ALERT_COOLDOWN_MS = 5000
BRAKE_DECEL_MS2 = 7.0
EMERGENCY_DISTANCE_M = 5.0
STOPPING_MARGIN = 0.7
SPEED_LIMIT_KMH = 120.0
CLOSE_OBSTACLE_M = 30.0
CLOSE_OBSTACLE_SPEED_KMH = 80.0
TAILGATE_DISTANCE_M = 20.0

# ── Connections ─────────────────────────────────────────────
SWEEP_INTERVAL_S = float(os.getenv("DRIVEWATCH_SWEEP_INTERVAL_S", 30.0))
STALE_THRESHOLD_MS = int(os.getenv("DRIVEWATCH_STALE_THRESHOLD_MS", 60_000))
# A send or heartbeat that takes longer counts as failed.
SEND_TIMEOUT_S = float(os.getenv("DRIVEWATCH_SEND_TIMEOUT_S", 2.0))
HEARTBEAT_TIMEOUT_S = float(os.getenv("DRIVEWATCH_HEARTBEAT_TIMEOUT_S", 5.0))
# Stop a session's simulation when its last subscriber disconnects.
AUTO_STOP_ON_LAST_SUBSCRIBER = _env_bool("DRIVEWATCH_AUTO_STOP", True)

# ── Sessions ────────────────────────────────────────────────
DEFAULT_WEATHER = "sunny"
DEFAULT_ROAD_TYPE = "highway"
WEATHER_TYPES = ("sunny", "cloudy", "rainy", "foggy", "snowy", "stormy")
ROAD_TYPES = ("highway", "city", "suburban", "rural", "mountain", "coastal")
SESSION_ID_PATTERN = r"^[a-zA-Z0-9]{6,}$"

# ── Bridge (subscriber client) ──────────────────────────────
SERVER_URL = os.getenv("DRIVEWATCH_SERVER_URL", "ws://localhost:8000/ws")
BRIDGE_RECONNECT_BASE_S = 1.0
BRIDGE_RECONNECT_MAX_S = 10.0
BRIDGE_MAX_RECONNECTS = 5
BRIDGE_HEARTBEAT_S = 20.0
BRIDGE_QUEUE_SIZE = 50
