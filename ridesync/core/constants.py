from __future__ import annotations

from typing import Dict, Tuple

# Push channel heartbeat and REST fallback cadence (seconds)
HEARTBEAT_INTERVAL = 3.0
REST_BACKUP_INTERVAL = 5.0
# REST only fires after this many heartbeats without a processed push event
DEGRADED_AFTER_HEARTBEATS = 3.0
# A heartbeat request with no push event within this many heartbeats marks the
# channel as failed
PUSH_TIMEOUT_FACTOR = 1.5

# Ride lifecycle timings (seconds)
SEARCH_PROBE_INTERVAL = 3.0
TERMINAL_COUNTDOWN = 5.0
OFFER_TTL = 30.0

# Chat
TYPING_IDLE = 2.0
ECHO_MATCH_WINDOW = 30.0
MESSAGE_PAGE_SIZE = 50
UNREAD_REFRESH_INTERVAL = 60.0

# Own location reporting
LOCATION_UPDATE_INTERVAL = 10.0
LOCATION_MIN_DISTANCE_M = 10.0

# Transport
DEFAULT_BASE_URL = "http://127.0.0.1:3000"
DEFAULT_SOCKET_HOST = "127.0.0.1"
DEFAULT_SOCKET_PORT = 3001
CONNECT_TIMEOUT = 8.0
REQUEST_TIMEOUT = 10.0
RECONNECT_INITIAL = 1.0
RECONNECT_MAX = 30.0

# Vehicle categories a fulfiller can register
VEHICLE_TYPES: Tuple[str, ...] = ("Single Motorcycle", "Tricycle", "Cab")

# Average city speeds used for pickup ETA estimates (km/h)
VEHICLE_AVERAGE_SPEEDS_KMH: Dict[str, float] = {
    "Single Motorcycle": 30.0,
    "Tricycle": 20.0,
    "Cab": 25.0,
}
DEFAULT_AVERAGE_SPEED_KMH = 25.0

# Keys never written to logs
SENSITIVE_KEYS = frozenset(
    {"password", "access_token", "refresh_token", "otp", "authorization"}
)
