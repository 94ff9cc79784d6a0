import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_URL = os.getenv("REDIS_URL", None)
REDIS_ENABLED = os.getenv("REDIS_ENABLED", "true").lower() in ("1", "true", "yes")
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", 2.0))
REDIS_CONNECT_TIMEOUT = float(os.getenv("REDIS_CONNECT_TIMEOUT", 2.0))

ROOM_CAPACITY_DEFAULT = int(os.getenv("ROOM_CAPACITY_DEFAULT", 50))
ROOM_CAPACITY_LOCATION = int(os.getenv("ROOM_CAPACITY_LOCATION", 100))
LOCATION_ROOM_PREFIX = os.getenv("LOCATION_ROOM_PREFIX", "LOC_")

USER_TTL = int(os.getenv("USER_TTL", 24 * 60 * 60))
ROOM_TTL = int(os.getenv("ROOM_TTL", 7 * 24 * 60 * 60))
ROOM_CLEANUP_DELAY = float(os.getenv("ROOM_CLEANUP_DELAY", 10 * 60))
REMOVED_MARKER_TTL = int(os.getenv("REMOVED_MARKER_TTL", 5))
ADMIN_TRANSFER_ATTEMPTS = int(os.getenv("ADMIN_TRANSFER_ATTEMPTS", 5))

MAX_MESSAGES_PER_ROOM = int(os.getenv("MAX_MESSAGES_PER_ROOM", 100))
MESSAGES_TO_FETCH = int(os.getenv("MESSAGES_TO_FETCH", 50))
MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", 1000))

USERNAME_MIN_LENGTH = int(os.getenv("USERNAME_MIN_LENGTH", 2))
USERNAME_MAX_LENGTH = int(os.getenv("USERNAME_MAX_LENGTH", 20))

# action -> (max requests, window seconds, block seconds)
RATE_LIMITS = {
    "message": (10, 10.0, 30.0),
    "join": (3, 60.0, 60.0),
}

DEFAULT_REJECT_REASON = "The room admin declined your request to join."
