import os
import uuid

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

if REDIS_PASSWORD:
    REDIS_URL = os.getenv("REDIS_URL", f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}")
else:
    REDIS_URL = os.getenv("REDIS_URL", f"redis://{REDIS_HOST}:{REDIS_PORT}")

DOMAIN = os.getenv("DOMAIN", "localhost")

# Identifies this process in published envelopes and logs
INSTANCE_ID = os.getenv("INSTANCE_ID", uuid.uuid4().hex[:12])

# Fan-out: a single slow socket may hold a delivery for at most this long
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", 5.0))

# Backplane reconnect backoff
RECONNECT_BASE_DELAY_SECONDS = float(os.getenv("RECONNECT_BASE_DELAY_SECONDS", 0.5))
RECONNECT_MAX_DELAY_SECONDS = float(os.getenv("RECONNECT_MAX_DELAY_SECONDS", 30.0))

SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", 15.0))
PUBSUB_POLL_TIMEOUT_SECONDS = float(os.getenv("PUBSUB_POLL_TIMEOUT_SECONDS", 1.0))

DEFAULT_ROOM_EXPIRY_SECONDS = int(os.getenv("DEFAULT_ROOM_EXPIRY_SECONDS", 600))
DEFAULT_MAX_USERS = int(os.getenv("DEFAULT_MAX_USERS", 20))
