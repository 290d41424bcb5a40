import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

# History replay never exceeds this many messages per room
MAX_HISTORY_LIMIT = 50
HISTORY_LIMIT = min(int(os.getenv("HISTORY_LIMIT", MAX_HISTORY_LIMIT)), MAX_HISTORY_LIMIT)

# Seconds the pub/sub listener blocks waiting for a broker message
PUBSUB_POLL_TIMEOUT = float(os.getenv("PUBSUB_POLL_TIMEOUT", 1.0))

# Server events queued per connection before it is dropped as too slow
OUTBOUND_QUEUE_SIZE = int(os.getenv("OUTBOUND_QUEUE_SIZE", 256))
# Seconds a client-initiated disconnect waits for queued events to be written
OUTBOUND_FLUSH_TIMEOUT = float(os.getenv("OUTBOUND_FLUSH_TIMEOUT", 2.0))
