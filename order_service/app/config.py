import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./orders.db")
# Falls back to the in-process cache when unset
REDIS_URL = os.getenv("REDIS_URL")
KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS")
LOG_PATH = os.getenv("LOG_PATH")

ORDER_CACHE_TTL_SECONDS = int(os.getenv("ORDER_CACHE_TTL_SECONDS", "900"))
ORDER_CACHE_MAX_ENTRIES = int(os.getenv("ORDER_CACHE_MAX_ENTRIES", "10000"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))
