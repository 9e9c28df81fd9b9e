import os


def _flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DB_USER = os.environ.get("DB_USER", "postgres")
DB_PASSWORD = os.environ.get("DB_PASSWORD", "postgres")
DB_HOST = os.environ.get("DB_HOST", "postgres")
DB_PORT = int(os.environ.get("DB_PORT", "5432"))
DB_NAME = os.environ.get("DB_NAME", "fasttrack")
DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    f"postgresql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

DB_MAX_ATTEMPTS = int(os.environ.get("DB_MAX_ATTEMPTS", "5"))
DB_RETRY_DELAY = float(os.environ.get("DB_RETRY_DELAY", "2.0"))
DB_POOL_MAX = int(os.environ.get("DB_POOL_MAX", "10"))

REDIS_URL = os.environ.get("BROKER_URL", "redis://redis:6379/0")
QUEUE_KEY = os.environ.get("QUEUE_KEY", "payments")
QUEUE_POLL_TIMEOUT = float(os.environ.get("QUEUE_POLL_TIMEOUT", "1.0"))

PURGE_QUEUE_ON_START = _flag("PURGE_QUEUE_ON_START", True)
PUBLISH_SEED = _flag("PUBLISH_SEED", True)
PUBLISH_DUPLICATE_PROBE = _flag("PUBLISH_DUPLICATE_PROBE", True)
SHUTDOWN_GRACE = float(os.environ.get("SHUTDOWN_GRACE", "5.0"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("LOG_FILE", "app.log")
HTTP_PORT = int(os.environ.get("HTTP_PORT", "8080"))
