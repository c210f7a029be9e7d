import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, default)).strip())
    except Exception:
        return default


PROJECT_NAME = "Growroom Automation API"

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./growroom.db")

SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = _env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24)

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

# Wall-clock zone used for HH:MM comparisons and day-of-week filters
AUTOMATION_TIMEZONE = os.getenv("AUTOMATION_TIMEZONE", "UTC")

# Polling granularity of the dispatcher; also the SPECIFIC_TIMES tolerance window
AUTOMATION_POLL_SECONDS = max(5, _env_int("AUTOMATION_POLL_SECONDS", 60))

# thread | celery | off
AUTOMATION_SCHEDULER_MODE = os.getenv("AUTOMATION_SCHEDULER_MODE", "thread").strip().lower()
AUTOMATION_WORKERS = max(1, _env_int("AUTOMATION_WORKERS", 4))

DEVICE_TIMEOUT_SECONDS = float(os.getenv("DEVICE_TIMEOUT_SECONDS", "5"))

LEASE_TTL_SECONDS = _env_int("LEASE_TTL_SECONDS", 3600)

# Overridden at runtime by the `effectiveness_check_delay_minutes` system setting
EFFECTIVENESS_CHECK_DELAY_MINUTES = _env_int("EFFECTIVENESS_CHECK_DELAY_MINUTES", 15)

JOB_BATCH_SIZE = _env_int("JOB_BATCH_SIZE", 10)
JOB_LOCK_TTL_SECONDS = _env_int("JOB_LOCK_TTL_SECONDS", 60)
JOB_RETENTION_DAYS = _env_int("JOB_RETENTION_DAYS", 30)

DISPATCH_FAILURE_ALERT_THRESHOLD = _env_int("DISPATCH_FAILURE_ALERT_THRESHOLD", 3)

CONNECTOR_URLS = {
    "TAPO": os.getenv("CONNECTOR_TAPO_URL", "http://localhost:3003"),
    "TUYA": os.getenv("CONNECTOR_TUYA_URL", "http://localhost:3002"),
    "SONOFF": os.getenv("CONNECTOR_SONOFF_URL", "http://localhost:3001"),
    "ESP32": os.getenv("CONNECTOR_ESP32_URL", "http://localhost:3004"),
}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# json | text
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()
# Empty disables the rotating file handler
LOG_FILE = os.getenv("LOG_FILE", "").strip()
LOG_MAX_BYTES = _env_int("LOG_MAX_BYTES", 10 * 1024 * 1024)
LOG_BACKUP_COUNT = _env_int("LOG_BACKUP_COUNT", 5)
