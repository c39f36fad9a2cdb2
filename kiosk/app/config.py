import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.api_base_url = (os.getenv("POS_API_BASE_URL") or "http://localhost:8001/api").strip().rstrip("/")
        self.db_path = os.getenv("OFFLINE_QUEUE_DB_PATH", "offline_queue.sqlite")

        # Auto-sync cadence. Kiosks drain on this timer only, never at reconnect.
        self.sync_interval_s = _env_float("OFFLINE_SYNC_INTERVAL_SECONDS", 5.0)
        self.request_timeout_s = _env_float("OFFLINE_REQUEST_TIMEOUT_SECONDS", 15.0)
        self.connectivity_timeout_s = _env_float("OFFLINE_CONNECTIVITY_TIMEOUT_SECONDS", 3.0)

        # Orders at or above this attempt count are left for explicit "retry failed".
        self.max_attempts = _env_int("OFFLINE_MAX_ATTEMPTS", 5)
        self.max_queue_size = _env_int("OFFLINE_MAX_QUEUE_SIZE", 100)
        self.synced_retention_hours = _env_int("OFFLINE_SYNCED_RETENTION_HOURS", 24)
        self.catalog_ttl_hours = _env_int("OFFLINE_CATALOG_TTL_HOURS", 24)

        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"


settings = Settings()
