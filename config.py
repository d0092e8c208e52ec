import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        min_year: int,
        max_year: int,
        dashboard_workers: int,
        cache_enabled: bool,
        cache_sweep_minutes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.min_year = min_year
        self.max_year = max_year
        self.dashboard_workers = dashboard_workers
        self.cache_enabled = cache_enabled
        self.cache_sweep_minutes = cache_sweep_minutes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("TREASURY_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("TREASURY_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "treasury.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("TREASURY_TIMEZONE", "Asia/Kolkata")
    log_level = os.getenv("TREASURY_LOG_LEVEL", "INFO").upper()
    min_year = int(os.getenv("TREASURY_MIN_YEAR", "2000"))
    max_year = int(os.getenv("TREASURY_MAX_YEAR", "2050"))
    dashboard_workers = int(os.getenv("TREASURY_DASHBOARD_WORKERS", "4"))
    cache_enabled = _env_flag("TREASURY_CACHE_ENABLED", "true")
    cache_sweep_minutes = int(os.getenv("TREASURY_CACHE_SWEEP_MINUTES", "10"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        min_year=min_year,
        max_year=max_year,
        dashboard_workers=dashboard_workers,
        cache_enabled=cache_enabled,
        cache_sweep_minutes=cache_sweep_minutes,
    )
