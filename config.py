import os
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        db_timeout_secs: float,
        notification_retention_days: int,
        default_warning_threshold: int,
        trend_months: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.tzinfo = _load_zone(timezone)
        self.db_timeout_secs = db_timeout_secs
        self.notification_retention_days = notification_retention_days
        self.default_warning_threshold = default_warning_threshold
        self.trend_months = trend_months
        self.scheduler_enabled = scheduler_enabled


def _load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone in EXPENSES_TIMEZONE: {name!r}") from exc


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Europe/Berlin")
    db_timeout_secs = float(os.getenv("EXPENSES_DB_TIMEOUT_SECS", "5"))
    retention_days = int(os.getenv("EXPENSES_NOTIFICATION_RETENTION_DAYS", "30"))
    warning_threshold = int(os.getenv("EXPENSES_DEFAULT_WARNING_THRESHOLD", "75"))
    trend_months = int(os.getenv("EXPENSES_TREND_MONTHS", "6"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        db_timeout_secs=db_timeout_secs,
        notification_retention_days=retention_days,
        default_warning_threshold=warning_threshold,
        trend_months=trend_months,
        scheduler_enabled=_env_flag("EXPENSES_SCHEDULER_ENABLED"),
    )
