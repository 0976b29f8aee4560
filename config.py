import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        reporting_currency: str,
        projection_months: int,
        token_secret: str,
        token_max_age_hours: int,
        sweep_enabled: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.reporting_currency = reporting_currency
        self.projection_months = projection_months
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.sweep_enabled = sweep_enabled
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SUBSCRIPTIONS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("SUBSCRIPTIONS_DATABASE_URL")
    if not database_url:
        data_dir = _ensure_data_dir()
        database_url = f"sqlite:///{data_dir / 'subscriptions.db'}"
    timezone = os.getenv("SUBSCRIPTIONS_TIMEZONE", "Asia/Jakarta")
    reporting_currency = os.getenv("SUBSCRIPTIONS_REPORTING_CURRENCY", "IDR").upper()
    projection_months = int(os.getenv("SUBSCRIPTIONS_PROJECTION_MONTHS", "12"))
    token_secret = os.getenv(
        "SUBSCRIPTIONS_TOKEN_SECRET",
        "3c1f6f0e9a8b4d27b1e25c7a90d4f3e8a6b2c1d0e9f8a7b6c5d4e3f2a1b0c9d8",
    )
    token_max_age_hours = int(os.getenv("SUBSCRIPTIONS_TOKEN_MAX_AGE_HOURS", "24"))
    sweep_enabled = _env_flag("SUBSCRIPTIONS_SWEEP_ENABLED")
    log_level = os.getenv("SUBSCRIPTIONS_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        reporting_currency=reporting_currency,
        projection_months=projection_months,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        sweep_enabled=sweep_enabled,
        log_level=log_level,
    )
