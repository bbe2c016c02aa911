import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from periods import BucketPreset, WindowPreset, resolve_timezone


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        autotag_hour: Optional[int],
        default_window: WindowPreset,
        default_bucket: BucketPreset,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.autotag_hour = autotag_hour
        self.default_window = default_window
        self.default_bucket = default_bucket


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_autotag_hour(raw: str) -> Optional[int]:
    if not raw.strip():
        return None
    hour = int(raw)
    if not 0 <= hour <= 23:
        raise ValueError(f"EXPENSES_AUTOTAG_HOUR must be between 0 and 23, got {hour}")
    return hour


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Europe/Berlin")
    # Raises InvalidTimezone so a bad value fails at startup.
    resolve_timezone(timezone)
    autotag_hour = _parse_autotag_hour(os.getenv("EXPENSES_AUTOTAG_HOUR", "3"))
    default_window = WindowPreset(os.getenv("EXPENSES_DEFAULT_WINDOW", "this_month"))
    default_bucket = BucketPreset(os.getenv("EXPENSES_DEFAULT_BUCKET", "week"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        autotag_hour=autotag_hour,
        default_window=default_window,
        default_bucket=default_bucket,
    )
