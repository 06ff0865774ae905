import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        plaid_client_id: str,
        plaid_secret: str,
        plaid_env: str,
        plaid_timeout_secs: float,
        plaid_client_name: str,
        category_map_path: Optional[str],
        fallback_category_name: str,
        sync_window_days: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.plaid_client_id = plaid_client_id
        self.plaid_secret = plaid_secret
        self.plaid_env = plaid_env
        self.plaid_timeout_secs = plaid_timeout_secs
        self.plaid_client_name = plaid_client_name
        self.category_map_path = category_map_path
        self.fallback_category_name = fallback_category_name
        self.sync_window_days = sync_window_days


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "America/New_York")
    session_secret = os.getenv(
        "BUDGET_SESSION_SECRET",
        "3f0d8c1e6a9b4f27a5c2e8d7b1f04a6c9e2d5b8a7f1c3e6d0b9a4c7e2f5d8a1b",
    )
    session_max_age_hours = int(os.getenv("BUDGET_SESSION_MAX_AGE_HOURS", "168"))
    plaid_client_id = os.getenv("PLAID_CLIENT_ID", "")
    plaid_secret = os.getenv("PLAID_SECRET", "")
    plaid_env = os.getenv("PLAID_ENV", "sandbox")
    plaid_timeout_secs = float(os.getenv("BUDGET_PLAID_TIMEOUT_SECS", "10"))
    plaid_client_name = os.getenv("BUDGET_PLAID_CLIENT_NAME", "Family Budget App")
    category_map_path = os.getenv("BUDGET_CATEGORY_MAP_PATH") or None
    fallback_category_name = os.getenv("BUDGET_FALLBACK_CATEGORY", "Miscellaneous")
    sync_window_days = int(os.getenv("BUDGET_SYNC_WINDOW_DAYS", "30"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        plaid_client_id=plaid_client_id,
        plaid_secret=plaid_secret,
        plaid_env=plaid_env,
        plaid_timeout_secs=plaid_timeout_secs,
        plaid_client_name=plaid_client_name,
        category_map_path=category_map_path,
        fallback_category_name=fallback_category_name,
        sync_window_days=sync_window_days,
    )
