"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "StepSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Supabase ---
    supabase_db_url: str = ""  # direct postgres connection string for asyncpg
    ledger_channel: str = "stepsync_changes"  # NOTIFY channel carrying row changes

    # --- Session ---
    local_user_id: str = ""  # empty: no session is started at boot
    partner_id: str = ""
    couple_id: str = ""
    timezone: str = "UTC"  # IANA name used for calendar-day boundaries

    # --- Health platform ---
    google_fit_access_token: str = ""
    health_timeout_seconds: float = 10.0

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
