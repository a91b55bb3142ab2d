"""
config.py — TaxHelp bot-core settings.

Usage:
    from taxhelp.config import settings
    print(settings.api_base_url)

Never use FastAPI Depends() for settings — import directly as a module-level singleton.
"""
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Silently ignore any extra env vars
    )

    # --- Backend REST API (system of record) ---
    api_base_url: str = "http://localhost:8080/api"
    api_timeout_seconds: float = 10.0
    api_retry_attempts: int = 2          # retries beyond the first attempt
    api_retry_delay_seconds: float = 0.5 # base delay; doubles per attempt
    health_timeout_seconds: float = 5.0
    # Malformed JSON on a 2xx is terminal unless this is switched on
    retry_invalid_response: bool = False

    # --- Conversation state ---
    session_ttl_seconds: int = 60 * 60 * 12  # 12 hours of inactivity
    page_size: int = 8                       # options per paginated keyboard page
    default_language: str = "en"

    # --- Write-behind sync ---
    sync_interval_seconds: float = 30.0

    # --- CORS ---
    # Comma-separated list of allowed front-end origins
    cors_origins: str = "http://localhost:3000"

    # --- Application ---
    bot_name: str = "TaxHelp AI"
    debug: bool = True
    app_version: str = "1.0.0"

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @property
    def cors_origins_list(self) -> List[str]:
        """Split comma-separated CORS origins into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Module-level singleton — import this throughout the codebase
settings = Settings()
