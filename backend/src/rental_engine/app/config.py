"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from backend/ regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./rental_engine.db"

    # Auth / JWT (tokens are issued by the identity service)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Payment processor
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""

    # Identity verification service
    verification_service_url: str = "http://localhost:8100"
    verification_api_key: str = ""

    # External calls
    external_call_timeout_seconds: float = 10.0
    refund_max_attempts: int = 3
    refund_backoff_seconds: float = 1.0

    # Booking timers
    pending_payment_timeout_hours: int = 24
    approval_timeout_hours: int = 48
    monitor_interval_minutes: int = 15

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
