from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        # Ensure environment variables override .env file
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Dashboard authentication - signs tenant ids (X-Tenant-ID / X-Signature)
    DASHBOARD_SECRET: str

    # WhatsApp gateway (Evolution-style HTTP API)
    GATEWAY_BASE_URL: str
    GATEWAY_API_KEY: str = ""
    GATEWAY_TIMEOUT_SECONDS: float = 30.0

    # Public URL of this service, used when registering the gateway webhook
    PUBLIC_BASE_URL: Optional[str] = None

    # Media retrieval
    MEDIA_MAX_ENCODED_BYTES: int = 10 * 1024 * 1024
    MEDIA_SWEEP_BATCH_SIZE: int = 10
    MEDIA_SWEEP_DELAY_SECONDS: float = 0.5

    # Health probe cadence per connection status (seconds)
    PROBE_INTERVAL_CONNECTED: float = 600.0
    PROBE_INTERVAL_PAIRING: float = 30.0
    PROBE_INTERVAL_DISCONNECTED: float = 120.0
    PROBE_INTERVAL_ERROR: float = 120.0
    PROBE_CATCH_UP_AFTER_SECONDS: float = 300.0

    # Realtime fan-out
    REALTIME_QUEUE_SIZE: int = 100
    REALTIME_HEARTBEAT_SECONDS: float = 20.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
