"""Application settings and configuration.

This module defines all configuration options for the tracking gate.
Settings are loaded from environment variables with sensible defaults; the
two signing secrets have no default and must be provided.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Tracking Gate", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Signing secrets
    jwt_secret: str = Field(alias="JWT_SECRET", min_length=32)
    hmac_secret: str = Field(alias="HMAC_SECRET", min_length=32)

    # Session tokens
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_issuer: str = Field(default="universal-tracking", alias="JWT_ISSUER")
    access_token_expire_minutes: int = Field(default=15, alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    refresh_token_expire_days: int = Field(default=7, alias="REFRESH_TOKEN_EXPIRE_DAYS")

    # Request integrity and replay protection
    hmac_max_age_ms: int = Field(default=300_000, alias="HMAC_MAX_AGE_MS", gt=0)
    hmac_max_clock_skew_ms: int | None = Field(default=None, alias="HMAC_MAX_CLOCK_SKEW_MS")
    nonce_cache_max_entries: int = Field(
        default=100_000,
        alias="NONCE_CACHE_MAX_ENTRIES",
        gt=0,
    )

    # Shared counter/nonce store
    store_backend: Literal["redis", "memory"] = Field(default="redis", alias="STORE_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    redis_key_prefix: str = Field(default="ut:", alias="REDIS_KEY_PREFIX")
    store_timeout_seconds: float = Field(default=0.5, alias="STORE_TIMEOUT_SECONDS", gt=0)

    # General API rate limiting; the other profiles have fixed thresholds
    rate_limit_window_ms: int = Field(default=60_000, alias="RATE_LIMIT_WINDOW_MS", ge=1000)
    rate_limit_max_requests: int = Field(default=100, alias="RATE_LIMIT_MAX_REQUESTS", ge=1)

    # Principal store
    api_key_permissions: list[str] = Field(default=["write"], alias="API_KEY_PERMISSIONS")
    sites_file: str | None = Field(default=None, alias="SITES_FILE")

    # CORS configuration for dashboard access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def refresh_secret(self) -> str:
        """Return the refresh-token secret derived from the access-token secret."""
        return f"{self.jwt_secret}_refresh"

    @property
    def effective_clock_skew_ms(self) -> int:
        """Return the tolerated future skew for signed request timestamps."""
        if self.hmac_max_clock_skew_ms is None:
            return self.hmac_max_age_ms
        return self.hmac_max_clock_skew_ms


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, reading the environment once."""
    return Settings()  # type: ignore[call-arg]
