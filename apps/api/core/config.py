"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the worker and tests.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (tests use sqlite://); otherwise built from POSTGRES_*.
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="wellness")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # WHOOP API Configuration
    WHOOP_CLIENT_ID: Optional[str] = Field(default=None)
    WHOOP_CLIENT_SECRET: Optional[str] = Field(default=None)
    WHOOP_REDIRECT_URI: str = Field(default="http://localhost:8000/v1/whoop")
    # Where a plain browser callback lands once the handshake is done.
    WHOOP_APP_CALLBACK_URL: str = Field(default="http://localhost:3000/integrations/whoop/callback")
    # "redirect" (302 to WHOOP_APP_CALLBACK_URL) or "popup" (postMessage + window.close()).
    WHOOP_CALLBACK_MODE: str = Field(default="redirect")

    # WHOOP sync window and paging
    WHOOP_SYNC_LOOKBACK_DAYS: int = Field(default=30, ge=1)
    WHOOP_MAX_PAGES: int = Field(default=10, ge=1)
    WHOOP_PAGE_SIZE: int = Field(default=25, ge=1, le=25)

    # OAuth state TTL for provider callbacks (seconds).
    OAUTH_STATE_TTL_S: int = Field(default=600)

    # Token Encryption
    TOKEN_ENCRYPTION_KEY: Optional[str] = Field(default=None)

    # JWT Authentication - REQUIRED for bearer verification
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

    # Feature flags - comma-separated keys, e.g. "whoop.extended_streams"
    FEATURE_FLAGS: str = Field(default="")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def feature_flags(self) -> set[str]:
        return {flag.strip() for flag in self.FEATURE_FLAGS.split(",") if flag.strip()}


# Global settings instance
settings = Settings()
