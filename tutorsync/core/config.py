"""Core application configuration and settings.

Handles environment variables, store backend selection, meeting provider
settings and JWT settings.
"""
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings


# Load environment variables
ROOT = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=ROOT / ".env", override=True)
load_dotenv(override=True)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Document store
    store_backend: str = Field(default="memory", alias="STORE_BACKEND")  # memory | redis

    # Redis Configuration
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_key_prefix: str = Field(default="tutorsync:", alias="REDIS_KEY_PREFIX")

    # JWT Authentication
    jwt_secret_key: str = Field(
        default="development-secret-key-change-in-production",
        alias="JWT_SECRET_KEY"
    )
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=1440, alias="ACCESS_TOKEN_EXPIRE_MINUTES")  # 24 hours

    # Google Meet / Calendar
    meet_enabled: bool = Field(default=True, alias="MEET_ENABLED")
    meet_default_duration_minutes: int = Field(default=60, alias="MEET_DEFAULT_DURATION_MINUTES")
    meet_timezone: str = Field(default="UTC", alias="MEET_TIMEZONE")
    meet_token_refresh_buffer_seconds: int = Field(default=300, alias="MEET_TOKEN_REFRESH_BUFFER_SECONDS")
    google_calendar_api_base: str = Field(
        default="https://www.googleapis.com/calendar/v3",
        alias="GOOGLE_CALENDAR_API_BASE"
    )
    google_oauth_client_id: Optional[str] = Field(default=None, alias="GOOGLE_OAUTH_CLIENT_ID")
    google_oauth_client_secret: Optional[str] = Field(default=None, alias="GOOGLE_OAUTH_CLIENT_SECRET")
    google_token_uri: str = Field(default="https://oauth2.googleapis.com/token", alias="GOOGLE_TOKEN_URI")
    meet_request_timeout_seconds: int = Field(default=15, alias="MEET_REQUEST_TIMEOUT_SECONDS")

    # Session core
    drawing_history_keep: int = Field(default=20, alias="DRAWING_HISTORY_KEEP")  # 0 disables compaction
    same_path_race_window_ms: int = Field(default=500, alias="SAME_PATH_RACE_WINDOW_MS")

    # Application Settings
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # API Settings
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173"
        ],
        alias="CORS_ORIGINS"
    )

    class Config:
        case_sensitive = False
        env_file = ".env"
        populate_by_name = True
        extra = "ignore"

    def validate_required_settings(self):
        """Validate that required settings are present."""
        if self.store_backend not in ("memory", "redis"):
            raise ValueError(
                f"STORE_BACKEND must be 'memory' or 'redis', got '{self.store_backend}'."
            )
        if self.environment == "production" and self.jwt_secret_key == "development-secret-key-change-in-production":
            raise ValueError(
                "JWT_SECRET_KEY must be set to a secure value in production."
            )
        if self.environment == "production" and self.store_backend == "memory":
            raise ValueError(
                "STORE_BACKEND=memory is not shared between processes; use redis in production."
            )


# Global settings instance
settings = Settings()


# Validate settings on module import (only in non-test environments)
if settings.environment != "test" and not os.getenv("PYTEST_CURRENT_TEST"):
    try:
        settings.validate_required_settings()
    except ValueError as e:
        print(f"Configuration Error: {e}")
        # Don't raise in development to allow partial setup
        if settings.environment == "production":
            raise
