# app/config.py
"""
Centralized application configuration using pydantic-settings.

All settings are read from environment variables or .env file.
Both the server and the sync client read their defaults from here.
"""

import os
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Priority: environment variables > .env file > defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore unknown env vars
    )

    # --- Database ---
    DB_URL: str = Field(
        default="postgresql://localhost:5432/session_sync",
        description="PostgreSQL connection URL"
    )

    # --- Redis ---
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (used by the Redis broadcast bus)"
    )

    # --- Server ---
    HOST: str = Field(
        default="127.0.0.1",
        description="Server bind host"
    )
    PORT: int = Field(
        default=8888,
        description="Server bind port"
    )
    SERVICE_NAME: str = Field(
        default="session-sync",
        description="Service name reported to tracing"
    )
    OTEL_ENABLED: bool = Field(
        default=True,
        description="Instrument the app with OpenTelemetry on startup"
    )

    # --- Debug / Logging ---
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # --- Sessions (server) ---
    PRESENCE_TIMEOUT_SECONDS: int = Field(
        default=15,
        description="Presence rows older than this are evicted on read"
    )
    STATE_MERGE_MAX_RETRIES: int = Field(
        default=5,
        description="Version-checked merge attempts before reporting a conflict"
    )
    AUTH_COOKIE_NAME: str = Field(
        default="auth-session",
        description="Cookie carrying the caller's session token"
    )

    # --- Sync client ---
    SYNC_API_BASE_URL: str = Field(
        default="http://127.0.0.1:8888/api",
        description="Base URL the sync client talks to"
    )
    SYNC_POLL_INTERVAL_MS: int = Field(default=500, description="State poll interval")
    SYNC_HEARTBEAT_INTERVAL_MS: int = Field(default=5000, description="Presence heartbeat interval")
    SYNC_LOCK_WINDOW_MS: int = Field(default=1200, description="Local field lock window")
    SYNC_SEND_DEBOUNCE_MS: int = Field(default=150, description="Debounce window for state writes")
    SYNC_HTTP_TIMEOUT_SECONDS: float = Field(default=5.0, description="Per-request timeout")
    SYNC_BROADCAST_TIMEOUT_SECONDS: float = Field(
        default=2.0,
        description="Connect and subscribe deadline for the broadcast bus"
    )
    SYNC_BROADCAST_PREFIX: str = Field(
        default="trill-session-",
        description="Channel name prefix for the broadcast bus"
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}")
        return v_upper

    @field_validator(
        "PRESENCE_TIMEOUT_SECONDS",
        "STATE_MERGE_MAX_RETRIES",
        "SYNC_POLL_INTERVAL_MS",
        "SYNC_HEARTBEAT_INTERVAL_MS",
        "SYNC_SEND_DEBOUNCE_MS",
        "SYNC_LOCK_WINDOW_MS",
        "SYNC_HTTP_TIMEOUT_SECONDS",
        "SYNC_BROADCAST_TIMEOUT_SECONDS",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance (singleton pattern)."""
    return Settings()


# --- Singleton instance for easy import ---
settings = get_settings()


# --- Module-level exports ---

# Database
DATABASE_URL: str = settings.DB_URL

# Server
HOST: str = settings.HOST
PORT: int = settings.PORT
DEBUG: bool = settings.DEBUG
LOG_LEVEL: str = settings.LOG_LEVEL
SERVICE_NAME: str = settings.SERVICE_NAME

# Redis
REDIS_URL: str = settings.REDIS_URL

# Sessions
PRESENCE_TIMEOUT_SECONDS: int = settings.PRESENCE_TIMEOUT_SECONDS
STATE_MERGE_MAX_RETRIES: int = settings.STATE_MERGE_MAX_RETRIES

# --- Paths (computed, not from env) ---
PROJECT_ROOT: str = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
LOGS_PATH: str = os.path.join(PROJECT_ROOT, "logs")
