"""Application settings and configuration.

This module defines all configuration options for Parlor. Settings are
loaded from environment variables (or an ``.env`` file) with sensible
defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MEGABYTE = 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Parlor", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # Security and authentication
    secret_key: str = Field(default="parlor-dev-secret", alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")

    # Remote message store (server side)
    database_url: str = Field(default="sqlite:///./parlor.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # JWT authentication settings
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24 * 30,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # Client-side HTTP access to the message store
    api_base_url: str = Field(default="http://localhost:8000/api/v1", alias="API_BASE_URL")
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")

    # Local key material
    key_store_path: str = Field(default="./.parlor/keys.json", alias="KEY_STORE_PATH")

    # Offline outbox bounds
    outbox_database_url: str = Field(
        default="sqlite:///./.parlor/outbox.db",
        alias="OUTBOX_DATABASE_URL",
    )
    outbox_max_entries: int = Field(default=100, alias="OUTBOX_MAX_ENTRIES")
    outbox_max_bytes: int = Field(default=500 * MEGABYTE, alias="OUTBOX_MAX_BYTES")
    outbox_retention_days: int = Field(default=30, alias="OUTBOX_RETENTION_DAYS")

    # Realtime behaviour
    typing_timeout_seconds: float = Field(default=3.0, alias="TYPING_TIMEOUT_SECONDS")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(default=["*"], alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )


settings = Settings()
