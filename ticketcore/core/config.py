from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables.

    MySQL is used when host, user and database name are all present; otherwise
    the SQLite fallback file is used, which is also what the test-suite runs
    against.
    """

    app_name: str = "ticketcore"
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENVIRONMENT", "APP_ENV"),
    )
    database_host: str | None = Field(default=None, validation_alias="DB_HOST")
    database_user: str | None = Field(default=None, validation_alias="DB_USER")
    database_password: str | None = Field(default=None, validation_alias="DB_PASSWORD")
    database_name: str | None = Field(default=None, validation_alias="DB_NAME")
    sqlite_path: Path | None = Field(default=None, validation_alias="SQLITE_PATH")
    migration_lock_timeout: int = Field(
        default=60, validation_alias="MIGRATION_LOCK_TIMEOUT"
    )
    redis_url: str | None = Field(default=None, validation_alias="REDIS_URL")
    permission_cache_ttl: int = Field(
        default=300, ge=1, validation_alias="PERMISSION_CACHE_TTL"
    )
    transaction_timeout: float = Field(
        default=10.0, gt=0, validation_alias="TRANSACTION_TIMEOUT"
    )
    dev_permissions_hex: str | None = Field(
        default=None, validation_alias="DEV_PERMISSIONS_HEX"
    )
    auto_close_sweep_seconds: int = Field(
        default=60, ge=1, validation_alias="AUTO_CLOSE_SWEEP_SECONDS"
    )
    auto_close_batch_size: int = Field(
        default=50, ge=1, validation_alias="AUTO_CLOSE_BATCH_SIZE"
    )
    default_timezone: str = Field(default="UTC", validation_alias="CRON_TIMEZONE")

    @field_validator(
        "database_host",
        "database_user",
        "database_password",
        "database_name",
        "redis_url",
        "dev_permissions_hex",
        "sqlite_path",
        mode="before",
    )
    @classmethod
    def _empty_string_to_none(cls, value):  # type: ignore[override]
        """Coerce blank environment variables to ``None`` so optional values stay optional."""

        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"production", "prod"}

    model_config = SettingsConfigDict(
        env_file=(Path(__file__).resolve().parent.parent.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
