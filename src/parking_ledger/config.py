# File: src/parking_ledger/config.py
"""
Ledger configuration from environment variables (or a .env file).

Numeric settings that fail to parse fall back to their default with a
warning instead of stopping the process.
"""

import logging

from pydantic import Field, field_validator, ValidationInfo
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

NOTIFICATION_BACKENDS = ("log", "redis", "rabbitmq", "memory", "none")


class LedgerSettings(BaseSettings):
    """Settings for the ledger, its store and its notification channel"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    app_environment: str = Field(default="development", description="Deployment environment name")

    # Occupancy store
    database_url: str = Field(default="sqlite:///./parking_ledger.db", description="SQLAlchemy database URL")
    db_echo: bool = Field(default=False, description="Echo SQL statements")
    db_pool_size: int = Field(default=10, description="Connection pool size (ignored for SQLite)")
    ledger_worker_pool_size: int = Field(default=8, description="Worker threads running ledger operations")

    # Notifications
    notification_backend: str = Field(default="log", description="One of log, redis, rabbitmq, memory, none")
    notification_recipient: str = Field(default="user@example.com", description="Recipient of user notifications")
    notification_timeout_seconds: float = Field(default=5.0, description="Broker socket timeout")
    notification_workers: int = Field(default=2, description="Notification delivery threads")
    notification_channel: str = Field(default="parking.notifications", description="Redis channel / RabbitMQ queue")
    redis_url: str = Field(default="redis://localhost:6379")
    amqp_url: str = Field(default="amqp://localhost:5672")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_dir: str = Field(default="logs", description="Directory of the ledger log file")

    @field_validator(
        "db_pool_size", "ledger_worker_pool_size", "notification_workers",
        "notification_timeout_seconds",
        mode="before"
    )
    @classmethod
    def fall_back_on_bad_number(cls, value, info: ValidationInfo):
        default = cls.model_fields[info.field_name].default
        number_type = float if isinstance(default, float) else int
        try:
            number = number_type(value)
        except (TypeError, ValueError):
            logger.warning(
                f"Invalid value {value!r} for {info.field_name.upper()}, using default {default}"
            )
            return default

        if number <= 0:
            logger.warning(f"{info.field_name.upper()} must be positive, using default {default}")
            return default
        return number

    @field_validator("notification_backend", "log_level", mode="before")
    @classmethod
    def normalize_choice(cls, value, info: ValidationInfo):
        value = str(value).strip()
        return value.upper() if info.field_name == "log_level" else value.lower()

    @field_validator("notification_backend")
    @classmethod
    def validate_backend(cls, value: str) -> str:
        if value not in NOTIFICATION_BACKENDS:
            raise ValueError(
                f"Unknown notification backend '{value}', expected one of {', '.join(NOTIFICATION_BACKENDS)}"
            )
        return value

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @classmethod
    def from_env(cls, **overrides) -> "LedgerSettings":
        """Read settings from the environment; keyword overrides win"""
        return cls(**overrides)
