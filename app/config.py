"""
Application Configuration

Centralized configuration management using Pydantic settings.
Loads from environment variables with fallback to .env file.

Variable names match the deployment environment (APP_ENV, DATABASE_URL,
JWT_SECRET, ...). Durations use Go-style strings ("15m", "1h30m", "60s")
and additionally accept a day suffix ("7d").
"""
import re
from datetime import timedelta
from functools import lru_cache
from typing import List

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

DEV_JWT_SECRET = "dev-secret-not-for-production"
DEV_WA_ADMIN_TOKEN = "dev-wa-admin-token"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration string such as "15m", "1h30m", "900s" or "7d".

    Raises ValueError on anything else (including an empty string).
    """
    text = (value or "").strip().lower()
    if not text:
        raise ValueError("empty duration")

    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=seconds)


def parse_clock_time(value: str) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    match = re.fullmatch(r"(\d{1,2}):(\d{2})", (value or "").strip())
    if not match:
        raise ValueError(f"invalid time of day: {value!r} (expected HH:MM)")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"invalid time of day: {value!r}")
    return hour, minute


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Note: get_settings() is cached. Tests that need different values must
    set the environment before the first call or clear the cache.
    """

    # Application
    APP_NAME: str = "rrnet"
    APP_ENV: str = "development"
    APP_PORT: int = 8080
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000"

    # Database
    DATABASE_URL: str = "postgresql://localhost/rrnet"
    DB_MAX_OPEN_CONNS: int = 25
    DB_MAX_IDLE_CONNS: int = 5

    # Redis (rate limiting, queue broker)
    REDIS_ADDR: str = "localhost:6379"
    REDIS_PASSWORD: str = ""
    REDIS_DB: int = 0

    # Auth
    JWT_SECRET: str = ""
    JWT_ACCESS_TTL: str = "15m"
    JWT_REFRESH_TTL: str = "7d"

    # HTTP server
    SERVER_READ_TIMEOUT: str = "15s"
    SERVER_WRITE_TIMEOUT: str = "15s"
    SERVER_IDLE_TIMEOUT: str = "60s"
    SERVER_SHUTDOWN_TIMEOUT: str = "30s"

    # Request size limits (bytes)
    MAX_REQUEST_SIZE: int = 10 * 1024 * 1024
    MAX_JSON_SIZE: int = 5 * 1024 * 1024
    MAX_MULTIPART_SIZE: int = 50 * 1024 * 1024

    # WhatsApp gateway
    WA_GATEWAY_URL: str = "http://localhost:3001"
    WA_GATEWAY_ADMIN_TOKEN: str = ""
    WA_GATEWAY_TIMEOUT: str = "15s"
    WA_TENANT_CONCURRENCY: int = 1

    # RADIUS REST surface
    RRNET_RADIUS_REST_SECRET: str = ""

    # Background work
    SCHEDULERS_ENABLED: bool = True
    INVOICE_SCHEDULER_TIME: str = "00:05"
    INVOICE_HORIZON: str = "24h"
    CLIENT_CLEANUP_WEEKDAY: str = "sunday"
    CLIENT_CLEANUP_TIME: str = "03:00"
    CLIENT_RETENTION_DAYS: int = 28
    ISOLATION_SWEEP_INTERVAL: str = "15m"
    ENTITLEMENT_CACHE_TTL: str = "60s"
    CELERY_TASK_ALWAYS_EAGER: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @field_validator(
        "JWT_ACCESS_TTL",
        "JWT_REFRESH_TTL",
        "SERVER_READ_TIMEOUT",
        "SERVER_WRITE_TIMEOUT",
        "SERVER_IDLE_TIMEOUT",
        "SERVER_SHUTDOWN_TIMEOUT",
        "WA_GATEWAY_TIMEOUT",
        "INVOICE_HORIZON",
        "ISOLATION_SWEEP_INTERVAL",
        "ENTITLEMENT_CACHE_TTL",
    )
    @classmethod
    def _check_duration(cls, value: str, info) -> str:
        try:
            parse_duration(value)
        except ValueError:
            raise ValueError(f"{info.field_name} must be a valid duration (e.g. 15m, 1h, 7d)")
        return value

    @field_validator("INVOICE_SCHEDULER_TIME", "CLIENT_CLEANUP_TIME")
    @classmethod
    def _check_clock_time(cls, value: str) -> str:
        parse_clock_time(value)
        return value

    @field_validator("CLIENT_CLEANUP_WEEKDAY")
    @classmethod
    def _check_weekday(cls, value: str) -> str:
        if value.strip().lower() not in WEEKDAYS:
            raise ValueError(f"CLIENT_CLEANUP_WEEKDAY must be one of {', '.join(WEEKDAYS)}")
        return value.strip().lower()

    @field_validator("APP_PORT")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if value < 1 or value > 65535:
            raise ValueError("APP_PORT must be a valid port number (1-65535)")
        return value

    @field_validator("REDIS_DB")
    @classmethod
    def _check_redis_db(cls, value: int) -> int:
        if value < 0 or value > 15:
            raise ValueError("REDIS_DB must be an integer between 0-15")
        return value

    @field_validator("DATABASE_URL")
    @classmethod
    def _check_database_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("DATABASE_URL is required")
        return value

    @model_validator(mode="after")
    def _check_production_secrets(self):
        # CRITICAL: never boot production with the development secrets
        if self.is_production:
            if not self.JWT_SECRET:
                raise ValueError("JWT_SECRET is required in production")
            if len(self.JWT_SECRET) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters in production")
        else:
            if not self.JWT_SECRET:
                self.JWT_SECRET = DEV_JWT_SECRET
            if not self.WA_GATEWAY_ADMIN_TOKEN:
                self.WA_GATEWAY_ADMIN_TOKEN = DEV_WA_ADMIN_TOKEN
        return self

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def access_token_ttl(self) -> timedelta:
        return parse_duration(self.JWT_ACCESS_TTL)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return parse_duration(self.JWT_REFRESH_TTL)

    @property
    def read_timeout(self) -> timedelta:
        return parse_duration(self.SERVER_READ_TIMEOUT)

    @property
    def write_timeout(self) -> timedelta:
        return parse_duration(self.SERVER_WRITE_TIMEOUT)

    @property
    def idle_timeout(self) -> timedelta:
        return parse_duration(self.SERVER_IDLE_TIMEOUT)

    @property
    def shutdown_timeout(self) -> timedelta:
        return parse_duration(self.SERVER_SHUTDOWN_TIMEOUT)

    @property
    def wa_gateway_timeout(self) -> timedelta:
        return parse_duration(self.WA_GATEWAY_TIMEOUT)

    @property
    def invoice_horizon(self) -> timedelta:
        return parse_duration(self.INVOICE_HORIZON)

    @property
    def isolation_sweep_interval(self) -> timedelta:
        return parse_duration(self.ISOLATION_SWEEP_INTERVAL)

    @property
    def entitlement_cache_ttl(self) -> timedelta:
        return parse_duration(self.ENTITLEMENT_CACHE_TTL)

    @property
    def redis_url(self) -> str:
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_ADDR}/{self.REDIS_DB}"

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Raises pydantic's ValidationError when the environment is invalid;
    the process is expected to exit non-zero in that case.
    """
    return Settings()
