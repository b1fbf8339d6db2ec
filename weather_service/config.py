"""
Configuration module for Weather Service.

Every backing component reads its own settings from the environment.
A missing required variable raises ConfigError for that component only,
so e.g. the API can still start when SMTP is not configured.
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional


class ConfigError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def _require(names, component: str) -> Dict[str, str]:
    values = {name: os.getenv(name, "") for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ConfigError(f"{component}: environment variables not set: {', '.join(missing)}")
    return values


def _int_env(name: str, default: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        if default is None:
            raise ConfigError(f"{name} not set")
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"Invalid {name}: {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"Invalid {name}: {raw!r}")


@dataclass(frozen=True)
class ClickHouseConfig:
    host: str
    port: int
    user: str
    password: str
    database: str

    @classmethod
    def from_env(cls) -> "ClickHouseConfig":
        values = _require(
            ["CLICKHOUSE_HOST", "CLICKHOUSE_PORT", "CLICKHOUSE_USER",
             "CLICKHOUSE_PASSWORD", "CLICKHOUSE_DB"],
            "ClickHouse",
        )
        return cls(
            host=values["CLICKHOUSE_HOST"],
            port=_int_env("CLICKHOUSE_PORT"),
            user=values["CLICKHOUSE_USER"],
            password=values["CLICKHOUSE_PASSWORD"],
            database=values["CLICKHOUSE_DB"],
        )


@dataclass(frozen=True)
class RabbitConfig:
    url: str

    @classmethod
    def from_env(cls) -> "RabbitConfig":
        return cls(url=_require(["RABBITMQ_URL"], "RabbitMQ")["RABBITMQ_URL"])


@dataclass(frozen=True)
class WeatherApiConfig:
    api_key: str
    timeout: int = 15

    @classmethod
    def from_env(cls) -> "WeatherApiConfig":
        return cls(
            api_key=_require(["API_WEATHER_KEY"], "Weather API")["API_WEATHER_KEY"],
            timeout=_int_env("WEATHER_API_TIMEOUT", 15),
        )


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: str
    password: str
    sender: str

    @classmethod
    def from_env(cls) -> "SmtpConfig":
        values = _require(["SMTP_HOST", "SMTP_PORT", "SMTP_FROM"], "SMTP")
        return cls(
            host=values["SMTP_HOST"],
            port=_int_env("SMTP_PORT"),
            user=os.getenv("SMTP_USER", ""),
            password=os.getenv("SMTP_PASSWORD", ""),
            sender=values["SMTP_FROM"],
        )


@dataclass(frozen=True)
class WorkerConfig:
    """Consumer pool tuning; defaults are the reference deployment values."""
    worker_count: int = 3
    prefetch: int = 5
    delivery_timeout: float = 15.0
    shutdown_grace: float = 0.5

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        config = cls(
            worker_count=_int_env("WORKER_COUNT", 3),
            prefetch=_int_env("WORKER_PREFETCH", 5),
            delivery_timeout=_float_env("DELIVERY_TIMEOUT_SECONDS", 15.0),
            shutdown_grace=_float_env("SHUTDOWN_GRACE_SECONDS", 0.5),
        )
        if config.worker_count < 1 or config.prefetch < 1:
            raise ConfigError("WORKER_COUNT and WORKER_PREFETCH must be positive")
        return config


def ingest_interval_seconds() -> int:
    interval = _int_env("INGEST_INTERVAL_SECONDS", 30)
    if interval < 1:
        raise ConfigError("INGEST_INTERVAL_SECONDS must be positive")
    return interval
