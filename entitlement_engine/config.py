"""Engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
import math
import os

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@dataclass(frozen=True)
class EngineConfig:
    """Configuration for the entitlement engine and its database."""

    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int
    service_name: str
    log_level: str
    default_time_zone: ZoneInfo
    events_enabled: bool

    @property
    def db_settings(self) -> Dict[str, Any]:
        """Keyword arguments for :func:`psycopg2.connect`."""

        return dict(
            host=self.db_host,
            port=self.db_port,
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
            connect_timeout=self.db_connect_timeout,
        )


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _parse_connect_timeout(raw_value: Optional[str]) -> int:
    if raw_value is None or raw_value == "":
        return 5
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def _to_zone(value: Optional[str], *, default: str) -> ZoneInfo:
    name = (value or "").strip() or default
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone {name!r}") from exc


def load_engine_config(env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Load :class:`EngineConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    service_name = (env_mapping.get("ENTITLEMENT_SERVICE_NAME") or "").strip() or "entitlement-service"
    log_level = (env_mapping.get("ENTITLEMENT_LOG_LEVEL") or "INFO").strip().upper() or "INFO"

    return EngineConfig(
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        db_name=env_mapping.get("DB_NAME", "entitlements_db"),
        db_user=env_mapping.get("DB_USER", "entitlement_user"),
        db_password=env_mapping.get("DB_PASSWORD", "entitlement_pass"),
        db_connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
        service_name=service_name,
        log_level=log_level,
        default_time_zone=_to_zone(env_mapping.get("ENTITLEMENT_DEFAULT_TIME_ZONE"), default="UTC"),
        events_enabled=_to_bool(env_mapping.get("ENTITLEMENT_EVENTS_ENABLED"), default=True),
    )


__all__ = ["EngineConfig", "load_engine_config"]
