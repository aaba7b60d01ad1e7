import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from apps.backend.flags import enabled
from apps.backend.services.keepalive.keepalive import (
    DEFAULT_ENDPOINTS,
    DEFAULT_EXTERNAL_ENDPOINTS,
    DEFAULT_PRIMARY_INTERVAL_MS,
)

log = logging.getLogger("keepalive.settings")


def _env_list(name: str, default: List[str]) -> List[str]:
    """
    Comma-separated env list. Unset -> default, empty string -> [].
    """
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning(f"{name}={raw!r} is not an integer, using {default}")
        return default


@dataclass
class KeepAliveSettings:
    enabled: bool = True
    interval_ms: int = DEFAULT_PRIMARY_INTERVAL_MS
    endpoints: List[str] = field(default_factory=lambda: list(DEFAULT_ENDPOINTS))
    external_endpoints: List[str] = field(default_factory=lambda: list(DEFAULT_EXTERNAL_ENDPOINTS))
    log_level: str = "INFO"


def load_keepalive_settings() -> KeepAliveSettings:
    return KeepAliveSettings(
        enabled=enabled("KEEPALIVE_ENABLED", "true"),
        interval_ms=_env_int("KEEPALIVE_INTERVAL_MS", DEFAULT_PRIMARY_INTERVAL_MS),
        endpoints=_env_list("KEEPALIVE_ENDPOINTS", DEFAULT_ENDPOINTS),
        external_endpoints=_env_list("KEEPALIVE_EXTERNAL_ENDPOINTS", DEFAULT_EXTERNAL_ENDPOINTS),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


def public_settings(settings: Optional[KeepAliveSettings] = None) -> dict:
    s = settings or load_keepalive_settings()
    return {
        "keepalive_enabled": s.enabled,
        "interval_ms": s.interval_ms,
        "host": os.getenv("HOST", "localhost"),
        "port": os.getenv("PORT", "8000"),
        "environment": os.getenv("ENVIRONMENT", "production"),
    }
