"""
Environment-driven configuration for the question relay.

Settings are read once by the application lifespan and passed to the
components that need them; nothing here is mutated after startup.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class RelaySettings:
    # Automation backend
    upstream_url: Optional[str] = None
    upstream_response_url: Optional[str] = None
    upstream_api_key: Optional[str] = None

    # Timeout tiers (seconds)
    mobile_timeout: float = 480.0
    desktop_timeout: float = 330.0
    connect_timeout: float = 10.0

    # Buffer ceilings (characters)
    mobile_soft_ceiling: int = 512 * 1024
    mobile_hard_ceiling: int = 1024 * 1024
    desktop_soft_ceiling: int = 1024 * 1024
    desktop_hard_ceiling: int = 2 * 1024 * 1024

    outbound_queue_size: int = 64

    # Long-poll
    poll_interval: float = 2.0
    poll_timeout: float = 300.0
    poll_request_timeout: float = 10.0
    submit_timeout: float = 30.0

    # Cancellation store
    cancel_store: str = "memory"
    cancel_store_dir: Path = field(default_factory=lambda: Path(".relay") / "cancel-store")
    redis_url: str = "redis://localhost:6379/0"
    cancel_flag_ttl: int = 600

    # Request limits
    max_file_chars: int = 13946060

    # Auth + HTTP surface
    jwt_secret: Optional[str] = None
    extra_origins: List[str] = field(default_factory=list)
    trusted_hosts: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "RelaySettings":
        origins = []
        if os.getenv("FRONTEND_URL"):
            origins.append(os.getenv("FRONTEND_URL").strip())
        hosts = [h.strip() for h in (os.getenv("TRUSTED_HOSTS") or "").split(",") if h.strip()]

        return cls(
            upstream_url=_env_str("RELAY_UPSTREAM_URL"),
            upstream_response_url=_env_str("RELAY_UPSTREAM_RESPONSE_URL"),
            upstream_api_key=_env_str("RELAY_UPSTREAM_API_KEY"),
            mobile_timeout=_env_float("RELAY_MOBILE_TIMEOUT_SECONDS", 480.0),
            desktop_timeout=_env_float("RELAY_DESKTOP_TIMEOUT_SECONDS", 330.0),
            connect_timeout=_env_float("RELAY_CONNECT_TIMEOUT_SECONDS", 10.0),
            mobile_soft_ceiling=_env_int("RELAY_MOBILE_SOFT_CEILING", 512 * 1024),
            mobile_hard_ceiling=_env_int("RELAY_MOBILE_HARD_CEILING", 1024 * 1024),
            desktop_soft_ceiling=_env_int("RELAY_DESKTOP_SOFT_CEILING", 1024 * 1024),
            desktop_hard_ceiling=_env_int("RELAY_DESKTOP_HARD_CEILING", 2 * 1024 * 1024),
            outbound_queue_size=_env_int("RELAY_OUTBOUND_QUEUE_SIZE", 64),
            poll_interval=_env_float("RELAY_POLL_INTERVAL_SECONDS", 2.0),
            poll_timeout=_env_float("RELAY_POLL_TIMEOUT_SECONDS", 300.0),
            poll_request_timeout=_env_float("RELAY_POLL_REQUEST_TIMEOUT_SECONDS", 10.0),
            submit_timeout=_env_float("RELAY_SUBMIT_TIMEOUT_SECONDS", 30.0),
            cancel_store=(_env_str("RELAY_CANCEL_STORE", "memory") or "memory").lower(),
            cancel_store_dir=Path(_env_str("RELAY_CANCEL_STORE_DIR", str(Path(".relay") / "cancel-store"))),
            redis_url=_env_str("REDIS_URL", "redis://localhost:6379/0"),
            cancel_flag_ttl=_env_int("RELAY_CANCEL_FLAG_TTL_SECONDS", 600),
            max_file_chars=_env_int("RELAY_MAX_FILE_CHARS", 13946060),
            jwt_secret=_env_str("JWT_SECRET"),
            extra_origins=origins,
            trusted_hosts=hosts,
        )

    @property
    def streaming_configured(self) -> bool:
        return bool(self.upstream_url and self.upstream_api_key)

    @property
    def polling_configured(self) -> bool:
        return bool(self.upstream_url and self.upstream_response_url and self.upstream_api_key)
