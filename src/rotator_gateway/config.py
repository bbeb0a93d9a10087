# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/config.py
"""
Gateway configuration.

All tunables have reference defaults and can be overridden through
environment variables via GatewayConfig.from_env().
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

lib_logger = logging.getLogger("rotator_gateway")


DEFAULT_MAX_SLOTS = 5
DEFAULT_MIN_INTERVAL_MS = 2000
DEFAULT_ADMISSION_IDLE_TTL = 3600.0  # Seconds before an idle admission record is evicted
DEFAULT_COOLDOWN_SECONDS = 60
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 1.2
DEFAULT_MAX_BACKOFF = 10.0
DEFAULT_LICENSE_TIMEOUT = 8.0
DEFAULT_UPSTREAM_TIMEOUT = 60.0
DEFAULT_CAPABILITIES = ["gemini-2.5-flash", "gemini-2.0-flash", "gemini-1.5-flash"]
DEFAULT_IMAGE_CAPABILITIES = ["imagen-4.0-generate-001"]


def _env_int(key: str, default: int) -> int:
    """Get integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        lib_logger.warning(f"Ignoring non-integer value for {key}")
        return default


def _env_float(key: str, default: float) -> float:
    """Get float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        lib_logger.warning(f"Ignoring non-numeric value for {key}")
        return default


def _env_bool(key: str, default: bool) -> bool:
    """Get boolean from environment variable."""
    return os.getenv(key, str(default).lower()).lower() in ("true", "1", "yes")


def _env_list(key: str, default: List[str]) -> List[str]:
    """Get comma-separated list from environment variable."""
    raw = os.getenv(key)
    if not raw:
        return list(default)
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or list(default)


@dataclass
class GatewayConfig:
    """Configuration for ResilientGateway and its collaborators."""

    max_slots: int = DEFAULT_MAX_SLOTS
    min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS
    daily_quota: int = 0  # 0 disables the per-license daily quota
    admission_idle_ttl: float = DEFAULT_ADMISSION_IDLE_TTL

    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS
    respect_retry_after: bool = True
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    max_backoff: float = DEFAULT_MAX_BACKOFF
    retry_on_empty: bool = False

    capabilities: List[str] = field(default_factory=lambda: list(DEFAULT_CAPABILITIES))
    image_capabilities: List[str] = field(
        default_factory=lambda: list(DEFAULT_IMAGE_CAPABILITIES)
    )

    license_api_url: Optional[str] = None
    license_timeout: float = DEFAULT_LICENSE_TIMEOUT
    license_pattern: Optional[str] = None

    provider: str = "gemini"
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    pool_path: Optional[str] = None

    def __post_init__(self):
        if self.max_slots < 1:
            raise ValueError("max_slots must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.min_interval_ms < 0:
            raise ValueError("min_interval_ms must not be negative")
        if not self.capabilities:
            raise ValueError("at least one capability is required")

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """
        Build a config from GATEWAY_* environment variables.

        LICENSE_API_URL is read without prefix to stay compatible with
        existing deployments of the license authority.
        """
        return cls(
            max_slots=_env_int("GATEWAY_MAX_SLOTS", DEFAULT_MAX_SLOTS),
            min_interval_ms=_env_int("GATEWAY_MIN_INTERVAL_MS", DEFAULT_MIN_INTERVAL_MS),
            daily_quota=_env_int("GATEWAY_DAILY_QUOTA", 0),
            admission_idle_ttl=_env_float(
                "GATEWAY_ADMISSION_IDLE_TTL", DEFAULT_ADMISSION_IDLE_TTL
            ),
            cooldown_seconds=_env_int("GATEWAY_COOLDOWN_SECONDS", DEFAULT_COOLDOWN_SECONDS),
            respect_retry_after=_env_bool("GATEWAY_RESPECT_RETRY_AFTER", True),
            max_attempts=_env_int("GATEWAY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            backoff_base=_env_float("GATEWAY_BACKOFF_BASE", DEFAULT_BACKOFF_BASE),
            max_backoff=_env_float("GATEWAY_MAX_BACKOFF", DEFAULT_MAX_BACKOFF),
            retry_on_empty=_env_bool("GATEWAY_RETRY_ON_EMPTY", False),
            capabilities=_env_list("GATEWAY_CAPABILITIES", DEFAULT_CAPABILITIES),
            image_capabilities=_env_list(
                "GATEWAY_IMAGE_CAPABILITIES", DEFAULT_IMAGE_CAPABILITIES
            ),
            license_api_url=os.getenv("LICENSE_API_URL") or None,
            license_timeout=_env_float("GATEWAY_LICENSE_TIMEOUT", DEFAULT_LICENSE_TIMEOUT),
            license_pattern=os.getenv("GATEWAY_LICENSE_PATTERN") or None,
            provider=os.getenv("GATEWAY_PROVIDER", "gemini"),
            upstream_timeout=_env_float("GATEWAY_UPSTREAM_TIMEOUT", DEFAULT_UPSTREAM_TIMEOUT),
            pool_path=os.getenv("GATEWAY_POOL_PATH") or None,
        )

    @property
    def min_interval(self) -> float:
        """Minimum admission interval in seconds."""
        return self.min_interval_ms / 1000.0
