# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/http_client_pool.py
"""
Shared HTTP client with explicit lifecycle.

One httpx.AsyncClient serves both the upstream provider and the license
authority; each call passes its own timeout profile.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional

import httpx

from .timeout_config import TimeoutConfig

lib_logger = logging.getLogger("rotator_gateway")


DEFAULT_MAX_KEEPALIVE_CONNECTIONS = 20
DEFAULT_MAX_CONNECTIONS = 100
DEFAULT_KEEPALIVE_EXPIRY = 30.0  # Seconds to keep idle connections alive


def _env_int(key: str, default: int) -> int:
    """Get integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    """Get float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


class HttpClientPool:
    """
    Owns the gateway's httpx.AsyncClient.

    Usage:
        pool = HttpClientPool()
        await pool.initialize()
        client = pool.get_client()
        ...
        await pool.close()

    A transport can be injected (e.g. httpx.MockTransport in tests).
    """

    def __init__(
        self,
        max_keepalive: Optional[int] = None,
        max_connections: Optional[int] = None,
        keepalive_expiry: Optional[float] = None,
        default_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        http2: bool = True,
    ):
        self._max_keepalive = max_keepalive or _env_int(
            "HTTP_MAX_KEEPALIVE", DEFAULT_MAX_KEEPALIVE_CONNECTIONS
        )
        self._max_connections = max_connections or _env_int(
            "HTTP_MAX_CONNECTIONS", DEFAULT_MAX_CONNECTIONS
        )
        self._keepalive_expiry = keepalive_expiry or _env_float(
            "HTTP_KEEPALIVE_EXPIRY", DEFAULT_KEEPALIVE_EXPIRY
        )
        self._default_timeout = default_timeout
        self._transport = transport
        self._http2 = http2 and transport is None

        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()

        self._stats = {
            "requests_total": 0,
            "connection_errors": 0,
            "timeout_errors": 0,
        }

    def _create_limits(self) -> httpx.Limits:
        return httpx.Limits(
            max_keepalive_connections=self._max_keepalive,
            max_connections=self._max_connections,
            keepalive_expiry=self._keepalive_expiry,
        )

    def _create_client(self) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {
            "timeout": TimeoutConfig.upstream(self._default_timeout),
            "limits": self._create_limits(),
            "follow_redirects": True,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            kwargs["http2"] = self._http2
        client = httpx.AsyncClient(**kwargs)
        lib_logger.debug(
            f"Created HTTP client (max_conn={self._max_connections}, "
            f"keepalive={self._max_keepalive})"
        )
        return client

    async def initialize(self) -> None:
        async with self._client_lock:
            if self._client is None:
                self._client = self._create_client()
                lib_logger.info(
                    f"HTTP client pool initialized (max_conn={self._max_connections})"
                )

    def get_client(self) -> httpx.AsyncClient:
        """
        Get the shared client.

        Raises:
            RuntimeError: the pool was not initialized or is already closed
        """
        if self._client is None:
            raise RuntimeError("HTTP client pool used before initialize()")
        self._stats["requests_total"] += 1
        return self._client

    def record_error(self, error: Exception) -> None:
        if isinstance(error, httpx.TimeoutException):
            self._stats["timeout_errors"] += 1
        elif isinstance(error, httpx.TransportError):
            self._stats["connection_errors"] += 1

    async def close(self) -> None:
        async with self._client_lock:
            if self._client is not None:
                try:
                    await self._client.aclose()
                except (httpx.HTTPError, RuntimeError) as e:
                    lib_logger.warning(f"Error during HTTP client shutdown: {e}")
                self._client = None
                lib_logger.info(
                    f"HTTP client pool closed (total_requests={self._stats['requests_total']})"
                )

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "initialized": self.is_initialized,
            "config": {
                "max_connections": self._max_connections,
                "max_keepalive": self._max_keepalive,
                "keepalive_expiry": self._keepalive_expiry,
            },
        }

    @property
    def is_initialized(self) -> bool:
        return self._client is not None
