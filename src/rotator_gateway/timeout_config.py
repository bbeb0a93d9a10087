# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Timeout profiles for the two network collaborators of the gateway.

Every outbound call is bounded so a hung upstream or license authority
cannot hold a request indefinitely.
"""

import httpx


class TimeoutConfig:
    """Factory for httpx.Timeout objects used by the gateway."""

    CONNECT = 10.0
    POOL = 10.0

    @classmethod
    def upstream(cls, total: float = 60.0) -> httpx.Timeout:
        """Timeout for generation calls (read dominates: models can be slow)."""
        return httpx.Timeout(
            total,
            connect=min(cls.CONNECT, total),
            pool=min(cls.POOL, total),
        )

    @classmethod
    def license_check(cls, total: float = 8.0) -> httpx.Timeout:
        """Timeout for license authority lookups. Applies to every phase."""
        return httpx.Timeout(total)
