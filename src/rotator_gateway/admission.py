# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/admission.py
"""
Admission limiter: per-identity minimum interval between admitted requests,
plus an optional per-license daily quota.

The check and the record update happen under the identity's lock, so two
concurrent requests from one identity can never both be admitted inside the
same interval.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .async_locks import StripedLock
from .error_handler import ErrorCode, InvalidRequestError
from .types import AdmissionDecision, CallerIdentity

lib_logger = logging.getLogger("rotator_gateway")

DAY_SECONDS = 24 * 60 * 60


@dataclass
class _QuotaWindow:
    count: int
    reset_at: float


class AdmissionLimiter:
    """
    Per-caller minimum-interval throttle.

    Records never expire on their own; idle records are evicted lazily once
    they are older than idle_ttl, which is never shorter than the interval
    itself so eviction cannot re-admit a caller early.

    Usage:
        limiter = AdmissionLimiter(min_interval_ms=2000)
        decision = await limiter.admit(CallerIdentity("LIC-1", "dev-a"))
        if not decision.allowed:
            ...  # decision.retry_after_ms
    """

    def __init__(
        self,
        min_interval_ms: int = 2000,
        daily_quota: int = 0,
        idle_ttl: float = 3600.0,
        clock: Callable[[], float] = time.time,
        stripes: int = 64,
    ):
        if min_interval_ms < 0:
            raise ValueError("min_interval_ms must not be negative")
        self._min_interval = min_interval_ms / 1000.0
        self._daily_quota = max(0, daily_quota)
        self._idle_ttl = max(idle_ttl, self._min_interval)
        self._clock = clock
        self._locks = StripedLock(stripes)

        self._last_request: Dict[str, float] = {}
        self._quota: Dict[str, _QuotaWindow] = {}
        self._last_sweep: Optional[float] = None

        self._stats = {
            "admitted": 0,
            "throttled": 0,
            "quota_rejected": 0,
            "evicted": 0,
        }

    @staticmethod
    def _coerce_identity(identity) -> CallerIdentity:
        if isinstance(identity, CallerIdentity):
            return identity
        if isinstance(identity, (tuple, list)) and len(identity) == 2:
            return CallerIdentity(*identity)
        raise InvalidRequestError("identity must be a CallerIdentity or (license, device)")

    async def admit(self, identity) -> AdmissionDecision:
        """
        Admit or throttle one request.

        Returns:
            AdmissionDecision(allowed, retry_after_ms, code)

        Raises:
            InvalidRequestError: identity is malformed
        """
        identity = self._coerce_identity(identity)
        key = identity.key

        async with self._locks.hold(key):
            now = self._clock()
            self._maybe_sweep(now)

            last = self._last_request.get(key)
            if last is not None and now - last < self._min_interval:
                remaining = self._min_interval - (now - last)
                self._stats["throttled"] += 1
                lib_logger.debug(f"Throttled caller, {remaining:.3f}s until next admission")
                return AdmissionDecision(
                    allowed=False,
                    retry_after_ms=_ceil_ms(remaining),
                    code=ErrorCode.ADMISSION_THROTTLED,
                )

            if self._daily_quota:
                window = self._quota.get(identity.license)
                if window is not None and now < window.reset_at and window.count >= self._daily_quota:
                    self._stats["quota_rejected"] += 1
                    return AdmissionDecision(
                        allowed=False,
                        retry_after_ms=_ceil_ms(window.reset_at - now),
                        code=ErrorCode.DAILY_QUOTA_EXCEEDED,
                    )
                if window is None or now >= window.reset_at:
                    self._quota[identity.license] = _QuotaWindow(1, now + DAY_SECONDS)
                else:
                    window.count += 1

            self._last_request[key] = now
            self._stats["admitted"] += 1
            return AdmissionDecision(allowed=True)

    def remaining_quota(self, license: str) -> Optional[int]:
        """Requests left today for a license, or None when no quota is configured."""
        if not self._daily_quota:
            return None
        window = self._quota.get(license)
        if window is None or self._clock() >= window.reset_at:
            return self._daily_quota
        return max(0, self._daily_quota - window.count)

    def _maybe_sweep(self, now: float) -> None:
        """Evict idle admission records and expired quota windows."""
        if self._last_sweep is not None and now - self._last_sweep < min(self._idle_ttl, 60.0):
            return
        self._last_sweep = now

        stale = [k for k, ts in self._last_request.items() if now - ts >= self._idle_ttl]
        for k in stale:
            del self._last_request[k]
        expired = [lic for lic, w in self._quota.items() if now >= w.reset_at]
        for lic in expired:
            del self._quota[lic]

        if stale or expired:
            self._stats["evicted"] += len(stale)
            lib_logger.debug(
                f"Admission sweep evicted {len(stale)} idle record(s), "
                f"{len(expired)} quota window(s)"
            )

    def __len__(self) -> int:
        return len(self._last_request)

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "tracked": len(self._last_request)}


def _ceil_ms(seconds: float) -> int:
    return max(1, int(math.ceil(seconds * 1000)))
