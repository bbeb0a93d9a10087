# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
import random
from typing import Callable, Optional

from .error_handler import ClassifiedError

lib_logger = logging.getLogger("rotator_gateway")


class CooldownPolicy:
    """
    Decides how long a rate-limited credential stays out of rotation and how
    long to wait between retries of transient failures.

    Cooldowns are plain timestamps on the slot (see CredentialPool); this
    class only computes durations, it schedules nothing.
    """

    def __init__(
        self,
        cooldown_seconds: int = 60,
        respect_retry_after: bool = True,
        backoff_base: float = 1.2,
        max_backoff: float = 10.0,
        jitter: Optional[Callable[[float, float], float]] = None,
    ):
        if cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be positive")
        self._cooldown_seconds = cooldown_seconds
        self._respect_retry_after = respect_retry_after
        self._backoff_base = backoff_base
        self._max_backoff = max_backoff
        self._jitter = jitter if jitter is not None else random.uniform

    @property
    def cooldown_seconds(self) -> int:
        return self._cooldown_seconds

    def cooldown_for(self, classified_error: ClassifiedError) -> int:
        """
        Cooldown window for a rate-limited credential.

        A Retry-After hint longer than the fixed window extends the cooldown;
        a shorter one never shortens it.
        """
        duration = self._cooldown_seconds
        if self._respect_retry_after and classified_error.retry_after:
            duration = max(duration, int(classified_error.retry_after))
        return duration

    def cooldown_until(self, classified_error: ClassifiedError, now: float) -> float:
        return now + self.cooldown_for(classified_error)

    def backoff(self, classified_error: ClassifiedError, attempt: int) -> float:
        """
        Delay before retrying after a transient failure.

        - api_connection: 0.5s, 0.75s, 1.1s... (network blips clear quickly)
        - everything else: base * 2^attempt

        Small jitter is added; the result is capped at max_backoff.
        """
        if classified_error.error_type == "api_connection":
            backoff = 0.5 * (1.5 ** attempt) + self._jitter(0, 0.25)
        else:
            backoff = self._backoff_base * (2 ** attempt) + self._jitter(0, 0.5)
        return min(backoff, self._max_backoff)
