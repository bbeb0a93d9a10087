# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential selection.

pick_ready() is a pure function of (pool, now, exclusions): it never mutates
the pool. Marking a slot used is a separate step the gateway performs only
after a confirmed upstream success.
"""

import logging
from typing import AbstractSet, Iterable, Optional

from .credential_pool import CredentialSlot
from .types import SelectionReason, SelectionResult

lib_logger = logging.getLogger("rotator_gateway")


def _lru_key(indexed_slot):
    index, slot = indexed_slot
    # Never-used slots sort first; ties fall back to pool order
    last_used = slot.last_used_at if slot.last_used_at is not None else float("-inf")
    return (last_used, index)


def pick_ready(
    slots: Iterable[CredentialSlot],
    now: float,
    excluded: AbstractSet[int] = frozenset(),
    leased: AbstractSet[int] = frozenset(),
) -> SelectionResult:
    """
    Choose the least-recently-used ready slot.

    Args:
        slots: Pool slots in pool order
        now: Current timestamp (seconds)
        excluded: Slot ids that must not be chosen (rejected earlier in this call)
        leased: Slot ids currently in flight for other requests

    Returns:
        SelectionResult. On failure, reason is one of:
        - NO_CREDENTIALS: no slot has a secret
        - ALL_COOLDOWN: every non-flagged candidate is cooling;
          earliest_cooldown_until tells when the first one frees up
        - ALL_FLAGGED: every slot with a secret is flagged or excluded
        - ALL_BUSY: ready slots exist but all are leased
    """
    with_secret = [(i, s) for i, s in enumerate(slots) if s.has_secret]
    if not with_secret:
        return SelectionResult(ok=False, reason=SelectionReason.NO_CREDENTIALS)

    usable = [(i, s) for i, s in with_secret if not s.flagged and s.id not in excluded]
    if not usable:
        return SelectionResult(ok=False, reason=SelectionReason.ALL_FLAGGED)

    ready = [(i, s) for i, s in usable if not s.is_cooling(now)]
    if not ready:
        earliest: Optional[float] = min(s.cooldown_until for _, s in usable)
        return SelectionResult(
            ok=False,
            reason=SelectionReason.ALL_COOLDOWN,
            earliest_cooldown_until=earliest,
        )

    free = [(i, s) for i, s in ready if s.id not in leased]
    if not free:
        return SelectionResult(ok=False, reason=SelectionReason.ALL_BUSY)

    _, chosen = min(free, key=_lru_key)
    lib_logger.debug(f"Selected credential slot {chosen.id} ({len(free)} ready)")
    return SelectionResult(ok=True, slot_id=chosen.id)
