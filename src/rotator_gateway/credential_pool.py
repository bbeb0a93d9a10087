# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/credential_pool.py
"""
Credential pool: a fixed number of slots, each holding one upstream secret
plus its usage and cooldown metadata.

Cooldown expiry is lazy. A slot is "cooling" while now < cooldown_until; no
timer clears it, readers compare against the current time. This keeps the
ready check a pure function of (slot, now).

Slot lifecycle:
    EMPTY -> READY -> (success) READY
                   -> (rate limit) COOLING -> (time passes) READY
                   -> (upstream rejects credential) FLAGGED
    FLAGGED only leaves through set_secret().
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from .error_handler import InvalidRequestError, SlotNotFoundError, mask_credential
from .types import SlotState

lib_logger = logging.getLogger("rotator_gateway")

POOL_DOCUMENT_VERSION = 1


@dataclass
class CredentialSlot:
    """One credential slot. Identity is the stable 1-based id."""

    id: int
    secret_value: str = ""
    last_used_at: Optional[float] = None
    cooldown_until: Optional[float] = None
    last_error: str = ""
    flagged: bool = False

    @property
    def has_secret(self) -> bool:
        return bool(self.secret_value)

    def is_cooling(self, now: float) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until

    def is_ready(self, now: float) -> bool:
        return self.has_secret and not self.flagged and not self.is_cooling(now)

    def state(self, now: float) -> SlotState:
        if not self.has_secret:
            return SlotState.EMPTY
        if self.flagged:
            return SlotState.FLAGGED
        if self.is_cooling(now):
            return SlotState.COOLING
        return SlotState.READY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "secretValue": self.secret_value,
            "lastUsedAt": self.last_used_at,
            "cooldownUntil": self.cooldown_until,
            "lastError": self.last_error,
            "flagged": self.flagged,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialSlot":
        return cls(
            id=int(data["id"]),
            secret_value=str(data.get("secretValue") or ""),
            last_used_at=_optional_float(data.get("lastUsedAt")),
            cooldown_until=_optional_float(data.get("cooldownUntil")),
            last_error=str(data.get("lastError") or ""),
            flagged=bool(data.get("flagged", False)),
        )


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class CredentialPool:
    """
    Ordered collection of at most max_slots CredentialSlot objects.

    The pool itself does no locking; the owning gateway serializes every
    read-modify-write. Mutators never touch cooldown_until of other slots.

    Usage:
        pool = CredentialPool.empty(5)
        pool.set_secret(1, "AIza...")
        pool.mark_cooldown(1, until=now + 60, error="rate_limit")
    """

    def __init__(self, slots: List[CredentialSlot], max_slots: int = 5):
        if len(slots) > max_slots:
            lib_logger.warning(
                f"Credential pool document has {len(slots)} slots, keeping first {max_slots}"
            )
            slots = slots[:max_slots]
        self._max_slots = max_slots
        self._slots = list(slots)

    @classmethod
    def empty(cls, max_slots: int = 5) -> "CredentialPool":
        """Create a pool with max_slots empty slots, ids 1..max_slots."""
        return cls([CredentialSlot(id=i) for i in range(1, max_slots + 1)], max_slots)

    @property
    def max_slots(self) -> int:
        return self._max_slots

    @property
    def slots(self) -> List[CredentialSlot]:
        return self._slots

    def __iter__(self) -> Iterator[CredentialSlot]:
        return iter(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def get(self, slot_id: int) -> CredentialSlot:
        for slot in self._slots:
            if slot.id == slot_id:
                return slot
        raise SlotNotFoundError(slot_id)

    def copy(self) -> "CredentialPool":
        return CredentialPool(copy.deepcopy(self._slots), self._max_slots)

    # --- Owner operations ---

    def set_secret(self, slot_id: int, secret: str) -> CredentialSlot:
        """
        Install a secret. Replacing the secret resets cooldown, flag and error,
        which is the only way out of FLAGGED.
        """
        if not isinstance(secret, str) or not secret.strip():
            raise InvalidRequestError("secret must be a non-empty string")
        slot = self.get(slot_id)
        slot.secret_value = secret.strip()
        slot.cooldown_until = None
        slot.last_used_at = None
        slot.last_error = ""
        slot.flagged = False
        return slot

    def clear_secret(self, slot_id: int) -> CredentialSlot:
        slot = self.get(slot_id)
        slot.secret_value = ""
        slot.cooldown_until = None
        slot.last_used_at = None
        slot.last_error = ""
        slot.flagged = False
        return slot

    # --- Gateway operations ---

    def mark_used(self, slot_id: int, now: float) -> None:
        slot = self.get(slot_id)
        slot.last_used_at = now
        slot.last_error = ""

    def mark_cooldown(self, slot_id: int, until: float, error: str = "") -> None:
        """
        Place a slot in cooldown until the given timestamp.

        Last writer wins when two failures race on the same slot, so a cooldown
        may be extended but is never dropped.
        """
        slot = self.get(slot_id)
        slot.cooldown_until = until
        if error:
            slot.last_error = error

    def mark_flagged(self, slot_id: int, error: str) -> None:
        slot = self.get(slot_id)
        slot.flagged = True
        slot.last_error = error

    def record_error(self, slot_id: int, error: str) -> None:
        self.get(slot_id).last_error = error

    # --- Serialization ---

    def to_document(self) -> Dict[str, Any]:
        return {
            "version": POOL_DOCUMENT_VERSION,
            "slots": [slot.to_dict() for slot in self._slots],
        }

    @classmethod
    def from_document(
        cls, document: Optional[Dict[str, Any]], max_slots: int = 5
    ) -> "CredentialPool":
        """
        Rebuild a pool from its persisted document.

        Missing slot ids are filled with empty slots so the pool always has
        ids 1..max_slots; malformed entries are dropped with a warning.
        """
        if not document:
            return cls.empty(max_slots)

        raw_slots = document.get("slots", []) if isinstance(document, dict) else []
        by_id: Dict[int, CredentialSlot] = {}
        for raw in raw_slots:
            try:
                slot = CredentialSlot.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                lib_logger.warning(f"Dropping malformed credential slot entry: {e}")
                continue
            if 1 <= slot.id <= max_slots and slot.id not in by_id:
                by_id[slot.id] = slot

        slots = [by_id.get(i, CredentialSlot(id=i)) for i in range(1, max_slots + 1)]
        return cls(slots, max_slots)

    def snapshot(self, now: float) -> List[Dict[str, Any]]:
        """Per-slot status without secret values, for dashboards and the API."""
        result = []
        for slot in self._slots:
            remaining_ms = 0
            if slot.is_cooling(now):
                remaining_ms = int(round((slot.cooldown_until - now) * 1000))
            result.append(
                {
                    "id": slot.id,
                    "state": slot.state(now).value,
                    "credential": mask_credential(slot.secret_value)
                    if slot.has_secret
                    else None,
                    "lastUsedAt": slot.last_used_at,
                    "cooldownUntil": slot.cooldown_until if slot.is_cooling(now) else None,
                    "cooldownRemainingMs": remaining_ms,
                    "lastError": slot.last_error,
                }
            )
        return result
