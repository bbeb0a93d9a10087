# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Shared value types crossing the gateway's component boundaries.
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .error_handler import ErrorCode, InvalidRequestError


class SlotState(Enum):
    """Derived lifecycle state of a credential slot."""

    EMPTY = "empty"  # No secret configured
    READY = "ready"  # Selectable
    COOLING = "cooling"  # Rate-limited, excluded until cooldown_until
    FLAGGED = "flagged"  # Rejected by upstream, needs a new secret


class RequestKind(Enum):
    TEXT = "text"
    IMAGE = "image"


@dataclass(frozen=True)
class CallerIdentity:
    """
    Composite identity of a caller: license plus device.

    The admission record is keyed by this pair; license validation uses both.
    """

    license: str
    device: str

    def __post_init__(self):
        for name in ("license", "device"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise InvalidRequestError(f"identity {name} must be a non-empty string")
            if value != value.strip():
                object.__setattr__(self, name, value.strip())

    @property
    def key(self) -> str:
        return f"{self.license}\x1f{self.device}"


@dataclass
class GenerationRequest:
    """Payload forwarded upstream on behalf of a caller."""

    prompt: str
    system: Optional[str] = None
    capability: Optional[str] = None  # Explicit model; None uses configured fallback list
    kind: RequestKind = RequestKind.TEXT
    expect_json: bool = False
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.kind, str):
            try:
                self.kind = RequestKind(self.kind)
            except ValueError:
                raise InvalidRequestError(f"unknown request kind '{self.kind}'")
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise InvalidRequestError("prompt must be a non-empty string")


@dataclass
class UpstreamOutput:
    """Normalized successful upstream response."""

    text: str = ""
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    raw: Any = None


@dataclass
class GenerationResult:
    """
    Outcome of ResilientGateway.generate().

    Exactly one of (output/data) or code is meaningful, depending on ok.
    """

    ok: bool
    output: Optional[str] = None
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    json: Any = None
    code: Optional[ErrorCode] = None
    message: str = ""
    retry_after_ms: Optional[int] = None
    slot_id: Optional[int] = None
    capability: Optional[str] = None
    attempts: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        code: ErrorCode,
        message: str = "",
        retry_after_ms: Optional[int] = None,
        **kwargs: Any,
    ) -> "GenerationResult":
        return cls(
            ok=False,
            code=code,
            message=message or code.value,
            retry_after_ms=retry_after_ms,
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation for the HTTP layer."""
        if self.ok:
            body: Dict[str, Any] = {
                "ok": True,
                "output": self.output,
                "capability": self.capability,
                "slot": self.slot_id,
            }
            if self.json is not None:
                body["json"] = self.json
            if self.data is not None:
                encoded = base64.b64encode(self.data).decode("ascii")
                body["image"] = {
                    "base64": encoded,
                    "mimeType": self.mime_type,
                    "dataUrl": f"data:{self.mime_type};base64,{encoded}",
                }
            return body

        body = {
            "ok": False,
            "error": self.code.value if self.code else None,
            "message": self.message,
        }
        if self.retry_after_ms is not None:
            body["retry_after_ms"] = self.retry_after_ms
        if self.details:
            body["details"] = self.details
        return body


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    retry_after_ms: int = 0
    code: Optional[ErrorCode] = None


@dataclass(frozen=True)
class AuthorizationResult:
    ok: bool
    code: Optional[ErrorCode] = None
    message: str = ""
    newly_bound: bool = False


class SelectionReason(Enum):
    NO_CREDENTIALS = "no_credentials"  # No slot has a secret
    ALL_COOLDOWN = "all_cooldown"  # Secrets exist, every usable one is cooling
    ALL_FLAGGED = "all_flagged"  # Every slot with a secret is flagged or excluded
    ALL_BUSY = "all_busy"  # Ready slots exist but are leased to other requests


@dataclass(frozen=True)
class SelectionResult:
    ok: bool
    slot_id: Optional[int] = None
    reason: Optional[SelectionReason] = None
    earliest_cooldown_until: Optional[float] = None

    def retry_after_ms(self, now: float) -> Optional[int]:
        if self.earliest_cooldown_until is None:
            return None
        return max(0, int(round((self.earliest_cooldown_until - now) * 1000)))
