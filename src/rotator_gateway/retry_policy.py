# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/retry_policy.py
"""
Declarative retry policy for the rotation loop.

The gateway walks an ordered list of capabilities (models) and, for each
attempt, the ready credential chosen by the selector. What happens after a
failure is decided here, from the classified error alone:

    rate_limit          -> COOLDOWN          cool the slot, rotate
    authentication      -> RETRY_NEXT        flag the slot, rotate
    forbidden           -> RETRY_NEXT        flag the slot, rotate
    not_found           -> NEXT_CAPABILITY   same slot, next model
    server_error        -> RETRY_SAME        back off, slot stays eligible
    api_connection      -> RETRY_SAME
    invalid_request     -> RETRY_SAME
    unknown             -> RETRY_SAME
    empty_response      -> TERMINAL          (RETRY_SAME if retry_on_empty)
    bad_response        -> TERMINAL
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .error_handler import ClassifiedError, ErrorCode


class FailureAction(Enum):
    RETRY_SAME = "retry_same"
    RETRY_NEXT = "retry_next"
    COOLDOWN = "cooldown"
    NEXT_CAPABILITY = "next_capability"
    TERMINAL = "terminal"


DEFAULT_ACTIONS: Dict[str, FailureAction] = {
    "rate_limit": FailureAction.COOLDOWN,
    "authentication": FailureAction.RETRY_NEXT,
    "forbidden": FailureAction.RETRY_NEXT,
    "not_found": FailureAction.NEXT_CAPABILITY,
    "server_error": FailureAction.RETRY_SAME,
    "api_connection": FailureAction.RETRY_SAME,
    "invalid_request": FailureAction.RETRY_SAME,
    "unknown": FailureAction.RETRY_SAME,
    "empty_response": FailureAction.TERMINAL,
    "bad_response": FailureAction.TERMINAL,
}

# Caller-facing code when a TERMINAL action ends the loop
TERMINAL_CODES: Dict[str, ErrorCode] = {
    "empty_response": ErrorCode.UPSTREAM_EMPTY_RESULT,
    "bad_response": ErrorCode.UPSTREAM_BAD_RESPONSE,
}


@dataclass
class RetryPolicy:
    """
    Attempt budget, capability fallback order and failure mapping.

    Usage:
        policy = RetryPolicy(max_attempts=5, capabilities=["gemini-2.5-flash"])
        action = policy.action_for(classify_error(exc))
    """

    max_attempts: int = 5
    capabilities: List[str] = field(default_factory=list)
    retry_on_empty: bool = False
    overrides: Dict[str, FailureAction] = field(default_factory=dict)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def action_for(self, classified_error: ClassifiedError) -> FailureAction:
        error_type = classified_error.error_type
        if error_type in self.overrides:
            return self.overrides[error_type]
        if error_type == "empty_response" and self.retry_on_empty:
            return FailureAction.RETRY_SAME
        return DEFAULT_ACTIONS.get(error_type, FailureAction.RETRY_SAME)

    def candidates(
        self, requested: Optional[str], fallback: Optional[List[str]] = None
    ) -> List[str]:
        """
        Ordered capability list for one request.

        An explicit capability goes first, followed by the fallbacks
        (deduplicated, order preserved). A fallback of None means the
        configured text capabilities; an empty list adds nothing.
        """
        if fallback is None:
            fallback = self.capabilities
        ordered: List[str] = []
        for capability in ([requested] if requested else []) + list(fallback):
            if capability and capability not in ordered:
                ordered.append(capability)
        return ordered

    @staticmethod
    def terminal_code(classified_error: ClassifiedError) -> ErrorCode:
        return TERMINAL_CODES.get(
            classified_error.error_type, ErrorCode.UPSTREAM_TRANSIENT_ERROR
        )
