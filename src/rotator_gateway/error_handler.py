# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import asyncio
import json
import logging
import re
import time
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

lib_logger = logging.getLogger("rotator_gateway")


class ErrorCode(str, Enum):
    """Caller-visible failure codes."""

    INVALID_REQUEST = "INVALID_REQUEST"
    ADMISSION_THROTTLED = "ADMISSION_THROTTLED"
    DAILY_QUOTA_EXCEEDED = "DAILY_QUOTA_EXCEEDED"
    LICENSE_INVALID = "LICENSE_INVALID"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"
    LICENSE_API_UNAVAILABLE = "LICENSE_API_UNAVAILABLE"
    LICENSE_API_BAD_RESPONSE = "LICENSE_API_BAD_RESPONSE"
    NO_CREDENTIALS_CONFIGURED = "NO_CREDENTIALS_CONFIGURED"
    ALL_CREDENTIALS_COOLING = "ALL_CREDENTIALS_COOLING"
    CREDENTIAL_REJECTED_BY_UPSTREAM = "CREDENTIAL_REJECTED_BY_UPSTREAM"
    CAPABILITY_UNAVAILABLE = "CAPABILITY_UNAVAILABLE"
    UPSTREAM_TRANSIENT_ERROR = "UPSTREAM_TRANSIENT_ERROR"
    UPSTREAM_EMPTY_RESULT = "UPSTREAM_EMPTY_RESULT"
    UPSTREAM_BAD_RESPONSE = "UPSTREAM_BAD_RESPONSE"
    ALL_ATTEMPTS_EXHAUSTED = "ALL_ATTEMPTS_EXHAUSTED"
    SLOT_NOT_FOUND = "SLOT_NOT_FOUND"


class InvalidRequestError(ValueError):
    """Raised for malformed caller input (identity, payload, slot id)."""

    code = ErrorCode.INVALID_REQUEST


class SlotNotFoundError(KeyError):
    """Raised when a management call names a slot id outside the pool."""

    code = ErrorCode.SLOT_NOT_FOUND

    def __init__(self, slot_id: Any):
        self.slot_id = slot_id
        super().__init__(f"No credential slot with id {slot_id!r}")


class EmptyResponseError(Exception):
    """
    Raised when the upstream answers 200 but carries no usable content.

    Soft failure: not a retry trigger unless the retry policy opts in.

    Attributes:
        capability: The model/endpoint that was called
        message: Human-readable message about the error
    """

    def __init__(self, capability: str, message: str = ""):
        self.capability = capability
        self.message = message or f"Empty result from {capability}"
        super().__init__(self.message)


class UnparseableResponseError(Exception):
    """
    Raised when an upstream body cannot be decoded at all.

    Attributes:
        capability: The model/endpoint that was called
        body: First part of the offending body, for diagnostics
    """

    def __init__(self, capability: str, body: str = "", message: str = ""):
        self.capability = capability
        self.body = body[:400] if body else ""
        self.message = message or f"Unparseable response from {capability}"
        super().__init__(self.message)


class LicenseAuthorityError(Exception):
    """
    Raised by license authority clients when the authority cannot give an answer.

    code is LICENSE_API_UNAVAILABLE (network, timeout, non-200) or
    LICENSE_API_BAD_RESPONSE (reachable but unparseable).
    """

    def __init__(self, code: ErrorCode, message: str = ""):
        self.code = code
        self.message = message or code.value
        super().__init__(self.message)


def _parse_duration_string(duration_str: str) -> Optional[int]:
    """
    Parse duration strings to total seconds.

    Handles:
    - Plain seconds: '60', '12.5'
    - Milliseconds: '290.97ms' -> 1 (rounds up sub-second values)
    - Compound durations: '2h30m', '45m30s', '36.75s'

    Returns:
        Total seconds as integer, or None if parsing fails.
    """
    if not duration_str:
        return None

    remaining = duration_str.strip().lower()

    try:
        return int(float(remaining))
    except ValueError:
        pass

    # 'ms' must be matched before minutes
    ms_match = re.match(r"^([\d.]+)ms$", remaining)
    if ms_match:
        seconds = float(ms_match.group(1)) / 1000.0
        return max(1, int(seconds)) if seconds > 0 else 0

    total_seconds = 0.0
    hour_match = re.match(r"(\d+)h", remaining)
    if hour_match:
        total_seconds += int(hour_match.group(1)) * 3600
        remaining = remaining[hour_match.end() :]

    min_match = re.match(r"(\d+)m(?!s)", remaining)
    if min_match:
        total_seconds += int(min_match.group(1)) * 60
        remaining = remaining[min_match.end() :]

    sec_match = re.match(r"([\d.]+)s", remaining)
    if sec_match:
        total_seconds += float(sec_match.group(1))

    if total_seconds > 0:
        return max(1, int(total_seconds))
    return None


def _extract_retry_from_json_body(text: str) -> Optional[int]:
    """
    Extract a retry delay from a Google-style error body.

    {"error": {"details": [{"@type": "...google.rpc.RetryInfo", "retryDelay": "37s"}]}}
    """
    try:
        json_match = re.search(r"(\{.*\})", text, re.DOTALL)
        if not json_match:
            return None
        error_json = json.loads(json_match.group(1))
        details = error_json.get("error", {}).get("details", [])
        for detail in details:
            if "google.rpc.RetryInfo" in detail.get("@type", ""):
                delay = detail.get("retryDelay")
                if isinstance(delay, dict) and delay.get("seconds"):
                    return int(float(delay["seconds"]))
                if isinstance(delay, str):
                    result = _parse_duration_string(delay)
                    if result is not None:
                        return result
    except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
        pass
    return None


def get_retry_after(error: Exception, now: Optional[float] = None) -> Optional[int]:
    """
    Extract the retry-after duration in seconds from an upstream failure.

    Looks at, in order: the response body (RetryInfo), the Retry-After header,
    the X-RateLimit-Reset header (unix timestamp), and finally the exception
    message for "retry after N" phrasing.
    """
    if isinstance(error, httpx.HTTPStatusError):
        try:
            result = _extract_retry_from_json_body(error.response.text or "")
            if result is not None:
                return result
        except (httpx.ResponseNotRead, UnicodeDecodeError):
            pass

        headers = error.response.headers
        retry_header = headers.get("retry-after")
        if retry_header:
            result = _parse_duration_string(retry_header)
            if result is not None:
                return result

        reset_header = headers.get("x-ratelimit-reset")
        if reset_header:
            try:
                wait_seconds = int(reset_header) - int(now if now is not None else time.time())
                if wait_seconds > 0:
                    return wait_seconds
            except ValueError:
                pass

    error_str = str(error).lower()
    patterns = [
        r"retry[-_\s]after:?\s*([\dhms.]+)",
        r"retry in\s*([\d.]+)\s*s",
        r"try again in\s*(\d+)\s*seconds?",
    ]
    for pattern in patterns:
        match = re.search(pattern, error_str)
        if match:
            result = _parse_duration_string(match.group(1))
            if result is not None:
                return result

    value = getattr(error, "retry_after", None)
    if isinstance(value, int):
        return value
    return None


class ClassifiedError:
    """A structured representation of a classified upstream failure."""

    def __init__(
        self,
        error_type: str,
        original_exception: Optional[Exception] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        self.error_type = error_type
        self.original_exception = original_exception
        self.status_code = status_code
        self.retry_after = retry_after

    def __str__(self):
        return (
            f"ClassifiedError(type={self.error_type}, status={self.status_code}, "
            f"retry_after={self.retry_after}, original_exc={self.original_exception})"
        )


# Gemini reports a bad key as 400 INVALID_ARGUMENT rather than 401
INVALID_KEY_PATTERNS = (
    "api key not valid",
    "api_key_invalid",
    "api key expired",
    "invalid api key",
)

RATE_LIMIT_PATTERNS = ("resource_exhausted", "quota", "rate limit", "too many requests")


def _response_text(response: httpx.Response) -> str:
    try:
        return response.text.lower()
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return ""


def _classify_status(
    e: Exception, status_code: int, body: str, now: Optional[float]
) -> ClassifiedError:
    if status_code == 401:
        return ClassifiedError("authentication", e, status_code)
    if status_code == 403:
        return ClassifiedError("forbidden", e, status_code)
    if status_code == 429:
        return ClassifiedError("rate_limit", e, status_code, get_retry_after(e, now))
    if status_code == 404:
        return ClassifiedError("not_found", e, status_code)
    if status_code == 400:
        if any(pattern in body for pattern in INVALID_KEY_PATTERNS):
            return ClassifiedError("authentication", e, status_code)
        if any(pattern in body for pattern in RATE_LIMIT_PATTERNS):
            return ClassifiedError("rate_limit", e, status_code, get_retry_after(e, now))
        return ClassifiedError("invalid_request", e, status_code)
    if 500 <= status_code:
        return ClassifiedError("server_error", e, status_code)
    return ClassifiedError("invalid_request", e, status_code)


def classify_error(e: Exception, now: Optional[float] = None) -> ClassifiedError:
    """
    Classifies an upstream exception into a structured ClassifiedError.

    Error types:
    - rate_limit: 429 / RESOURCE_EXHAUSTED (credential throttled)
    - authentication / forbidden: credential invalid or revoked
    - not_found: model/capability absent
    - server_error: 5xx
    - api_connection: timeouts and network failures
    - invalid_request: other 4xx
    - empty_response: 200 without content
    - bad_response: body could not be decoded
    - unknown: anything else
    """
    if isinstance(e, EmptyResponseError):
        return ClassifiedError("empty_response", e, 200)
    if isinstance(e, UnparseableResponseError):
        return ClassifiedError("bad_response", e, 200)

    if isinstance(e, httpx.HTTPStatusError):
        status_code = e.response.status_code
        return _classify_status(e, status_code, _response_text(e.response), now)

    if isinstance(e, (httpx.TransportError, asyncio.TimeoutError)):
        return ClassifiedError("api_connection", e)

    # litellm exceptions (LiteLLMProvider)
    if isinstance(e, RateLimitError):
        return ClassifiedError("rate_limit", e, 429, get_retry_after(e, now))
    if isinstance(e, AuthenticationError):
        return ClassifiedError("authentication", e, 401)
    if isinstance(e, PermissionDeniedError):
        return ClassifiedError("forbidden", e, 403)
    if isinstance(e, NotFoundError):
        return ClassifiedError("not_found", e, 404)
    if isinstance(e, Timeout):
        return ClassifiedError("api_connection", e, getattr(e, "status_code", None))
    if isinstance(e, (ServiceUnavailableError, InternalServerError)):
        return ClassifiedError("server_error", e, getattr(e, "status_code", 500))
    if isinstance(e, APIConnectionError):
        return ClassifiedError("api_connection", e, getattr(e, "status_code", None))
    if isinstance(e, BadRequestError):
        message = str(e).lower()
        if any(pattern in message for pattern in INVALID_KEY_PATTERNS):
            return ClassifiedError("authentication", e, 400)
        return ClassifiedError("invalid_request", e, 400)

    status_code = getattr(e, "status_code", None)
    if isinstance(status_code, int):
        return _classify_status(e, status_code, str(e).lower(), now)

    return ClassifiedError("unknown", e, status_code)


# Errors that point at a specific credential and need the owner's attention
ABNORMAL_ERROR_TYPES = frozenset({"authentication", "forbidden"})

# Errors that signal "busy, try later"
RATE_LIMIT_ERROR_TYPES = frozenset({"rate_limit"})


def is_abnormal_error(classified_error: ClassifiedError) -> bool:
    return classified_error.error_type in ABNORMAL_ERROR_TYPES


def mask_credential(credential: Optional[str]) -> str:
    """
    Mask a credential for safe display in logs and error messages.

    Shows the last 6 characters of long secrets (e.g. "...xyz123").
    """
    if not credential:
        return "<empty>"
    if len(credential) > 6:
        return f"...{credential[-6:]}"
    return "***"


class RequestErrorAccumulator:
    """
    Tracks errors encountered during one request's rotation cycle.

    Used to decide the aggregate failure code and to build informative
    details once the retry budget is spent: "all rate limited" suggests
    retrying later, anything else suggests checking the credentials.
    """

    def __init__(self):
        self.errors: List[Dict[str, Any]] = []
        self._tried_slots: set = set()

    def record_error(
        self,
        slot_id: int,
        secret: Optional[str],
        classified_error: ClassifiedError,
        capability: Optional[str] = None,
    ) -> None:
        """Record an error for a slot."""
        self._tried_slots.add(slot_id)
        message = str(classified_error.original_exception or classified_error.error_type)
        self.errors.append(
            {
                "slot": slot_id,
                "credential": mask_credential(secret),
                "error_type": classified_error.error_type,
                "status_code": classified_error.status_code,
                "capability": capability,
                "message": self._truncate_message(message),
            }
        )

    @staticmethod
    def _truncate_message(message: str, max_length: int = 150) -> str:
        first_line = message.split("\n")[0]
        if len(first_line) > max_length:
            return first_line[:max_length] + "..."
        return first_line

    @property
    def total_slots_tried(self) -> int:
        return len(self._tried_slots)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def all_rate_limited(self) -> bool:
        """True when every recorded failure was a rate limit."""
        return bool(self.errors) and all(
            err["error_type"] in RATE_LIMIT_ERROR_TYPES for err in self.errors
        )

    def all_abnormal(self) -> bool:
        """True when every recorded failure was a credential rejection."""
        return bool(self.errors) and all(
            err["error_type"] in ABNORMAL_ERROR_TYPES for err in self.errors
        )

    def get_error_summary(self) -> str:
        """Summarize errors by type, e.g. '3 rate_limit, 1 server_error'."""
        counts: Dict[str, int] = {}
        for err in self.errors:
            counts[err["error_type"]] = counts.get(err["error_type"], 0) + 1
        return ", ".join(f"{count} {err_type}" for err_type, count in counts.items())

    def build_details(self) -> Dict[str, Any]:
        """Structured details for the caller-facing failure."""
        details: Dict[str, Any] = {
            "slots_tried": self.total_slots_tried,
            "all_rate_limited": self.all_rate_limited(),
            "summary": self.get_error_summary(),
        }
        abnormal = [e for e in self.errors if e["error_type"] in ABNORMAL_ERROR_TYPES]
        if abnormal:
            details["credential_issues"] = abnormal
        return details

    def build_hint(self) -> str:
        if self.all_rate_limited():
            return "All failures were rate limits. Try again shortly."
        if self.errors:
            return "Upstream failures were mixed or terminal. Check your credentials."
        return ""

    def build_log_message(self) -> str:
        """Concise log line, never contains secrets."""
        parts = [f"{len(self.errors)} failed attempt(s) over {self.total_slots_tried} slot(s)"]
        summary = self.get_error_summary()
        if summary:
            parts.append(summary)
        return " | ".join(parts)
