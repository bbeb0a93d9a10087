# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/license_gate.py
"""
License/device gate.

Validates a license against an external license authority and enforces the
one-time device binding:

    stored binding | presented device | result
    ---------------|------------------|---------------------------
    none           | any              | bind to presented device, ok
    X              | X                | ok
    X              | Y != X           | DEVICE_MISMATCH
    unknown/inactive license          | LICENSE_INVALID

When the authority cannot answer (network failure, timeout, non-200,
unparseable body) the gate reports LICENSE_API_UNAVAILABLE or
LICENSE_API_BAD_RESPONSE. It never treats "could not determine" as valid
or invalid.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import httpx

from .async_locks import KeyedLock
from .error_handler import ErrorCode, LicenseAuthorityError
from .timeout_config import TimeoutConfig
from .types import AuthorizationResult

lib_logger = logging.getLogger("rotator_gateway")


class LicenseStatus(Enum):
    OK = "OK"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"
    NOT_FOUND = "LICENSE_NOT_FOUND"
    INACTIVE = "LICENSE_INACTIVE"


# Authority vocabularies seen in the wild, mapped onto LicenseStatus
_STATUS_ALIASES = {
    "OK": LicenseStatus.OK,
    "VALID": LicenseStatus.OK,
    "BOUND": LicenseStatus.DEVICE_MISMATCH,
    "DEVICE_MISMATCH": LicenseStatus.DEVICE_MISMATCH,
    "DEVICE_LOCKED": LicenseStatus.DEVICE_MISMATCH,
    "LICENSE_NOT_FOUND": LicenseStatus.NOT_FOUND,
    "NOT_FOUND": LicenseStatus.NOT_FOUND,
    "LICENSE_INVALID": LicenseStatus.NOT_FOUND,
    "INVALID": LicenseStatus.NOT_FOUND,
    "LICENSE_INACTIVE": LicenseStatus.INACTIVE,
    "INACTIVE": LicenseStatus.INACTIVE,
    "EXPIRED": LicenseStatus.INACTIVE,
}


@dataclass(frozen=True)
class LicenseCheck:
    """Answer from a license authority."""

    status: LicenseStatus
    bound_device: Optional[str] = None
    newly_bound: bool = False


class LicenseAuthority(ABC):
    """Interface for the external license authority."""

    @abstractmethod
    async def check(self, license: str, device: str) -> LicenseCheck:
        """
        Look up (and, for an unbound license, bind) a license.

        Raises:
            LicenseAuthorityError: the authority could not give an answer
        """
        raise NotImplementedError


def parse_authority_response(payload) -> LicenseCheck:
    """
    Interpret a decoded authority body.

    Accepted shapes:
        {"status": "OK" | "BOUND" | "LICENSE_NOT_FOUND" | ..., "device": "..."}
        {"ok": true} / {"ok": false, "error": "DEVICE_MISMATCH"}
        {"valid": true | false}

    Raises:
        LicenseAuthorityError(LICENSE_API_BAD_RESPONSE) for anything else
    """
    if not isinstance(payload, dict):
        raise LicenseAuthorityError(
            ErrorCode.LICENSE_API_BAD_RESPONSE, "authority body is not a JSON object"
        )

    bound_device = payload.get("device") or payload.get("boundDevice")
    bound_device = str(bound_device) if bound_device else None
    newly_bound = bool(payload.get("newlyBound") or payload.get("bound_now"))

    status = payload.get("status")
    if isinstance(status, str):
        mapped = _STATUS_ALIASES.get(status.strip().upper())
        if mapped is None:
            raise LicenseAuthorityError(
                ErrorCode.LICENSE_API_BAD_RESPONSE, f"unknown authority status '{status}'"
            )
        return LicenseCheck(mapped, bound_device, newly_bound)

    if isinstance(payload.get("ok"), bool):
        if payload["ok"]:
            return LicenseCheck(LicenseStatus.OK, bound_device, newly_bound)
        error = str(payload.get("error") or "LICENSE_INVALID").strip().upper()
        return LicenseCheck(_STATUS_ALIASES.get(error, LicenseStatus.NOT_FOUND), bound_device)

    if isinstance(payload.get("valid"), bool):
        status = LicenseStatus.OK if payload["valid"] else LicenseStatus.NOT_FOUND
        return LicenseCheck(status, bound_device, newly_bound)

    raise LicenseAuthorityError(
        ErrorCode.LICENSE_API_BAD_RESPONSE, "authority body has no recognizable status"
    )


class LicenseAuthorityClient(LicenseAuthority):
    """
    HTTP client for a GET-style license authority:

        GET {url}?license=...&device=...  ->  200 JSON body

    Non-200 responses and transport failures are LICENSE_API_UNAVAILABLE;
    200 with an unparseable body is LICENSE_API_BAD_RESPONSE.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 8.0,
    ):
        if not url:
            raise ValueError("license authority url is required")
        self._url = url
        self._client = client
        self._timeout = TimeoutConfig.license_check(timeout)

    def bind_client(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def check(self, license: str, device: str) -> LicenseCheck:
        if self._client is None:
            raise RuntimeError("LicenseAuthorityClient used before an HTTP client was bound")
        try:
            response = await self._client.get(
                self._url,
                params={"license": license, "device": device},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise LicenseAuthorityError(
                ErrorCode.LICENSE_API_UNAVAILABLE, f"license authority timed out: {type(e).__name__}"
            )
        except httpx.HTTPError as e:
            raise LicenseAuthorityError(
                ErrorCode.LICENSE_API_UNAVAILABLE, f"license authority unreachable: {type(e).__name__}"
            )

        if response.status_code != 200:
            raise LicenseAuthorityError(
                ErrorCode.LICENSE_API_UNAVAILABLE,
                f"license authority returned HTTP {response.status_code}",
            )

        try:
            payload = json.loads(response.text)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise LicenseAuthorityError(
                ErrorCode.LICENSE_API_BAD_RESPONSE, "license authority returned non-JSON body"
            )
        return parse_authority_response(payload)


@dataclass
class LicenseRecord:
    active: bool = True
    bound_device: Optional[str] = None


class InMemoryLicenseAuthority(LicenseAuthority):
    """
    Process-local license authority, for development and tests.

    Binds an unbound license to the first device that presents it.
    """

    def __init__(self, licenses: Optional[Dict[str, LicenseRecord]] = None):
        self._licenses: Dict[str, LicenseRecord] = dict(licenses or {})
        self._lock = asyncio.Lock()
        self.calls = 0

    def add(self, license: str, active: bool = True, bound_device: Optional[str] = None) -> None:
        self._licenses[license] = LicenseRecord(active=active, bound_device=bound_device)

    def unbind(self, license: str) -> None:
        if license in self._licenses:
            self._licenses[license].bound_device = None

    def binding(self, license: str) -> Optional[str]:
        record = self._licenses.get(license)
        return record.bound_device if record else None

    async def check(self, license: str, device: str) -> LicenseCheck:
        async with self._lock:
            self.calls += 1
            record = self._licenses.get(license)
            if record is None:
                return LicenseCheck(LicenseStatus.NOT_FOUND)
            if not record.active:
                return LicenseCheck(LicenseStatus.INACTIVE, record.bound_device)
            if record.bound_device is None:
                record.bound_device = device
                return LicenseCheck(LicenseStatus.OK, device, newly_bound=True)
            if record.bound_device != device:
                return LicenseCheck(LicenseStatus.DEVICE_MISMATCH, record.bound_device)
            return LicenseCheck(LicenseStatus.OK, device)


class LicenseGate:
    """
    Authorizes (license, device) pairs.

    Every call asks the authority for the current binding state. Calls for
    the same license are serialized, so when two devices race for an
    unbound license exactly one of them becomes the bound device. Calls for
    different licenses never wait on each other.

    Usage:
        gate = LicenseGate(LicenseAuthorityClient(url, client), timeout=8.0)
        result = await gate.authorize("LIC-ABCDEFGHI", "device-1")
    """

    def __init__(
        self,
        authority: LicenseAuthority,
        timeout: float = 8.0,
        license_pattern: Optional[str] = None,
    ):
        self._authority = authority
        self._timeout = timeout
        self._pattern = re.compile(license_pattern) if license_pattern else None
        self._locks = KeyedLock()
        self._stats = {"checks": 0, "ok": 0, "rejected": 0, "unavailable": 0, "bound": 0}

    @property
    def authority(self) -> LicenseAuthority:
        return self._authority

    async def authorize(self, license: str, device: str) -> AuthorizationResult:
        if self._pattern is not None and not self._pattern.fullmatch(license):
            self._stats["rejected"] += 1
            return AuthorizationResult(
                ok=False, code=ErrorCode.LICENSE_INVALID, message="license format rejected"
            )

        async with self._locks.hold(license):
            result = await self._check(license, device)

        if result.ok:
            self._stats["ok"] += 1
            if result.newly_bound:
                self._stats["bound"] += 1
        elif result.code in (ErrorCode.LICENSE_API_UNAVAILABLE, ErrorCode.LICENSE_API_BAD_RESPONSE):
            self._stats["unavailable"] += 1
        else:
            self._stats["rejected"] += 1
        return result

    async def _check(self, license: str, device: str) -> AuthorizationResult:
        self._stats["checks"] += 1
        try:
            check = await asyncio.wait_for(
                self._authority.check(license, device), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            lib_logger.warning(f"License authority timed out after {self._timeout}s")
            return AuthorizationResult(
                ok=False,
                code=ErrorCode.LICENSE_API_UNAVAILABLE,
                message="license authority timed out",
            )
        except LicenseAuthorityError as e:
            lib_logger.warning(f"License authority failure: {e.code.value}: {e.message}")
            return AuthorizationResult(ok=False, code=e.code, message=e.message)

        if check.status == LicenseStatus.OK:
            if check.bound_device is not None and check.bound_device != device:
                # Authority said OK but reports a different binding
                return AuthorizationResult(
                    ok=False,
                    code=ErrorCode.DEVICE_MISMATCH,
                    message="license is bound to another device",
                )
            if check.newly_bound:
                lib_logger.info("License bound to a new device")
            return AuthorizationResult(ok=True, newly_bound=check.newly_bound)

        if check.status == LicenseStatus.DEVICE_MISMATCH:
            return AuthorizationResult(
                ok=False,
                code=ErrorCode.DEVICE_MISMATCH,
                message="license is bound to another device",
            )

        return AuthorizationResult(
            ok=False,
            code=ErrorCode.LICENSE_INVALID,
            message=f"license rejected: {check.status.value}",
        )

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "pending_licenses": len(self._locks)}
