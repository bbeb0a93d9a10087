# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/gateway.py
"""
Resilient generation gateway.

Request flow:

    admit (per caller interval)  ->  authorize (license + device)
        ->  rotation loop:
                select ready slot (LRU, lease it)
                call upstream outside the pool lock
                success  -> mark used, persist, return
                failure  -> classify, apply FailureAction, next attempt

The credential pool is guarded by a single asyncio.Lock. Network calls,
backoff sleeps and license checks never run while it is held.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from .admission import AdmissionLimiter
from .config import GatewayConfig
from .cooldown_manager import CooldownPolicy
from .credential_pool import CredentialPool
from .error_handler import (
    ClassifiedError,
    ErrorCode,
    InvalidRequestError,
    RequestErrorAccumulator,
    SlotNotFoundError,
    classify_error,
    mask_credential,
)
from .http_client_pool import HttpClientPool
from .license_gate import LicenseAuthority, LicenseAuthorityClient, LicenseGate
from .pool_store import InMemoryPoolStore, JsonFilePoolStore, PoolStore
from .providers import PROVIDER_PLUGINS
from .providers.upstream_interface import UpstreamProvider
from .retry_policy import FailureAction, RetryPolicy
from .selection import pick_ready
from .timeout_config import TimeoutConfig
from .types import (
    CallerIdentity,
    GenerationRequest,
    GenerationResult,
    RequestKind,
    SelectionReason,
    SelectionResult,
    UpstreamOutput,
)
from .utils.json_extract import extract_first_json_object

lib_logger = logging.getLogger("rotator_gateway")

Identity = Union[CallerIdentity, Tuple[str, str]]


def _ms_until(until: Optional[float], now: float) -> Optional[int]:
    if until is None:
        return None
    return max(0, int(round((until - now) * 1000)))


class ResilientGateway:
    """
    Fronts a pool of upstream credentials for licensed callers.

    Usage:
        gateway = ResilientGateway(GatewayConfig.from_env())
        await gateway.init()
        result = await gateway.generate(("LIC-ABCDEFGHI", "device-1"),
                                        GenerationRequest(prompt="Hello"))
        await gateway.shutdown()

    Collaborators are injectable for tests: store, provider, license
    authority, http pool, clock and sleep.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        store: Optional[PoolStore] = None,
        provider: Optional[UpstreamProvider] = None,
        license_authority: Optional[LicenseAuthority] = None,
        http_pool: Optional[HttpClientPool] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._config = config or GatewayConfig()
        cfg = self._config
        self._clock = clock
        self._sleep = sleep

        if store is None:
            store = JsonFilePoolStore(Path(cfg.pool_path)) if cfg.pool_path else InMemoryPoolStore()
        self._store = store

        if provider is None:
            try:
                provider = PROVIDER_PLUGINS[cfg.provider]()
            except KeyError:
                raise ValueError(
                    f"Unknown provider '{cfg.provider}', expected one of {sorted(PROVIDER_PLUGINS)}"
                )
        self._provider = provider

        if license_authority is None:
            if not cfg.license_api_url:
                raise ValueError("license_api_url is required when no license authority is given")
            license_authority = LicenseAuthorityClient(
                cfg.license_api_url, timeout=cfg.license_timeout
            )

        self._http_pool = http_pool or HttpClientPool(default_timeout=cfg.upstream_timeout)
        self._limiter = AdmissionLimiter(
            min_interval_ms=cfg.min_interval_ms,
            daily_quota=cfg.daily_quota,
            idle_ttl=cfg.admission_idle_ttl,
            clock=clock,
        )
        self._gate = LicenseGate(
            license_authority,
            timeout=cfg.license_timeout,
            license_pattern=cfg.license_pattern,
        )
        self._cooldowns = CooldownPolicy(
            cooldown_seconds=cfg.cooldown_seconds,
            respect_retry_after=cfg.respect_retry_after,
            backoff_base=cfg.backoff_base,
            max_backoff=cfg.max_backoff,
        )
        self._policy = RetryPolicy(
            max_attempts=cfg.max_attempts,
            capabilities=list(cfg.capabilities),
            retry_on_empty=cfg.retry_on_empty,
        )
        self._upstream_timeout = TimeoutConfig.upstream(cfg.upstream_timeout)

        self._pool = CredentialPool.empty(cfg.max_slots)
        self._pool_lock = asyncio.Lock()
        self._slot_released = asyncio.Condition(self._pool_lock)
        self._leased: Set[int] = set()
        self._initialized = False

        self._stats = {
            "requests": 0,
            "succeeded": 0,
            "failed": 0,
            "upstream_calls": 0,
        }

    # --- Lifecycle ---

    async def init(self) -> None:
        """Load the persisted pool and open the shared HTTP client."""
        if self._initialized:
            return
        document = await self._store.load()
        async with self._pool_lock:
            self._pool = CredentialPool.from_document(document, self._config.max_slots)
        await self._http_pool.initialize()

        authority = self._gate.authority
        if isinstance(authority, LicenseAuthorityClient):
            authority.bind_client(self._http_pool.get_client())

        self._initialized = True
        configured = sum(1 for slot in self._pool if slot.has_secret)
        lib_logger.info(
            f"Gateway initialized: {configured}/{self._config.max_slots} credential slot(s) configured, "
            f"provider={self._provider.name}"
        )

    async def shutdown(self) -> None:
        await self._http_pool.close()
        self._initialized = False
        lib_logger.info("Gateway shut down")

    async def __aenter__(self) -> "ResilientGateway":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def limiter(self) -> AdmissionLimiter:
        return self._limiter

    @property
    def license_gate(self) -> LicenseGate:
        return self._gate

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("ResilientGateway used before init()")

    # --- Caller-facing ---

    async def generate(self, identity: Identity, request: GenerationRequest) -> GenerationResult:
        """
        Run one caller request through admission, license check and rotation.

        Never raises for caller-visible failures; every outcome is a
        GenerationResult carrying either the output or an ErrorCode.
        """
        self._ensure_initialized()
        self._stats["requests"] += 1

        try:
            decision = await self._limiter.admit(identity)
        except InvalidRequestError as e:
            return self._finish(GenerationResult.failure(ErrorCode.INVALID_REQUEST, str(e)))
        if not decision.allowed:
            return self._finish(
                GenerationResult.failure(decision.code, retry_after_ms=decision.retry_after_ms)
            )

        if not isinstance(identity, CallerIdentity):
            identity = CallerIdentity(*identity)
        authorization = await self._gate.authorize(identity.license, identity.device)
        if not authorization.ok:
            return self._finish(
                GenerationResult.failure(authorization.code, authorization.message)
            )

        return self._finish(await self._rotate(request))

    def _finish(self, result: GenerationResult) -> GenerationResult:
        self._stats["succeeded" if result.ok else "failed"] += 1
        return result

    def _capabilities_for(self, request: GenerationRequest):
        fallback = (
            self._config.image_capabilities
            if request.kind == RequestKind.IMAGE
            else self._config.capabilities
        )
        return self._policy.candidates(request.capability, fallback)

    @asynccontextmanager
    async def _lease(self, excluded: Set[int]) -> AsyncIterator[Tuple[SelectionResult, str]]:
        """
        Select a ready slot and hold it exclusively for one upstream call.

        Waits while every ready slot is leased to another request. The
        secret is copied out under the lock; the slot object itself is only
        touched again under the lock.
        """
        async with self._pool_lock:
            while True:
                selection = pick_ready(
                    self._pool, self._clock(), excluded=excluded, leased=self._leased
                )
                if selection.reason != SelectionReason.ALL_BUSY:
                    break
                await self._slot_released.wait()
            secret = ""
            if selection.ok:
                self._leased.add(selection.slot_id)
                secret = self._pool.get(selection.slot_id).secret_value
        try:
            yield selection, secret
        finally:
            if selection.ok:
                async with self._pool_lock:
                    self._leased.discard(selection.slot_id)
                    self._slot_released.notify_all()

    @asynccontextmanager
    async def _hold_slot(self, slot_id: int) -> AsyncIterator[str]:
        """
        Lease one specific slot, ignoring its cooldown and flag state.

        Waits while another request holds the slot. Yields the secret, or ""
        for an empty slot (which is not leased).

        Raises:
            SlotNotFoundError: unknown slot id
        """
        async with self._pool_lock:
            secret = self._pool.get(slot_id).secret_value
            while secret and slot_id in self._leased:
                await self._slot_released.wait()
                secret = self._pool.get(slot_id).secret_value
            if secret:
                self._leased.add(slot_id)
        try:
            yield secret
        finally:
            if secret:
                async with self._pool_lock:
                    self._leased.discard(slot_id)
                    self._slot_released.notify_all()

    async def _persist(self) -> None:
        """Write the pool document. Caller holds the pool lock."""
        if not await self._store.save(self._pool.to_document()):
            lib_logger.warning("Credential pool state could not be persisted")

    async def _call_upstream(
        self, secret: str, capability: str, request: GenerationRequest
    ) -> UpstreamOutput:
        self._stats["upstream_calls"] += 1
        return await asyncio.wait_for(
            self._provider.generate(
                secret,
                capability,
                request,
                self._http_pool.get_client(),
                self._upstream_timeout,
            ),
            timeout=self._config.upstream_timeout,
        )

    async def _rotate(self, request: GenerationRequest) -> GenerationResult:
        capabilities = self._capabilities_for(request)
        if not capabilities:
            return GenerationResult.failure(
                ErrorCode.CAPABILITY_UNAVAILABLE, "No capability configured for this request"
            )

        accumulator = RequestErrorAccumulator()
        rejected: Set[int] = set()
        capability_index = 0
        attempt = 0

        while attempt < self._policy.max_attempts:
            capability = capabilities[capability_index]
            async with self._lease(rejected) as (selection, secret):
                if not selection.ok:
                    return self._selection_failure(selection, accumulator, attempt)

                slot_id = selection.slot_id
                attempt += 1
                try:
                    output = await self._call_upstream(secret, capability, request)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._http_pool.record_error(e)
                    classified = classify_error(e, now=self._clock())
                    accumulator.record_error(slot_id, secret, classified, capability)
                    action = self._policy.action_for(classified)
                    lib_logger.info(
                        f"Attempt {attempt}/{self._policy.max_attempts} on slot {slot_id} "
                        f"({mask_credential(secret)}) with {capability} failed: "
                        f"{classified.error_type} -> {action.value}"
                    )
                    await self._apply_failure(slot_id, classified, action)
                else:
                    return await self._success(slot_id, capability, request, output, attempt)

            if action == FailureAction.TERMINAL:
                return GenerationResult.failure(
                    self._policy.terminal_code(classified),
                    str(classified.original_exception or classified.error_type),
                    slot_id=slot_id,
                    capability=capability,
                    attempts=attempt,
                    details=accumulator.build_details(),
                )
            if action == FailureAction.RETRY_NEXT:
                rejected.add(slot_id)
            elif action == FailureAction.NEXT_CAPABILITY:
                capability_index += 1
                if capability_index >= len(capabilities):
                    return GenerationResult.failure(
                        ErrorCode.CAPABILITY_UNAVAILABLE,
                        f"None of the capabilities {capabilities} is available",
                        attempts=attempt,
                        details=accumulator.build_details(),
                    )
            elif action == FailureAction.RETRY_SAME and attempt < self._policy.max_attempts:
                delay = self._cooldowns.backoff(classified, attempt - 1)
                lib_logger.debug(f"Backing off {delay:.2f}s before next attempt")
                await self._sleep(delay)

        return await self._exhausted(accumulator, attempt)

    async def _apply_failure(
        self, slot_id: int, classified: ClassifiedError, action: FailureAction
    ) -> None:
        """Record the classified failure on the slot. Runs with the slot leased."""
        error = classified.error_type
        if classified.status_code:
            error = f"{error} ({classified.status_code})"

        async with self._pool_lock:
            if action == FailureAction.COOLDOWN:
                until = self._cooldowns.cooldown_until(classified, self._clock())
                self._pool.mark_cooldown(slot_id, until, error)
                lib_logger.warning(
                    f"Credential slot {slot_id} rate limited, cooling for "
                    f"{self._cooldowns.cooldown_for(classified)}s"
                )
            elif action == FailureAction.RETRY_NEXT:
                self._pool.mark_flagged(slot_id, error)
                lib_logger.warning(
                    f"Credential slot {slot_id} rejected by upstream ({error}), "
                    f"flagged until its secret is replaced"
                )
            else:
                self._pool.record_error(slot_id, error)
            await self._persist()

    async def _success(
        self,
        slot_id: int,
        capability: str,
        request: GenerationRequest,
        output: UpstreamOutput,
        attempts: int,
    ) -> GenerationResult:
        async with self._pool_lock:
            self._pool.mark_used(slot_id, self._clock())
            await self._persist()

        parsed = None
        if request.expect_json and output.text:
            parsed = extract_first_json_object(output.text)
            if parsed is None:
                lib_logger.debug("Output requested as JSON but no JSON object was found")

        lib_logger.info(f"Request served by slot {slot_id} with {capability} after {attempts} attempt(s)")
        return GenerationResult(
            ok=True,
            output=output.text,
            data=output.data,
            mime_type=output.mime_type,
            json=parsed,
            slot_id=slot_id,
            capability=capability,
            attempts=attempts,
        )

    def _selection_failure(
        self,
        selection: SelectionResult,
        accumulator: RequestErrorAccumulator,
        attempts: int,
    ) -> GenerationResult:
        details = accumulator.build_details() if accumulator.has_errors() else {}
        if selection.reason == SelectionReason.NO_CREDENTIALS:
            return GenerationResult.failure(
                ErrorCode.NO_CREDENTIALS_CONFIGURED,
                "No upstream credential is configured",
                attempts=attempts,
            )
        if selection.reason == SelectionReason.ALL_COOLDOWN:
            retry_after_ms = selection.retry_after_ms(self._clock())
            if accumulator.has_errors():
                lib_logger.warning(f"All credentials cooling: {accumulator.build_log_message()}")
            return GenerationResult.failure(
                ErrorCode.ALL_CREDENTIALS_COOLING,
                "Every credential is rate limited. Try again later.",
                retry_after_ms=retry_after_ms,
                attempts=attempts,
                details=details,
            )
        return GenerationResult.failure(
            ErrorCode.CREDENTIAL_REJECTED_BY_UPSTREAM,
            "Every configured credential was rejected by upstream. Replace them.",
            attempts=attempts,
            details=details,
        )

    async def _exhausted(self, accumulator: RequestErrorAccumulator, attempts: int) -> GenerationResult:
        lib_logger.warning(f"Attempt budget exhausted: {accumulator.build_log_message()}")
        details = accumulator.build_details()
        retry_after_ms = None
        if accumulator.all_rate_limited():
            async with self._pool_lock:
                now = self._clock()
                cooling = [s.cooldown_until for s in self._pool if s.has_secret and s.is_cooling(now)]
            if cooling:
                retry_after_ms = _ms_until(min(cooling), now)
        return GenerationResult.failure(
            ErrorCode.ALL_ATTEMPTS_EXHAUSTED,
            accumulator.build_hint() or "Attempt budget exhausted",
            retry_after_ms=retry_after_ms,
            attempts=attempts,
            details=details,
        )

    # --- Owner-facing ---

    async def set_secret(self, slot_id: int, secret: str) -> Dict[str, Any]:
        """
        Install or replace the secret of a slot and persist the pool.

        Raises:
            SlotNotFoundError: unknown slot id
            InvalidRequestError: empty secret
        """
        async with self._pool_lock:
            self._pool.set_secret(slot_id, secret)
            await self._persist()
            lib_logger.info(f"Credential slot {slot_id} updated")
            return self._slot_view(slot_id)

    async def clear_secret(self, slot_id: int) -> Dict[str, Any]:
        async with self._pool_lock:
            self._pool.clear_secret(slot_id)
            await self._persist()
            lib_logger.info(f"Credential slot {slot_id} cleared")
            return self._slot_view(slot_id)

    def _slot_view(self, slot_id: int) -> Dict[str, Any]:
        for entry in self._pool.snapshot(self._clock()):
            if entry["id"] == slot_id:
                return entry
        raise SlotNotFoundError(slot_id)

    async def snapshot(self):
        async with self._pool_lock:
            return self._pool.snapshot(self._clock())

    async def ping_credential(self, slot_id: int, capability: Optional[str] = None) -> GenerationResult:
        """
        Probe one slot with a minimal prompt, outside normal rotation.

        Cooldown and flag state are ignored for the probe itself, but its
        outcome is recorded like any other upstream call: success clears
        the last error, a rate limit starts a cooldown and a rejection flags
        the slot. The probe takes the slot's lease, so it never overlaps a
        generation call on the same credential.

        Raises:
            SlotNotFoundError: unknown slot id
        """
        self._ensure_initialized()
        capability = capability or self._config.capabilities[0]
        async with self._hold_slot(slot_id) as secret:
            if not secret:
                return GenerationResult.failure(
                    ErrorCode.NO_CREDENTIALS_CONFIGURED,
                    f"Credential slot {slot_id} has no secret",
                    slot_id=slot_id,
                )

            self._stats["upstream_calls"] += 1
            try:
                output = await asyncio.wait_for(
                    self._provider.ping(
                        secret, capability, self._http_pool.get_client(), self._upstream_timeout
                    ),
                    timeout=self._config.upstream_timeout,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classified = classify_error(e, now=self._clock())
                action = self._policy.action_for(classified)
                await self._apply_failure(slot_id, classified, action)
                return GenerationResult.failure(
                    self._ping_failure_code(classified),
                    str(classified.original_exception or classified.error_type),
                    retry_after_ms=(
                        self._cooldowns.cooldown_for(classified) * 1000
                        if action == FailureAction.COOLDOWN
                        else None
                    ),
                    slot_id=slot_id,
                    capability=capability,
                    attempts=1,
                )

            async with self._pool_lock:
                self._pool.mark_used(slot_id, self._clock())
                await self._persist()
        return GenerationResult(
            ok=True, output=output.text, slot_id=slot_id, capability=capability, attempts=1
        )

    @staticmethod
    def _ping_failure_code(classified: ClassifiedError) -> ErrorCode:
        error_type = classified.error_type
        if error_type in ("authentication", "forbidden"):
            return ErrorCode.CREDENTIAL_REJECTED_BY_UPSTREAM
        if error_type == "rate_limit":
            return ErrorCode.ALL_CREDENTIALS_COOLING
        if error_type == "not_found":
            return ErrorCode.CAPABILITY_UNAVAILABLE
        if error_type == "empty_response":
            return ErrorCode.UPSTREAM_EMPTY_RESULT
        if error_type == "bad_response":
            return ErrorCode.UPSTREAM_BAD_RESPONSE
        return ErrorCode.UPSTREAM_TRANSIENT_ERROR

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "in_flight": len(self._leased),
            "admission": self._limiter.get_stats(),
            "license": self._gate.get_stats(),
            "store": self._store.get_stats(),
            "http": self._http_pool.get_stats(),
        }
