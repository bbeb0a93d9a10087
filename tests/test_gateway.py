# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Tests for ResilientGateway: admission, license check and the rotation loop.
"""

import asyncio

import httpx
import pytest

from helpers import DEVICE, IDENTITY, LICENSE, ScriptedProvider, http_error, pool_document
from rotator_gateway.config import GatewayConfig
from rotator_gateway.error_handler import (
    EmptyResponseError,
    ErrorCode,
    SlotNotFoundError,
    UnparseableResponseError,
)
from rotator_gateway.gateway import ResilientGateway
from rotator_gateway.license_gate import LicenseAuthorityClient
from rotator_gateway.pool_store import JsonFilePoolStore
from rotator_gateway.types import CallerIdentity, GenerationRequest, UpstreamOutput

KEY_A = "AIzaSy-alpha-000000000001"
KEY_B = "AIzaSy-bravo-000000000002"
KEY_C = "AIzaSy-charlie-0000000003"


def prompt(**kwargs) -> GenerationRequest:
    return GenerationRequest(prompt="Write a short haiku", **kwargs)


def states(snapshot):
    return {entry["id"]: entry["state"] for entry in snapshot}


class TestSuccessfulGeneration:
    """Happy-path behaviour."""

    @pytest.mark.asyncio
    async def test_returns_output_and_marks_slot_used(self, gateway_factory, provider, clock):
        """A success returns the output and stamps lastUsedAt on the slot."""
        provider.default = UpstreamOutput(text="An old silent pond")
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.ok is True
        assert result.output == "An old silent pond"
        assert result.slot_id == 1
        assert result.capability == "model-a"
        assert result.attempts == 1
        snapshot = await gateway.snapshot()
        assert snapshot[0]["lastUsedAt"] == clock.now
        assert snapshot[0]["state"] == "ready"

    @pytest.mark.asyncio
    async def test_rotates_least_recently_used(self, gateway_factory, provider, clock):
        """Consecutive successes walk the pool in LRU order."""
        gateway = await gateway_factory(pool_document(KEY_A, KEY_B))

        used = []
        for _ in range(3):
            result = await gateway.generate(IDENTITY, prompt())
            used.append(result.slot_id)
            clock.advance(1)

        assert used == [1, 2, 1]

    @pytest.mark.asyncio
    async def test_identity_object_and_tuple_are_equivalent(self, gateway_factory):
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(CallerIdentity(LICENSE, DEVICE), prompt())

        assert result.ok is True

    @pytest.mark.asyncio
    async def test_expect_json_extracts_first_object(self, gateway_factory, provider):
        """Structured output is pulled out of fenced model text."""
        provider.default = UpstreamOutput(text='```json\n{"title": "Pond", "lines": 3}\n```')
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt(expect_json=True))

        assert result.ok is True
        assert result.json == {"title": "Pond", "lines": 3}

    @pytest.mark.asyncio
    async def test_expect_json_without_json_is_not_a_failure(self, gateway_factory, provider):
        provider.default = UpstreamOutput(text="no structure here")
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt(expect_json=True))

        assert result.ok is True
        assert result.json is None

    @pytest.mark.asyncio
    async def test_image_request_uses_image_capabilities(self, gateway_factory, provider):
        provider.default = UpstreamOutput(data=b"\x89PNG", mime_type="image/png")
        gateway = await gateway_factory(
            pool_document(KEY_A), image_capabilities=["imagen-test"]
        )

        result = await gateway.generate(IDENTITY, prompt(kind="image"))

        assert result.ok is True
        assert result.data == b"\x89PNG"
        assert provider.calls == [(KEY_A, "imagen-test")]
        assert result.to_dict()["image"]["dataUrl"].startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_image_request_without_image_capabilities(self, gateway_factory, provider):
        gateway = await gateway_factory(pool_document(KEY_A), image_capabilities=[])

        result = await gateway.generate(IDENTITY, prompt(kind="image"))

        assert result.code == ErrorCode.CAPABILITY_UNAVAILABLE
        assert provider.calls == []


class TestFailFastPaths:
    """Admission and license failures never reach the upstream."""

    @pytest.mark.asyncio
    async def test_admission_throttle(self, gateway_factory, provider, clock):
        gateway = await gateway_factory(pool_document(KEY_A), min_interval_ms=2000)

        first = await gateway.generate(IDENTITY, prompt())
        clock.advance(0.5)
        second = await gateway.generate(IDENTITY, prompt())

        assert first.ok is True
        assert second.ok is False
        assert second.code == ErrorCode.ADMISSION_THROTTLED
        assert second.retry_after_ms == 1500
        assert len(provider.calls) == 1

        clock.advance(1.5)
        third = await gateway.generate(IDENTITY, prompt())
        assert third.ok is True

    @pytest.mark.asyncio
    async def test_unknown_license(self, gateway_factory, provider):
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(("LIC-UNKNOWN99", DEVICE), prompt())

        assert result.code == ErrorCode.LICENSE_INVALID
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_device_mismatch(self, gateway_factory, provider):
        gateway = await gateway_factory(pool_document(KEY_A))

        await gateway.generate(IDENTITY, prompt())
        result = await gateway.generate((LICENSE, "device-b"), prompt())

        assert result.code == ErrorCode.DEVICE_MISMATCH
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_malformed_identity(self, gateway_factory, provider):
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(("", DEVICE), prompt())

        assert result.code == ErrorCode.INVALID_REQUEST
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_no_credentials_configured(self, gateway_factory, provider):
        gateway = await gateway_factory()

        result = await gateway.generate(IDENTITY, prompt())

        assert result.code == ErrorCode.NO_CREDENTIALS_CONFIGURED
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_generate_before_init_raises(self, gateway_factory):
        gateway = await gateway_factory(pool_document(KEY_A))
        await gateway.shutdown()

        with pytest.raises(RuntimeError):
            await gateway.generate(IDENTITY, prompt())


class TestRateLimitRotation:
    """429 handling: cooldown placement and aggregate cooling failure."""

    @pytest.mark.asyncio
    async def test_both_credentials_rate_limited(self, gateway_factory, provider, clock):
        """After 429 on both credentials, requests report the earliest cooldown."""
        provider.script = {
            KEY_A: [http_error(429, headers={"Retry-After": "90"})],
            KEY_B: [http_error(429)],
        }
        gateway = await gateway_factory(pool_document(KEY_A, KEY_B))

        first = await gateway.generate(IDENTITY, prompt())

        assert first.code == ErrorCode.ALL_CREDENTIALS_COOLING
        assert len(provider.calls) == 2
        assert states(await gateway.snapshot())[1] == "cooling"
        assert states(await gateway.snapshot())[2] == "cooling"

        clock.advance(10)
        third = await gateway.generate(IDENTITY, prompt())

        assert third.code == ErrorCode.ALL_CREDENTIALS_COOLING
        # A cools for 90s (Retry-After), B for the fixed 60s
        assert third.retry_after_ms == 50_000
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_ready_slot_rate_limited_while_other_cools(
        self, gateway_factory, provider, clock
    ):
        """A ready and B cooling; A returns 429; the call ends cooling, not looping."""
        document = pool_document(KEY_A, KEY_B, slot2={"cooldownUntil": clock.now + 60})
        provider.script = {KEY_A: [http_error(429)]}
        gateway = await gateway_factory(document)

        result = await gateway.generate(IDENTITY, prompt())

        assert result.ok is False
        assert result.code == ErrorCode.ALL_CREDENTIALS_COOLING
        assert result.retry_after_ms == 60_000
        assert provider.calls == [(KEY_A, "model-a")]
        snapshot = await gateway.snapshot()
        assert snapshot[0]["cooldownUntil"] == clock.now + 60

    @pytest.mark.asyncio
    async def test_rate_limited_slot_is_skipped_next_call(self, gateway_factory, provider):
        provider.script = {KEY_A: [http_error(429), UpstreamOutput(text="late")]}
        gateway = await gateway_factory(pool_document(KEY_A, KEY_B))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.ok is True
        assert result.slot_id == 2
        assert [secret for secret, _ in provider.calls] == [KEY_A, KEY_B]

    @pytest.mark.asyncio
    async def test_cooldown_expires_lazily(self, gateway_factory, provider, clock):
        provider.script = {KEY_A: [http_error(429), UpstreamOutput(text="back")]}
        gateway = await gateway_factory(pool_document(KEY_A))

        assert (await gateway.generate(IDENTITY, prompt())).code == (
            ErrorCode.ALL_CREDENTIALS_COOLING
        )
        clock.advance(60)
        result = await gateway.generate(IDENTITY, prompt())

        assert result.ok is True
        assert result.output == "back"

    @pytest.mark.asyncio
    async def test_gemini_quota_body_on_400_counts_as_rate_limit(
        self, gateway_factory, provider
    ):
        body = '{"error": {"code": 400, "status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded"}}'
        provider.script = {KEY_A: [http_error(400, body=body)]}
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.code == ErrorCode.ALL_CREDENTIALS_COOLING


class TestCredentialRejection:
    """401/403 flag the slot for the rest of its life."""

    @pytest.mark.asyncio
    async def test_single_credential_rejected(self, gateway_factory, provider):
        provider.script = {KEY_A: [http_error(401)]}
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.code == ErrorCode.CREDENTIAL_REJECTED_BY_UPSTREAM
        assert len(provider.calls) == 1
        snapshot = await gateway.snapshot()
        assert snapshot[0]["state"] == "flagged"
        assert snapshot[0]["lastError"] == "authentication (401)"
        assert result.details["credential_issues"][0]["credential"] == "...000001"

    @pytest.mark.asyncio
    async def test_flagged_slot_not_retried_on_later_calls(self, gateway_factory, provider):
        provider.script = {KEY_A: [http_error(403)]}
        gateway = await gateway_factory(pool_document(KEY_A))

        await gateway.generate(IDENTITY, prompt())
        result = await gateway.generate(IDENTITY, prompt())

        assert result.code == ErrorCode.CREDENTIAL_REJECTED_BY_UPSTREAM
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_rejected_slot_falls_through_to_next(self, gateway_factory, provider):
        body = '{"error": {"message": "API key not valid. Please pass a valid API key."}}'
        provider.script = {KEY_A: [http_error(400, body=body)]}
        gateway = await gateway_factory(pool_document(KEY_A, KEY_B))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.ok is True
        assert result.slot_id == 2
        assert states(await gateway.snapshot())[1] == "flagged"

    @pytest.mark.asyncio
    async def test_replacing_secret_unflags(self, gateway_factory, provider):
        provider.script = {KEY_A: [http_error(401)]}
        gateway = await gateway_factory(pool_document(KEY_A))
        await gateway.generate(IDENTITY, prompt())

        view = await gateway.set_secret(1, KEY_C)
        result = await gateway.generate(IDENTITY, prompt())

        assert view["state"] == "ready"
        assert view["lastError"] == ""
        assert result.ok is True
        assert provider.calls[-1] == (KEY_C, "model-a")


class TestSoftAndTransientFailures:
    """Empty results, unparseable bodies, 5xx and network errors."""

    @pytest.mark.asyncio
    async def test_empty_result_is_terminal(self, gateway_factory, provider):
        provider.script = {KEY_A: [EmptyResponseError("model-a")]}
        gateway = await gateway_factory(pool_document(KEY_A, KEY_B))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.code == ErrorCode.UPSTREAM_EMPTY_RESULT
        assert len(provider.calls) == 1
        assert states(await gateway.snapshot())[1] == "ready"

    @pytest.mark.asyncio
    async def test_empty_result_retried_when_enabled(self, gateway_factory, provider):
        provider.script = {
            KEY_A: [EmptyResponseError("model-a"), UpstreamOutput(text="second try")]
        }
        gateway = await gateway_factory(pool_document(KEY_A), retry_on_empty=True)

        result = await gateway.generate(IDENTITY, prompt())

        assert result.ok is True
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_unparseable_body_has_its_own_code(self, gateway_factory, provider):
        provider.script = {KEY_A: [UnparseableResponseError("model-a", "<html>")]}
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.code == ErrorCode.UPSTREAM_BAD_RESPONSE

    @pytest.mark.asyncio
    async def test_server_error_backs_off_and_retries(self, gateway_factory, provider):
        provider.script = {KEY_A: [http_error(503), UpstreamOutput(text="recovered")]}
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.ok is True
        assert result.attempts == 2
        gateway._sleep.assert_awaited_once()
        delay = gateway._sleep.await_args.args[0]
        assert 0 < delay <= gateway.config.max_backoff
        assert states(await gateway.snapshot())[1] == "ready"

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, gateway_factory, provider):
        provider.script = {
            KEY_A: [httpx.ConnectError("connection refused"), UpstreamOutput(text="ok")]
        }
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.ok is True
        assert gateway.get_stats()["http"]["connection_errors"] == 1


class TestCapabilityFallback:
    """404 walks the capability list with the same credential."""

    @pytest.mark.asyncio
    async def test_falls_back_to_next_capability(self, gateway_factory, provider):
        provider.script = {(KEY_A, "model-a"): [http_error(404)]}
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.ok is True
        assert result.capability == "model-b"
        assert provider.calls == [(KEY_A, "model-a"), (KEY_A, "model-b")]
        assert states(await gateway.snapshot())[1] == "ready"

    @pytest.mark.asyncio
    async def test_explicit_capability_tried_first(self, gateway_factory, provider):
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt(capability="model-x"))

        assert result.capability == "model-x"

    @pytest.mark.asyncio
    async def test_all_capabilities_missing(self, gateway_factory, provider):
        provider.script = {KEY_A: [http_error(404)]}
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.generate(IDENTITY, prompt())

        assert result.code == ErrorCode.CAPABILITY_UNAVAILABLE
        assert len(provider.calls) == 2


class TestAttemptBudget:
    """Aggregate failure once max_attempts is spent."""

    @pytest.mark.asyncio
    async def test_exhausted_by_rate_limits(self, gateway_factory, provider, clock):
        provider.default = http_error(429)
        gateway = await gateway_factory(
            pool_document(KEY_A, KEY_B, KEY_C), max_attempts=2
        )

        result = await gateway.generate(IDENTITY, prompt())

        assert result.code == ErrorCode.ALL_ATTEMPTS_EXHAUSTED
        assert result.details["all_rate_limited"] is True
        assert result.retry_after_ms == 60_000
        assert "Try again shortly" in result.message
        assert len(provider.calls) == 2
        assert states(await gateway.snapshot())[3] == "ready"

    @pytest.mark.asyncio
    async def test_exhausted_by_mixed_failures(self, gateway_factory, provider):
        provider.default = http_error(500)
        gateway = await gateway_factory(pool_document(KEY_A), max_attempts=3)

        result = await gateway.generate(IDENTITY, prompt())

        assert result.code == ErrorCode.ALL_ATTEMPTS_EXHAUSTED
        assert result.details["all_rate_limited"] is False
        assert "Check your credentials" in result.message
        assert result.retry_after_ms is None
        assert len(provider.calls) == 3
        # No sleep after the final attempt
        assert gateway._sleep.await_count == 2


class TestConcurrency:
    """Leases keep concurrent requests off the same credential."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_get_distinct_credentials(self, gateway_factory):
        release = asyncio.Event()
        in_flight = []

        async def slow(secret, capability, request):
            in_flight.append(secret)
            await release.wait()
            return UpstreamOutput(text=secret)

        provider = ScriptedProvider(default=slow)
        gateway = await gateway_factory(pool_document(KEY_A, KEY_B), upstream=provider)

        tasks = [asyncio.create_task(gateway.generate(IDENTITY, prompt())) for _ in range(2)]
        while len(in_flight) < 2:
            await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert sorted(in_flight) == sorted([KEY_A, KEY_B])
        assert {r.slot_id for r in results} == {1, 2}

    @pytest.mark.asyncio
    async def test_single_credential_serializes_callers(self, gateway_factory):
        active = 0
        peak = 0

        async def tracked(secret, capability, request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            active -= 1
            return UpstreamOutput(text="ok")

        provider = ScriptedProvider(default=tracked)
        gateway = await gateway_factory(pool_document(KEY_A), upstream=provider)

        results = await asyncio.gather(*(gateway.generate(IDENTITY, prompt()) for _ in range(5)))

        assert all(r.ok for r in results)
        assert peak == 1

    @pytest.mark.asyncio
    async def test_cancellation_releases_lease_and_keeps_cooldowns(
        self, gateway_factory, clock
    ):
        started = asyncio.Event()

        async def hang(secret, capability, request):
            started.set()
            await asyncio.Event().wait()

        provider = ScriptedProvider(script={KEY_A: [http_error(429)], KEY_B: [hang]})
        gateway = await gateway_factory(pool_document(KEY_A, KEY_B), upstream=provider)

        task = asyncio.create_task(gateway.generate(IDENTITY, prompt()))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert gateway.get_stats()["in_flight"] == 0
        snapshot = await gateway.snapshot()
        assert snapshot[0]["state"] == "cooling"
        assert snapshot[1]["state"] == "ready"


class TestCredentialManagement:
    """Owner-facing operations."""

    @pytest.mark.asyncio
    async def test_snapshot_never_exposes_secrets(self, gateway_factory):
        gateway = await gateway_factory(pool_document(KEY_A))

        snapshot = await gateway.snapshot()

        assert KEY_A not in repr(snapshot)
        assert snapshot[0]["credential"] == "...000001"
        assert snapshot[1]["state"] == "empty"
        assert len(snapshot) == 5

    @pytest.mark.asyncio
    async def test_clear_secret(self, gateway_factory, provider):
        gateway = await gateway_factory(pool_document(KEY_A))

        view = await gateway.clear_secret(1)
        result = await gateway.generate(IDENTITY, prompt())

        assert view["state"] == "empty"
        assert result.code == ErrorCode.NO_CREDENTIALS_CONFIGURED

    @pytest.mark.asyncio
    async def test_unknown_slot(self, gateway_factory):
        gateway = await gateway_factory()

        with pytest.raises(SlotNotFoundError):
            await gateway.set_secret(9, KEY_A)

    @pytest.mark.asyncio
    async def test_ping_success(self, gateway_factory, provider, clock):
        provider.default = UpstreamOutput(text="OK")
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.ping_credential(1)

        assert result.ok is True
        assert result.output == "OK"
        assert (await gateway.snapshot())[0]["lastUsedAt"] == clock.now

    @pytest.mark.asyncio
    async def test_ping_rejected_flags_slot(self, gateway_factory, provider):
        provider.script = {KEY_A: [http_error(401)]}
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.ping_credential(1)

        assert result.code == ErrorCode.CREDENTIAL_REJECTED_BY_UPSTREAM
        assert states(await gateway.snapshot())[1] == "flagged"

    @pytest.mark.asyncio
    async def test_ping_rate_limited_cools_slot(self, gateway_factory, provider):
        provider.script = {KEY_A: [http_error(429)]}
        gateway = await gateway_factory(pool_document(KEY_A))

        result = await gateway.ping_credential(1)

        assert result.code == ErrorCode.ALL_CREDENTIALS_COOLING
        assert result.retry_after_ms == 60_000
        assert states(await gateway.snapshot())[1] == "cooling"

    @pytest.mark.asyncio
    async def test_ping_empty_slot(self, gateway_factory, provider):
        gateway = await gateway_factory()

        result = await gateway.ping_credential(2)

        assert result.code == ErrorCode.NO_CREDENTIALS_CONFIGURED
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_ping_waits_for_in_flight_generation(self, gateway_factory):
        started = asyncio.Event()
        release = asyncio.Event()
        order = []

        async def held(secret, capability, request):
            if request.prompt != prompt().prompt:
                order.append("ping")
                return UpstreamOutput(text="OK")
            started.set()
            await release.wait()
            order.append("generate")
            return UpstreamOutput(text="done")

        provider = ScriptedProvider(default=held)
        gateway = await gateway_factory(pool_document(KEY_A), upstream=provider)

        generation = asyncio.create_task(gateway.generate(IDENTITY, prompt()))
        await started.wait()
        ping = asyncio.create_task(gateway.ping_credential(1))
        for _ in range(5):
            await asyncio.sleep(0)

        assert not ping.done()
        assert len(provider.calls) == 1
        release.set()

        assert (await generation).ok is True
        assert (await ping).ok is True
        assert order == ["generate", "ping"]
        assert gateway.get_stats()["in_flight"] == 0


class TestPersistence:
    """Pool state survives a restart through the JSON store."""

    @pytest.mark.asyncio
    async def test_cooldown_survives_restart(self, gateway_factory, provider, clock, tmp_path):
        path = tmp_path / "pool.json"
        provider.script = {KEY_A: [http_error(429)]}

        first = await gateway_factory(store=JsonFilePoolStore(path))
        await first.set_secret(1, KEY_A)
        await first.generate(IDENTITY, prompt())
        await first.shutdown()

        second = await gateway_factory(store=JsonFilePoolStore(path))
        snapshot = await second.snapshot()

        assert snapshot[0]["state"] == "cooling"
        assert snapshot[0]["cooldownUntil"] == clock.now + 60


class TestConstruction:
    def test_unknown_provider(self, authority):
        with pytest.raises(ValueError):
            ResilientGateway(GatewayConfig(provider="nope"), license_authority=authority)

    def test_license_authority_required(self):
        with pytest.raises(ValueError):
            ResilientGateway(GatewayConfig())

    def test_http_authority_from_config(self):
        gateway = ResilientGateway(GatewayConfig(license_api_url="https://licenses.test/check"))

        assert isinstance(gateway.license_gate.authority, LicenseAuthorityClient)
