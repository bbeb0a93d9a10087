# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Shared fixtures: a controllable clock, a scripted upstream provider and a
gateway factory wired to in-memory collaborators.
"""

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from helpers import LICENSE, FakeClock, ScriptedProvider
from rotator_gateway.config import GatewayConfig
from rotator_gateway.gateway import ResilientGateway
from rotator_gateway.http_client_pool import HttpClientPool
from rotator_gateway.license_gate import InMemoryLicenseAuthority
from rotator_gateway.pool_store import InMemoryPoolStore
from rotator_gateway.providers.upstream_interface import UpstreamProvider


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def authority():
    authority = InMemoryLicenseAuthority()
    authority.add(LICENSE)
    return authority


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest_asyncio.fixture
async def gateway_factory(clock, authority, provider):
    """
    Build initialized gateways; all are shut down after the test.

    Defaults: no admission interval, two fallback capabilities, sleep mocked.
    """
    created: List[ResilientGateway] = []

    async def factory(
        document: Optional[Dict[str, Any]] = None,
        store=None,
        upstream: Optional[UpstreamProvider] = None,
        **overrides,
    ) -> ResilientGateway:
        settings = {
            "min_interval_ms": 0,
            "capabilities": ["model-a", "model-b"],
        }
        settings.update(overrides)
        gateway = ResilientGateway(
            GatewayConfig(**settings),
            store=store if store is not None else InMemoryPoolStore(document),
            provider=upstream or provider,
            license_authority=authority,
            http_pool=HttpClientPool(
                transport=httpx.MockTransport(lambda request: httpx.Response(500))
            ),
            clock=clock,
            sleep=AsyncMock(),
        )
        await gateway.init()
        created.append(gateway)
        return gateway

    yield factory

    for gateway in created:
        await gateway.shutdown()
