# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Test doubles shared across the suite."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from rotator_gateway.providers.upstream_interface import UpstreamProvider
from rotator_gateway.types import UpstreamOutput

LICENSE = "LIC-TEST00001"
DEVICE = "device-a"
IDENTITY = (LICENSE, DEVICE)
START = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def http_error(
    status: int,
    body: str = "",
    headers: Optional[Dict[str, str]] = None,
    url: str = "https://upstream.test/v1beta/models/model-a:generateContent",
) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", url)
    response = httpx.Response(status, text=body, headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class ScriptedProvider(UpstreamProvider):
    """
    Upstream double driven by a script.

    script maps a secret, or a (secret, capability) pair, to a list of
    outcomes consumed in order; the last outcome repeats. An outcome is an
    UpstreamOutput to return, an exception to raise, or an async callable
    producing either.
    """

    name = "scripted"

    def __init__(self, script: Optional[Dict[Any, Sequence[Any]]] = None, default: Any = None):
        self.script = {key: list(outcomes) for key, outcomes in (script or {}).items()}
        self.default = default if default is not None else UpstreamOutput(text="ok")
        self.calls: List[Tuple[str, str]] = []

    def _next(self, secret: str, capability: str):
        queue = self.script.get((secret, capability)) or self.script.get(secret)
        if not queue:
            return self.default
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def generate(self, secret, capability, request, client, timeout=None):
        self.calls.append((secret, capability))
        outcome = self._next(secret, capability)
        if callable(outcome) and not isinstance(outcome, BaseException):
            outcome = await outcome(secret, capability, request)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def pool_document(*secrets: str, **slot_overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Pool document with the given secrets in slots 1..n."""
    slots = []
    for index, secret in enumerate(secrets, start=1):
        slot = {"id": index, "secretValue": secret}
        slot.update(slot_overrides.get(f"slot{index}", {}))
        slots.append(slot)
    return {"version": 1, "slots": slots}
