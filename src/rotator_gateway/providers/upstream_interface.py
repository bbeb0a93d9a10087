# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ..types import GenerationRequest, UpstreamOutput

PING_PROMPT = "Respond only with: OK"


class UpstreamProvider(ABC):
    """
    Interface for an upstream generative service.

    Implementations perform exactly one upstream call per invocation and
    report failure by raising: httpx.HTTPStatusError for non-2xx replies,
    httpx transport errors, provider SDK exceptions, EmptyResponseError for
    "200 but nothing generated" and UnparseableResponseError for bodies that
    cannot be decoded. The gateway classifies and retries; providers never do.
    """

    name: str = "upstream"

    @abstractmethod
    async def generate(
        self,
        secret: str,
        capability: str,
        request: GenerationRequest,
        client: httpx.AsyncClient,
        timeout: Optional[httpx.Timeout] = None,
    ) -> UpstreamOutput:
        """Issue one generation call with the given credential and model."""
        raise NotImplementedError

    async def ping(
        self,
        secret: str,
        capability: str,
        client: httpx.AsyncClient,
        timeout: Optional[httpx.Timeout] = None,
    ) -> UpstreamOutput:
        """Cheapest call that proves the credential works."""
        request = GenerationRequest(prompt=PING_PROMPT, max_output_tokens=8)
        return await self.generate(secret, capability, request, client, timeout)
