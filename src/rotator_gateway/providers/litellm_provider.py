# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

import httpx
import litellm

from ..error_handler import EmptyResponseError, UnparseableResponseError
from ..types import GenerationRequest, RequestKind, UpstreamOutput
from .upstream_interface import UpstreamProvider

lib_logger = logging.getLogger("rotator_gateway")


class LiteLLMProvider(UpstreamProvider):
    """
    Provider that routes calls through LiteLLM.

    Capabilities are LiteLLM model names; model_prefix is prepended when the
    capability does not already carry a provider prefix, so the default
    capability list ("gemini-2.5-flash", ...) works unchanged:

        LiteLLMProvider(model_prefix="gemini/")  ->  "gemini/gemini-2.5-flash"

    LiteLLM raises its own exception hierarchy (RateLimitError,
    AuthenticationError, NotFoundError, ...), which classify_error() maps
    onto the same error types as raw HTTP statuses. LiteLLM manages its own
    HTTP connections, so the shared httpx client is not used here.
    """

    name = "litellm"

    def __init__(self, model_prefix: str = "gemini/", extra_kwargs: Optional[Dict[str, Any]] = None):
        self._model_prefix = model_prefix
        self._extra_kwargs = dict(extra_kwargs or {})

    def _model(self, capability: str) -> str:
        if "/" in capability or not self._model_prefix:
            return capability
        return f"{self._model_prefix}{capability}"

    @staticmethod
    def _timeout_seconds(timeout: Optional[httpx.Timeout]) -> Optional[float]:
        if timeout is None:
            return None
        return timeout.read or timeout.connect

    async def generate(
        self,
        secret: str,
        capability: str,
        request: GenerationRequest,
        client: httpx.AsyncClient,
        timeout: Optional[httpx.Timeout] = None,
    ) -> UpstreamOutput:
        if request.kind == RequestKind.IMAGE:
            return await self._generate_image(secret, capability, request, timeout)

        messages: List[Dict[str, str]] = []
        if request.system and request.system.strip():
            messages.append({"role": "system", "content": request.system.strip()})
        messages.append({"role": "user", "content": request.prompt})

        kwargs: Dict[str, Any] = {**self._extra_kwargs}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_output_tokens is not None:
            kwargs["max_tokens"] = request.max_output_tokens
        timeout_seconds = self._timeout_seconds(timeout)
        if timeout_seconds is not None:
            kwargs["timeout"] = timeout_seconds

        response = await litellm.acompletion(
            model=self._model(capability),
            messages=messages,
            api_key=secret,
            num_retries=0,
            **kwargs,
        )

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, KeyError, TypeError):
            raise UnparseableResponseError(capability, str(response)[:400])

        text = content if isinstance(content, str) else ""
        if not text.strip():
            raise EmptyResponseError(capability)
        return UpstreamOutput(text=text, raw=response)

    async def _generate_image(
        self,
        secret: str,
        capability: str,
        request: GenerationRequest,
        timeout: Optional[httpx.Timeout],
    ) -> UpstreamOutput:
        kwargs: Dict[str, Any] = {**self._extra_kwargs}
        timeout_seconds = self._timeout_seconds(timeout)
        if timeout_seconds is not None:
            kwargs["timeout"] = timeout_seconds

        response = await litellm.aimage_generation(
            prompt=request.prompt,
            model=self._model(capability),
            api_key=secret,
            n=1,
            **kwargs,
        )

        try:
            encoded = response.data[0].b64_json
        except (AttributeError, IndexError, TypeError):
            raise UnparseableResponseError(capability, str(response)[:400])
        if not encoded:
            raise EmptyResponseError(capability, f"No image bytes from {capability}")
        try:
            image = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            raise UnparseableResponseError(capability, "", "Image bytes are not valid base64")
        return UpstreamOutput(data=image, mime_type="image/png", raw=response)
