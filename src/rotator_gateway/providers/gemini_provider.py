# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..error_handler import EmptyResponseError, UnparseableResponseError
from ..types import GenerationRequest, RequestKind, UpstreamOutput
from .upstream_interface import UpstreamProvider

lib_logger = logging.getLogger("rotator_gateway")

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


class GeminiProvider(UpstreamProvider):
    """
    Provider for the Google Generative Language REST API.

    - text:  POST {base}/models/{model}:generateContent
    - image: POST {base}/models/{model}:predict  (Imagen)

    The key travels in the x-goog-api-key header, never in the URL, so it
    cannot leak through exception messages that quote the request URL.
    """

    name = "gemini"

    def __init__(self, api_base: str = DEFAULT_API_BASE):
        self._api_base = api_base.rstrip("/")

    def _url(self, capability: str, method: str) -> str:
        return f"{self._api_base}/models/{quote(capability, safe='')}:{method}"

    @staticmethod
    def _headers(secret: str) -> Dict[str, str]:
        return {"x-goog-api-key": secret, "content-type": "application/json"}

    async def generate(
        self,
        secret: str,
        capability: str,
        request: GenerationRequest,
        client: httpx.AsyncClient,
        timeout: Optional[httpx.Timeout] = None,
    ) -> UpstreamOutput:
        if request.kind == RequestKind.IMAGE:
            return await self._generate_image(secret, capability, request, client, timeout)
        return await self._generate_text(secret, capability, request, client, timeout)

    async def _post(
        self,
        url: str,
        secret: str,
        body: Dict[str, Any],
        client: httpx.AsyncClient,
        timeout: Optional[httpx.Timeout],
    ) -> httpx.Response:
        kwargs: Dict[str, Any] = {"headers": self._headers(secret), "json": body}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await client.post(url, **kwargs)
        response.raise_for_status()
        return response

    @staticmethod
    def _decode(response: httpx.Response, capability: str) -> Dict[str, Any]:
        text = response.text
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise UnparseableResponseError(capability, text)
        if not isinstance(data, dict):
            raise UnparseableResponseError(capability, text, "Upstream body is not a JSON object")
        return data

    async def _generate_text(
        self,
        secret: str,
        capability: str,
        request: GenerationRequest,
        client: httpx.AsyncClient,
        timeout: Optional[httpx.Timeout],
    ) -> UpstreamOutput:
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
        }
        system = (request.system or "").strip()
        if system:
            body["systemInstruction"] = {"role": "system", "parts": [{"text": system}]}

        generation_config: Dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.max_output_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_output_tokens
        generation_config.update(request.params.get("generationConfig", {}))
        if generation_config:
            body["generationConfig"] = generation_config

        response = await self._post(
            self._url(capability, "generateContent"), secret, body, client, timeout
        )
        data = self._decode(response, capability)

        candidates = data.get("candidates") or []
        parts = []
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
            parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(
            part.get("text", "") for part in parts if isinstance(part, dict) and part.get("text")
        )

        if not text.strip():
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            message = f"Empty result from {capability}"
            if block_reason:
                message += f" (blocked: {block_reason})"
            raise EmptyResponseError(capability, message)

        return UpstreamOutput(text=text, raw=data)

    async def _generate_image(
        self,
        secret: str,
        capability: str,
        request: GenerationRequest,
        client: httpx.AsyncClient,
        timeout: Optional[httpx.Timeout],
    ) -> UpstreamOutput:
        params = request.params
        sample_count = params.get("sampleCount", 1)
        if sample_count not in (1, 2, 3, 4):
            sample_count = 1
        body = {
            "instances": [{"prompt": request.prompt}],
            "parameters": {
                "sampleCount": sample_count,
                "aspectRatio": params.get("aspectRatio", "9:16"),
                "imageSize": params.get("imageSize", "1K"),
                "personGeneration": params.get("personGeneration", "allow_adult"),
            },
        }

        response = await self._post(self._url(capability, "predict"), secret, body, client, timeout)
        data = self._decode(response, capability)

        predictions = data.get("predictions")
        first = predictions[0] if isinstance(predictions, list) and predictions else None
        encoded = first.get("bytesBase64Encoded") if isinstance(first, dict) else None
        if not encoded:
            raise EmptyResponseError(capability, f"No image bytes from {capability}")

        try:
            image = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            raise UnparseableResponseError(capability, "", "Image bytes are not valid base64")

        return UpstreamOutput(
            data=image,
            mime_type=str(first.get("mimeType") or "image/png"),
            raw={"predictions": len(predictions)},
        )
