# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from typing import Dict, Type

from .gemini_provider import GeminiProvider
from .litellm_provider import LiteLLMProvider
from .upstream_interface import UpstreamProvider

PROVIDER_PLUGINS: Dict[str, Type[UpstreamProvider]] = {
    "gemini": GeminiProvider,
    "litellm": LiteLLMProvider,
}

__all__ = [
    "PROVIDER_PLUGINS",
    "UpstreamProvider",
    "GeminiProvider",
    "LiteLLMProvider",
]
