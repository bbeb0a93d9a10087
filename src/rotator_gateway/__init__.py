# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import TYPE_CHECKING

from .config import GatewayConfig
from .error_handler import ErrorCode, InvalidRequestError, SlotNotFoundError
from .gateway import ResilientGateway
from .license_gate import InMemoryLicenseAuthority, LicenseAuthorityClient, LicenseGate
from .pool_store import InMemoryPoolStore, JsonFilePoolStore
from .types import CallerIdentity, GenerationRequest, GenerationResult, RequestKind

logging.getLogger("rotator_gateway").addHandler(logging.NullHandler())

# The HTTP layer pulls in FastAPI and uvicorn; it is lazy-loaded via __getattr__
if TYPE_CHECKING:
    from .providers import PROVIDER_PLUGINS
    from .server import create_app

__all__ = [
    "ResilientGateway",
    "GatewayConfig",
    "ErrorCode",
    "InvalidRequestError",
    "SlotNotFoundError",
    "CallerIdentity",
    "GenerationRequest",
    "GenerationResult",
    "RequestKind",
    "LicenseGate",
    "LicenseAuthorityClient",
    "InMemoryLicenseAuthority",
    "InMemoryPoolStore",
    "JsonFilePoolStore",
    "PROVIDER_PLUGINS",
    "create_app",
]


def __getattr__(name):
    """Lazy-load PROVIDER_PLUGINS and create_app to keep library imports light."""
    if name == "PROVIDER_PLUGINS":
        from .providers import PROVIDER_PLUGINS

        return PROVIDER_PLUGINS
    if name == "create_app":
        from .server import create_app

        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
