# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/server.py
"""
HTTP surface of the gateway.

    POST   /api/generate                     caller request
    GET    /api/credentials                  slot snapshot (no secret values)
    PUT    /api/credentials/{slot_id}        install / replace a secret
    DELETE /api/credentials/{slot_id}        clear a slot
    POST   /api/credentials/{slot_id}/ping   probe one slot
    GET    /health

Credential routes require the X-Admin-Token header when an admin token is
configured.
"""

import logging
import math
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import GatewayConfig, _env_int
from .error_handler import ErrorCode, InvalidRequestError, SlotNotFoundError
from .gateway import ResilientGateway
from .types import CallerIdentity, GenerationRequest, GenerationResult

lib_logger = logging.getLogger("rotator_gateway")


STATUS_BY_CODE: Dict[ErrorCode, int] = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.ADMISSION_THROTTLED: 429,
    ErrorCode.DAILY_QUOTA_EXCEEDED: 429,
    ErrorCode.LICENSE_INVALID: 401,
    ErrorCode.DEVICE_MISMATCH: 401,
    ErrorCode.LICENSE_API_UNAVAILABLE: 503,
    ErrorCode.LICENSE_API_BAD_RESPONSE: 503,
    ErrorCode.NO_CREDENTIALS_CONFIGURED: 409,
    ErrorCode.CREDENTIAL_REJECTED_BY_UPSTREAM: 409,
    ErrorCode.ALL_CREDENTIALS_COOLING: 429,
    ErrorCode.CAPABILITY_UNAVAILABLE: 502,
    ErrorCode.UPSTREAM_TRANSIENT_ERROR: 502,
    ErrorCode.UPSTREAM_EMPTY_RESULT: 502,
    ErrorCode.UPSTREAM_BAD_RESPONSE: 502,
    ErrorCode.ALL_ATTEMPTS_EXHAUSTED: 502,
    ErrorCode.SLOT_NOT_FOUND: 404,
}


class GenerateBody(BaseModel):
    license: str = Field(..., min_length=1)
    device: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    system: Optional[str] = None
    capability: Optional[str] = None
    kind: str = "text"
    expect_json: bool = False
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_output_tokens: Optional[int] = Field(default=None, gt=0)


class SecretBody(BaseModel):
    secret: str = Field(..., min_length=1)


def status_for(result: GenerationResult) -> int:
    if result.ok:
        return 200
    if result.code == ErrorCode.ALL_ATTEMPTS_EXHAUSTED and result.details.get("all_rate_limited"):
        return 429
    return STATUS_BY_CODE.get(result.code, 500)


def result_response(result: GenerationResult) -> JSONResponse:
    headers = {}
    if not result.ok and result.retry_after_ms:
        headers["Retry-After"] = str(max(1, math.ceil(result.retry_after_ms / 1000)))
    return JSONResponse(result.to_dict(), status_code=status_for(result), headers=headers)


def _error_response(code: ErrorCode, message: str) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "error": code.value, "message": message},
        status_code=STATUS_BY_CODE[code],
    )


def create_app(gateway: ResilientGateway, admin_token: Optional[str] = None) -> FastAPI:
    """Build the FastAPI application around an (uninitialized) gateway."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await gateway.init()
        try:
            yield
        finally:
            await gateway.shutdown()

    app = FastAPI(
        title="Rotator Gateway",
        description="Licensed access to a rotating pool of upstream credentials",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        return _error_response(
            ErrorCode.INVALID_REQUEST, f"{location}: {first.get('msg', 'invalid request')}"
        )

    @app.exception_handler(InvalidRequestError)
    async def _invalid_request(request: Request, exc: InvalidRequestError):
        return _error_response(ErrorCode.INVALID_REQUEST, str(exc))

    @app.exception_handler(SlotNotFoundError)
    async def _slot_not_found(request: Request, exc: SlotNotFoundError):
        return _error_response(ErrorCode.SLOT_NOT_FOUND, f"No credential slot {exc.slot_id}")

    async def require_admin(x_admin_token: Optional[str] = Header(default=None)):
        if admin_token and x_admin_token != admin_token:
            raise HTTPException(status_code=403, detail="admin token required")

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "stats": gateway.get_stats()}

    @app.post("/api/generate")
    async def generate(body: GenerateBody):
        identity = CallerIdentity(body.license, body.device)
        request = GenerationRequest(
            prompt=body.prompt,
            system=body.system,
            capability=body.capability,
            kind=body.kind,
            expect_json=body.expect_json,
            temperature=body.temperature,
            max_output_tokens=body.max_output_tokens,
        )
        result = await gateway.generate(identity, request)
        return result_response(result)

    @app.get("/api/credentials", dependencies=[Depends(require_admin)])
    async def list_credentials() -> Dict[str, Any]:
        return {"slots": await gateway.snapshot()}

    @app.put("/api/credentials/{slot_id}", dependencies=[Depends(require_admin)])
    async def put_credential(slot_id: int, body: SecretBody) -> Dict[str, Any]:
        return {"ok": True, "slot": await gateway.set_secret(slot_id, body.secret)}

    @app.delete("/api/credentials/{slot_id}", dependencies=[Depends(require_admin)])
    async def delete_credential(slot_id: int) -> Dict[str, Any]:
        return {"ok": True, "slot": await gateway.clear_secret(slot_id)}

    @app.post("/api/credentials/{slot_id}/ping", dependencies=[Depends(require_admin)])
    async def ping_credential(slot_id: int):
        return result_response(await gateway.ping_credential(slot_id))

    return app


def main() -> None:
    logging.basicConfig(
        level=os.getenv("GATEWAY_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = GatewayConfig.from_env()
    app = create_app(ResilientGateway(config), admin_token=os.getenv("GATEWAY_ADMIN_TOKEN"))
    uvicorn.run(
        app,
        host=os.getenv("GATEWAY_HOST", "127.0.0.1"),
        port=_env_int("GATEWAY_PORT", 8000),
        log_level=os.getenv("GATEWAY_LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
