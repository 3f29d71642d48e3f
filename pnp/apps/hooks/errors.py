from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pnp.apps.hooks.response import error_response
from pnp.core.errors import (
    AuthRejectedError,
    BusTransportError,
    EnvelopeError,
    FatalConfigError,
    InputMalformedError,
    PnPError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _status_for(exc: PnPError) -> tuple[int, str]:
    # Map the pipeline error taxonomy onto HTTP outcomes for hook callers.
    if isinstance(exc, InputMalformedError):
        return 400, "INPUT_MALFORMED"
    if isinstance(exc, AuthRejectedError):
        return 401, "AUTH_UNAUTHORIZED"
    if isinstance(exc, EnvelopeError):
        return 500, "ENCRYPTION_FAILED"
    if isinstance(exc, BusTransportError):
        return 500, "PUBLISH_FAILED"
    if isinstance(exc, FatalConfigError):
        return 500, "MISCONFIGURED"
    return 500, "INTERNAL_ERROR"


async def pnp_exception_handler(request: Request, exc: PnPError) -> JSONResponse:
    status_code, code = _status_for(exc)
    if status_code >= 500:
        logger.error("hook request %s failed: %s", request.url.path, exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _DEFAULT_ERROR_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    payload = error_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled error on %s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
