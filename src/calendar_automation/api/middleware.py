"""API error handling: map engine exceptions to the standard error envelope.

Status code mapping:
- ``RuleNotFoundError`` → 404 Not Found
- ``RuleAccessError`` → 403 Forbidden
- ``RuleDisabledError`` → 409 Conflict
- ``RateLimitError`` → 429 Too Many Requests (with ``Retry-After``)
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging
import math

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calendar_automation.api.models import ErrorDetail, ErrorResponse
from calendar_automation.core.errors import (
    RateLimitError,
    RuleAccessError,
    RuleDisabledError,
    RuleNotFoundError,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, **kwargs) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, **kwargs))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_rule_not_found(request: Request, exc: RuleNotFoundError) -> JSONResponse:
    return _error(404, "RULE_NOT_FOUND", str(exc))


async def _handle_rule_access(request: Request, exc: RuleAccessError) -> JSONResponse:
    logger.info("Rejected access to rule %s on %s", exc.rule_id, request.url.path)
    return _error(403, "FORBIDDEN", str(exc))


async def _handle_rule_disabled(request: Request, exc: RuleDisabledError) -> JSONResponse:
    return _error(409, "RULE_DISABLED", str(exc))


async def _handle_rate_limit(request: Request, exc: RateLimitError) -> JSONResponse:
    retry_after = max(1, math.ceil(exc.retry_after_seconds))
    response = _error(
        429,
        "RATE_LIMITED",
        str(exc),
        details={"retry_after_seconds": exc.retry_after_seconds},
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any unhandled exception into the standard 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RuleNotFoundError, _handle_rule_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(RuleAccessError, _handle_rule_access)  # type: ignore[arg-type]
    app.add_exception_handler(RuleDisabledError, _handle_rule_disabled)  # type: ignore[arg-type]
    app.add_exception_handler(RateLimitError, _handle_rate_limit)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
