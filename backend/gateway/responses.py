"""Shared response shaping for the sync gateway.

Every error leaves the gateway as ``{"error": message, **extra}``. Handlers
raise one of the helpers below instead of building bodies by hand.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

logger = logging.getLogger(__name__)

DEFAULT_METHODS = ("GET", "POST", "DELETE", "OPTIONS")
ALLOWED_HEADERS = "Content-Type, Authorization, If-None-Match"
PREFLIGHT_MAX_AGE = "86400"


class ApiError(StarletteHTTPException):
    """HTTP error carrying extra machine-readable fields for the envelope."""

    def __init__(
        self,
        status_code: int,
        message: str,
        extra: Optional[Mapping[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.extra = dict(extra or {})


def error_body(message: str, **extra: Any) -> Dict[str, Any]:
    return {"error": message, **extra}


def bad_request(message: str) -> ApiError:
    return ApiError(400, message)


def auth_required(message: str = "Authorization required", expired: bool = False) -> ApiError:
    return ApiError(401, message, {"expired": True} if expired else None)


def not_found(message: str) -> ApiError:
    return ApiError(404, message)


def method_not_allowed() -> ApiError:
    return ApiError(405, "Method not allowed")


def rate_limited(retry_after: int) -> ApiError:
    return ApiError(
        429,
        "Too many requests. Please try again later.",
        {"retryAfter": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


def server_error(message: str = "Internal server error") -> ApiError:
    return ApiError(500, message)


def service_unavailable(message: str = "Service temporarily unavailable") -> ApiError:
    return ApiError(503, message)


def set_standard_headers(response: Response, origin: str, methods: Iterable[str] = DEFAULT_METHODS) -> None:
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = ", ".join(methods)
    response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
    response.headers["Access-Control-Max-Age"] = PREFLIGHT_MAX_AGE
    response.headers["Access-Control-Expose-Headers"] = (
        "ETag, X-RateLimit-Limit, X-RateLimit-Remaining, X-RateLimit-Reset"
    )
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"


def set_rate_limit_headers(response: Response, limit: int, remaining: int, reset: int) -> None:
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    response.headers["X-RateLimit-Reset"] = str(reset)


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def generate_etag(data: Any) -> str:
    """Quoted MD5 digest of the canonical JSON form of ``data``."""
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return f'"{hashlib.md5(encoded.encode("utf-8")).hexdigest()}"'


def etag_matches(request: Request, etag: str) -> bool:
    header = request.headers.get("if-none-match")
    if not header:
        return False
    candidates = [item.strip() for item in header.split(",")]
    for candidate in candidates:
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    extra = getattr(exc, "extra", {}) or {}
    if exc.status_code == 405:
        message = "Method not allowed"
    elif exc.status_code == 404 and not isinstance(exc, ApiError):
        message = "Not found"
    else:
        message = str(exc.detail)
    return JSONResponse(error_body(message, **extra), status_code=exc.status_code, headers=exc.headers)


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected malformed request to %s: %s", request.url.path, exc.errors())
    return JSONResponse(error_body("Invalid request format"), status_code=400)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
