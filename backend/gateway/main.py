from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.responses import Response

from skitimer_core.validation import (
    MAX_BIB_LENGTH,
    MAX_DEVICE_ID_LENGTH,
    MAX_DEVICE_NAME_LENGTH,
    is_valid_entry,
    is_valid_race_id,
    normalize_race_id,
    now_ms,
    parse_timestamp,
    sanitize_string,
)

from .auth import generate_token, hash_pin, needs_rehash, validate_authorization, verify_pin
from .config import GatewayConfig
from .races import DEFAULT_DELETE_MESSAGE, RaceRepository
from .ratelimit import CounterStore, MemoryCounterStore, RateLimiter
from .responses import (
    ApiError,
    auth_required,
    bad_request,
    error_body,
    etag_matches,
    generate_etag,
    get_client_ip,
    install_error_handlers,
    method_not_allowed,
    not_found,
    rate_limited,
    server_error,
    service_unavailable,
    set_rate_limit_headers,
    set_standard_headers,
)
from .schemas import (
    ChangePinRequest,
    PinStatusResponse,
    RaceDeleteResponse,
    RaceListResponse,
    RaceSummaryModel,
    ResetPinRequest,
    SuccessResponse,
    SyncDeleteBody,
    SyncPostBody,
    TokenRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/v1/sync"
TOKEN_PATH = "/api/v1/auth/token"
ADMIN_RACES_PATH = "/api/v1/admin/races"
ADMIN_PIN_PATH = "/api/v1/admin/pin"
RESET_PIN_PATH = "/api/v1/admin/reset-pin"

DEFAULT_PAGE_LIMIT = 500
MAX_PAGE_LIMIT = 2000

INVALID_RACE_ID_MESSAGE = (
    "Invalid raceId format. Use alphanumeric characters, hyphens, and underscores only (max 50 chars)."
)

router = APIRouter()


def _config(request: Request) -> GatewayConfig:
    return request.app.state.config


def _repository(request: Request) -> RaceRepository:
    return request.app.state.repository


def _require_race_id(race_id: Optional[str]) -> str:
    if not race_id:
        raise bad_request("raceId is required")
    if not is_valid_race_id(race_id):
        raise bad_request(INVALID_RACE_ID_MESSAGE)
    return normalize_race_id(race_id)


def _enforce_rate_limit(request: Request, limiter: RateLimiter) -> None:
    result = limiter.check(get_client_ip(request), request.method)
    request.state.rate_limit = result
    if result.allowed:
        return
    if result.error:
        raise service_unavailable("Rate limiting unavailable")
    raise rate_limited(result.retry_after(time.time()))


def _require_auth(request: Request, authorization: Optional[str]) -> Dict[str, Any]:
    secret = _config(request).jwt_secret
    if not secret:
        logger.error("Rejecting %s %s: JWT secret is not configured", request.method, request.url.path)
        raise server_error("Authentication is not configured")
    result = validate_authorization(authorization, secret)
    if not result.valid:
        raise auth_required(result.error or "Unauthorized", expired=result.expired)
    return result.payload or {}


def _guard_sync(request: Request, race_id: Optional[str], authorization: Optional[str]) -> str:
    key = _require_race_id(race_id)
    _enforce_rate_limit(request, request.app.state.sync_limiter)
    _require_auth(request, authorization)
    return key


def _tombstone_response(stone: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "deleted": True,
        "deletedAt": stone.get("deletedAt") or now_ms(),
        "message": stone.get("message") or DEFAULT_DELETE_MESSAGE,
    }


def _is_pin(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 4 and value.isdigit()


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get(SYNC_PATH)
def sync_state(
    request: Request,
    race_id: Optional[str] = Query(default=None, alias="raceId"),
    check_only: Optional[str] = Query(default=None, alias="checkOnly"),
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    device_name: Optional[str] = Query(default=None, alias="deviceName"),
    offset: Optional[str] = Query(default=None),
    limit: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    key = _guard_sync(request, race_id, authorization)
    repository = _repository(request)

    stone = repository.tombstone(key)
    if stone:
        return _tombstone_response(stone)

    if check_only == "true":
        return {"exists": repository.exists(key), "entryCount": repository.entry_count(key)}

    if device_id:
        repository.heartbeat(
            key,
            sanitize_string(device_id, MAX_DEVICE_ID_LENGTH),
            sanitize_string(device_name, MAX_DEVICE_NAME_LENGTH),
        )

    snapshot = repository.snapshot(key)
    total = len(snapshot.entries)
    payload: Dict[str, Any] = {
        "entries": snapshot.entries,
        "lastUpdated": snapshot.last_updated,
        "total": total,
        "deviceCount": snapshot.device_count,
        "highestBib": snapshot.highest_bib,
        "deletedIds": snapshot.deleted_ids,
    }
    if limit is not None:
        start = max(0, _parse_int(offset) or 0)
        size = min(MAX_PAGE_LIMIT, max(1, _parse_int(limit) or DEFAULT_PAGE_LIMIT))
        payload["entries"] = snapshot.entries[start:start + size]
        payload["pagination"] = {
            "offset": start,
            "limit": size,
            "total": total,
            "hasMore": start + size < total,
        }

    etag = generate_etag(payload)
    if etag_matches(request, etag):
        return Response(status_code=304, headers={"ETag": etag})
    return JSONResponse(payload, headers={"ETag": etag, "Cache-Control": "no-cache"})


@router.post(SYNC_PATH)
def sync_entry(
    request: Request,
    race_id: Optional[str] = Query(default=None, alias="raceId"),
    authorization: Optional[str] = Header(default=None),
    body: Any = Body(default=None),
):
    key = _guard_sync(request, race_id, authorization)
    repository = _repository(request)

    stone = repository.tombstone(key)
    if stone:
        return _tombstone_response(stone)

    try:
        payload = SyncPostBody.model_validate(body or {})
    except ValidationError as exc:
        raise bad_request("Invalid request body") from exc

    if payload.entry is None:
        raise bad_request("entry is required")
    if not is_valid_entry(payload.entry):
        raise bad_request("Invalid entry format")

    entry = payload.entry
    device_id = sanitize_string(payload.device_id, MAX_DEVICE_ID_LENGTH)
    device_name = sanitize_string(payload.device_name, MAX_DEVICE_NAME_LENGTH)
    stored = {
        "id": str(entry["id"]),
        "bib": sanitize_string(entry.get("bib"), MAX_BIB_LENGTH),
        "point": entry["point"],
        "run": entry.get("run") or 1,
        "timestamp": parse_timestamp(entry["timestamp"]),
        "status": entry.get("status") or "ok",
        "deviceId": device_id,
        "deviceName": device_name,
        "syncedAt": now_ms(),
    }

    result = repository.add_entry(key, stored, device_id)
    if not result.success:
        raise bad_request(result.error or "Entry rejected")

    repository.heartbeat(key, device_id, device_name)
    snapshot = repository.snapshot(key)
    if result.cross_device_duplicate:
        logger.info(
            "Bib %s at %s recorded by %s and %s",
            stored["bib"],
            stored["point"],
            result.cross_device_duplicate["deviceName"],
            device_name or device_id,
        )
    return {
        "success": True,
        "entries": result.entries,
        "lastUpdated": result.last_updated,
        "deviceCount": snapshot.device_count,
        "highestBib": snapshot.highest_bib,
        "isDuplicate": result.is_duplicate,
        "crossDeviceDuplicate": result.cross_device_duplicate,
    }


@router.delete(SYNC_PATH)
def sync_delete(
    request: Request,
    race_id: Optional[str] = Query(default=None, alias="raceId"),
    authorization: Optional[str] = Header(default=None),
    body: Any = Body(default=None),
):
    key = _guard_sync(request, race_id, authorization)
    repository = _repository(request)

    try:
        payload = SyncDeleteBody.model_validate(body or {})
    except ValidationError as exc:
        raise bad_request("Invalid request body") from exc
    if payload.entry_id is None or payload.entry_id == "":
        raise bad_request("entryId is required")

    entry_id = str(payload.entry_id)
    device_id = sanitize_string(payload.device_id, MAX_DEVICE_ID_LENGTH)
    removed = repository.delete_entry(key, entry_id, device_id)
    if device_id:
        repository.heartbeat(key, device_id, sanitize_string(payload.device_name, MAX_DEVICE_NAME_LENGTH))

    return {
        "success": True,
        "deleted": removed,
        "entryId": entry_id,
        "deviceCount": repository.active_device_count(key),
    }


@router.api_route(SYNC_PATH, methods=["PUT", "PATCH"], include_in_schema=False)
def sync_unsupported(
    request: Request,
    race_id: Optional[str] = Query(default=None, alias="raceId"),
    authorization: Optional[str] = Header(default=None),
):
    _guard_sync(request, race_id, authorization)
    raise method_not_allowed()


@router.post(TOKEN_PATH, response_model=TokenResponse, response_model_exclude_none=True)
def issue_token(request: Request, body: Any = Body(default=None)):
    try:
        payload = TokenRequest.model_validate(body or {})
    except ValidationError as exc:
        raise bad_request("Invalid request body") from exc

    pin = payload.pin
    if not pin or not isinstance(pin, str):
        raise bad_request("PIN is required")
    if not _is_pin(pin):
        raise bad_request("PIN must be exactly 4 digits")

    _enforce_rate_limit(request, request.app.state.auth_limiter)

    config = _config(request)
    if not config.jwt_secret:
        logger.error("Token requested but JWT secret is not configured")
        raise server_error("Authentication is not configured")

    repository = _repository(request)
    stored = repository.pin_hash(config.client_pin_hash)
    is_new_pin: Optional[bool] = None
    if stored is None:
        # First request sets the race management PIN.
        is_new_pin = repository.set_pin_hash_if_absent(hash_pin(pin))
        if not is_new_pin and not verify_pin(pin, repository.pin_hash(config.client_pin_hash) or ""):
            raise ApiError(401, "Invalid PIN")
    elif not verify_pin(pin, stored):
        logger.info("Rejected PIN attempt from %s", get_client_ip(request))
        raise ApiError(401, "Invalid PIN")
    elif needs_rehash(stored):
        repository.replace_pin_hash(hash_pin(pin))

    token = generate_token(config.jwt_secret, {"authenticatedAt": now_ms(), "role": "timer"})
    return TokenResponse(token=token, isNewPin=is_new_pin)


@router.get(ADMIN_RACES_PATH, response_model=RaceListResponse)
def admin_list_races(request: Request, authorization: Optional[str] = Header(default=None)):
    _enforce_rate_limit(request, request.app.state.sync_limiter)
    _require_auth(request, authorization)
    races = _repository(request).list_races()
    return RaceListResponse(races=[RaceSummaryModel(**race) for race in races])


@router.delete(ADMIN_RACES_PATH, response_model=RaceDeleteResponse)
def admin_delete_race(
    request: Request,
    race_id: Optional[str] = Query(default=None, alias="raceId"),
    authorization: Optional[str] = Header(default=None),
):
    _enforce_rate_limit(request, request.app.state.sync_limiter)
    _require_auth(request, authorization)
    key = _require_race_id(race_id)
    if not _repository(request).delete_race(key):
        raise not_found("Race not found")
    return RaceDeleteResponse(raceId=key)


@router.get(ADMIN_PIN_PATH, response_model=PinStatusResponse)
def admin_pin_status(request: Request, authorization: Optional[str] = Header(default=None)):
    _enforce_rate_limit(request, request.app.state.sync_limiter)
    _require_auth(request, authorization)
    # Only a flag; the hash itself never leaves the gateway.
    stored = _repository(request).pin_hash(_config(request).client_pin_hash)
    return PinStatusResponse(hasPin=stored is not None)


@router.post(ADMIN_PIN_PATH, response_model=SuccessResponse, response_model_exclude_none=True)
def admin_change_pin(
    request: Request,
    body: Any = Body(default=None),
    authorization: Optional[str] = Header(default=None),
):
    _enforce_rate_limit(request, request.app.state.pin_limiter)
    _require_auth(request, authorization)
    try:
        payload = ChangePinRequest.model_validate(body or {})
    except ValidationError as exc:
        raise bad_request("Invalid request body") from exc

    current_pin, new_pin = payload.current_pin, payload.new_pin
    if not current_pin or not new_pin:
        raise bad_request("currentPin and newPin are required")
    if not isinstance(current_pin, str) or not isinstance(new_pin, str):
        raise bad_request("PINs must be strings")
    if not _is_pin(current_pin) or not _is_pin(new_pin):
        raise bad_request("PINs must be exactly 4 digits")

    repository = _repository(request)
    stored = repository.pin_hash(_config(request).client_pin_hash)
    if stored is None:
        raise bad_request("No PIN is set. Use authentication to set initial PIN.")
    if not verify_pin(current_pin, stored):
        logger.info("Rejected PIN change from %s", get_client_ip(request))
        raise ApiError(401, "Current PIN is incorrect")

    repository.replace_pin_hash(hash_pin(new_pin))
    logger.info("Race management PIN changed")
    return SuccessResponse()


@router.post(RESET_PIN_PATH, response_model=SuccessResponse)
def admin_reset_pin(request: Request, body: Any = Body(default=None)):
    server_pin = _config(request).server_api_pin
    if not server_pin:
        logger.error("PIN reset requested but SERVER_API_PIN is not configured")
        raise server_error("Service configuration error")

    try:
        payload = ResetPinRequest.model_validate(body or {})
    except ValidationError as exc:
        raise bad_request("Invalid request body") from exc
    provided = payload.server_pin
    if not provided or not isinstance(provided, str):
        raise auth_required()

    # Counted before the comparison so the server PIN cannot be brute forced.
    _enforce_rate_limit(request, request.app.state.reset_limiter)

    expected = hashlib.sha256(server_pin.encode()).digest()
    actual = hashlib.sha256(provided.encode()).digest()
    if not hmac.compare_digest(expected, actual):
        logger.warning("Rejected PIN reset from %s", get_client_ip(request))
        raise auth_required()

    _repository(request).clear_pin_hash()
    return SuccessResponse(message="PIN has been reset. The next PIN entered will become the new PIN.")


def create_app(
    config: Optional[GatewayConfig] = None,
    repository: Optional[RaceRepository] = None,
    counters: Optional[CounterStore] = None,
) -> FastAPI:
    if config is None:
        config = GatewayConfig.from_env()
    if counters is None:
        counters = MemoryCounterStore()
    if repository is None:
        repository = RaceRepository(max_entries=config.max_entries_per_race)

    app = FastAPI(title="Ski Race Timer Sync API", version="2.0.0")
    app.state.config = config
    app.state.repository = repository
    app.state.sync_limiter = RateLimiter(
        counters,
        "sync",
        window=config.rate_window,
        max_requests=config.rate_max_requests,
        max_posts=config.rate_max_posts,
    )
    app.state.auth_limiter = RateLimiter(
        counters,
        "auth",
        window=config.rate_window,
        max_requests=config.auth_max_requests,
        max_posts=config.auth_max_posts,
    )
    app.state.pin_limiter = RateLimiter(
        counters,
        "admin-pin",
        window=config.rate_window,
        max_requests=config.rate_max_requests,
        max_posts=config.auth_max_posts,
    )
    app.state.reset_limiter = RateLimiter(
        counters,
        "reset-pin",
        window=config.rate_window,
        max_requests=config.reset_max_requests,
        max_posts=config.reset_max_requests,
    )
    install_error_handlers(app)

    @app.middleware("http")
    async def standard_headers(request: Request, call_next):
        if request.method == "OPTIONS":
            response: Response = Response(status_code=204)
        else:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception("Unhandled error serving %s %s", request.method, request.url.path)
                response = JSONResponse(error_body("Internal server error"), status_code=500)
        set_standard_headers(response, config.cors_origin)
        limit = getattr(request.state, "rate_limit", None)
        if limit is not None:
            set_rate_limit_headers(response, limit.limit, limit.remaining, limit.reset)
        return response

    app.include_router(router)
    return app


app = create_app()
