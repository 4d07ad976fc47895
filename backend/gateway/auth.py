"""Bearer token and PIN handling for the sync gateway."""

from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_ISSUER = "ski-race-timer"
TOKEN_TYPE = "race-management"
TOKEN_LIFETIME = dt.timedelta(hours=24)

PIN_ITERATIONS = 100_000
PIN_KEY_LENGTH = 32
PIN_SALT_BYTES = 16


@dataclass
class AuthResult:
    valid: bool
    error: Optional[str] = None
    expired: bool = False
    payload: Optional[Dict[str, Any]] = None


def generate_token(secret: str, claims: Optional[Dict[str, Any]] = None, now: Optional[dt.datetime] = None) -> str:
    if not secret:
        raise RuntimeError("JWT secret is not configured")
    issued = now or dt.datetime.now(dt.UTC)
    payload = dict(claims or {})
    payload.update(
        {
            "type": TOKEN_TYPE,
            "iss": JWT_ISSUER,
            "iat": issued,
            "exp": issued + TOKEN_LIFETIME,
        }
    )
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def verify_token(token: str, secret: str) -> AuthResult:
    if not token:
        return AuthResult(False, "No token provided")
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], issuer=JWT_ISSUER)
    except jwt.ExpiredSignatureError:
        return AuthResult(False, "Token expired. Please re-authenticate.", expired=True)
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected bearer token: %s", exc)
        return AuthResult(False, "Invalid token. Please re-authenticate.")
    if payload.get("type") != TOKEN_TYPE:
        return AuthResult(False, "Invalid token type")
    return AuthResult(True, payload=payload)


def extract_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def validate_authorization(authorization: Optional[str], secret: str) -> AuthResult:
    """Check an ``Authorization`` header value against the signing secret."""
    if not authorization:
        return AuthResult(False, "Authorization required")
    token = extract_token(authorization)
    if token is None:
        return AuthResult(False, "Invalid authorization format. Use: Bearer <token>")
    return verify_token(token, secret)


def hash_pin(pin: str, salt: Optional[bytes] = None) -> str:
    salt = salt if salt is not None else secrets.token_bytes(PIN_SALT_BYTES)
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt, PIN_ITERATIONS, PIN_KEY_LENGTH)
    return f"{salt.hex()}:{digest.hex()}"


def verify_pin(pin: str, stored: str) -> bool:
    if not pin or not stored:
        return False
    if ":" not in stored:
        # Unsalted SHA-256 hashes from older deployments.
        legacy = hashlib.sha256(pin.encode("utf-8")).hexdigest()
        return hmac.compare_digest(legacy, stored)
    salt_hex, digest_hex = stored.split(":", 1)
    try:
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
    except ValueError:
        logger.warning("Stored PIN hash is malformed")
        return False
    actual = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt, PIN_ITERATIONS, len(expected))
    return hmac.compare_digest(actual, expected)


def needs_rehash(stored: str) -> bool:
    return ":" not in stored
