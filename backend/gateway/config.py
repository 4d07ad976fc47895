from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGIN = "https://ski-race-timer.vercel.app"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


@dataclass
class GatewayConfig:
    cors_origin: str = DEFAULT_CORS_ORIGIN
    jwt_secret: str = ""
    client_pin_hash: str = ""
    rate_window: int = 60
    rate_max_requests: int = 100
    rate_max_posts: int = 30
    auth_max_requests: int = 5
    auth_max_posts: int = 5
    reset_max_requests: int = 3
    server_api_pin: str = ""
    max_entries_per_race: int = 10000

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        config = cls(
            cors_origin=os.getenv("CORS_ORIGIN", "") or DEFAULT_CORS_ORIGIN,
            jwt_secret=os.getenv("JWT_SECRET", ""),
            client_pin_hash=os.getenv("CLIENT_PIN_HASH", ""),
            server_api_pin=os.getenv("SERVER_API_PIN", ""),
            rate_window=_int_env("SYNC_RATE_WINDOW", 60),
            rate_max_requests=_int_env("SYNC_RATE_MAX_REQUESTS", 100),
            rate_max_posts=_int_env("SYNC_RATE_MAX_POSTS", 30),
            max_entries_per_race=_int_env("MAX_ENTRIES_PER_RACE", 10000),
        )
        if not config.jwt_secret:
            logger.warning("JWT_SECRET is not set; authenticated endpoints will respond with 500")
        return config
