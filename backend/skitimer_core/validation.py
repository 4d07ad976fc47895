"""Input cleaning and structural checks shared by the device core and the gateway."""

from __future__ import annotations

import datetime as dt
import json
import logging
import math
import re
import secrets
import time
import uuid
from typing import Any, Mapping

logger = logging.getLogger(__name__)

VALID_POINTS = ("S", "F")
VALID_STATUSES = ("ok", "dns", "dnf", "dsq", "flt")
VALID_RUNS = (1, 2)

MAX_RACE_ID_LENGTH = 50
MAX_BIB_LENGTH = 10
MAX_DEVICE_NAME_LENGTH = 100
MAX_DEVICE_ID_LENGTH = 50

_RACE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_UNSAFE_CHARS_RE = re.compile(r"[<>&\x00-\x1f\x7f]")
# Look-alike characters (I, O, 0, 1) are left out so ids can be read aloud.
_RACE_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def sanitize_string(value: Any, max_length: int) -> str:
    """Truncate ``value`` to ``max_length`` and strip markup and control characters."""
    if not value or not isinstance(value, str):
        return ""
    return _UNSAFE_CHARS_RE.sub("", value[:max_length])


def safe_json_loads(text: str | bytes | None, default: Any) -> Any:
    if text is None or text == "" or text == b"":
        return default
    try:
        return json.loads(text)
    except (TypeError, ValueError) as exc:
        logger.warning("JSON parse error, using default: %s", exc)
        return default


def is_valid_race_id(value: Any) -> bool:
    if not value or not isinstance(value, str):
        return False
    if len(value) > MAX_RACE_ID_LENGTH:
        return False
    return bool(_RACE_ID_RE.match(value))


def normalize_race_id(value: str) -> str:
    return value.strip().lower()


def parse_timestamp(value: Any) -> int | None:
    """Return epoch milliseconds for an int/float or ISO-8601 timestamp."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            return None
        return int(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=dt.UTC)
        return int(parsed.timestamp() * 1000)
    return None


def is_valid_entry(entry: Any) -> bool:
    """Structural check for an entry as persisted locally or sent over the wire."""
    if not isinstance(entry, Mapping):
        return False

    entry_id = entry.get("id")
    if isinstance(entry_id, bool) or not isinstance(entry_id, (str, int)):
        return False
    if isinstance(entry_id, str) and not entry_id:
        return False
    if isinstance(entry_id, int) and entry_id <= 0:
        return False

    bib = entry.get("bib")
    if bib is not None:
        if not isinstance(bib, str) or len(bib) > MAX_BIB_LENGTH:
            return False

    if entry.get("point") not in VALID_POINTS:
        return False

    if parse_timestamp(entry.get("timestamp")) is None:
        return False

    run = entry.get("run")
    if run is not None and (isinstance(run, bool) or run not in VALID_RUNS):
        return False

    status = entry.get("status")
    if status is not None and status not in VALID_STATUSES:
        return False

    for key in ("deviceId", "deviceName"):
        value = entry.get(key)
        if value is not None and not isinstance(value, str):
            return False

    synced_at = entry.get("syncedAt")
    if synced_at is not None:
        if isinstance(synced_at, bool) or not isinstance(synced_at, (int, float)):
            return False
        if not math.isfinite(synced_at) or synced_at < 0:
            return False

    return True


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_entry_id(device_id: str) -> str:
    return f"{device_id}-{now_ms()}-{uuid.uuid4().hex[:8]}"


def generate_device_id() -> str:
    return f"dev_{uuid.uuid4().hex[:12]}"


def generate_race_id() -> str:
    return "".join(secrets.choice(_RACE_ID_ALPHABET) for _ in range(8))
