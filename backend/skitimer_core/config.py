from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .settings import DeviceSettings, load_settings, save_settings, update_settings
from .storage import DEFAULT_DEBOUNCE_SECONDS, DEVICE_ID_KEY, LocalStorage
from .validation import (
    MAX_DEVICE_NAME_LENGTH,
    generate_device_id,
    is_valid_race_id,
    sanitize_string,
)

logger = logging.getLogger(__name__)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


@dataclass
class TimerConfig:
    """Process-wide state for one timing station.

    Built once at startup and handed to the entry store, the recent races
    registry and the sync client. ``close`` flushes every pending write.
    """

    storage: LocalStorage
    device_id: str
    device_name: str = ""
    race_id: str = ""
    api_url: str = ""
    auth_token: str = ""
    http_timeout: float = 8.0
    settings: DeviceSettings = field(default_factory=DeviceSettings)

    @classmethod
    def load(
        cls,
        data_dir: Path,
        *,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        **overrides: Any,
    ) -> "TimerConfig":
        storage = LocalStorage(data_dir, debounce_seconds=debounce_seconds)

        device_id = storage.load(DEVICE_ID_KEY, "")
        if not isinstance(device_id, str) or not device_id.startswith("dev_"):
            device_id = generate_device_id()
            try:
                storage.save(DEVICE_ID_KEY, device_id)
            except RuntimeError:
                logger.exception("Failed to persist device id; write stays queued")
            logger.info("Generated new device id %s", device_id)

        config = cls(storage=storage, device_id=device_id, settings=load_settings(storage), **overrides)
        config.device_name = sanitize_string(config.device_name, MAX_DEVICE_NAME_LENGTH)
        if config.race_id and not is_valid_race_id(config.race_id):
            raise ValueError(f"Invalid race id '{config.race_id}'")
        return config

    @classmethod
    def from_env(cls) -> "TimerConfig":
        data_dir = Path(os.getenv("SKITIMER_DATA_DIR", "") or Path.home() / ".skitimer")
        return cls.load(
            data_dir,
            debounce_seconds=_float_env("SKITIMER_WRITE_DEBOUNCE", DEFAULT_DEBOUNCE_SECONDS),
            device_name=os.getenv("SKITIMER_DEVICE_NAME", ""),
            race_id=os.getenv("SKITIMER_RACE_ID", ""),
            api_url=os.getenv("SKITIMER_API_URL", "").rstrip("/"),
            auth_token=os.getenv("SKITIMER_AUTH_TOKEN", ""),
            http_timeout=_float_env("SKITIMER_HTTP_TIMEOUT", 8.0),
        )

    @property
    def sync_enabled(self) -> bool:
        return bool(self.settings.cloud_sync and self.race_id and self.api_url)

    def update_settings(self, **changes: Any) -> DeviceSettings:
        self.settings = update_settings(self.settings, **changes)
        try:
            save_settings(self.storage, self.settings)
        except RuntimeError:
            logger.exception("Failed to persist settings; write stays queued")
        return self.settings

    def switch_race(self, race_id: str) -> None:
        if not is_valid_race_id(race_id):
            raise ValueError(f"Invalid race id '{race_id}'")
        self.race_id = race_id

    def close(self) -> None:
        self.storage.close()
