from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any

from .storage import SETTINGS_KEY, LocalStorage
from .validation import VALID_POINTS, VALID_RUNS

logger = logging.getLogger(__name__)

LANGUAGES = ("en", "de")


@dataclass
class DeviceSettings:
    """Device-local preferences. Never authoritative for race results."""

    language: str = "en"
    default_run: int = 1
    default_point: str = "S"
    auto_increment: bool = True
    haptic: bool = True
    sound: bool = False
    gps: bool = True
    cloud_sync: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


_CHOICES = {
    "language": LANGUAGES,
    "default_run": VALID_RUNS,
    "default_point": VALID_POINTS,
}


def _is_acceptable(name: str, value: Any, default: Any) -> bool:
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(value, bool) or type(value) is not type(default):
        return False
    choices = _CHOICES.get(name)
    return choices is None or value in choices


def load_settings(storage: LocalStorage) -> DeviceSettings:
    stored = storage.load(SETTINGS_KEY, {})
    settings = DeviceSettings()
    for field in dataclasses.fields(DeviceSettings):
        if field.name not in stored:
            continue
        value = stored[field.name]
        if _is_acceptable(field.name, value, getattr(settings, field.name)):
            setattr(settings, field.name, value)
        else:
            logger.warning("Ignoring invalid stored setting %s=%r", field.name, value)
    return settings


def save_settings(storage: LocalStorage, settings: DeviceSettings) -> None:
    storage.save(SETTINGS_KEY, settings.to_dict())


def update_settings(settings: DeviceSettings, **changes: Any) -> DeviceSettings:
    defaults = DeviceSettings()
    known = {field.name for field in dataclasses.fields(DeviceSettings)}
    for name, value in changes.items():
        if name not in known:
            raise ValueError(f"Unknown setting '{name}'")
        if not _is_acceptable(name, value, getattr(defaults, name)):
            raise ValueError(f"Invalid value for setting '{name}': {value!r}")
    return dataclasses.replace(settings, **changes)
