"""Offline-first capture and synchronisation core for a ski race timing station."""

from .cache import ResponseCache
from .config import TimerConfig
from .entries import EntryStats, EntryStore
from .entry import Entry
from .recent_races import RaceSession, RecentRacesRegistry
from .settings import DeviceSettings
from .storage import LocalStorage
from .sync import AuthRequiredError, RateLimitedError, SyncClient, SyncError

__all__ = [
    "AuthRequiredError",
    "DeviceSettings",
    "Entry",
    "EntryStats",
    "EntryStore",
    "LocalStorage",
    "RaceSession",
    "RateLimitedError",
    "RecentRacesRegistry",
    "ResponseCache",
    "SyncClient",
    "SyncError",
    "TimerConfig",
]
