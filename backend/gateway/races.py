"""In-process race state held by the sync gateway.

All mutations of a race (adding, correcting and deleting entries, device
heartbeats and race deletion) happen under a single lock, so concurrent
requests for the same race never lose each other's writes.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from skitimer_core.validation import normalize_race_id, now_ms

logger = logging.getLogger(__name__)

ACTIVE_DEVICE_WINDOW_MS = 30_000
RACE_TOMBSTONE_TTL_MS = 5 * 60 * 1000
DEFAULT_DELETE_MESSAGE = "Race deleted by administrator"

_DIGITS_RE = re.compile(r"^\d+$")


@dataclass
class DeviceHeartbeat:
    name: str
    last_seen: int


@dataclass
class RaceState:
    entries: List[Dict[str, Any]] = field(default_factory=list)
    last_updated: Optional[int] = None
    highest_bib: int = 0


@dataclass
class RaceSnapshot:
    entries: List[Dict[str, Any]]
    last_updated: Optional[int]
    deleted_ids: List[str]
    device_count: int
    highest_bib: int


@dataclass
class AddResult:
    success: bool
    entries: List[Dict[str, Any]] = field(default_factory=list)
    last_updated: Optional[int] = None
    is_duplicate: bool = False
    updated: bool = False
    cross_device_duplicate: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class RaceRepository:
    def __init__(self, max_entries: int = 10000, clock: Callable[[], int] = now_ms) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._races: Dict[str, RaceState] = {}
        self._tombstones: Dict[str, Dict[str, Any]] = {}
        self._deleted_ids: Dict[str, Set[str]] = {}
        self._devices: Dict[str, Dict[str, DeviceHeartbeat]] = {}
        self._pin_hash: Optional[str] = None
        self._pin_cleared = False

    # ------------------------------------------------------------------
    # Reads

    def tombstone(self, race_id: str) -> Optional[Dict[str, Any]]:
        key = normalize_race_id(race_id)
        with self._lock:
            stone = self._tombstones.get(key)
            if stone is None:
                return None
            if self._clock() - stone["deletedAt"] > RACE_TOMBSTONE_TTL_MS:
                del self._tombstones[key]
                return None
            return dict(stone)

    def exists(self, race_id: str) -> bool:
        with self._lock:
            return normalize_race_id(race_id) in self._races

    def entry_count(self, race_id: str) -> int:
        with self._lock:
            race = self._races.get(normalize_race_id(race_id))
            return len(race.entries) if race else 0

    def snapshot(self, race_id: str) -> RaceSnapshot:
        key = normalize_race_id(race_id)
        with self._lock:
            race = self._races.get(key) or RaceState()
            return RaceSnapshot(
                entries=copy.deepcopy(race.entries),
                last_updated=race.last_updated,
                deleted_ids=sorted(self._deleted_ids.get(key, ())),
                device_count=self._active_devices(key),
                highest_bib=race.highest_bib,
            )

    def active_device_count(self, race_id: str) -> int:
        with self._lock:
            return self._active_devices(normalize_race_id(race_id))

    def list_races(self) -> List[Dict[str, Any]]:
        with self._lock:
            races = [
                {
                    "raceId": key,
                    "entryCount": len(race.entries),
                    "deviceCount": self._active_devices(key),
                    "lastUpdated": race.last_updated,
                }
                for key, race in self._races.items()
            ]
        races.sort(key=lambda item: item["lastUpdated"] or 0, reverse=True)
        return races

    def _active_devices(self, key: str) -> int:
        devices = self._devices.get(key)
        if not devices:
            return 0
        cutoff = self._clock() - ACTIVE_DEVICE_WINDOW_MS
        for device in [device for device, beat in devices.items() if beat.last_seen < cutoff]:
            del devices[device]
        return len(devices)

    # ------------------------------------------------------------------
    # Writes

    def heartbeat(self, race_id: str, device_id: str, device_name: str = "") -> None:
        if not device_id:
            return
        with self._lock:
            devices = self._devices.setdefault(normalize_race_id(race_id), {})
            devices[device_id] = DeviceHeartbeat(device_name or "Unknown device", self._clock())

    def add_entry(self, race_id: str, entry: Dict[str, Any], device_id: str) -> AddResult:
        """Store ``entry`` unless the same device already sent it.

        A resend of a known ``(id, deviceId)`` whose bib or status changed
        applies the correction in place; id and timestamp are kept.
        """
        key = normalize_race_id(race_id)
        with self._lock:
            race = self._races.setdefault(key, RaceState())

            existing = next(
                (
                    item
                    for item in race.entries
                    if item["id"] == entry["id"] and item.get("deviceId") == device_id
                ),
                None,
            )
            duplicate = self._cross_device_duplicate(race.entries, entry, device_id)

            if existing is not None:
                updated = False
                for field_name in ("bib", "status"):
                    if existing.get(field_name) != entry.get(field_name):
                        existing[field_name] = entry.get(field_name)
                        updated = True
                if updated:
                    race.last_updated = self._clock()
                    self._track_highest_bib(race, entry.get("bib"))
                return AddResult(
                    True,
                    copy.deepcopy(race.entries),
                    race.last_updated,
                    is_duplicate=True,
                    updated=updated,
                    cross_device_duplicate=duplicate,
                )

            if len(race.entries) >= self.max_entries:
                logger.warning("Race %s reached the %d entry limit", key, self.max_entries)
                return AddResult(False, error=f"Maximum entries limit ({self.max_entries}) reached for this race")

            race.entries.append(entry)
            race.last_updated = self._clock()
            self._track_highest_bib(race, entry.get("bib"))
            return AddResult(
                True,
                copy.deepcopy(race.entries),
                race.last_updated,
                cross_device_duplicate=duplicate,
            )

    def delete_entry(self, race_id: str, entry_id: str, device_id: str) -> bool:
        """Remove an entry and remember its deletion. Returns whether it was present."""
        key = normalize_race_id(race_id)
        with self._lock:
            self._deleted_ids.setdefault(key, set()).add(f"{entry_id}:{device_id}" if device_id else entry_id)
            race = self._races.get(key)
            if race is None:
                return False
            before = len(race.entries)
            race.entries = [
                item
                for item in race.entries
                if not (item["id"] == entry_id and (not device_id or item.get("deviceId") == device_id))
            ]
            removed = len(race.entries) < before
            if removed:
                race.last_updated = self._clock()
            return removed

    def delete_race(self, race_id: str, message: str = DEFAULT_DELETE_MESSAGE) -> bool:
        key = normalize_race_id(race_id)
        with self._lock:
            if self._races.pop(key, None) is None:
                return False
            self._deleted_ids.pop(key, None)
            self._devices.pop(key, None)
            self._tombstones[key] = {"deletedAt": self._clock(), "message": message}
        logger.info("Race %s deleted", key)
        return True

    # ------------------------------------------------------------------
    # PIN

    def pin_hash(self, configured: str = "") -> Optional[str]:
        with self._lock:
            if self._pin_hash:
                return self._pin_hash
            # A reset also disables the hash configured through the environment.
            return None if self._pin_cleared else configured or None

    def set_pin_hash_if_absent(self, pin_hash: str) -> bool:
        with self._lock:
            if self._pin_hash:
                return False
            self._pin_hash = pin_hash
            return True

    def replace_pin_hash(self, pin_hash: str) -> None:
        with self._lock:
            self._pin_hash = pin_hash

    def clear_pin_hash(self) -> None:
        """Forget the PIN so the next token request sets a new one."""
        with self._lock:
            self._pin_hash = None
            self._pin_cleared = True
        logger.info("Race management PIN cleared")

    # ------------------------------------------------------------------

    @staticmethod
    def _cross_device_duplicate(
        entries: List[Dict[str, Any]], entry: Dict[str, Any], device_id: str
    ) -> Optional[Dict[str, Any]]:
        bib = entry.get("bib")
        if not bib:
            return None
        run = entry.get("run") or 1
        for item in entries:
            if (
                item.get("bib") == bib
                and item.get("point") == entry.get("point")
                and (item.get("run") or 1) == run
                and item.get("deviceId") != device_id
            ):
                return {
                    "bib": item["bib"],
                    "point": item["point"],
                    "run": item.get("run") or 1,
                    "deviceName": item.get("deviceName") or "Unknown device",
                    "timestamp": item["timestamp"],
                }
        return None

    @staticmethod
    def _track_highest_bib(race: RaceState, bib: Any) -> None:
        if isinstance(bib, str) and _DIGITS_RE.match(bib):
            race.highest_bib = max(race.highest_bib, int(bib))
