from __future__ import annotations

import bisect
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import TimerConfig
from .entry import Entry
from .storage import DELETED_ENTRIES_KEY, ENTRIES_KEY
from .validation import (
    MAX_BIB_LENGTH,
    VALID_POINTS,
    VALID_RUNS,
    VALID_STATUSES,
    generate_entry_id,
    is_valid_entry,
    now_ms,
    sanitize_string,
)

logger = logging.getLogger(__name__)


@dataclass
class EntryStats:
    total: int = 0
    per_bib: Dict[str, int] = field(default_factory=dict)
    per_point: Dict[str, int] = field(default_factory=dict)


def _clean_bib(bib: Any) -> str:
    return sanitize_string(bib, MAX_BIB_LENGTH).strip()


class EntryStore:
    """Ordered collection of timing entries for one device.

    Every mutation replaces the in-memory list in one step and then queues a
    durable write, so readers always see either the old or the new
    collection. Stored data that cannot be decoded is treated as an empty
    collection and is overwritten by the next write.
    """

    def __init__(self, config: TimerConfig, clock: Callable[[], int] = now_ms) -> None:
        self.config = config
        self._storage = config.storage
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: List[Entry] = self._load_entries()
        self._tombstones: List[Dict[str, Any]] = self._load_tombstones()

    # ------------------------------------------------------------------
    # Reads

    def list(self) -> List[Entry]:
        with self._lock:
            return list(self._entries)

    def get(self, entry_id: str) -> Optional[Entry]:
        with self._lock:
            index = self._index_of(entry_id)
            return self._entries[index] if index is not None else None

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> EntryStats:
        stats = EntryStats()
        for entry in self.list():
            stats.total += 1
            stats.per_bib[entry.bib] = stats.per_bib.get(entry.bib, 0) + 1
            stats.per_point[entry.point] = stats.per_point.get(entry.point, 0) + 1
        return stats

    def was_deleted(self, entry_id: str) -> bool:
        with self._lock:
            return any(stone["id"] == entry_id for stone in self._tombstones)

    def pending(self) -> List[Entry]:
        """Entries recorded on this device that the gateway has not accepted yet."""
        device_id = self.config.device_id
        return [entry for entry in self.list() if entry.pending_sync and entry.device_id == device_id]

    def pending_deletions(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(stone) for stone in self._tombstones if not stone.get("synced")]

    # ------------------------------------------------------------------
    # Mutations

    def append(self, bib: str, run: int, point: str, status: str = "ok") -> Entry:
        if point not in VALID_POINTS:
            raise ValueError(f"Unknown timing point '{point}'")
        if isinstance(run, bool) or run not in VALID_RUNS:
            raise ValueError(f"Invalid run '{run}'")
        if status not in VALID_STATUSES:
            raise ValueError(f"Unknown status '{status}'")

        entry = Entry(
            entry_id=generate_entry_id(self.config.device_id),
            bib=_clean_bib(bib),
            point=point,
            run=run,
            timestamp=self._clock(),
            status=status,
            device_id=self.config.device_id,
            device_name=self.config.device_name,
        )
        with self._lock:
            self._entries = [*self._entries, entry]
            self._persist_entries()
        return entry

    def edit_bib(self, entry_id: str, new_bib: str) -> Optional[Entry]:
        """Correct the bib of an entry; ``None`` when no such entry exists."""
        return self._update(entry_id, bib=_clean_bib(new_bib))

    def update_status(self, entry_id: str, status: str) -> Optional[Entry]:
        if status not in VALID_STATUSES:
            raise ValueError(f"Unknown status '{status}'")
        return self._update(entry_id, status=status)

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            index = self._index_of(entry_id)
            if index is None:
                return False
            entry = self._entries[index]
            self._entries = self._entries[:index] + self._entries[index + 1:]
            self._tombstones = [
                *self._tombstones,
                {
                    "id": entry.entry_id,
                    "deviceId": entry.device_id,
                    "deletedAt": self._clock(),
                    "synced": False,
                },
            ]
            self._persist_entries()
            self._persist_tombstones()
        return True

    def mark_synced(self, entry_id: str, synced_at: Optional[int] = None) -> bool:
        with self._lock:
            index = self._index_of(entry_id)
            if index is None:
                return False
            updated = dataclasses.replace(self._entries[index], synced_at=synced_at or self._clock())
            self._replace_at(index, updated)
        return True

    def mark_deletion_synced(self, entry_id: str) -> bool:
        with self._lock:
            changed = False
            stones = []
            for stone in self._tombstones:
                if stone["id"] == entry_id and not stone.get("synced"):
                    stone = {**stone, "synced": True}
                    changed = True
                stones.append(stone)
            if changed:
                self._tombstones = stones
                self._persist_tombstones()
            return changed

    def merge_remote(self, remote_entries: Iterable[Any], deleted_ids: Iterable[str] = ()) -> int:
        """Add entries recorded by other devices; returns how many were added.

        Entries of this device are never replaced by remote copies. Anything
        listed in ``deleted_ids`` (``id`` or ``id:deviceId``) or deleted
        locally is skipped.
        """
        deleted = set(deleted_ids)
        added = 0
        with self._lock:
            known = {entry.merge_key() for entry in self._entries}
            locally_deleted = {stone["id"] for stone in self._tombstones}
            merged = list(self._entries)
            for row in remote_entries:
                if not is_valid_entry(row):
                    logger.warning("Skipping invalid entry from gateway: %r", row)
                    continue
                entry = Entry.from_dict(row)
                if entry.device_id == self.config.device_id:
                    continue
                if entry.entry_id in deleted or entry.delete_key() in deleted:
                    continue
                if entry.entry_id in locally_deleted or entry.merge_key() in known:
                    continue
                if entry.synced_at is None:
                    entry.synced_at = self._clock()
                bisect.insort_right(merged, entry, key=lambda item: item.timestamp)
                known.add(entry.merge_key())
                added += 1

            if added:
                self._entries = merged
                self._persist_entries()
        return added

    def remove_deleted_remote(self, deleted_ids: Iterable[str]) -> int:
        deleted = set(deleted_ids)
        if not deleted:
            return 0
        with self._lock:
            kept: List[Entry] = []
            stones = list(self._tombstones)
            for entry in self._entries:
                if entry.entry_id in deleted or entry.delete_key() in deleted:
                    stones.append(
                        {
                            "id": entry.entry_id,
                            "deviceId": entry.device_id,
                            "deletedAt": self._clock(),
                            "synced": True,
                        }
                    )
                else:
                    kept.append(entry)
            removed = len(self._entries) - len(kept)
            if removed:
                self._entries = kept
                self._tombstones = stones
                self._persist_entries()
                self._persist_tombstones()
        return removed

    # ------------------------------------------------------------------

    def _update(self, entry_id: str, **changes: Any) -> Optional[Entry]:
        with self._lock:
            index = self._index_of(entry_id)
            if index is None:
                return None
            current = self._entries[index]
            # Edited entries are pushed again so other stations see the correction.
            updated = dataclasses.replace(current, synced_at=None, **changes)
            self._replace_at(index, updated)
        return updated

    def _replace_at(self, index: int, entry: Entry) -> None:
        entries = list(self._entries)
        entries[index] = entry
        self._entries = entries
        self._persist_entries()

    def _index_of(self, entry_id: str) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.entry_id == entry_id:
                return index
        return None

    def _load_entries(self) -> List[Entry]:
        rows = self._storage.load(ENTRIES_KEY, [])
        entries: List[Entry] = []
        for row in rows:
            try:
                entries.append(Entry.from_dict(row))
            except (ValueError, TypeError, OverflowError):
                logger.warning("Skipping invalid stored entry: %r", row)
        return entries

    def _load_tombstones(self) -> List[Dict[str, Any]]:
        rows = self._storage.load(DELETED_ENTRIES_KEY, [])
        return [row for row in rows if isinstance(row, dict) and isinstance(row.get("id"), str)]

    def _persist_entries(self) -> None:
        try:
            self._storage.save(ENTRIES_KEY, [entry.to_dict() for entry in self._entries])
        except RuntimeError:
            logger.exception("Failed to persist entries; write stays queued")

    def _persist_tombstones(self) -> None:
        try:
            self._storage.save(DELETED_ENTRIES_KEY, self._tombstones)
        except RuntimeError:
            logger.exception("Failed to persist deleted entries; write stays queued")
