from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

# Persisted key names are part of the on-device format; never rename them.
ENTRIES_KEY = "skiTimerEntries"
DELETED_ENTRIES_KEY = "skiTimerDeletedEntries"
SETTINGS_KEY = "skiTimerSettings"
RECENT_RACES_KEY = "skiTimerRecentRaces"
DEVICE_ID_KEY = "skiTimerDeviceId"
RESPONSE_CACHE_KEY = "skiTimerResponseCache"

DEFAULT_DEBOUNCE_SECONDS = 0.4

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class LocalStorage:
    """Key-scoped JSON storage with a read-through cache and debounced writes.

    Every key lives in its own ``<key>.json`` file inside ``data_dir``. Reads
    never raise: a missing file and an undecodable file both yield the
    caller's fallback. Writes update the in-memory cache immediately, so the
    next ``load`` sees them, and reach disk after ``debounce_seconds`` of
    quiet (or on ``flush``/``close``). Files are replaced atomically, a reader
    never observes a half-written blob.
    """

    def __init__(self, data_dir: Path, debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS) -> None:
        self.data_dir = Path(data_dir)
        self.debounce_seconds = debounce_seconds
        self._lock = threading.RLock()
        self._cache: Dict[str, str] = {}
        self._pending: Dict[str, str | None] = {}  # None = pending removal
        self._timer: threading.Timer | None = None

    def path_for(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid storage key {key!r}")
        return self.data_dir / f"{key}.json"

    def load(self, key: str, fallback: Any = None) -> Any:
        """Return the decoded value for ``key`` or ``fallback``.

        When ``fallback`` is a list or dict the stored value must have the
        same type, anything else counts as corruption.
        """
        with self._lock:
            raw = self._cache.get(key)
            if raw is None and self._pending.get(key, "") is None:
                return fallback

        if raw is None:
            raw = self._read_file(key)
            if raw is None:
                return fallback

        try:
            value = json.loads(raw)
        except ValueError as exc:
            logger.warning("Falling back to default for %s due to corrupt data: %s", key, exc)
            return fallback

        if isinstance(fallback, (list, dict)) and not isinstance(value, type(fallback)):
            logger.warning(
                "Falling back to default for %s: expected %s, found %s",
                key,
                type(fallback).__name__,
                type(value).__name__,
            )
            return fallback

        with self._lock:
            self._cache.setdefault(key, raw)
        return value

    def save(self, key: str, value: Any) -> None:
        path = self.path_for(key)
        raw = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._cache[key] = raw
            self._pending[key] = raw
        logger.debug("Queued write for %s", path.name)
        self._schedule_flush()

    def remove(self, key: str) -> None:
        self.path_for(key)
        with self._lock:
            self._cache.pop(key, None)
            self._pending[key] = None
        self._schedule_flush()

    def has_pending_writes(self) -> bool:
        with self._lock:
            return bool(self._pending)

    def flush(self) -> None:
        """Write every pending value to disk now.

        All pending keys are attempted. Keys that fail stay pending for the
        next flush and the first failure is raised as ``RuntimeError``.
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

            writes = dict(self._pending)
            self._pending.clear()

            first_error: RuntimeError | None = None
            for key, raw in writes.items():
                try:
                    if raw is None:
                        self._remove_file(key)
                    else:
                        self._write_file(key, raw)
                except RuntimeError as exc:
                    logger.warning("Storage write failed for %s: %s", key, exc)
                    self._pending.setdefault(key, raw)
                    if first_error is None:
                        first_error = exc

        if first_error is not None:
            raise first_error

    def close(self) -> None:
        self.flush()

    def clear_cache(self) -> None:
        """Drop cached values so the next ``load`` reads from disk."""
        with self._lock:
            self._cache.clear()

    # ------------------------------------------------------------------

    def _schedule_flush(self) -> None:
        if self.debounce_seconds <= 0:
            self.flush()
            return

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.debounce_seconds, self._flush_from_timer)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _flush_from_timer(self) -> None:
        try:
            self.flush()
        except RuntimeError:
            logger.exception("Deferred storage flush failed; writes remain pending")

    def _read_file(self, key: str) -> str | None:
        path = self.path_for(key)
        try:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return None

    def _write_file(self, key: str, raw: str) -> None:
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(raw)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise RuntimeError(f"Failed to write local data store {path}") from exc

    def _remove_file(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise RuntimeError(f"Failed to remove local data store {path}") from exc
