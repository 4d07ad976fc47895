"""Bookkeeping of races this device has recently worked on.

Used to offer quick resume/switch between race sessions. Race ids compare
case-insensitively, but the spelling seen first is the one shown.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import TimerConfig
from .storage import RECENT_RACES_KEY
from .validation import normalize_race_id

logger = logging.getLogger(__name__)

MAX_RECENT_RACES = 50


@dataclass
class RaceSession:
    race_id: str
    created_at: int
    last_updated: int
    entry_count: int = 0

    @property
    def key(self) -> str:
        return normalize_race_id(self.race_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raceId": self.race_id,
            "createdAt": self.created_at,
            "lastUpdated": self.last_updated,
            "entryCount": self.entry_count,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["RaceSession"]:
        if not isinstance(data, dict):
            return None
        race_id = data.get("raceId")
        created_at = data.get("createdAt")
        last_updated = data.get("lastUpdated")
        entry_count = data.get("entryCount") or 0
        if not isinstance(race_id, str) or not race_id.strip():
            return None
        for value in (created_at, last_updated, entry_count):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            if not math.isfinite(value):
                return None
        return cls(
            race_id=race_id,
            created_at=int(created_at),
            last_updated=int(last_updated),
            entry_count=max(0, int(entry_count)),
        )


def _local_midnight_ms(day: dt.date) -> int:
    # Resolved per date so days with a DST change keep their real length.
    midnight = dt.datetime.combine(day, dt.time()).astimezone()
    return int(midnight.timestamp() * 1000)


class RecentRacesRegistry:
    def __init__(self, config: TimerConfig, max_races: int = MAX_RECENT_RACES) -> None:
        self.config = config
        self._storage = config.storage
        self.max_races = max_races
        self._lock = threading.Lock()

    def get_all(self) -> List[RaceSession]:
        rows = self._storage.load(RECENT_RACES_KEY, [])
        sessions: List[RaceSession] = []
        seen: set[str] = set()
        for row in rows:
            session = RaceSession.from_dict(row)
            if session is None:
                logger.warning("Skipping invalid recent race record: %r", row)
                continue
            if session.key in seen:
                continue
            seen.add(session.key)
            sessions.append(session)
        # Stored order is kept for equal timestamps, so repeated reads agree.
        sessions.sort(key=lambda item: item.last_updated, reverse=True)
        return sessions

    def find(self, race_id: str) -> Optional[RaceSession]:
        key = normalize_race_id(race_id)
        for session in self.get_all():
            if session.key == key:
                return session
        return None

    def touch(self, race_id: str, at_time: int, entry_count: Optional[int] = None) -> RaceSession:
        """Record activity on ``race_id`` at ``at_time`` (epoch ms).

        ``last_updated`` never moves backwards: replaying an older touch only
        refreshes ``entry_count`` when it is given.
        """
        if not race_id or not race_id.strip():
            raise ValueError("race_id is required")
        if entry_count is not None and entry_count < 0:
            raise ValueError("entry_count must not be negative")

        key = normalize_race_id(race_id)
        with self._lock:
            sessions = self.get_all()
            session = next((item for item in sessions if item.key == key), None)
            if session is not None:
                if at_time > session.last_updated:
                    session.last_updated = at_time
                if entry_count is not None:
                    session.entry_count = entry_count
            else:
                session = RaceSession(
                    race_id=race_id,
                    created_at=at_time,
                    last_updated=at_time,
                    entry_count=entry_count or 0,
                )
                sessions.insert(0, session)

            sessions.sort(key=lambda item: item.last_updated, reverse=True)
            evicted = sessions[self.max_races:]
            if evicted:
                logger.debug("Evicting %d stale recent races", len(evicted))
            sessions = sessions[: self.max_races]
            try:
                self._storage.save(RECENT_RACES_KEY, [item.to_dict() for item in sessions])
            except RuntimeError:
                logger.exception("Failed to persist recent races; write stays queued")
        return session

    def get_today(self, limit: int = 5, now: Optional[dt.datetime] = None) -> List[RaceSession]:
        """Sessions created or updated during the current local calendar day."""
        today_date = (now or dt.datetime.now()).astimezone().date()
        start = _local_midnight_ms(today_date)
        end = _local_midnight_ms(today_date + dt.timedelta(days=1))

        def _is_today(value: int) -> bool:
            return start <= value < end

        today = [
            session
            for session in self.get_all()
            if _is_today(session.created_at) or _is_today(session.last_updated)
        ]
        return today[: max(0, limit)]

    def clear(self) -> None:
        with self._lock:
            try:
                self._storage.remove(RECENT_RACES_KEY)
            except RuntimeError:
                logger.exception("Failed to clear recent races; removal stays queued")
