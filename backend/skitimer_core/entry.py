from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .validation import is_valid_entry, parse_timestamp


@dataclass
class Entry:
    """One recorded timing event.

    ``entry_id`` and ``timestamp`` never change once the entry is persisted;
    only ``bib`` and ``status`` may be corrected afterwards. An empty bib is
    an ungrouped entry. ``synced_at`` stays ``None`` until the gateway has
    accepted the entry.
    """

    entry_id: str
    bib: str
    point: str  # Timing point: "S" start, "F" finish
    run: int
    timestamp: int  # Epoch milliseconds
    status: str = "ok"
    device_id: str = ""
    device_name: str = ""
    synced_at: Optional[int] = None

    @property
    def pending_sync(self) -> bool:
        return self.synced_at is None

    def merge_key(self) -> str:
        return f"{self.entry_id}-{self.device_id}"

    def delete_key(self) -> str:
        return f"{self.entry_id}:{self.device_id}" if self.device_id else self.entry_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry_id,
            "bib": self.bib,
            "point": self.point,
            "run": self.run,
            "timestamp": self.timestamp,
            "status": self.status,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "syncedAt": self.synced_at,
        }

    def to_wire(self) -> Dict[str, Any]:
        payload = self.to_dict()
        payload.pop("syncedAt")
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Entry":
        if not is_valid_entry(data):
            raise ValueError("Invalid entry record")
        synced_at = data.get("syncedAt")
        return cls(
            entry_id=str(data["id"]),
            bib=data.get("bib") or "",
            point=data["point"],
            run=data.get("run") or 1,
            timestamp=parse_timestamp(data["timestamp"]),
            status=data.get("status") or "ok",
            device_id=data.get("deviceId") or "",
            device_name=data.get("deviceName") or "",
            synced_at=int(synced_at) if synced_at is not None else None,
        )
