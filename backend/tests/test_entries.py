from __future__ import annotations

import json

import pytest

from skitimer_core import EntryStore, TimerConfig
from skitimer_core.storage import DELETED_ENTRIES_KEY, ENTRIES_KEY


class _Clock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        self.now += 1000
        return self.now


def _store(tmp_path, **overrides):
    config = TimerConfig.load(tmp_path, debounce_seconds=0, device_name="Start hut", **overrides)
    return config, EntryStore(config, clock=_Clock())


def _remote(entry_id: str, timestamp: int, device_id: str = "dev_finish0001", bib: str = "7") -> dict:
    return {
        "id": entry_id,
        "bib": bib,
        "point": "F",
        "run": 1,
        "timestamp": timestamp,
        "status": "ok",
        "deviceId": device_id,
        "deviceName": "Finish",
        "syncedAt": timestamp + 50,
    }


def test_append_keeps_insertion_order_and_marks_pending(tmp_path):
    config, store = _store(tmp_path)

    first = store.append("12", 1, "S")
    second = store.append("13", 1, "S")

    assert [entry.entry_id for entry in store.list()] == [first.entry_id, second.entry_id]
    assert first.device_id == config.device_id
    assert first.device_name == "Start hut"
    assert first.entry_id.startswith(f"{config.device_id}-")
    assert [entry.entry_id for entry in store.pending()] == [first.entry_id, second.entry_id]


def test_append_rejects_unknown_point_and_run(tmp_path):
    _, store = _store(tmp_path)

    with pytest.raises(ValueError):
        store.append("1", 1, "X")
    with pytest.raises(ValueError):
        store.append("1", 3, "S")
    assert len(store) == 0


def test_bib_is_sanitized(tmp_path):
    _, store = _store(tmp_path)

    assert store.append("<b>12</b>", 1, "S").bib == "b12/b"
    assert store.append("12345678901234", 1, "S").bib == "1234567890"


def test_stats_count_per_bib_and_point(tmp_path):
    _, store = _store(tmp_path)
    store.append("5", 1, "S")
    store.append("5", 1, "F")
    store.append("6", 1, "S")

    stats = store.stats()
    assert stats.total == 3
    assert stats.per_bib == {"5": 2, "6": 1}
    assert stats.per_point == {"S": 2, "F": 1}


def test_edit_bib_preserves_identity_and_requeues(tmp_path):
    _, store = _store(tmp_path)
    entry = store.append("5", 1, "F")
    store.mark_synced(entry.entry_id)
    assert store.pending() == []

    edited = store.edit_bib(entry.entry_id, "15")

    assert edited is not None
    assert edited.bib == "15"
    assert edited.entry_id == entry.entry_id
    assert edited.timestamp == entry.timestamp
    assert [item.entry_id for item in store.pending()] == [entry.entry_id]


def test_edit_unknown_entry_returns_none(tmp_path):
    _, store = _store(tmp_path)
    entry = store.append("5", 1, "F")

    assert store.edit_bib("missing", "9") is None
    assert store.update_status("missing", "dnf") is None
    assert store.get(entry.entry_id).bib == "5"


def test_update_status_validates_value(tmp_path):
    _, store = _store(tmp_path)
    entry = store.append("5", 1, "F")

    assert store.update_status(entry.entry_id, "dsq").status == "dsq"
    with pytest.raises(ValueError):
        store.update_status(entry.entry_id, "lost")


def test_remove_leaves_tombstone(tmp_path):
    config, store = _store(tmp_path)
    entry = store.append("5", 1, "F")

    assert store.remove(entry.entry_id) is True
    assert store.remove(entry.entry_id) is False
    assert store.get(entry.entry_id) is None
    assert store.was_deleted(entry.entry_id)

    pending = store.pending_deletions()
    assert len(pending) == 1
    assert pending[0]["id"] == entry.entry_id
    assert pending[0]["deviceId"] == config.device_id

    assert store.mark_deletion_synced(entry.entry_id) is True
    assert store.pending_deletions() == []


def test_entries_survive_restart(tmp_path):
    config, store = _store(tmp_path)
    entry = store.append("21", 2, "S")
    store.remove(store.append("22", 2, "S").entry_id)
    config.close()

    reloaded_config = TimerConfig.load(tmp_path, debounce_seconds=0)
    reloaded = EntryStore(reloaded_config)

    assert reloaded_config.device_id == config.device_id
    assert [item.entry_id for item in reloaded.list()] == [entry.entry_id]
    assert reloaded.list()[0].run == 2
    assert len(reloaded.pending_deletions()) == 1


def test_corrupt_storage_loads_as_empty(tmp_path):
    (tmp_path / f"{ENTRIES_KEY}.json").write_text("[{broken", encoding="utf-8")
    (tmp_path / f"{DELETED_ENTRIES_KEY}.json").write_text('"nope"', encoding="utf-8")

    _, store = _store(tmp_path)

    assert store.list() == []
    assert store.pending_deletions() == []
    store.append("1", 1, "S")
    assert len(json.loads((tmp_path / f"{ENTRIES_KEY}.json").read_text(encoding="utf-8"))) == 1


def test_invalid_stored_rows_are_skipped(tmp_path):
    rows = [
        _remote("good", 1_700_000_000_000),
        {"id": "bad", "point": "Q", "timestamp": 1},
        "not an entry",
    ]
    (tmp_path / f"{ENTRIES_KEY}.json").write_text(json.dumps(rows), encoding="utf-8")

    _, store = _store(tmp_path)
    assert [entry.entry_id for entry in store.list()] == ["good"]


def test_merge_remote_adds_other_devices_in_timestamp_order(tmp_path):
    config, store = _store(tmp_path)
    local = store.append("3", 1, "S")

    added = store.merge_remote(
        [
            _remote("late", local.timestamp + 5000),
            _remote("early", local.timestamp - 5000),
            _remote("own", local.timestamp + 1, device_id=config.device_id),
            {"id": "", "point": "F"},
        ]
    )

    assert added == 2
    assert [entry.entry_id for entry in store.list()] == ["early", local.entry_id, "late"]
    assert all(not entry.pending_sync for entry in store.list() if entry.entry_id != local.entry_id)

    assert store.merge_remote([_remote("late", local.timestamp + 5000)]) == 0


def test_merge_remote_never_overwrites_local_entries(tmp_path):
    _, store = _store(tmp_path)
    local = store.append("3", 1, "S")

    echoed = local.to_dict()
    echoed["bib"] = "99"
    store.merge_remote([echoed])

    assert store.get(local.entry_id).bib == "3"


def test_merge_remote_skips_deleted_entries(tmp_path):
    _, store = _store(tmp_path)

    added = store.merge_remote(
        [_remote("gone", 1_700_000_001_000), _remote("kept", 1_700_000_002_000)],
        ["gone:dev_finish0001"],
    )
    assert added == 1
    assert [entry.entry_id for entry in store.list()] == ["kept"]


def test_remove_deleted_remote_drops_matching_entries(tmp_path):
    _, store = _store(tmp_path)
    store.merge_remote([_remote("r1", 1_700_000_001_000), _remote("r2", 1_700_000_002_000)])

    assert store.remove_deleted_remote(["r1:dev_finish0001", "unknown"]) == 1
    assert [entry.entry_id for entry in store.list()] == ["r2"]
    assert store.was_deleted("r1")
    assert store.pending_deletions() == []

    assert store.merge_remote([_remote("r1", 1_700_000_001_000)]) == 0


def test_non_finite_numbers_in_storage_are_skipped(tmp_path):
    rows = [
        _remote("good", 1_700_000_000_000),
        {**_remote("inf-synced", 1_700_000_001_000), "syncedAt": float("inf")},
        {**_remote("nan-synced", 1_700_000_002_000), "syncedAt": float("nan")},
        {**_remote("inf-time", 1_700_000_003_000), "timestamp": float("inf")},
    ]
    raw = json.dumps(rows)
    assert "Infinity" in raw and "NaN" in raw
    (tmp_path / f"{ENTRIES_KEY}.json").write_text(raw, encoding="utf-8")

    _, store = _store(tmp_path)

    assert [entry.entry_id for entry in store.list()] == ["good"]


def test_merge_remote_skips_non_finite_rows(tmp_path):
    _, store = _store(tmp_path)
    rows = [
        {**_remote("r1", 1_700_000_001_000), "syncedAt": float("inf")},
        _remote("r2", 1_700_000_002_000),
    ]

    assert store.merge_remote(rows) == 1
    assert [entry.entry_id for entry in store.list()] == ["r2"]


def test_debounced_append_is_written_on_close(tmp_path):
    config = TimerConfig.load(tmp_path, debounce_seconds=30, device_name="Start hut")
    store = EntryStore(config, clock=_Clock())
    entry = store.append("42", 1, "S")

    assert config.storage.has_pending_writes()
    config.close()
    assert not config.storage.has_pending_writes()

    reloaded = EntryStore(TimerConfig.load(tmp_path, debounce_seconds=30), clock=_Clock())
    assert [item.entry_id for item in reloaded.list()] == [entry.entry_id]
