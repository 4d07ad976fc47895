from __future__ import annotations

import json
import time

import pytest

from skitimer_core.storage import ENTRIES_KEY, SETTINGS_KEY, LocalStorage


def test_save_then_load_round_trips_through_disk(tmp_path):
    storage = LocalStorage(tmp_path, debounce_seconds=0)
    storage.save(SETTINGS_KEY, {"language": "de", "haptic": False})

    fresh = LocalStorage(tmp_path)
    assert fresh.load(SETTINGS_KEY, {}) == {"language": "de", "haptic": False}


def test_missing_and_corrupt_files_fall_back(tmp_path):
    storage = LocalStorage(tmp_path)
    assert storage.load(ENTRIES_KEY, []) == []

    (tmp_path / f"{ENTRIES_KEY}.json").write_text("{not json", encoding="utf-8")
    assert storage.load(ENTRIES_KEY, []) == []


def test_wrong_shape_counts_as_corrupt(tmp_path):
    (tmp_path / f"{ENTRIES_KEY}.json").write_text(json.dumps({"entries": []}), encoding="utf-8")

    storage = LocalStorage(tmp_path)
    assert storage.load(ENTRIES_KEY, []) == []


def test_writes_are_visible_before_they_reach_disk(tmp_path):
    storage = LocalStorage(tmp_path, debounce_seconds=60)
    storage.save(ENTRIES_KEY, [{"id": "a"}])

    assert storage.load(ENTRIES_KEY, []) == [{"id": "a"}]
    assert storage.has_pending_writes()
    assert not (tmp_path / f"{ENTRIES_KEY}.json").exists()

    storage.flush()
    assert not storage.has_pending_writes()
    assert json.loads((tmp_path / f"{ENTRIES_KEY}.json").read_text(encoding="utf-8")) == [{"id": "a"}]


def test_burst_of_writes_coalesces_to_last_value(tmp_path):
    storage = LocalStorage(tmp_path, debounce_seconds=0.05)
    for index in range(5):
        storage.save(ENTRIES_KEY, [{"id": str(index)}])

    deadline = time.monotonic() + 5
    while storage.has_pending_writes() and time.monotonic() < deadline:
        time.sleep(0.02)

    assert not storage.has_pending_writes()
    assert json.loads((tmp_path / f"{ENTRIES_KEY}.json").read_text(encoding="utf-8")) == [{"id": "4"}]


def test_remove_hides_value_and_deletes_file(tmp_path):
    storage = LocalStorage(tmp_path, debounce_seconds=60)
    storage.save(SETTINGS_KEY, {"sound": True})
    storage.flush()

    storage.remove(SETTINGS_KEY)
    assert storage.load(SETTINGS_KEY, {}) == {}

    storage.close()
    assert not (tmp_path / f"{SETTINGS_KEY}.json").exists()


def test_failed_flush_keeps_write_pending(tmp_path, monkeypatch):
    storage = LocalStorage(tmp_path, debounce_seconds=60)
    storage.save(ENTRIES_KEY, [{"id": "a"}])

    def _broken_write(key, raw):
        raise RuntimeError("disk full")

    monkeypatch.setattr(storage, "_write_file", _broken_write)

    with pytest.raises(RuntimeError, match="disk full"):
        storage.flush()

    assert storage.has_pending_writes()
    assert storage.load(ENTRIES_KEY, []) == [{"id": "a"}]
