from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

from skitimer_core import EntryStore, RecentRacesRegistry, SyncClient, TimerConfig
from skitimer_core import sync as sync_module

API_URL = "https://timer.example"


class _FakeClient:
    """Stand-in for ``httpx.Client`` that routes every call to ``handler``."""

    handler: Callable[..., Any]
    calls: List[Dict[str, Any]] = []

    def __init__(self, *args, **kwargs) -> None:
        pass

    def __enter__(self) -> "_FakeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean
        return None

    def _dispatch(self, method: str, url: str, params=None, json=None, headers=None):
        call = {"method": method, "url": url, "params": params or {}, "json": json, "headers": headers or {}}
        _FakeClient.calls.append(call)
        return _FakeClient.handler(call)

    def get(self, url: str, params=None, headers=None):
        return self._dispatch("GET", url, params=params, headers=headers)

    def post(self, url: str, params=None, json=None, headers=None):
        return self._dispatch("POST", url, params=params, json=json, headers=headers)

    def request(self, method: str, url: str, params=None, json=None, headers=None):
        return self._dispatch(method, url, params=params, json=json, headers=headers)


def _response(call: Dict[str, Any], status: int, body: Any = None, headers: Optional[Dict[str, str]] = None):
    request = sync_module.httpx.Request(call["method"], call["url"])
    if body is None:
        return sync_module.httpx.Response(status, request=request, headers=headers)
    return sync_module.httpx.Response(status, request=request, json=body, headers=headers)


def _install(monkeypatch, handler: Callable[[Dict[str, Any]], Any]) -> List[Dict[str, Any]]:
    _FakeClient.calls = []
    _FakeClient.handler = staticmethod(handler)
    monkeypatch.setattr(sync_module.httpx, "Client", _FakeClient)
    return _FakeClient.calls


def _setup(tmp_path, cloud_sync: bool = True):
    config = TimerConfig.load(
        tmp_path,
        debounce_seconds=0,
        api_url=API_URL,
        race_id="RACE-1",
        auth_token="secret-token",
        device_name="Start",
    )
    config.update_settings(cloud_sync=cloud_sync)
    store = EntryStore(config)
    registry = RecentRacesRegistry(config)
    return config, store, registry, SyncClient(config, store, registry)


def _remote(entry_id: str, timestamp: int, bib: str = "9") -> Dict[str, Any]:
    return {
        "id": entry_id,
        "bib": bib,
        "point": "F",
        "run": 1,
        "timestamp": timestamp,
        "status": "ok",
        "deviceId": "dev_finish0001",
        "deviceName": "Finish",
        "syncedAt": timestamp + 10,
    }


def test_push_pending_success(tmp_path, monkeypatch):
    config, store, _, client = _setup(tmp_path)
    first = store.append("1", 1, "S")
    store.append("2", 1, "S")
    calls = _install(monkeypatch, lambda call: _response(call, 200, {"success": True, "crossDeviceDuplicate": None}))

    result = client.push_pending()

    assert result["synced"] == 2
    assert result["remaining"] == 0
    assert result["errors"] == []
    assert store.pending() == []
    assert store.get(first.entry_id).synced_at is not None

    assert len(calls) == 2
    assert calls[0]["method"] == "POST"
    assert calls[0]["url"] == f"{API_URL}/api/v1/sync"
    assert calls[0]["params"] == {"raceId": "RACE-1"}
    assert calls[0]["headers"]["Authorization"] == "Bearer secret-token"
    assert calls[0]["json"]["deviceId"] == config.device_id
    assert calls[0]["json"]["entry"]["id"] == first.entry_id
    assert "syncedAt" not in calls[0]["json"]["entry"]


def test_push_failure_keeps_entries_pending_and_backs_off(tmp_path, monkeypatch):
    _, store, _, client = _setup(tmp_path)
    store.append("1", 1, "S")
    calls = _install(monkeypatch, lambda call: _response(call, 500, {"error": "Internal server error"}))

    result = client.push_pending()

    assert result["synced"] == 0
    assert result["remaining"] == 1
    assert result["errors"] == ["Internal server error"]
    assert len(store.pending()) == 1

    client.push_pending()
    assert len(calls) == 1

    client.push_pending(force=True)
    assert len(calls) == 2


def test_expired_token_stops_push_and_clears_token(tmp_path, monkeypatch):
    config, store, _, client = _setup(tmp_path)
    store.append("1", 1, "S")
    store.append("2", 1, "S")
    calls = _install(
        monkeypatch,
        lambda call: _response(call, 401, {"error": "Token expired. Please re-authenticate.", "expired": True}),
    )

    result = client.push_pending()

    assert result["authExpired"] is True
    assert result["remaining"] == 2
    assert config.auth_token == ""
    assert len(calls) == 1


def test_rate_limit_reports_retry_after(tmp_path, monkeypatch):
    _, store, _, client = _setup(tmp_path)
    store.append("1", 1, "S")
    store.append("2", 1, "S")
    calls = _install(
        monkeypatch,
        lambda call: _response(call, 429, {"error": "Too many requests. Please try again later.", "retryAfter": 17}),
    )

    result = client.push_pending()

    assert result["retryAfter"] == 17
    assert result["remaining"] == 2
    assert len(calls) == 1


def test_push_sends_pending_deletions(tmp_path, monkeypatch):
    config, store, _, client = _setup(tmp_path)
    entry = store.append("1", 1, "S")
    store.mark_synced(entry.entry_id)
    store.remove(entry.entry_id)
    calls = _install(monkeypatch, lambda call: _response(call, 200, {"success": True, "deleted": True}))

    result = client.push_pending()

    assert result["synced"] == 1
    assert store.pending_deletions() == []
    assert calls[0]["method"] == "DELETE"
    assert calls[0]["json"] == {"entryId": entry.entry_id, "deviceId": config.device_id, "deviceName": "Start"}


def test_disabled_sync_makes_no_requests(tmp_path, monkeypatch):
    _, store, _, client = _setup(tmp_path, cloud_sync=False)
    store.append("1", 1, "S")
    calls = _install(monkeypatch, lambda call: _response(call, 200, {}))

    result = client.push_pending()

    assert result["errors"] == ["Cloud sync is disabled"]
    assert result["remaining"] == 1
    assert calls == []
    assert client.push_entry(store.pending()[0]) is False


def test_pull_merges_remote_entries_and_touches_registry(tmp_path, monkeypatch):
    config, store, registry, client = _setup(tmp_path)
    state = {
        "entries": [_remote("r1", 1_700_000_001_000), _remote("r2", 1_700_000_002_000)],
        "lastUpdated": 1_700_000_005_000,
        "total": 2,
        "deviceCount": 2,
        "highestBib": 9,
        "deletedIds": ["r2:dev_finish0001"],
    }
    calls = _install(monkeypatch, lambda call: _response(call, 200, state, {"ETag": '"v1"'}))

    summary = client.pull()

    assert summary["added"] == 1
    assert summary["error"] is None
    assert [entry.entry_id for entry in store.list()] == ["r1"]
    assert calls[0]["params"] == {"raceId": "RACE-1", "deviceId": config.device_id, "deviceName": "Start"}

    session = registry.find("race-1")
    assert session is not None
    assert session.last_updated == 1_700_000_005_000
    assert session.entry_count == 2


def test_pull_revalidates_with_etag(tmp_path, monkeypatch):
    _, store, _, client = _setup(tmp_path)
    state = {"entries": [_remote("r1", 1_700_000_001_000)], "lastUpdated": 1_700_000_005_000, "total": 1}

    def _handler(call):
        if call["headers"].get("If-None-Match") == '"v1"':
            return _response(call, 304, headers={"ETag": '"v1"'})
        return _response(call, 200, state, {"ETag": '"v1"'})

    calls = _install(monkeypatch, _handler)

    client.pull()
    summary = client.pull()

    assert summary["notModified"] is True
    assert summary["added"] == 0
    assert calls[1]["headers"]["If-None-Match"] == '"v1"'
    assert len(store) == 1


def test_pull_falls_back_to_cache_when_offline(tmp_path, monkeypatch):
    _, store, registry, client = _setup(tmp_path)
    state = {"entries": [_remote("r1", 1_700_000_001_000)], "lastUpdated": 1_700_000_005_000, "total": 1}
    _install(monkeypatch, lambda call: _response(call, 200, state, {"ETag": '"v1"'}))
    client.pull()

    def _offline(call):
        raise sync_module.httpx.ConnectError("network unreachable", request=sync_module.httpx.Request("GET", call["url"]))

    _install(monkeypatch, _offline)
    summary = client.pull()

    assert summary["offline"] is True
    assert summary["fromCache"] is True
    assert summary["error"]
    assert len(store) == 1
    assert registry.find("RACE-1").last_updated == 1_700_000_005_000


def test_pull_without_cache_reports_offline(tmp_path, monkeypatch):
    _, store, _, client = _setup(tmp_path)

    def _offline(call):
        raise sync_module.httpx.ConnectError("network unreachable", request=sync_module.httpx.Request("GET", call["url"]))

    _install(monkeypatch, _offline)
    summary = client.pull()

    assert summary["offline"] is True
    assert summary["fromCache"] is False
    assert len(store) == 0


def test_pull_reports_deleted_race(tmp_path, monkeypatch):
    _, store, _, client = _setup(tmp_path)
    _install(
        monkeypatch,
        lambda call: _response(
            call, 200, {"deleted": True, "deletedAt": 1, "message": "Race deleted by administrator"}
        ),
    )

    summary = client.pull()

    assert summary["deleted"] is True
    assert client.cache.get(client._cache_key()) is None
    assert len(store) == 0


def test_fetch_token_stores_token(tmp_path, monkeypatch):
    config, _, _, client = _setup(tmp_path)
    calls = _install(monkeypatch, lambda call: _response(call, 200, {"success": True, "token": "fresh"}))

    assert client.fetch_token("1234") is True
    assert config.auth_token == "fresh"
    assert calls[0]["url"] == f"{API_URL}/api/v1/auth/token"
    assert calls[0]["json"] == {"pin": "1234"}


def test_check_race_exists(tmp_path, monkeypatch):
    _, _, _, client = _setup(tmp_path)
    calls = _install(monkeypatch, lambda call: _response(call, 200, {"exists": True, "entryCount": 4}))

    assert client.check_race_exists("OTHER") == {"exists": True, "entryCount": 4}
    assert calls[0]["params"] == {"raceId": "OTHER", "checkOnly": "true"}


def test_check_race_exists_tolerates_malformed_counts(tmp_path, monkeypatch):
    _, _, _, client = _setup(tmp_path)

    _install(monkeypatch, lambda call: _response(call, 200, {"exists": True, "entryCount": "x"}))
    assert client.check_race_exists("OTHER") == {"exists": True, "entryCount": 0}

    _install(monkeypatch, lambda call: _response(call, 200, {}))
    assert client.check_race_exists("OTHER") == {"exists": False, "entryCount": 0}


def test_pull_ignores_non_finite_values_from_gateway(tmp_path, monkeypatch):
    _, store, registry, client = _setup(tmp_path)
    bad = {**_remote("r2", 1_700_000_002_000), "syncedAt": float("inf")}
    state = {"entries": [_remote("r1", 1_700_000_001_000), bad], "lastUpdated": float("inf"), "total": 2}
    # Serialised by hand: the gateway body carries bare Infinity literals.
    raw = json.dumps(state).encode()
    _install(
        monkeypatch,
        lambda call: sync_module.httpx.Response(
            200,
            request=sync_module.httpx.Request(call["method"], call["url"]),
            content=raw,
            headers={"Content-Type": "application/json"},
        ),
    )

    summary = client.pull()

    assert summary["added"] == 1
    assert [entry.entry_id for entry in store.list()] == ["r1"]
    assert registry.find("RACE-1").entry_count == 2
