"""Device side of race synchronisation.

Pushes locally recorded entries and deletions to the sync gateway and pulls
entries recorded by other stations. Local state stays the source of truth:
network failures are reported in the returned summaries and the affected
entries simply remain pending until a later push succeeds.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .cache import ResponseCache
from .config import TimerConfig
from .entries import EntryStore
from .entry import Entry
from .recent_races import RecentRacesRegistry
from .validation import normalize_race_id, now_ms

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/v1/sync"
TOKEN_PATH = "/api/v1/auth/token"
RETRY_BACKOFF_BASE_MS = 2000
RETRY_BACKOFF_MAX_MS = 5 * 60 * 1000


class SyncError(RuntimeError):
    pass


class AuthRequiredError(SyncError):
    def __init__(self, message: str, expired: bool = False) -> None:
        super().__init__(message)
        self.expired = expired


class RateLimitedError(SyncError):
    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class SyncAborted(SyncError):
    pass


def _extract_error(response: httpx.Response | None) -> Dict[str, Any]:
    if response is None:
        return {}
    try:
        payload = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return {"error": text} if text else {}
    return payload if isinstance(payload, dict) else {}


class SyncClient:
    def __init__(
        self,
        config: TimerConfig,
        store: EntryStore,
        registry: RecentRacesRegistry,
        cache: ResponseCache | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.registry = registry
        self.cache = cache or ResponseCache(config.storage)
        self._abort = threading.Event()
        self._attempts: Dict[str, Tuple[int, int]] = {}

    # ------------------------------------------------------------------
    # Helpers

    @property
    def endpoint(self) -> str:
        return self.config.api_url.rstrip("/") + SYNC_PATH

    def _headers(self, json_body: bool = False) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _check_response(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            detail = _extract_error(response)
            expired = bool(detail.get("expired"))
            if expired:
                self.config.auth_token = ""
            raise AuthRequiredError(str(detail.get("error") or "Unauthorized"), expired=expired)
        if response.status_code == 429:
            detail = _extract_error(response)
            try:
                retry_after = int(detail.get("retryAfter") or response.headers.get("Retry-After") or 60)
            except (TypeError, ValueError, OverflowError):
                retry_after = 60
            raise RateLimitedError(str(detail.get("error") or "Too many requests"), retry_after)
        response.raise_for_status()

    def _ready(self, key: str, now: int) -> bool:
        attempts = self._attempts.get(key)
        if attempts is None:
            return True
        count, last_attempt = attempts
        delay = min(RETRY_BACKOFF_BASE_MS * (2 ** (count - 1)), RETRY_BACKOFF_MAX_MS)
        return now - last_attempt >= delay

    def _record_failure(self, key: str, now: int) -> None:
        count, _ = self._attempts.get(key, (0, 0))
        self._attempts[key] = (count + 1, now)

    def _disabled_reason(self) -> Optional[str]:
        if not self.config.settings.cloud_sync:
            return "Cloud sync is disabled"
        if not self.config.race_id:
            return "No race selected"
        if not self.config.api_url:
            return "Sync gateway URL is not configured"
        return None

    def abort(self) -> None:
        """Stop an in-progress ``push_pending`` before its next request."""
        self._abort.set()

    # ------------------------------------------------------------------
    # Push

    def _send_entry(self, client: httpx.Client, entry: Entry) -> Dict[str, Any]:
        response = client.post(
            self.endpoint,
            params={"raceId": self.config.race_id},
            json={
                "entry": entry.to_wire(),
                "deviceId": self.config.device_id,
                "deviceName": self.config.device_name,
            },
            headers=self._headers(json_body=True),
        )
        self._check_response(response)
        try:
            data = response.json()
        except ValueError:
            logger.warning("Failed to parse send response body for entry %s", entry.entry_id)
            data = {}

        duplicate = data.get("crossDeviceDuplicate") if isinstance(data, dict) else None
        if duplicate:
            logger.warning(
                "Bib %s at %s run %s was also recorded by %s",
                duplicate.get("bib"),
                duplicate.get("point"),
                duplicate.get("run"),
                duplicate.get("deviceName"),
            )
        self.store.mark_synced(entry.entry_id)
        self._attempts.pop(entry.entry_id, None)
        return data if isinstance(data, dict) else {}

    def _send_deletion(self, client: httpx.Client, tombstone: Dict[str, Any]) -> None:
        response = client.request(
            "DELETE",
            self.endpoint,
            params={"raceId": self.config.race_id},
            json={
                "entryId": tombstone["id"],
                "deviceId": tombstone.get("deviceId") or self.config.device_id,
                "deviceName": self.config.device_name,
            },
            headers=self._headers(json_body=True),
        )
        self._check_response(response)
        self.store.mark_deletion_synced(tombstone["id"])
        self._attempts.pop(f"delete:{tombstone['id']}", None)

    def push_entry(self, entry: Entry) -> bool:
        if self._disabled_reason():
            return False
        try:
            with httpx.Client(timeout=self.config.http_timeout) as client:
                self._send_entry(client, entry)
        except (SyncError, httpx.HTTPError) as exc:
            logger.warning("Entry sync failed for %s: %s", entry.entry_id, exc)
            self._record_failure(entry.entry_id, now_ms())
            return False
        return True

    def delete_remote(self, entry_id: str, device_id: Optional[str] = None) -> bool:
        if self._disabled_reason():
            return False
        tombstone = {"id": entry_id, "deviceId": device_id or self.config.device_id}
        try:
            with httpx.Client(timeout=self.config.http_timeout) as client:
                self._send_deletion(client, tombstone)
        except (SyncError, httpx.HTTPError) as exc:
            logger.warning("Remote delete failed for %s: %s", entry_id, exc)
            return False
        return True

    def push_pending(self, force: bool = False) -> Dict[str, Any]:
        """Push every pending entry and deletion of this device.

        Safe to repeat: the gateway ignores entries it already holds. Entries
        that fail are retried on later calls with exponential backoff unless
        ``force`` is set.
        """
        result: Dict[str, Any] = {
            "synced": 0,
            "remaining": 0,
            "errors": [],
            "authExpired": False,
            "retryAfter": None,
        }

        reason = self._disabled_reason()
        if reason:
            result["errors"].append(reason)
            result["remaining"] = len(self.store.pending()) + len(self.store.pending_deletions())
            return result

        self._abort.clear()
        now = now_ms()
        work: List[Tuple[str, Any]] = [("entry", entry) for entry in self.store.pending()]
        work += [("delete", stone) for stone in self.store.pending_deletions()]

        with httpx.Client(timeout=self.config.http_timeout) as client:
            for kind, item in work:
                key = item.entry_id if kind == "entry" else f"delete:{item['id']}"
                if not force and not self._ready(key, now):
                    continue

                try:
                    if self._abort.is_set():
                        raise SyncAborted("Sync aborted")
                    if kind == "entry":
                        self._send_entry(client, item)
                    else:
                        self._send_deletion(client, item)
                except SyncAborted as exc:
                    result["errors"].append(str(exc))
                    break
                except AuthRequiredError as exc:
                    result["authExpired"] = exc.expired
                    result["errors"].append(str(exc))
                    break
                except RateLimitedError as exc:
                    result["retryAfter"] = exc.retry_after
                    result["errors"].append(str(exc))
                    break
                except httpx.HTTPStatusError as exc:
                    self._record_failure(key, now)
                    detail = _extract_error(exc.response).get("error")
                    result["errors"].append(detail or f"Gateway rejected {kind} sync: {exc}")
                except httpx.HTTPError as exc:
                    self._record_failure(key, now)
                    result["errors"].append(f"{kind.capitalize()} sync request failed: {exc}")
                else:
                    result["synced"] += 1

        result["remaining"] = len(self.store.pending()) + len(self.store.pending_deletions())
        if result["synced"] or result["errors"]:
            logger.info(
                "Push finished: %d synced, %d remaining, %d errors",
                result["synced"],
                result["remaining"],
                len(result["errors"]),
            )
        return result

    # ------------------------------------------------------------------
    # Pull

    def _cache_key(self) -> str:
        return f"{self.endpoint}?raceId={normalize_race_id(self.config.race_id)}"

    def _fetch_state(self, summary: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        cache_key = self._cache_key()
        params = {
            "raceId": self.config.race_id,
            "deviceId": self.config.device_id,
            "deviceName": self.config.device_name,
        }
        headers = self._headers()
        cached = self.cache.get(cache_key)
        if cached and cached.get("etag"):
            headers["If-None-Match"] = cached["etag"]

        with httpx.Client(timeout=self.config.http_timeout) as client:
            response = client.get(self.endpoint, params=params, headers=headers)
            if response.status_code == 304:
                if cached is not None:
                    summary["notModified"] = True
                    return cached["body"]
                headers.pop("If-None-Match", None)
                response = client.get(self.endpoint, params=params, headers=headers)

            self._check_response(response)
            data = response.json()

        if isinstance(data, dict) and not data.get("deleted"):
            self.cache.put(cache_key, data, response.headers.get("ETag"))
        return data

    def pull(self) -> Dict[str, Any]:
        """Fetch race state and merge entries recorded by other stations."""
        summary: Dict[str, Any] = {
            "added": 0,
            "removed": 0,
            "notModified": False,
            "deleted": False,
            "offline": False,
            "fromCache": False,
            "error": None,
            "authExpired": False,
            "retryAfter": None,
        }

        reason = self._disabled_reason()
        if reason:
            summary["error"] = reason
            return summary

        live = True
        try:
            data = self._fetch_state(summary)
        except AuthRequiredError as exc:
            summary["authExpired"] = exc.expired
            summary["error"] = str(exc)
            return summary
        except RateLimitedError as exc:
            summary["retryAfter"] = exc.retry_after
            summary["error"] = str(exc)
            return summary
        except httpx.HTTPStatusError as exc:
            summary["error"] = _extract_error(exc.response).get("error") or f"Sync fetch failed: {exc}"
            return summary
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Cloud sync fetch failed, using cached race state: %s", exc)
            summary["offline"] = isinstance(exc, httpx.TransportError)
            summary["error"] = f"Sync fetch failed: {exc}"
            cached = self.cache.get(self._cache_key())
            if cached is None:
                return summary
            data = cached["body"]
            summary["fromCache"] = True
            live = False

        if not isinstance(data, dict):
            summary["error"] = "Invalid data structure"
            return summary

        if data.get("deleted"):
            logger.warning("Race %s was deleted by an administrator", self.config.race_id)
            summary["deleted"] = True
            self.cache.clear()
            return summary

        entries = data.get("entries") if isinstance(data.get("entries"), list) else []
        deleted_ids = [
            item for item in data.get("deletedIds") or [] if isinstance(item, str) and item
        ]
        summary["removed"] = self.store.remove_deleted_remote(deleted_ids)
        summary["added"] = self.store.merge_remote(entries, deleted_ids)

        if live:
            last_updated = data.get("lastUpdated")
            if (
                isinstance(last_updated, bool)
                or not isinstance(last_updated, (int, float))
                or not math.isfinite(last_updated)
            ):
                last_updated = now_ms()
            total = data.get("total")
            valid_total = isinstance(total, int) and not isinstance(total, bool) and total >= 0
            entry_count = total if valid_total else len(entries)
            self.registry.touch(self.config.race_id, int(last_updated), entry_count)

        return summary

    # ------------------------------------------------------------------
    # Misc

    def check_race_exists(self, race_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        race = race_id or self.config.race_id
        if not (race and self.config.api_url):
            return None
        try:
            with httpx.Client(timeout=self.config.http_timeout) as client:
                response = client.get(
                    self.endpoint,
                    params={"raceId": race, "checkOnly": "true"},
                    headers=self._headers(),
                )
                self._check_response(response)
                data = response.json()
        except (SyncError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Race existence check failed for %s: %s", race, exc)
            return None
        if not isinstance(data, dict):
            return None
        entry_count = data.get("entryCount")
        if isinstance(entry_count, bool) or not isinstance(entry_count, int) or entry_count < 0:
            entry_count = 0
        return {"exists": bool(data.get("exists")), "entryCount": entry_count}

    def fetch_token(self, pin: str) -> bool:
        """Exchange the race management PIN for a bearer token."""
        if not self.config.api_url:
            return False
        try:
            with httpx.Client(timeout=self.config.http_timeout) as client:
                response = client.post(
                    self.config.api_url.rstrip("/") + TOKEN_PATH,
                    json={"pin": pin},
                    headers={"Content-Type": "application/json", "Accept": "application/json"},
                )
                self._check_response(response)
                data = response.json()
        except (SyncError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Token request failed: %s", exc)
            return False

        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            return False
        self.config.auth_token = token
        return True
