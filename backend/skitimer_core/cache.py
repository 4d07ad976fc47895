from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .storage import RESPONSE_CACHE_KEY, LocalStorage
from .validation import now_ms

logger = logging.getLogger(__name__)

CACHE_VERSION = "v2"
MAX_CACHED_RESPONSES = 20


class ResponseCache:
    """Versioned cache of gateway GET responses keyed by URL.

    Keeps the last body and ETag of each URL so the device can revalidate
    with ``If-None-Match`` and can keep showing race state while offline.
    Entries written under another ``CACHE_VERSION`` are discarded.
    """

    def __init__(self, storage: LocalStorage, version: str = CACHE_VERSION) -> None:
        self._storage = storage
        self.version = version

    def _load(self) -> Dict[str, Dict[str, Any]]:
        data = self._storage.load(RESPONSE_CACHE_KEY, {})
        if not isinstance(data, dict):
            return {}
        if data.get("version") != self.version:
            if data:
                logger.info("Discarding response cache from version %s", data.get("version"))
            return {}
        responses = data.get("responses")
        return responses if isinstance(responses, dict) else {}

    def _store(self, responses: Dict[str, Dict[str, Any]]) -> None:
        try:
            self._storage.save(RESPONSE_CACHE_KEY, {"version": self.version, "responses": responses})
        except RuntimeError:
            logger.exception("Failed to persist response cache; write stays queued")

    def get(self, url: str) -> Optional[Dict[str, Any]]:
        record = self._load().get(url)
        if not isinstance(record, dict) or "body" not in record:
            return None
        return record

    def etag_for(self, url: str) -> Optional[str]:
        record = self.get(url)
        etag = record.get("etag") if record else None
        return etag if isinstance(etag, str) and etag else None

    def put(self, url: str, body: Any, etag: Optional[str]) -> None:
        responses = self._load()
        responses.pop(url, None)
        responses[url] = {"body": body, "etag": etag, "fetchedAt": now_ms()}
        while len(responses) > MAX_CACHED_RESPONSES:
            oldest = min(responses, key=lambda item: responses[item].get("fetchedAt") or 0)
            responses.pop(oldest)
        self._store(responses)

    def clear(self) -> None:
        try:
            self._storage.remove(RESPONSE_CACHE_KEY)
        except RuntimeError:
            logger.exception("Failed to clear response cache; removal stays queued")
