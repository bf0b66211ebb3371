import logging
import threading

from typing import Dict

log = logging.getLogger("Dealbot.Locks")


class PieceLocks:
    """At most one holder per piece CID across the whole process."""

    def __init__(self):
        self._lock = threading.Lock()
        # Entries are never removed; the key space is bounded by the deal list
        self._in_progress: Dict[str, bool] = {}

    def try_acquire(self, piece_cid: str) -> bool:
        with self._lock:
            if self._in_progress.get(piece_cid):
                log.debug(f"CID is already being queried: {piece_cid}")
                return False
            self._in_progress[piece_cid] = True
            return True

    def release(self, piece_cid: str) -> None:
        with self._lock:
            self._in_progress[piece_cid] = False

    def is_held(self, piece_cid: str) -> bool:
        with self._lock:
            return self._in_progress.get(piece_cid, False)


class ProviderAdmission:
    """Caps the number of concurrent retrievals per storage provider."""

    def __init__(self, *, limit: int):
        self.limit = limit
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {}

    def try_acquire(self, provider_id: str) -> bool:
        with self._lock:
            count = self._counts.get(provider_id, 0)
            if count >= self.limit:
                log.debug(f"Reached max concurrent queries for SP {provider_id}")
                return False
            self._counts[provider_id] = count + 1
            return True

    def release(self, provider_id: str) -> None:
        with self._lock:
            count = self._counts.get(provider_id, 0)
            if count <= 0:
                log.warning(f"Admission for SP {provider_id} released more often than acquired")
                return
            self._counts[provider_id] = count - 1

    def in_flight(self, provider_id: str) -> int:
        with self._lock:
            return self._counts.get(provider_id, 0)
