import logging
import threading
import time

from typing import Callable, List, Optional, Tuple

from .evergreen import DealCandidate

log = logging.getLogger("Dealbot.Cache")


class CandidateCache:
    """Open deal list, refreshed from the marketplace at most once per interval.

    A failed refresh keeps serving the previous list. Callers arriving while a
    refresh is running get the previous list immediately instead of waiting.
    """

    def __init__(
        self,
        *,
        fetch: Callable[[], List[DealCandidate]],
        refresh_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetch = fetch
        self.refresh_interval = refresh_interval
        self.clock = clock
        self._state_lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._deals: Tuple[DealCandidate, ...] = ()
        self._last_refresh: Optional[float] = None

    @property
    def last_refresh(self) -> Optional[float]:
        with self._state_lock:
            return self._last_refresh

    def _is_fresh(self, last_refresh: Optional[float]) -> bool:
        return last_refresh is not None and self.clock() - last_refresh <= self.refresh_interval

    def get_candidates(self) -> List[DealCandidate]:
        with self._state_lock:
            deals, last_refresh = self._deals, self._last_refresh
        if self._is_fresh(last_refresh):
            return list(deals)

        if not self._refresh_lock.acquire(blocking=False):
            return list(deals)
        try:
            # Another caller may have refreshed between the check and taking the lock
            with self._state_lock:
                deals, last_refresh = self._deals, self._last_refresh
            if self._is_fresh(last_refresh):
                return list(deals)

            try:
                new_deals = tuple(self.fetch())
            except Exception as e:
                log.error(f"Unable to retrieve available deals list: {e}")
                return list(deals)

            with self._state_lock:
                self._deals = new_deals
                self._last_refresh = self.clock()
            log.debug(f"Found {len(new_deals)} open deals")
            return list(new_deals)
        finally:
            self._refresh_lock.release()

    def by_piece(self) -> dict:
        return {d.piece_cid: d for d in self.get_candidates()}
