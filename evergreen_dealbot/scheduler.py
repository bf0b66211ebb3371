import logging
import queue
import threading

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

from .acquisition import AttemptState, DealbotServices
from .utils import list_car_files, piece_cid_from_car_name

log = logging.getLogger("Dealbot.Scheduler")

DONE_POLL_SECONDS = 1.0


class Scheduler:
    """Keeps up to `max_threads` acquisition attempts running, replacing each one as it finishes."""

    def __init__(self, *, services: DealbotServices, stop: Optional[threading.Event] = None):
        self.services = services
        self.options = services.options
        self.stop = stop or threading.Event()
        self.results: List[AttemptState] = []

    def _worker(self, done: queue.Queue) -> None:
        state = AttemptState.FAILED
        selected = False
        try:
            attempt = self.services.new_attempt()
            state = attempt.run()
            selected = attempt.candidate is not None
        except Exception as e:
            log.error(f"Acquisition attempt crashed: {e}", exc_info=True)
        finally:
            done.put((state, selected))

    def run(self, max_attempts: Optional[int] = None) -> List[AttemptState]:
        """Run until `stop` is set, or until `max_attempts` attempts have finished."""
        max_threads = self.options.max_threads
        done: queue.Queue = queue.Queue()
        active = 0
        started = 0

        with ThreadPoolExecutor(max_workers=max_threads, thread_name_prefix="dealbot") as pool:
            while not self.stop.is_set():
                may_start = max_attempts is None or started < max_attempts
                if active < max_threads and may_start:
                    if not self.services.cache.get_candidates():
                        log.debug(f"No open deals to work on. Sleeping for {self.options.idle_seconds} seconds...")
                        self.stop.wait(self.options.idle_seconds)
                        continue
                    pool.submit(self._worker, done)
                    active += 1
                    started += 1
                    log.debug(f"Spawning a new thread. There are now {active} active")
                    continue

                if active == 0:
                    break

                try:
                    state, selected = done.get(timeout=DONE_POLL_SECONDS)
                except queue.Empty:
                    continue
                active -= 1
                self.results.append(state)
                log.debug(f"A thread just finished ({state.value}). There are now {active} active")
                if not selected:
                    # Every pick was too small, source-less or busy; back off before trying again
                    self.stop.wait(self.options.idle_seconds)

            # Collect attempts still running when asked to stop
            while active > 0:
                self.results.append(done.get()[0])
                active -= 1

        return self.results


class DirectoryWatcher:
    """Periodically matches CAR files in long-term storage against open deals."""

    def __init__(self, *, services: DealbotServices, stop: Optional[threading.Event] = None):
        self.services = services
        self.options = services.options
        self.stop = stop or threading.Event()

    def scan_once(self) -> List[Tuple[str, AttemptState]]:
        directory = self.options.car_location_longterm
        try:
            car_files = list_car_files(directory)
        except OSError as e:
            log.error(f"Could not list CAR files in {directory}: {e}")
            return []
        log.debug(f"Watcher found {len(car_files)} CAR files")
        if not car_files:
            return []

        deals = self.services.cache.by_piece()
        outcomes = []
        for car in car_files:
            piece_cid = piece_cid_from_car_name(car)
            deal = deals.get(piece_cid)
            if deal is None:
                continue
            if self.services.piece_locks.is_held(piece_cid):
                log.debug(f"Watcher skipping {piece_cid}, already in progress")
                continue
            log.debug(f"Watcher found an open deal for {piece_cid}")
            outcomes.append((piece_cid, self.services.new_attempt().run_local(deal)))
        return outcomes

    def run(self) -> None:
        interval = self.options.watcher_interval_minutes * 60
        while not self.stop.is_set():
            try:
                self.scan_once()
            except Exception as e:
                log.error(f"Watcher cycle failed: {e}", exc_info=True)
            self.stop.wait(interval)

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self.run, name="car-watcher", daemon=True)
        thread.start()
        return thread
