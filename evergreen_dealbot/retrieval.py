import logging
import queue
import threading
import time

from dataclasses import dataclass
from typing import Any, Callable, Tuple

from .errors import DealbotError, RetrievalError, RetrievalTimeout
from .lotus import (
    EVENT_POLL_INTERVAL,
    RETRIEVAL_TERMINAL_STATUSES,
    TRANSFER_TERMINAL_STATUSES,
    LotusClient,
    RetrievalEvent,
    RetrievalStatus,
    TransferStatus,
    cid_link,
)
from .utils import fil_str, parse_fil, size_str

log = logging.getLogger("Dealbot.Retrieval")

RECONCILE_SPACING = 0.25


@dataclass
class RetrievalSession:
    deal_id: int
    started: float
    last_event: float

    def idle_for(self, now: float) -> float:
        return now - self.last_event

    def elapsed(self, now: float) -> float:
        return now - self.started


class RetrievalMonitor:
    def __init__(
        self,
        *,
        lotus: LotusClient,
        options: Any,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.lotus = lotus
        self.timeout = options.retrieval_timeout_minutes * 60
        self.tick = options.retrieval_tick_seconds
        self.max_price = parse_fil(options.max_retrieval_price)
        self.cancel_grace = options.cancel_grace_seconds
        self.transfer_cancel_timeout = options.transfer_cancel_timeout_seconds
        self.clock = clock
        self.sleep = sleep

    def retrieve(self, *, payload_cid: str, provider: str, destination: str) -> None:
        """Retrieve `payload_cid` from `provider` and export it as a CAR to `destination`.

        Raises RetrievalError (or RetrievalTimeout) on any failure.
        """
        try:
            self._retrieve(payload_cid, provider, destination)
        except RetrievalError:
            raise
        except DealbotError as e:
            raise RetrievalError(f"Retrieval of {payload_cid} from {provider} failed: {e}") from e

    def _retrieve(self, payload_cid: str, provider: str, destination: str) -> None:
        # Wallet that will pay for the retrieval
        payer = self.lotus.wallet_default_address()

        # The full node may already hold the payload from an earlier import
        for root, car_path in self.lotus.list_local_imports():
            if root == payload_cid and car_path:
                log.debug(f"Payload {payload_cid} found in local import {car_path}")
                self._export({"Root": cid_link(payload_cid), "FromLocalCAR": car_path}, destination)
                return

        offer = self.lotus.query_offer(provider, payload_cid)
        if offer.err:
            raise RetrievalError(f"Offer error: {offer.err}")
        if offer.min_price > self.max_price:
            raise RetrievalError(
                f"Failed to find offer satisfying maxPrice: {fil_str(self.max_price)} (asked {fil_str(offer.min_price)})"
            )

        order = offer.order(payer)
        events: "queue.Queue[RetrievalEvent]" = queue.Queue()
        stop = threading.Event()
        # Subscribe before retrieving; the deal id is only known once the retrieval starts
        pump = threading.Thread(target=self._pump, args=(stop, events), name=f"events-{payload_cid[:12]}", daemon=True)
        pump.start()
        try:
            deal_id = self.lotus.start_retrieval(order)
            now = self.clock()
            session = RetrievalSession(deal_id=deal_id, started=now, last_event=now)
            log.debug(f"Started retrieval {deal_id} of {payload_cid} from {provider}")
            self._wait(session, events)
        finally:
            stop.set()

        self._export({"Root": cid_link(payload_cid), "DealID": deal_id}, destination)

    def _pump(self, stop: threading.Event, events: queue.Queue) -> None:
        for event in self.lotus.subscribe_retrieval_events(stop, min(self.tick, EVENT_POLL_INTERVAL)):
            if stop.is_set():
                return
            events.put(event)

    def _wait(self, session: RetrievalSession, events: queue.Queue) -> None:
        while True:
            try:
                event = events.get(timeout=self.tick)
            except queue.Empty:
                event = None

            now = self.clock()
            if event is not None and event.retrieval_id == session.deal_id:
                session.last_event = now
                log.debug(
                    f"Recv {size_str(event.bytes_received)}, Paid {fil_str(event.total_paid)}, "
                    f"{event.event or 'New'} ({event.status_name}), {session.elapsed(now):.3f}s"
                )
                if event.status == RetrievalStatus.Completed:
                    return
                if event.status == RetrievalStatus.Rejected:
                    raise RetrievalError(f"Retrieval proposal rejected: {event.message}")
                if event.status == RetrievalStatus.Cancelled:
                    raise RetrievalError(f"Retrieval proposal cancelled: {event.message}")
                if event.status in (RetrievalStatus.DealNotFound, RetrievalStatus.Errored):
                    raise RetrievalError(f"Retrieval error: {event.message}")

            if session.idle_for(now) > self.timeout:
                raise RetrievalTimeout(f"Retrieval timed out after {self.timeout / 60:g} minutes")

    def _export(self, export_ref: dict, destination: str) -> None:
        try:
            self.lotus.export_content(export_ref, destination)
        except DealbotError as e:
            raise RetrievalError(f"Error exporting CAR: {e}") from e

    def cancel(self, payload_cid: str) -> bool:
        """Best-effort cancellation of a failed retrieval. Never raises.

        Returns True if a matching retrieval deal was found and cancelled.
        """
        # The transfer may take some time to show up
        self.sleep(self.cancel_grace)

        found = False
        try:
            retrievals = self.lotus.list_retrievals()
        except DealbotError as e:
            log.debug(f"Listing retrievals failed: {e}")
            retrievals = []

        for r in retrievals:
            if r.payload_cid != payload_cid:
                continue
            if r.status in (RetrievalStatus.Cancelled, RetrievalStatus.Cancelling):
                continue
            try:
                self.lotus.cancel_retrieval(r.retrieval_id)
                found = True
            except DealbotError as e:
                log.debug(f"Cancel of retrieval {r.retrieval_id} failed: {e}")

        # Cancelling transfers sometimes blocks, so it runs on its own thread and is abandoned past the deadline
        sweep = threading.Thread(
            target=self.cancel_transfers_for_cid, args=(payload_cid,), name=f"cancel-{payload_cid[:12]}", daemon=True
        )
        sweep.start()
        sweep.join(self.transfer_cancel_timeout)
        if sweep.is_alive():
            log.debug("Cancelling transfers timed out")

        if found:
            log.debug(f"Successfully cancelled retrieval {payload_cid}")
        else:
            log.debug(f"Unable to find matching retrieval for {payload_cid}")
        return found

    def cancel_transfers_for_cid(self, payload_cid: str) -> bool:
        try:
            transfers = self.lotus.list_data_transfers()
        except DealbotError as e:
            log.error(f"Listing transfers failed: {e}")
            return False

        for xfer in transfers:
            if xfer.base_cid != payload_cid:
                continue
            if xfer.status in (TransferStatus.Cancelled, TransferStatus.Cancelling):
                continue
            try:
                self.lotus.cancel_data_transfer(xfer)
                log.debug(f"Cancelling data transfer channel {xfer.transfer_id}")
            except DealbotError as e:
                log.debug(f"Cancel of data transfer channel {xfer.transfer_id} failed: {e}")
        return True


def cancel_all_retrievals(lotus: LotusClient, *, sleep: Callable[[float], None] = time.sleep) -> int:
    retrievals = lotus.list_retrievals()
    log.info(f"Found a total of {len(retrievals)} retrievals")

    count = 0
    for r in retrievals:
        if r.status in RETRIEVAL_TERMINAL_STATUSES:
            continue
        sleep(RECONCILE_SPACING)
        log.debug(f"Cancelling retrieval {r.retrieval_id} ({r.status_name})")
        try:
            lotus.cancel_retrieval(r.retrieval_id)
        except DealbotError as e:
            log.warning(f"Error cancelling retrieval {r.retrieval_id}: {e}")
            continue
        count += 1

    log.info(f"Cancelled {count} retrievals")
    return count


def cancel_all_transfers(lotus: LotusClient) -> int:
    transfers = lotus.list_data_transfers()

    count = 0
    for xfer in transfers:
        if xfer.status in TRANSFER_TERMINAL_STATUSES:
            continue
        try:
            lotus.cancel_data_transfer(xfer)
        except DealbotError as e:
            log.warning(f"Error cancelling data transfer channel {xfer.transfer_id}: {e}")
            continue
        log.debug(f"Cancelling data transfer channel {xfer.transfer_id}")
        count += 1

    log.info(f"Cancelled {count} data transfer channels")
    return count


def reconcile(lotus: LotusClient, *, sleep: Callable[[float], None] = time.sleep) -> Tuple[int, int]:
    """Clear retrievals and transfers left behind by a previous run."""
    retrievals = transfers = 0
    try:
        retrievals = cancel_all_retrievals(lotus, sleep=sleep)
    except DealbotError as e:
        log.error(f"Listing retrievals failed: {e}")
    try:
        transfers = cancel_all_transfers(lotus)
    except DealbotError as e:
        log.error(f"Listing transfers failed: {e}")
    return retrievals, transfers
