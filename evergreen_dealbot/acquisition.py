import enum
import logging
import random
import time

from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .boost import BoostClient
from .cache import CandidateCache
from .errors import DealbotError, ProposalTimeout, RetrievalError
from .evergreen import DealCandidate, EvergreenClient, PendingProposal, Source, find_proposal
from .locks import PieceLocks, ProviderAdmission
from .retrieval import RetrievalMonitor
from .utils import car_file_name, file_exists

log = logging.getLogger("Dealbot.Acquire")


class AttemptState(enum.Enum):
    SELECT = "select"
    LOCAL_IMPORT = "local_import"
    RETRIEVAL_SELECT = "retrieval_select"
    RETRIEVAL_ATTEMPT = "retrieval_attempt"
    PROPOSE = "propose"
    POLL_CONFIRM = "poll_confirm"
    COMMIT = "commit"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = (AttemptState.DONE, AttemptState.FAILED)


@dataclass
class DealbotServices:
    """Shared state and collaborators handed to every acquisition attempt."""

    cache: CandidateCache
    piece_locks: PieceLocks
    admission: ProviderAdmission
    marketplace: EvergreenClient
    monitor: RetrievalMonitor
    boost: BoostClient
    provider_id: str
    options: Any

    def new_attempt(self, **kwargs) -> "AcquisitionAttempt":
        return AcquisitionAttempt(services=self, **kwargs)


class AcquisitionAttempt:
    def __init__(
        self,
        *,
        services: DealbotServices,
        rng: random.Random = random,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.services = services
        self.options = services.options
        self.rng = rng
        self.sleep = sleep

        self.state = AttemptState.SELECT
        self.history: List[AttemptState] = [AttemptState.SELECT]
        self.candidate: Optional[DealCandidate] = None
        self.source: Optional[Source] = None
        self.archive: Optional[str] = None
        self.proposal: Optional[PendingProposal] = None

    @property
    def piece_cid(self) -> Optional[str]:
        return self.candidate.piece_cid if self.candidate else None

    def _transition(self, state: AttemptState) -> None:
        log.debug(f"{self.piece_cid or '-'}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def run(self) -> AttemptState:
        """Pick a random open deal and try to acquire it. Returns DONE or FAILED."""
        try:
            candidate = self._select()
        except Exception as e:
            log.error(f"Selecting a deal failed: {e}", exc_info=True)
            candidate = None

        if candidate is None:
            self._transition(AttemptState.FAILED)
            return self.state

        self.candidate = candidate
        log.debug(f"Thread is querying for {candidate.piece_cid}")
        return self._run_holding_piece(self._acquire)

    def run_local(self, candidate: DealCandidate) -> AttemptState:
        """Acquire a deal whose CAR is already in long-term storage. Never retrieves."""
        if not self.services.piece_locks.try_acquire(candidate.piece_cid):
            self._transition(AttemptState.FAILED)
            return self.state
        self.candidate = candidate
        return self._run_holding_piece(self._acquire_local)

    def _run_holding_piece(self, step: Callable[[], None]) -> AttemptState:
        try:
            step()
        except DealbotError as e:
            log.warning(f"Deal {self.piece_cid} failed in {self.state.value}: {e}")
            self._transition(AttemptState.FAILED)
        except Exception as e:
            log.error(f"Unexpected error acquiring {self.piece_cid} in {self.state.value}: {e}", exc_info=True)
            self._transition(AttemptState.FAILED)
        finally:
            self.services.piece_locks.release(self.candidate.piece_cid)

        if self.state not in TERMINAL_STATES:
            self._transition(AttemptState.FAILED)
        if self.state == AttemptState.DONE:
            log.info(f"Successfully acquired deal {self.piece_cid}")
        return self.state

    def _select(self) -> Optional[DealCandidate]:
        candidates = self.services.cache.get_candidates()
        if not candidates:
            log.error("Available deals list is empty")
            return None

        # Only a limited number of picks per cycle, so the thread can expire and a fresh one start
        for _ in range(self.options.selection_attempts):
            deal = self.rng.choice(candidates)
            if deal.padded_piece_size < self.options.min_piece_size:
                log.debug(f"Deal is too small: {deal.piece_cid} ({deal.padded_piece_size})")
                continue
            if not deal.sources:
                log.error(f"No sources for deal {deal.piece_cid}")
                continue
            if not self.services.piece_locks.try_acquire(deal.piece_cid):
                continue
            return deal
        return None

    def _acquire(self) -> None:
        if self._find_local_archive():
            self._propose_and_commit()
            return
        if not self._retrieve():
            log.debug(f"No source could deliver {self.piece_cid}")
            self._transition(AttemptState.FAILED)
            return
        self._propose_and_commit()

    def _acquire_local(self) -> None:
        if not self._find_local_archive():
            self._transition(AttemptState.FAILED)
            return
        self._propose_and_commit()

    def _find_local_archive(self) -> bool:
        self._transition(AttemptState.LOCAL_IMPORT)
        # Presence only; a wrong file is caught by Boost at commit time
        path = car_file_name(self.options.car_location_longterm, self.piece_cid)
        if not file_exists(path):
            return False
        log.debug(f"Attempting to import CAR file locally from {path}")
        self.archive = path
        return True

    def _retrieve(self) -> bool:
        services = self.services
        destination = car_file_name(self.options.car_location_download, self.piece_cid)
        payload_cid = self.candidate.payload_cid

        # Try all the different sources (SPs) for a deal
        for source in self.candidate.sources:
            self._transition(AttemptState.RETRIEVAL_SELECT)
            if not services.admission.try_acquire(source.provider_id):
                continue

            self.source = source
            self._transition(AttemptState.RETRIEVAL_ATTEMPT)
            log.debug(f"Trying SP {source.provider_id} for {self.piece_cid}")
            error = None
            try:
                services.monitor.retrieve(payload_cid=payload_cid, provider=source.provider_id, destination=destination)
            except RetrievalError as e:
                error = e
            finally:
                services.admission.release(source.provider_id)

            if error is None:
                log.debug(f"Successfully retrieved CAR {self.piece_cid} from {source.provider_id}")
                self.archive = destination
                return True

            log.debug(f"Failed to retrieve deal from SP {source.provider_id}, cancelling transfer: {error}")
            services.monitor.cancel(payload_cid)

        self.source = None
        return False

    def _propose_and_commit(self) -> None:
        services = self.services

        self._transition(AttemptState.PROPOSE)
        if not services.marketplace.request_deal(services.provider_id, self.piece_cid):
            # Likely taken by someone else while we were retrieving
            log.debug(f"Deal request for {self.piece_cid} was not accepted")
            self._transition(AttemptState.FAILED)
            return

        self._transition(AttemptState.POLL_CONFIRM)
        self.proposal = self._wait_for_proposal()

        self._transition(AttemptState.COMMIT)
        services.boost.import_deal(self.proposal.proposal_id, self.archive)
        self._transition(AttemptState.DONE)

    def _wait_for_proposal(self) -> PendingProposal:
        retries = self.options.proposal_poll_retries
        for _ in range(retries):
            # It may take time for the proposal to show up on the marketplace
            self.sleep(self.options.proposal_poll_interval)
            try:
                proposals = self.services.marketplace.list_pending_proposals(self.services.provider_id)
            except DealbotError as e:
                log.debug(f"Listing pending proposals failed: {e}")
                continue

            proposal = find_proposal(proposals, self.piece_cid)
            if proposal is not None:
                log.debug(f"Successfully got deal proposal {proposal.proposal_id} for {self.piece_cid}")
                return proposal
        raise ProposalTimeout(f"Could not find deal proposal for {self.piece_cid} after {retries} retries")
