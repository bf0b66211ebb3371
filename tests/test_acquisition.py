"""Acquisition state machine: selection, local import, retrieval fallback, propose, confirm, commit."""

import os

from unittest.mock import MagicMock, call

from evergreen_dealbot.acquisition import AttemptState
from evergreen_dealbot.errors import AuthError, CommitError, RetrievalError, TransportError
from evergreen_dealbot.evergreen import PendingProposal
from evergreen_dealbot.locks import PieceLocks
from evergreen_dealbot.utils import car_file_name
from tests.conftest import PAYLOAD_CID, PROPOSAL_CID, PROVIDER_ID, make_candidate

RETRIEVAL_STATES = {AttemptState.RETRIEVAL_SELECT, AttemptState.RETRIEVAL_ATTEMPT}


def stage_local_car(options, piece_cid="P1"):
    path = car_file_name(options.car_location_longterm, piece_cid)
    with open(path, "wb") as f:
        f.write(b"car")
    return path


def test_small_candidate_is_discarded_without_locking(make_services):
    services = make_services([make_candidate(size=512)])
    services.piece_locks = MagicMock(wraps=PieceLocks())

    state = services.new_attempt().run()

    assert state == AttemptState.FAILED
    services.piece_locks.try_acquire.assert_not_called()
    services.marketplace.request_deal.assert_not_called()


def test_candidate_without_sources_is_discarded_without_locking(make_services):
    services = make_services([make_candidate(providers=())])

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.FAILED
    assert attempt.history == [AttemptState.SELECT, AttemptState.FAILED]
    assert not services.piece_locks.is_held("P1")


def test_empty_deal_list_fails(make_services):
    services = make_services([])
    assert services.new_attempt().run() == AttemptState.FAILED


def test_local_archive_skips_retrieval(make_services, options):
    services = make_services([make_candidate()])
    path = stage_local_car(options)

    attempt = services.new_attempt()
    state = attempt.run()

    assert state == AttemptState.DONE
    assert attempt.history == [
        AttemptState.SELECT,
        AttemptState.LOCAL_IMPORT,
        AttemptState.PROPOSE,
        AttemptState.POLL_CONFIRM,
        AttemptState.COMMIT,
        AttemptState.DONE,
    ]
    services.monitor.retrieve.assert_not_called()
    services.marketplace.request_deal.assert_called_once_with(PROVIDER_ID, "P1")
    services.boost.import_deal.assert_called_once_with(PROPOSAL_CID, path)
    assert not services.piece_locks.is_held("P1")


def test_failed_source_is_cancelled_and_next_source_tried(make_services, options):
    services = make_services([make_candidate(providers=("SP1", "SP2"))])
    in_flight_during_retrieval = {}

    def retrieve(*, payload_cid, provider, destination):
        in_flight_during_retrieval[provider] = services.admission.in_flight(provider)
        if provider == "SP1":
            raise RetrievalError("retrieval proposal rejected")

    services.monitor.retrieve.side_effect = retrieve

    attempt = services.new_attempt()
    state = attempt.run()

    assert state == AttemptState.DONE
    assert in_flight_during_retrieval == {"SP1": 1, "SP2": 1}
    assert services.admission.in_flight("SP1") == 0
    assert services.admission.in_flight("SP2") == 0
    services.monitor.cancel.assert_called_once_with(PAYLOAD_CID)
    assert attempt.source.provider_id == "SP2"

    destination = os.path.join(options.car_location_download, "P1.car")
    assert services.monitor.retrieve.call_args_list == [
        call(payload_cid=PAYLOAD_CID, provider="SP1", destination=destination),
        call(payload_cid=PAYLOAD_CID, provider="SP2", destination=destination),
    ]
    services.boost.import_deal.assert_called_once_with(PROPOSAL_CID, destination)


def test_all_sources_failing_releases_everything(make_services):
    services = make_services([make_candidate(providers=("SP1", "SP2"))])
    services.monitor.retrieve.side_effect = RetrievalError("timed out")

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.FAILED

    assert services.monitor.cancel.call_count == 2
    assert services.admission.in_flight("SP1") == 0
    assert services.admission.in_flight("SP2") == 0
    assert not services.piece_locks.is_held("P1")
    services.marketplace.request_deal.assert_not_called()


def test_busy_providers_are_skipped(make_services):
    services = make_services([make_candidate(providers=("SP1", "SP2"))])
    for _ in range(services.admission.limit):
        assert services.admission.try_acquire("SP1")

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.DONE

    services.monitor.retrieve.assert_called_once()
    assert services.monitor.retrieve.call_args.kwargs["provider"] == "SP2"
    assert services.admission.in_flight("SP1") == services.admission.limit


def test_every_provider_busy_fails_without_retrieving(make_services):
    services = make_services([make_candidate(providers=("SP1",))])
    for _ in range(services.admission.limit):
        services.admission.try_acquire("SP1")

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.FAILED
    services.monitor.retrieve.assert_not_called()
    assert not services.piece_locks.is_held("P1")


def test_rejected_deal_request_fails_quietly(make_services):
    services = make_services([make_candidate()])
    services.marketplace.request_deal.return_value = False

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.FAILED

    assert attempt.history[-2:] == [AttemptState.PROPOSE, AttemptState.FAILED]
    services.monitor.cancel.assert_not_called()
    services.marketplace.list_pending_proposals.assert_not_called()
    services.boost.import_deal.assert_not_called()
    assert not services.piece_locks.is_held("P1")


def test_proposal_never_confirmed_fails_after_poll_ceiling(make_services, options):
    options.proposal_poll_interval = 60
    options.proposal_poll_retries = 15
    services = make_services([make_candidate()])
    services.marketplace.list_pending_proposals.return_value = []
    stage_local_car(options)
    sleep = MagicMock()

    attempt = services.new_attempt(sleep=sleep)
    assert attempt.run() == AttemptState.FAILED

    assert sleep.call_args_list == [call(60)] * 15
    assert services.marketplace.list_pending_proposals.call_count == 15
    assert AttemptState.COMMIT not in attempt.history
    assert not services.piece_locks.is_held("P1")


def test_listing_errors_count_as_poll_retries(make_services, options):
    services = make_services([make_candidate()])
    services.marketplace.list_pending_proposals.side_effect = [
        TransportError("connection refused"),
        [PendingProposal(piece_cid="other")],
        [PendingProposal(piece_cid="P1", deal_proposal_id="2f7f2c4e-9d1b-4a39-8c2e-1f0a7a6b5c4d")],
    ]
    stage_local_car(options)

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.DONE
    services.boost.import_deal.assert_called_once()
    assert services.boost.import_deal.call_args.args[0] == "2f7f2c4e-9d1b-4a39-8c2e-1f0a7a6b5c4d"


def test_token_failure_while_polling_counts_as_a_retry(make_services, options):
    services = make_services([make_candidate()])
    services.marketplace.list_pending_proposals.side_effect = [
        AuthError("fil-spid.bash exited with 3"),
        [PendingProposal(piece_cid="P1", deal_proposal_cid=PROPOSAL_CID)],
    ]
    stage_local_car(options)

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.DONE
    assert services.marketplace.list_pending_proposals.call_count == 2
    services.boost.import_deal.assert_called_once()
    assert services.boost.import_deal.call_args.args[0] == PROPOSAL_CID


def test_commit_rejection_fails_and_releases_piece(make_services, options):
    services = make_services([make_candidate()])
    services.boost.import_deal.side_effect = CommitError("offline deal rejected: wrong piece size")
    stage_local_car(options)

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.FAILED
    assert attempt.history[-2:] == [AttemptState.COMMIT, AttemptState.FAILED]
    assert not services.piece_locks.is_held("P1")


def test_unexpected_error_still_releases_locks(make_services):
    services = make_services([make_candidate(providers=("SP1",))])
    services.monitor.retrieve.side_effect = RuntimeError("boom")

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.FAILED
    assert services.admission.in_flight("SP1") == 0
    assert not services.piece_locks.is_held("P1")


def test_piece_already_in_progress_is_not_pursued(make_services):
    services = make_services([make_candidate()])
    assert services.piece_locks.try_acquire("P1")

    attempt = services.new_attempt()
    assert attempt.run() == AttemptState.FAILED

    services.marketplace.request_deal.assert_not_called()
    services.monitor.retrieve.assert_not_called()
    # The first holder keeps its lock
    assert services.piece_locks.is_held("P1")


def test_selection_budget_allows_repicking(make_services, options):
    small = make_candidate(piece_cid="small", size=1)
    good = make_candidate(piece_cid="good")
    options.selection_attempts = 2
    services = make_services([small, good])
    rng = MagicMock()
    rng.choice.side_effect = [small, good]

    attempt = services.new_attempt(rng=rng)
    assert attempt.run() == AttemptState.DONE
    assert attempt.candidate == good


def test_single_pick_per_cycle_by_default(make_services):
    small = make_candidate(piece_cid="small", size=1)
    good = make_candidate(piece_cid="good")
    services = make_services([small, good])
    rng = MagicMock()
    rng.choice.side_effect = [small, good]

    assert services.new_attempt(rng=rng).run() == AttemptState.FAILED
    assert rng.choice.call_count == 1


def test_run_local_requires_archive(make_services):
    candidate = make_candidate()
    services = make_services([candidate])

    attempt = services.new_attempt()
    assert attempt.run_local(candidate) == AttemptState.FAILED
    assert not RETRIEVAL_STATES & set(attempt.history)
    services.marketplace.request_deal.assert_not_called()
    assert not services.piece_locks.is_held("P1")


def test_run_local_commits_staged_archive(make_services, options):
    candidate = make_candidate()
    services = make_services([candidate])
    path = stage_local_car(options)

    assert services.new_attempt().run_local(candidate) == AttemptState.DONE
    services.boost.import_deal.assert_called_once_with(PROPOSAL_CID, path)
    services.monitor.retrieve.assert_not_called()
