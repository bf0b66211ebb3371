import argparse

from unittest.mock import MagicMock

import pytest

from evergreen_dealbot.acquisition import DealbotServices
from evergreen_dealbot.cache import CandidateCache
from evergreen_dealbot.evergreen import DealCandidate, PendingProposal, Source
from evergreen_dealbot.locks import PieceLocks, ProviderAdmission

PROVIDER_ID = "f01000"
PAYLOAD_CID = "bafykbzaceaqwpayloadcidforthetestsuite"
PROPOSAL_CID = "bafyreifkzrbx5lrognvw7jgpviuhnw2z7vtvx242rdkgpyibd3yutcodma"


def make_candidate(piece_cid="P1", size=2048, providers=("SP1", "SP2"), payload_cid=PAYLOAD_CID):
    return DealCandidate(
        piece_cid=piece_cid,
        padded_piece_size=size,
        sources=tuple(Source(provider_id=p, original_payload_cid=payload_cid) for p in providers),
    )


@pytest.fixture
def options(tmp_path):
    longterm = tmp_path / "longterm"
    download = tmp_path / "download"
    longterm.mkdir()
    download.mkdir()
    return argparse.Namespace(
        fullnode_api_info="token:/ip4/127.0.0.1/tcp/1234/http",
        miner_api_info=None,
        miner_id=PROVIDER_ID,
        boost_api_info="token:/ip4/127.0.0.1/tcp/1288/http",
        boost_delete_after_import=True,
        fil_spid_file_path=None,
        evergreen_api_url="https://api.evergreen.test",
        max_retrieval_price="0",
        retrieval_timeout_minutes=0.005,
        min_piece_size=1024,
        deal_query_interval_minutes=2,
        max_concurrent_retrievals_per_sp=2,
        max_threads=2,
        selection_attempts=1,
        car_location_longterm=str(longterm),
        car_location_download=str(download),
        watcher_interval_minutes=10,
        proposal_poll_interval=0,
        proposal_poll_retries=3,
        retrieval_tick_seconds=0.02,
        cancel_grace_seconds=0,
        transfer_cancel_timeout_seconds=0.2,
        idle_seconds=0.01,
        log_file_location="",
        debug=False,
    )


@pytest.fixture
def make_services(options):
    def _make(candidates, **overrides):
        marketplace = MagicMock()
        marketplace.request_deal.return_value = True
        marketplace.list_pending_proposals.return_value = [
            PendingProposal(piece_cid=c.piece_cid, deal_proposal_cid=PROPOSAL_CID) for c in candidates
        ]
        services = DealbotServices(
            cache=CandidateCache(fetch=lambda: list(candidates), refresh_interval=60),
            piece_locks=PieceLocks(),
            admission=ProviderAdmission(limit=options.max_concurrent_retrievals_per_sp),
            marketplace=marketplace,
            monitor=MagicMock(),
            boost=MagicMock(),
            provider_id=PROVIDER_ID,
            options=options,
        )
        for name, value in overrides.items():
            setattr(services, name, value)
        return services

    return _make
