import logging

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from .errors import ProtocolError
from .rpc import decode_json, request_handler

log = logging.getLogger("Dealbot.Evergreen")

ELIGIBLE_PIECES_PATH = "/sp/eligible_pieces?limit=100000"
REQUEST_PIECE_PATH = "/sp/request_piece/"
PENDING_PROPOSALS_PATH = "/sp/pending_proposals"


@dataclass(frozen=True)
class Source:
    provider_id: str
    original_payload_cid: str
    source_type: str = ""
    deal_id: int = 0
    deal_expiration: str = ""
    is_filplus: bool = False
    sample_retrieve_cmd: str = ""

    @classmethod
    def from_json(cls, data: dict) -> "Source":
        return cls(
            provider_id=data["provider_id"],
            original_payload_cid=data["original_payload_cid"],
            source_type=data.get("source_type", ""),
            deal_id=int(data.get("deal_id") or 0),
            deal_expiration=data.get("deal_expiration", ""),
            is_filplus=bool(data.get("is_filplus")),
            sample_retrieve_cmd=data.get("sample_retrieve_cmd", ""),
        )


@dataclass(frozen=True)
class DealCandidate:
    piece_cid: str
    padded_piece_size: int
    sources: Tuple[Source, ...] = ()
    tenants: Tuple[int, ...] = field(default=(), compare=False)

    @property
    def payload_cid(self) -> Optional[str]:
        # Every source of a piece serves the same payload
        if not self.sources:
            return None
        return self.sources[0].original_payload_cid

    @classmethod
    def from_json(cls, data: dict) -> "DealCandidate":
        return cls(
            piece_cid=data["piece_cid"],
            padded_piece_size=int(data["padded_piece_size"]),
            sources=tuple(Source.from_json(s) for s in data.get("sources") or []),
            tenants=tuple(data.get("tenants") or []),
        )


@dataclass(frozen=True)
class PendingProposal:
    piece_cid: str
    deal_proposal_id: str = ""
    deal_proposal_cid: str = ""
    piece_size: int = 0
    hours_remaining: int = 0
    deal_start_time: str = ""

    @property
    def proposal_id(self) -> str:
        return self.deal_proposal_cid or self.deal_proposal_id

    @classmethod
    def from_json(cls, data: dict) -> "PendingProposal":
        return cls(
            piece_cid=data["piece_cid"],
            deal_proposal_id=data.get("deal_proposal_id") or "",
            deal_proposal_cid=data.get("deal_proposal_cid") or "",
            piece_size=int(data.get("piece_size") or 0),
            hours_remaining=int(data.get("hours_remaining") or 0),
            deal_start_time=data.get("deal_start_time") or "",
        )


def find_proposal(proposals: List[PendingProposal], piece_cid: str) -> Optional[PendingProposal]:
    for p in proposals:
        if p.piece_cid == piece_cid:
            return p
    return None


class EvergreenClient:
    def __init__(self, *, base_url: str, auth: Callable[[], str]):
        self.base_url = base_url.rstrip("/")
        self.auth = auth

    def _get(self, path: str, log_name: str) -> Tuple[int, Any]:
        response = request_handler(
            url=self.base_url + path,
            method="get",
            parameters={"timeout": 30, "allow_redirects": True},
            log_name=log_name,
            auth=self.auth,
        )
        body = decode_json(response, log_name)
        # Disable logging of noisy responses
        if log_name != "eligible_pieces":
            log.debug(f"{log_name}, Response: {body}")
        if response.status_code in (401, 403):
            log.error(f"{log_name}, received {response.status_code}: {body}")
        return response.status_code, body

    def list_open_deals(self) -> List[DealCandidate]:
        log.debug("Querying for available deals")
        status, body = self._get(ELIGIBLE_PIECES_PATH, "eligible_pieces")
        if status != 200:
            raise ProtocolError(f"eligible_pieces returned HTTP {status}: {body}")
        try:
            deals = [DealCandidate.from_json(d) for d in body["response"]]
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed eligible_pieces response: {e}") from e
        log.debug(f"Found {len(deals)} open deals")
        return deals

    def request_deal(self, provider: str, piece_cid: str) -> bool:
        log.debug(f"{provider} requesting deal for {piece_cid}")
        status, body = self._get(REQUEST_PIECE_PATH + piece_cid, "request_piece")
        code = body.get("response_code", status) if isinstance(body, dict) else status
        if code != 200:
            # Most likely the deal was taken by someone else in the meantime
            info = body.get("info_lines") if isinstance(body, dict) else body
            log.debug(f"Deal request for {piece_cid} not accepted ({code}): {info}")
            return False
        return True

    def list_pending_proposals(self, provider: str) -> List[PendingProposal]:
        log.debug(f"Querying pending proposals for {provider}")
        status, body = self._get(PENDING_PROPOSALS_PATH, "pending_proposals")
        if status != 200:
            raise ProtocolError(f"pending_proposals returned HTTP {status}: {body}")
        try:
            proposals = body["response"].get("pending_proposals") or []
            return [PendingProposal.from_json(p) for p in proposals]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed pending_proposals response: {e}") from e
