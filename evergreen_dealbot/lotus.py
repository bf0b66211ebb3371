import enum
import logging
import threading

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import DealbotError, ProtocolError
from .rpc import JsonRpcClient

log = logging.getLogger("Dealbot.Lotus")

EVENT_POLL_INTERVAL = 2


class RetrievalStatus(enum.IntEnum):
    # Mirrors retrievalmarket.DealStatus
    New = 0
    Unsealing = 1
    Unsealed = 2
    WaitForAcceptance = 3
    PaymentChannelCreating = 4
    PaymentChannelAddingFunds = 5
    Accepted = 6
    FundsNeededUnseal = 7
    Failing = 8
    Rejected = 9
    FundsNeeded = 10
    SendFunds = 11
    SendFundsLastPayment = 12
    Ongoing = 13
    FundsNeededLastPayment = 14
    Completed = 15
    DealNotFound = 16
    Errored = 17
    BlocksComplete = 18
    Finalizing = 19
    Completing = 20
    CheckComplete = 21
    CheckFunds = 22
    InsufficientFunds = 23
    PaymentChannelAllocatingLane = 24
    Cancelling = 25
    Cancelled = 26
    RetryLegacy = 27
    WaitForAcceptanceLegacy = 28
    ClientWaitingForLastBlocks = 29
    PaymentChannelAddingInitialFunds = 30
    ErroredWaitingForLastBlocks = 31


RETRIEVAL_FAILED_STATUSES = {
    RetrievalStatus.Rejected,
    RetrievalStatus.Cancelled,
    RetrievalStatus.DealNotFound,
    RetrievalStatus.Errored,
}
RETRIEVAL_TERMINAL_STATUSES = RETRIEVAL_FAILED_STATUSES | {
    RetrievalStatus.Completed,
    RetrievalStatus.Cancelling,
}


class TransferStatus(enum.IntEnum):
    # Mirrors go-data-transfer Status
    Requested = 0
    Ongoing = 1
    TransferFinished = 2
    ResponderCompleted = 3
    Finalizing = 4
    Completing = 5
    Completed = 6
    Failing = 7
    Failed = 8
    Cancelling = 9
    Cancelled = 10
    InitiatorPaused = 11
    ResponderPaused = 12
    BothPaused = 13
    ResponderFinalizing = 14
    ResponderFinalizingTransferFinished = 15
    ChannelNotFoundError = 16
    Queued = 17
    AwaitingAcceptance = 18


TRANSFER_TERMINAL_STATUSES = {
    TransferStatus.Completed,
    TransferStatus.Failed,
    TransferStatus.Cancelling,
    TransferStatus.Cancelled,
    TransferStatus.ChannelNotFoundError,
}


def status_name(enum_cls, value: int) -> str:
    try:
        return enum_cls(value).name
    except ValueError:
        return f"Unknown({value})"


def cid_link(cid: str) -> dict:
    return {"/": cid}


def cid_str(link: Any) -> Optional[str]:
    if link is None:
        return None
    if isinstance(link, dict):
        return link.get("/")
    return str(link)


@dataclass(frozen=True)
class RetrievalEvent:
    retrieval_id: int
    status: int
    payload_cid: Optional[str] = None
    bytes_received: int = 0
    total_paid: int = 0
    event: Optional[str] = None
    message: str = ""
    provider: Optional[str] = None

    @property
    def status_name(self) -> str:
        return status_name(RetrievalStatus, self.status)

    @classmethod
    def from_info(cls, info: dict) -> "RetrievalEvent":
        try:
            event = info.get("Event")
            return cls(
                retrieval_id=int(info["ID"]),
                status=int(info["Status"]),
                payload_cid=cid_str(info.get("PayloadCID")),
                bytes_received=int(info.get("BytesReceived") or 0),
                total_paid=int(info.get("TotalPaid") or 0),
                event=None if event is None else str(event),
                message=info.get("Message") or "",
                provider=info.get("Provider"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed retrieval info: {info!r}") from e


@dataclass(frozen=True)
class DataTransfer:
    transfer_id: int
    status: int
    base_cid: Optional[str]
    other_peer: str
    is_initiator: bool

    @classmethod
    def from_channel(cls, channel: dict) -> "DataTransfer":
        try:
            return cls(
                transfer_id=int(channel["TransferID"]),
                status=int(channel["Status"]),
                base_cid=cid_str(channel.get("BaseCID")),
                other_peer=channel.get("OtherPeer", ""),
                is_initiator=bool(channel.get("IsInitiator")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed data transfer channel: {channel!r}") from e


@dataclass
class QueryOffer:
    raw: Dict[str, Any] = field(repr=False)
    min_price: int
    err: str

    @classmethod
    def from_result(cls, result: dict) -> "QueryOffer":
        if not isinstance(result, dict):
            raise ProtocolError(f"Malformed query offer: {result!r}")
        try:
            min_price = int(result.get("MinPrice") or 0)
        except ValueError as e:
            raise ProtocolError(f"Malformed offer price: {result.get('MinPrice')!r}") from e
        return cls(raw=result, min_price=min_price, err=result.get("Err") or "")

    def order(self, payer: str) -> dict:
        # Same fields as QueryOffer.Order() in lotus, with DataSelector cleared for a full CAR
        offer = self.raw
        return {
            "Root": offer.get("Root"),
            "Piece": offer.get("Piece"),
            "DataSelector": None,
            "Size": offer.get("Size"),
            "Total": offer.get("MinPrice"),
            "UnsealPrice": offer.get("UnsealPrice"),
            "PaymentInterval": offer.get("PaymentInterval"),
            "PaymentIntervalIncrease": offer.get("PaymentIntervalIncrease"),
            "Client": payer,
            "Miner": offer.get("Miner"),
            "MinerPeer": offer.get("MinerPeer"),
            "RemoteStore": None,
        }


class LotusClient:
    def __init__(self, rpc: JsonRpcClient):
        self.rpc = rpc

    @classmethod
    def connect(cls, api_info: str, *, path: str = "/rpc/v1") -> "LotusClient":
        return cls(JsonRpcClient(api_info, name="Lotus", path=path))

    # Identity and chain state

    def actor_address(self) -> str:
        return self.rpc.call("ActorAddress")

    def wallet_default_address(self) -> str:
        return self.rpc.call("WalletDefaultAddress")

    def chain_get_tipset_by_height(self, epoch: int) -> dict:
        return self.rpc.call("ChainGetTipSetByHeight", epoch, [])

    def state_miner_info(self, miner: str, tipset_key: list) -> dict:
        return self.rpc.call("StateMinerInfo", miner, tipset_key)

    def state_get_beacon_entry(self, epoch: int) -> dict:
        return self.rpc.call("StateGetBeaconEntry", epoch)

    def wallet_sign(self, address: str, data_b64: str) -> dict:
        return self.rpc.call("WalletSign", address, data_b64)

    # Retrieval

    def list_local_imports(self) -> List[Tuple[Optional[str], str]]:
        imports = self.rpc.call("ClientListImports") or []
        return [(cid_str(i.get("Root")), i.get("CARPath") or "") for i in imports]

    def query_offer(self, provider: str, payload_cid: str) -> QueryOffer:
        return QueryOffer.from_result(self.rpc.call("ClientMinerQueryOffer", provider, cid_link(payload_cid), None))

    def start_retrieval(self, order: dict) -> int:
        result = self.rpc.call("ClientRetrieve", order)
        try:
            return int(result["DealID"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"ClientRetrieve returned no deal id: {result!r}") from e

    def export_content(self, export_ref: dict, destination: str) -> None:
        log.debug(f"Exporting CAR file {destination}")
        self.rpc.call("ClientExport", export_ref, {"Path": destination, "IsCAR": True}, long_running=True)

    def list_retrievals(self) -> List[RetrievalEvent]:
        return [RetrievalEvent.from_info(r) for r in self.rpc.call("ClientListRetrievals") or []]

    def cancel_retrieval(self, retrieval_id: int) -> None:
        self.rpc.call("ClientCancelRetrievalDeal", retrieval_id)

    def list_data_transfers(self) -> List[DataTransfer]:
        return [DataTransfer.from_channel(c) for c in self.rpc.call("ClientListDataTransfers") or []]

    def cancel_data_transfer(self, transfer: DataTransfer) -> None:
        self.rpc.call("ClientCancelDataTransfer", transfer.transfer_id, transfer.other_peer, transfer.is_initiator)

    def subscribe_retrieval_events(
        self, stop: threading.Event, poll_interval: float = EVENT_POLL_INTERVAL
    ) -> Iterator[RetrievalEvent]:
        # ClientGetRetrievalUpdates is only served over websockets, so updates are
        # derived by diffing ClientListRetrievals. Yields every retrieval whose
        # status or byte count changed since the previous poll.
        seen: Dict[int, Tuple[int, int]] = {}
        while not stop.is_set():
            try:
                retrievals = self.list_retrievals()
            except DealbotError as e:
                log.warning(f"Listing retrievals for updates failed: {e}")
                retrievals = []
            for r in retrievals:
                marker = (r.status, r.bytes_received)
                if seen.get(r.retrieval_id) != marker:
                    seen[r.retrieval_id] = marker
                    yield r
            stop.wait(poll_interval)
