import logging
import re
import uuid

from typing import Any, Optional

from .errors import CommitError, DealbotError, ProtocolError, RpcError
from .lotus import cid_link
from .utils import file_exists

log = logging.getLogger("Dealbot.Boost")

# CIDv0 (base58btc sha256 multihash) or CIDv1 in base32
CID_PATTERN = re.compile(r"^(Qm[1-9A-HJ-NP-Za-km-z]{44}|b[a-z2-7]{20,})$")


def parse_deal_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return None


def is_cid(value: str) -> bool:
    return bool(value) and CID_PATTERN.match(value) is not None


class BoostClient:
    def __init__(self, rpc: Any, *, delete_after_import: bool = True):
        self.rpc = rpc
        self.delete_after_import = delete_after_import

    def lookup_deal_by_proposal(self, proposal_cid: str) -> Optional[dict]:
        try:
            return self.rpc.call("BoostDealBySignedProposalCid", cid_link(proposal_cid))
        except RpcError as e:
            if "not found" in e.message:
                return None
            raise

    def commit_offline_deal(self, deal_uuid: str, car_path: str) -> dict:
        result = self.rpc.call("BoostOfflineDealWithData", deal_uuid, car_path, self.delete_after_import)
        return result or {}

    def import_legacy_deal(self, proposal_cid: str, car_path: str) -> None:
        self.rpc.call("MarketImportDealData", cid_link(proposal_cid), car_path, long_running=True)

    def import_deal(self, proposal_id: str, car_path: str) -> None:
        """Hand a CAR file to Boost for an accepted deal.

        `proposal_id` may be a deal UUID or a signed proposal CID. For a CID the
        Boost deal record is looked up first; if Boost has never heard of the
        deal it is imported through the legacy markets datastore instead.
        Raises CommitError when the import is rejected or fails.
        """
        log.info(f"Importing deal to boost: Proposal: {proposal_id}, Path: {car_path}")
        if not file_exists(car_path):
            raise CommitError(f"CAR file does not exist: {car_path}")

        deal_uuid = parse_deal_uuid(proposal_id)
        if deal_uuid is None:
            if not is_cid(proposal_id):
                raise ProtocolError(f"Could not parse '{proposal_id}' as deal uuid or proposal cid")
            try:
                deal = self.lookup_deal_by_proposal(proposal_id)
            except DealbotError as e:
                raise CommitError(f"Looking up boost deal for {proposal_id} failed: {e}") from e

            if deal is None:
                # Not in the boost database, try the legacy markets datastore (v1.1.0 deal)
                try:
                    self.import_legacy_deal(proposal_id, car_path)
                except DealbotError as e:
                    raise CommitError(f"Couldn't import v1.1.0 deal, or find boost deal: {e}") from e
                log.info(f"Offline deal import for v1.1.0 deal {proposal_id} scheduled for execution")
                return

            deal_uuid = parse_deal_uuid(deal.get("DealUuid", ""))
            if deal_uuid is None:
                raise ProtocolError(f"Boost deal for {proposal_id} has no valid DealUuid: {deal!r}")

        try:
            result = self.commit_offline_deal(str(deal_uuid), car_path)
        except DealbotError as e:
            raise CommitError(f"Failed to execute offline deal {deal_uuid}: {e}") from e

        if result.get("Reason") or result.get("Accepted") is False:
            log.warning(f"Offline deal {deal_uuid} rejected: {result.get('Reason')}")
            raise CommitError(f"Offline deal {deal_uuid} rejected: {result.get('Reason')}")

        log.info(f"Offline deal import for v1.2.0 deal {deal_uuid} scheduled for execution")
