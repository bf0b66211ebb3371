import argparse
import os
import sys
import threading

from .acquisition import DealbotServices
from .auth import token_source
from .boost import BoostClient
from .cache import CandidateCache
from .config import parse_args
from .errors import ConfigError, DealbotError
from .evergreen import EvergreenClient
from .locks import PieceLocks, ProviderAdmission
from .logs import setup_logging
from .lotus import LotusClient
from .retrieval import RetrievalMonitor, reconcile
from .rpc import JsonRpcClient
from .scheduler import DirectoryWatcher, Scheduler

SECRET_OPTIONS = ("fullnode_api_info", "miner_api_info", "boost_api_info")


def startup_checks(*, options: argparse.Namespace, log) -> None:
    if options.fil_spid_file_path and not os.path.exists(options.fil_spid_file_path):
        log.error(f"Authorization script does not exist: {options.fil_spid_file_path}")
        sys.exit(1)

    for directory in (options.car_location_longterm, options.car_location_download):
        if not os.path.isdir(directory):
            log.error(f"CAR directory does not exist: {directory}")
            sys.exit(1)


def resolve_miner_id(*, options: argparse.Namespace) -> str:
    if options.miner_id:
        return options.miner_id
    miner = LotusClient.connect(options.miner_api_info, path="/rpc/v0")
    return miner.actor_address()


def build_services(*, options: argparse.Namespace, lotus: LotusClient, miner_id: str) -> DealbotServices:
    marketplace = EvergreenClient(
        base_url=options.evergreen_api_url,
        auth=token_source(options=options, lotus=lotus, miner_id=miner_id),
    )
    boost = BoostClient(
        JsonRpcClient(options.boost_api_info, name="Boost"),
        delete_after_import=options.boost_delete_after_import,
    )
    return DealbotServices(
        cache=CandidateCache(
            fetch=marketplace.list_open_deals,
            refresh_interval=options.deal_query_interval_minutes * 60,
        ),
        piece_locks=PieceLocks(),
        admission=ProviderAdmission(limit=options.max_concurrent_retrievals_per_sp),
        marketplace=marketplace,
        monitor=RetrievalMonitor(lotus=lotus, options=options),
        boost=boost,
        provider_id=miner_id,
        options=options,
    )


def main() -> None:
    try:
        options = parse_args()
    except ConfigError as e:
        print(f"Error parsing config: {e}", file=sys.stderr)
        sys.exit(1)

    log = setup_logging(options=options)
    log.info("--== Evergreen Dealbot ==--")
    log.info(
        "Parameters: \n    "
        + "\n    ".join(f"{k}={v}" for k, v in vars(options).items() if k not in SECRET_OPTIONS)
    )

    startup_checks(options=options, log=log)

    try:
        lotus = LotusClient.connect(options.fullnode_api_info)
        miner_id = resolve_miner_id(options=options)
        log.info(f"Acquiring deals for {miner_id}")
        services = build_services(options=options, lotus=lotus, miner_id=miner_id)
    except DealbotError as e:
        log.error(f"Startup failed: {e}")
        sys.exit(1)

    # Clear out anything a previous run left behind before new work starts
    retrievals, transfers = reconcile(lotus)
    log.info(f"Startup cleanup cancelled {retrievals} retrievals and {transfers} transfers")

    stop = threading.Event()
    DirectoryWatcher(services=services, stop=stop).start()
    try:
        Scheduler(services=services, stop=stop).run()
    except KeyboardInterrupt:
        log.info("Interrupted, waiting for running deals to finish...")
        stop.set()


if __name__ == "__main__":
    main()
