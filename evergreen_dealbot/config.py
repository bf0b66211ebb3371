import argparse
import os

from typing import Optional, Sequence

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError, ProtocolError
from .rpc import parse_api_info

DEFAULT_EVERGREEN_API_URL = "https://api.evergreen.filecoin.io"


def str_to_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="evergreen-dealbot")
    parser.add_argument(
        "--fullnode-api-info",
        help="Lotus full node API info (eg. 'eyJhbG...aCG:/ip4/10.0.0.10/tcp/1234/http'). Used for retrievals and FIL-SPID signing.",
        type=str,
        default=os.environ.get("FULLNODE_API_INFO"),
        required=not os.environ.get("FULLNODE_API_INFO"),
    )
    parser.add_argument(
        "--miner-api-info",
        help="Lotus miner API info, used to look up the Storage Provider ID when --miner-id is not given.",
        type=str,
        default=os.environ.get("MINER_API_INFO"),
        required=False,
    )
    parser.add_argument(
        "--miner-id",
        help="Storage Provider miner ID (ie. f0123456). Queried from the miner API when omitted.",
        type=str,
        default=os.environ.get("MINER_ID"),
        required=False,
    )
    parser.add_argument(
        "--boost-api-info",
        help="The Boost api string normally set as the BOOST_API_INFO environment variable (eg. 'eyJhbG...aCG:/ip4/10.0.0.10/tcp/1288/http')",
        type=str,
        default=os.environ.get("BOOST_API_INFO"),
        required=not os.environ.get("BOOST_API_INFO"),
    )
    parser.add_argument(
        "--boost-delete-after-import",
        help="Whether or not to instruct Boost to delete the CAR file after it is imported. Default: True",
        type=str_to_bool,
        default=os.environ.get("BOOST_DELETE_AFTER_IMPORT", True),
        required=False,
    )
    parser.add_argument(
        "--fil-spid-file-path",
        help="Full file path of the `fil-spid.bash` authorization script. When omitted the FIL-SPID token is signed through the full node.",
        type=str,
        default=os.environ.get("FIL_SPID_FILE_PATH"),
        required=False,
    )
    parser.add_argument(
        "--evergreen-api-url",
        help=f"Base URL of the Evergreen API. Default: {DEFAULT_EVERGREEN_API_URL}",
        type=str,
        default=os.environ.get("EVERGREEN_API_URL", DEFAULT_EVERGREEN_API_URL),
        required=False,
    )
    parser.add_argument(
        "--max-retrieval-price",
        help="The maximum price, in FIL, to pay for a retrieval from another Storage Provider. Default: 0",
        type=str,
        default=os.environ.get("MAX_RETRIEVAL_PRICE", "0"),
        required=False,
    )
    parser.add_argument(
        "--retrieval-timeout-minutes",
        help="Minutes without progress before a retrieval is considered failed. Default: 10",
        type=float,
        default=os.environ.get("RETRIEVAL_TIMEOUT_MINUTES", 10),
        required=False,
    )
    parser.add_argument(
        "--min-piece-size",
        help="Pieces with a padded size below this many bytes are ignored. Default: 1073741824",
        type=int,
        default=os.environ.get("MIN_PIECE_SIZE", 1073741824),
        required=False,
    )
    parser.add_argument(
        "--deal-query-interval-minutes",
        help="How long the list of available deals is cached before Evergreen is queried again. Default: 2",
        type=float,
        default=os.environ.get("AVAILABLE_DEAL_QUERY_INTERVAL_MINUTES", 2),
        required=False,
    )
    parser.add_argument(
        "--max-concurrent-retrievals-per-sp",
        help="The maximum number of retrievals running against a single Storage Provider. Default: 2",
        type=int,
        default=os.environ.get("MAX_CONCURRENT_RETRIEVALS_PER_SP", 2),
        required=False,
    )
    parser.add_argument(
        "--max-threads",
        help="The maximum number of deals being acquired at the same time. Default: 4",
        type=int,
        default=os.environ.get("MAX_THREADS", 4),
        required=False,
    )
    parser.add_argument(
        "--selection-attempts",
        help="How many random picks a worker makes from the deal list before giving up its cycle. Default: 1",
        type=int,
        default=os.environ.get("SELECTION_ATTEMPTS", 1),
        required=False,
    )
    parser.add_argument(
        "--car-location-longterm",
        help="Directory holding pre-staged CAR files named <piece_cid>.car. Default: /tmp",
        type=str,
        default=os.environ.get("CAR_LOCATION_LONGTERM", "/tmp"),
        required=False,
    )
    parser.add_argument(
        "--car-location-download",
        help="Directory into which retrieved CAR files are exported. Default: /tmp",
        type=str,
        default=os.environ.get("CAR_LOCATION_DOWNLOAD", "/tmp"),
        required=False,
    )
    parser.add_argument(
        "--watcher-interval-minutes",
        help="How often the long-term CAR directory is scanned for files matching open deals. Default: 10",
        type=float,
        default=os.environ.get("WATCHER_INTERVAL_MINUTES", 10),
        required=False,
    )
    parser.add_argument(
        "--proposal-poll-interval",
        help="Seconds to wait between checks for a requested deal to appear in pending proposals. Default: 60",
        type=float,
        default=os.environ.get("PROPOSAL_POLL_INTERVAL", 60),
        required=False,
    )
    parser.add_argument(
        "--proposal-poll-retries",
        help="How many times pending proposals are checked before the deal is considered lost. Default: 15",
        type=int,
        default=os.environ.get("PROPOSAL_POLL_RETRIES", 15),
        required=False,
    )
    parser.add_argument(
        "--retrieval-tick-seconds",
        help="How often a running retrieval is checked for inactivity. Default: 10",
        type=float,
        default=os.environ.get("RETRIEVAL_TICK_SECONDS", 10),
        required=False,
    )
    parser.add_argument(
        "--cancel-grace-seconds",
        help="Seconds to wait before cancelling a failed retrieval, so the transfer has time to show up. Default: 30",
        type=float,
        default=os.environ.get("CANCEL_GRACE_SECONDS", 30),
        required=False,
    )
    parser.add_argument(
        "--transfer-cancel-timeout-seconds",
        help="Upper bound on the time spent cancelling data transfer channels of a failed retrieval. Default: 10",
        type=float,
        default=os.environ.get("TRANSFER_CANCEL_TIMEOUT_SECONDS", 10),
        required=False,
    )
    parser.add_argument(
        "--idle-seconds",
        help="Seconds to sleep when there are no open deals to work on. Default: 60",
        type=float,
        default=os.environ.get("IDLE_SECONDS", 60),
        required=False,
    )
    parser.add_argument(
        "--log-file-location",
        help="Append logs to this file in addition to stdout.",
        type=str,
        default=os.environ.get("LOG_FILE_LOCATION", ""),
        required=False,
    )
    parser.add_argument(
        "--debug",
        help="If enabled, logging will be thorough, enabling debugging of deep issues. Default: False",
        nargs="?",
        const=True,
        type=str_to_bool,
        default=os.environ.get("DEBUG", False),
        required=False,
    )
    return parser


def validate_options(options: argparse.Namespace) -> argparse.Namespace:
    if not options.miner_id and not options.miner_api_info:
        raise ConfigError("Either --miner-id or --miner-api-info must be provided")
    if options.max_threads < 1:
        raise ConfigError("--max-threads must be at least 1")
    if options.max_concurrent_retrievals_per_sp < 1:
        raise ConfigError("--max-concurrent-retrievals-per-sp must be at least 1")
    if options.selection_attempts < 1:
        raise ConfigError("--selection-attempts must be at least 1")
    for name in ("fullnode_api_info", "boost_api_info", "miner_api_info"):
        value = getattr(options, name)
        if not value:
            continue
        try:
            parse_api_info(value)
        except ProtocolError as e:
            flag = name.replace("_", "-")
            raise ConfigError(f"--{flag} is not in the form [TOKEN:]/ip4/HOST/tcp/PORT/http: {e}") from e
    return options


def parse_args(args: Optional[Sequence[str]] = None) -> argparse.Namespace:
    load_dotenv(find_dotenv(usecwd=True))
    return validate_options(build_parser().parse_args(args))
