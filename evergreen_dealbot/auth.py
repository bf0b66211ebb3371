import base64
import logging
import subprocess
import time

from typing import Callable, Optional

from .errors import AuthError, ProtocolError
from .lotus import LotusClient

log = logging.getLogger("Dealbot.Auth")

FIL_AUTH_PREFIX = "FIL-SPID-V0"
FIL_GENESIS_UNIX = 1598306400
FIL_EPOCH_SECONDS = 30
FINALITY_EPOCHS = 900
# Prefix for the random beacon, lest it becomes valid CBOR
B64_SPACE_PAD = "ICAg"


def current_epoch(now: Optional[float] = None) -> int:
    now = int(time.time() if now is None else now)
    return (now - 1 - FIL_GENESIS_UNIX) // FIL_EPOCH_SECONDS


def shell(*, command: list, stdin: Optional[str] = None) -> str:
    try:
        process = subprocess.run(
            command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=True, universal_newlines=True, input=stdin
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(
            f"Bash command failed with exit code {e.returncode}",
            f"Error message: {e.stderr}",
        ) from e
    return process.stdout.rstrip()


class ScriptTokenSource:
    """FIL-SPID token produced by the `fil-spid.bash` script shipped with the marketplace."""

    def __init__(self, *, script_path: str, miner_id: str):
        self.script_path = script_path
        self.miner_id = miner_id

    def __call__(self) -> str:
        try:
            return shell(command=["bash", self.script_path, self.miner_id])
        except (RuntimeError, OSError) as e:
            raise AuthError(f"{self.script_path} could not produce a token for {self.miner_id}: {e}") from e


class LotusTokenSource:
    """FIL-SPID token signed by the miner's worker key through the full node.

    Example: FIL-SPID-V0 2205910;f012345;2;jKxW4olDvm+y+03uPyW+7ugoZ1tO6B...
    """

    def __init__(self, *, lotus: LotusClient, miner_id: str, clock: Callable[[], float] = time.time):
        self.lotus = lotus
        self.miner_id = miner_id
        self.clock = clock

    def __call__(self) -> str:
        epoch = current_epoch(self.clock())

        finalized = self.lotus.chain_get_tipset_by_height(epoch - FINALITY_EPOCHS)
        miner_info = self.lotus.state_miner_info(self.miner_id, finalized.get("Cids") or [])
        worker = miner_info.get("Worker")
        if not worker:
            raise ProtocolError(f"No worker address for {self.miner_id}: {miner_info!r}")

        beacon = self.lotus.state_get_beacon_entry(epoch)
        try:
            # Space pad and drand are joined as base64, then decoded back to bytes before signing
            message = base64.b64decode(B64_SPACE_PAD + beacon["Data"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed beacon entry: {beacon!r}") from e

        signature = self.lotus.wallet_sign(worker, base64.b64encode(message).decode())
        try:
            return f"{FIL_AUTH_PREFIX} {epoch};{self.miner_id};{signature['Type']};{signature['Data']}"
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"Malformed signature: {signature!r}") from e


def token_source(*, options, lotus: LotusClient, miner_id: str) -> Callable[[], str]:
    if options.fil_spid_file_path:
        log.debug(f"Using FIL-SPID script {options.fil_spid_file_path}")
        return ScriptTokenSource(script_path=options.fil_spid_file_path, miner_id=miner_id)
    return LotusTokenSource(lotus=lotus, miner_id=miner_id)
