import os

from decimal import Decimal, InvalidOperation
from typing import List

from .errors import ConfigError

CAR_EXTENSION = ".car"
ATTO_FIL_PER_FIL = 10**18

_SIZE_UNITS = ["B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB"]


# baga6ea4seaqbl2h2mamvynevzq2ohvvjjwg4hhtjaxp6w7mcfv5u2uc77etycfq.car
def car_file_name(directory: str, piece_cid: str) -> str:
    return os.path.join(directory, piece_cid + CAR_EXTENSION)


def piece_cid_from_car_name(file_name: str) -> str:
    return file_name.split(".")[0]


def file_exists(path: str) -> bool:
    return os.path.isfile(path)


def list_car_files(directory: str) -> List[str]:
    # Raises OSError when the directory cannot be read; callers decide how loud that is
    result = []
    with os.scandir(directory) as entries:
        for entry in entries:
            if entry.is_file() and entry.name.endswith(CAR_EXTENSION):
                result.append(entry.name)
    return sorted(result)


def parse_fil(amount: str) -> int:
    """Parse a FIL amount ("0", "0.0001", "2 FIL") into attoFIL."""
    text = str(amount).strip()
    if text.upper().endswith("FIL"):
        text = text[:-3].strip()
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ConfigError(f"Invalid FIL amount: {amount!r}")
    if value < 0:
        raise ConfigError(f"FIL amount cannot be negative: {amount!r}")
    return int(value * ATTO_FIL_PER_FIL)


def fil_str(atto_fil: int) -> str:
    value = Decimal(int(atto_fil)) / ATTO_FIL_PER_FIL
    return f"{value.normalize():f} FIL"


def size_str(num_bytes: int) -> str:
    size = float(num_bytes)
    unit = 0
    while size >= 1024 and unit < len(_SIZE_UNITS) - 1:
        size /= 1024
        unit += 1
    if unit == 0:
        return f"{int(size)} B"
    return f"{size:.3g} {_SIZE_UNITS[unit]}"
