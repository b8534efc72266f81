import time
from typing import Iterable, List, Union


def epoch_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def split_hashes(hashes: Union[str, Iterable[str]]) -> List[str]:
    """
    Normalize a hash selection to a list.

    Browsers send either a pipe-joined string ("abc|def") or a JSON list.
    Empty entries are dropped.
    """
    if isinstance(hashes, str):
        items = hashes.split("|")
    else:
        items = list(hashes)
    return [h.strip() for h in items if h and h.strip()]
