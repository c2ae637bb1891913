"""Wall-clock access in epoch milliseconds."""

import time
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)
