from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], int]


def now_ms() -> int:
    """Wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def billing_period(at_ms: int) -> str:
    """UTC calendar month for a timestamp, e.g. '2026-03'."""
    return datetime.fromtimestamp(at_ms / 1000, tz=UTC).strftime("%Y-%m")
