"""
Utility helpers for the curriculum core.

Provides:
- Structured logging configuration with timestamps.
- A ``timed`` context manager for stage durations.
- Half-up rounding for minute estimates.
- UTC timestamps.
"""

import contextlib
import logging
import math
import time
from datetime import datetime, timezone
from typing import Generator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def setup_logging(
    level: int = logging.INFO,
    fmt: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt: str = "%Y-%m-%dT%H:%M:%S%z",
) -> None:
    """Configure the root logger with timestamped structured output."""
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt, force=True)


@contextlib.contextmanager
def timed(label: str) -> Generator[None, None, None]:
    """Context manager that logs elapsed wall-clock time for *label*."""
    t0 = time.monotonic()
    yield
    elapsed = time.monotonic() - t0
    logger.info("%s completed in %.2fs.", label, elapsed)


# ---------------------------------------------------------------------------
# Numbers & time
# ---------------------------------------------------------------------------


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounding up (``22.5 -> 23``).

    The epsilon absorbs float noise such as ``15 * 1.3 == 19.499999...``.
    """
    return int(math.floor(value + 0.5 + 1e-9))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
