"""
core/deadline.py -- Cooperative request deadlines.

A deadline is a time.monotonic() timestamp. Multi-step operations call
check_deadline() between steps; an operation that has already committed
its last write is never interrupted.
"""

from __future__ import annotations

import time
from typing import Optional

from core.errors import DeadlineExceeded


def deadline_after(seconds: Optional[float]) -> Optional[float]:
    """Return a monotonic deadline `seconds` from now, or None for no limit."""
    if seconds is None or seconds <= 0:
        return None
    return time.monotonic() + seconds


def check_deadline(deadline: Optional[float], operation: str) -> None:
    """Raise DeadlineExceeded if the deadline has passed."""
    if deadline is not None and time.monotonic() >= deadline:
        raise DeadlineExceeded(detail=operation)
