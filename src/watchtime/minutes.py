"""Utilities for working with minute and millisecond quantities."""

from __future__ import annotations

MILLIS_PER_MINUTE = 60_000


def to_millis(minutes: int) -> int:
    """Convert whole ``minutes`` to milliseconds."""

    return int(minutes) * MILLIS_PER_MINUTE


def to_minutes(millis: int) -> int:
    """Convert ``millis`` to whole minutes, rounding down."""

    return int(millis) // MILLIS_PER_MINUTE


def clamp(value: int, lower: int, upper: int) -> int:
    """Return ``value`` bounded to the inclusive range ``[lower, upper]``."""

    if lower > upper:
        raise ValueError("lower bound must not exceed upper bound.")
    return max(lower, min(int(value), upper))


def require_positive(minutes: int, *, allow_zero: bool = False) -> int:
    """Ensure ``minutes`` is positive (or non-negative when ``allow_zero`` is true)."""

    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise TypeError(f"Unsupported minute type: {type(minutes)!r}")
    if allow_zero:
        if minutes < 0:
            raise ValueError("Minutes must be zero or greater.")
    else:
        if minutes <= 0:
            raise ValueError("Minutes must be greater than zero.")
    return minutes


def format_clock(minutes: int) -> str:
    """Return ``minutes`` as an ``HH:MM`` string (e.g. ``01:05``)."""

    total = max(0, int(minutes))
    return f"{total // 60:02d}:{total % 60:02d}"
