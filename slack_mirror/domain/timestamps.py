"""Helpers for Slack message timestamps.

Slack ``ts`` values are decimal strings (``"1712345678.123456"``) assigned by
the server. They are compared numerically so that short forms such as
``"0"`` or ``"100"`` order correctly against full-width values.
"""

import time
from decimal import Decimal, InvalidOperation


def ts_key(ts: str) -> Decimal:
    """Sort key for a Slack timestamp.

    Raises:
        ValueError: If ``ts`` is not a decimal number
    """
    try:
        return Decimal(ts)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Invalid Slack timestamp: {ts!r}") from exc


def is_newer(candidate: str, reference: str | None) -> bool:
    """True when ``candidate`` sorts strictly after ``reference``."""
    if reference is None:
        return True
    return ts_key(candidate) > ts_key(reference)


def max_ts(*values: str | None) -> str | None:
    """Largest timestamp among the non-None values."""
    present = [value for value in values if value is not None]
    if not present:
        return None
    return max(present, key=ts_key)


def now_ts(clock: float | None = None) -> str:
    """Current time rendered in Slack's six-decimal format."""
    return f"{time.time() if clock is None else clock:.6f}"


__all__ = ["is_newer", "max_ts", "now_ts", "ts_key"]
