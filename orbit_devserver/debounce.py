"""Debounce gate deciding whether a new rebuild may start."""

from __future__ import annotations

DEFAULT_DEBOUNCE_SECONDS = 0.5


def gate_open(
    now: float, last_rebuild_at: float | None, has_pending: bool, window: float
) -> bool:
    """Return True when a rebuild may start.

    Args:
        now: Current monotonic time in seconds
        last_rebuild_at: Start time of the previous rebuild, if any
        has_pending: Whether unapplied module changes exist
        window: Debounce window in seconds

    Returns:
        False inside the window of the previous rebuild or with nothing pending
    """
    if last_rebuild_at is not None and now - last_rebuild_at < window:
        return False
    return has_pending


def remaining_window(now: float, last_rebuild_at: float | None, window: float) -> float:
    """Seconds left until the debounce window of the last rebuild elapses."""
    if last_rebuild_at is None:
        return 0.0
    return max(0.0, window - (now - last_rebuild_at))
