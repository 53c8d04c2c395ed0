"""Split clip queries into calendar-day windows.

The device search command only accepts a start and end inside a single
calendar day, so wider queries are broken into consecutive day windows.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, tzinfo

DAY_MS = 24 * 60 * 60 * 1000
# Calendar days last 25 hours when daylight saving time ends.
MAX_WINDOW_MS = DAY_MS + 60 * 60 * 1000


@dataclass(frozen=True, slots=True)
class ClipSearchWindow:
    """Inclusive ``[start, end]`` interval in epoch milliseconds."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("Window end must not precede its start")
        if self.end - self.start > MAX_WINDOW_MS:
            raise ValueError("Window must not span more than one day")

    def contains(self, timestamp_ms: int) -> bool:
        return self.start <= timestamp_ms <= self.end


def to_datetime(timestamp_ms: int, tz: tzinfo | None = None) -> datetime:
    """Convert epoch milliseconds into a datetime (naive local when ``tz`` is None)."""

    return datetime.fromtimestamp(timestamp_ms / 1000, tz)


def to_timestamp_ms(moment: datetime) -> int:
    return int(round(moment.timestamp() * 1000))


def end_of_day(timestamp_ms: int, tz: tzinfo | None = None) -> int:
    """Return the last millisecond of the calendar day containing ``timestamp_ms``."""

    moment = to_datetime(timestamp_ms, tz)
    last = datetime.combine(moment.date(), time(23, 59, 59, 999000), tzinfo=moment.tzinfo)
    return to_timestamp_ms(last)


def split_date_range_by_day(
    start: int, end: int, *, tz: tzinfo | None = None
) -> list[ClipSearchWindow]:
    """Split ``[start, end]`` into ascending, contiguous single-day windows.

    The first window runs from ``start`` to the end of its calendar day, the
    following windows cover whole days and the final one stops at ``end``.
    Each window starts one millisecond after the previous one ends.  An
    inverted range yields no windows.
    """

    windows: list[ClipSearchWindow] = []
    current = int(start)
    end = int(end)
    while current <= end:
        window_end = min(end, end_of_day(current, tz))
        windows.append(ClipSearchWindow(current, window_end))
        if window_end >= end:
            break
        current = window_end + 1
    return windows


__all__ = [
    "ClipSearchWindow",
    "DAY_MS",
    "MAX_WINDOW_MS",
    "end_of_day",
    "split_date_range_by_day",
    "to_datetime",
    "to_timestamp_ms",
]
