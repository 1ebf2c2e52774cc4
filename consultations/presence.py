"""
Presence intervals and billable-duration math for consultation calls.

Everything here is pure: no ORM access, no clock reads unless `now` is omitted.
Each party may have several intervals (reconnects). Intervals of one party are
merged before they are intersected with the other party's intervals, so a
reconnect never bills the same second twice.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from django.utils import timezone
from django.utils.dateparse import parse_datetime


class InvalidIntervalError(ValueError):
    """Raised when an interval closes before it opens or a stored interval cannot be parsed."""
    pass


@dataclass(frozen=True)
class PresenceInterval:
    """A span during which one party was connected. `left_at=None` means still present."""

    joined_at: datetime
    left_at: Optional[datetime] = None

    def __post_init__(self):
        if self.joined_at is None:
            raise InvalidIntervalError("joined_at is required")
        if self.left_at is not None and self.left_at < self.joined_at:
            raise InvalidIntervalError(
                f"left_at {self.left_at.isoformat()} is before joined_at {self.joined_at.isoformat()}"
            )

    @property
    def is_open(self) -> bool:
        return self.left_at is None

    def resolve(self, now: datetime) -> Tuple[datetime, datetime]:
        """Return (start, end) with an open end closed at `now`."""
        end = self.left_at if self.left_at is not None else now
        # A party that joined after `now` (clock skew) contributes nothing
        if end < self.joined_at:
            end = self.joined_at
        return self.joined_at, end

    def to_dict(self) -> dict:
        return {
            "joined_at": self.joined_at.isoformat(),
            "left_at": self.left_at.isoformat() if self.left_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PresenceInterval":
        joined_at = parse_timestamp(data.get("joined_at") or data.get("joinedAt"))
        left_raw = data.get("left_at", data.get("leftAt"))
        left_at = parse_timestamp(left_raw) if left_raw else None
        return cls(joined_at=joined_at, left_at=left_at)


def parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # Epoch milliseconds (older clients stored timestamps this way)
        parsed = datetime.fromtimestamp(value / 1000, tz=dt_timezone.utc)
    elif isinstance(value, str) and value:
        parsed = parse_datetime(value)
        if parsed is None:
            raise InvalidIntervalError(f"Unparseable timestamp: {value!r}")
    else:
        raise InvalidIntervalError(f"Missing timestamp: {value!r}")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, dt_timezone.utc)
    return parsed


def merge_intervals(intervals: Iterable[PresenceInterval], now: datetime) -> List[Tuple[datetime, datetime]]:
    """
    Close open intervals at `now`, sort by start and coalesce spans that touch or overlap.

    Returns a list of disjoint (start, end) tuples in ascending order.
    """
    spans = sorted((interval.resolve(now) for interval in intervals), key=lambda span: span[0])
    merged: List[Tuple[datetime, datetime]] = []
    for start, end in spans:
        if merged and start <= merged[-1][1]:
            last_start, last_end = merged[-1]
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))
    return merged


def compute_overlap_seconds(
    party_a: Sequence[PresenceInterval],
    party_b: Sequence[PresenceInterval],
    cap_seconds: Optional[int],
    now: Optional[datetime] = None,
) -> int:
    """
    Seconds during which both parties were present at the same time.

    Truncated to whole seconds and capped at `cap_seconds` (None disables the cap).
    Either list empty -> 0.
    """
    if not party_a or not party_b:
        return 0
    now = now or timezone.now()
    merged_a = merge_intervals(party_a, now)
    merged_b = merge_intervals(party_b, now)

    total = timedelta(0)
    for a_start, a_end in merged_a:
        for b_start, b_end in merged_b:
            overlap = min(a_end, b_end) - max(a_start, b_start)
            if overlap > timedelta(0):
                total += overlap

    seconds = total // timedelta(seconds=1)
    if cap_seconds is not None:
        seconds = min(seconds, max(0, int(cap_seconds)))
    return max(0, seconds)


def calculate_simple_billable_seconds(
    both_joined_at: Optional[datetime],
    end_time: Optional[datetime],
    cap_seconds: Optional[int],
    now: Optional[datetime] = None,
) -> int:
    """Fallback estimate: time since both parties joined, capped and never negative."""
    if both_joined_at is None:
        return 0
    end = end_time or now or timezone.now()
    seconds = (end - both_joined_at) // timedelta(seconds=1)
    if cap_seconds is not None:
        seconds = min(seconds, max(0, int(cap_seconds)))
    return max(0, seconds)


def parse_stored_intervals(raw) -> Optional[List[PresenceInterval]]:
    """
    Parse intervals stored on an order as JSON.

    None (never recorded) stays None so the caller can fall through to the call timeline.
    """
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise InvalidIntervalError("Stored intervals must be a list")
    return [PresenceInterval.from_dict(item) for item in raw]
