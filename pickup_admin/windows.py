# time window helpers and the consensus window for a new group
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Iterable, Optional, Tuple, Union

if TYPE_CHECKING:
    from pickup_admin.rider_data import Rider

Interval = Tuple[datetime, datetime]


# accept "HH:MM", "HH:MM:SS" or a time (Supabase returns time columns as strings)
def parse_time(value: Union[str, time]) -> time:
    if isinstance(value, time):
        return value.replace(microsecond=0)
    return time.fromisoformat(str(value).strip()).replace(microsecond=0)


def parse_date(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


# storage format for Matches.time / Flights.*_time
def format_time(t: time) -> str:
    return t.replace(microsecond=0).isoformat()


# "HH:MM" as shown in range strings
def format_hhmm(t: time) -> str:
    return t.strftime("%H:%M")


def window(d: date, earliest: time, latest: time) -> Interval:
    """Turn a date plus clock times into a full timestamp window.

    A latest time earlier than the earliest time means the window runs past
    midnight, so its end lands on the following day.
    """
    start = datetime.combine(d, earliest)
    end = datetime.combine(d, latest)
    if end < start:
        end += timedelta(days=1)
    return start, end


# intersection [latest start, earliest end]; None when empty
def intersection(intervals: Iterable[Interval]) -> Optional[Interval]:
    intervals = list(intervals)
    if not intervals:
        return None
    start = max(s for s, _ in intervals)
    end = min(e for _, e in intervals)
    if start > end:
        return None
    return start, end


# closed-interval overlap: a.start <= b.end and a.end >= b.start
def overlaps(a: Interval, b: Interval) -> bool:
    return a[0] <= b[1] and a[1] >= b[0]


@dataclass(frozen=True)
class Consensus:
    date: date
    time: time
    latest_start: datetime
    earliest_end: datetime


def consensus_window(riders: Iterable["Rider"]) -> Optional[Consensus]:
    """Pick the pickup date/time for a group about to be created.

    The group leaves at the latest of the riders' start times, on the date of
    the rider who set it. The earliest end time bounds it: if the latest start
    comes after the earliest end there is no common window and None is
    returned. Recomputed from scratch for whatever riders are passed in.
    """
    latest_start: Optional[datetime] = None
    earliest_end: Optional[datetime] = None
    for r in riders:
        s, e = r.window
        if latest_start is None or s > latest_start:
            latest_start = s
        if earliest_end is None or e < earliest_end:
            earliest_end = e

    if latest_start is None or earliest_end is None:
        return None
    if latest_start > earliest_end:
        return None

    return Consensus(
        date=latest_start.date(),
        time=latest_start.time(),
        latest_start=latest_start,
        earliest_end=earliest_end,
    )
