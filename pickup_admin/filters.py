# filtering and multi-rule sorting for the board's groups and rider lists
from dataclasses import dataclass
from datetime import date, time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from pickup_admin.rider_data import Group, Rider

SUBSIDY_OPTIONS = ("all", "subsidized", "unsubsidized")
SORT_FIELDS = ("bag_size", "group_size", "date", "time", "ride_id")


@dataclass
class BoardFilter:
    airports: Optional[Set[str]] = None   # None means every airport
    date_start: Optional[date] = None
    date_end: Optional[date] = None
    time_start: Optional[time] = None     # time filter applies only when both ends are set
    time_end: Optional[time] = None
    subsidy: str = "all"                  # groups only
    min_bags: Optional[int] = None        # bag units
    max_bags: Optional[int] = None
    search: str = ""


@dataclass(frozen=True)
class SortRule:
    field: str
    direction: str = "asc"

    def __post_init__(self):
        if self.field not in SORT_FIELDS:
            raise ValueError(f"Unknown sort field: {self.field}")
        if self.direction not in ("asc", "desc"):
            raise ValueError(f"Unknown sort direction: {self.direction}")


# vouchers are stored as links; the code is the last path segment
def format_voucher(voucher: Optional[str]) -> str:
    if not voucher:
        return ""
    return voucher.rstrip("/").split("/")[-1] or voucher


def _in_dates(d: date, f: BoardFilter) -> bool:
    if f.date_start and d < f.date_start:
        return False
    if f.date_end and d > f.date_end:
        return False
    return True


def _in_bags(units: int, f: BoardFilter) -> bool:
    if f.min_bags is not None and units < f.min_bags:
        return False
    if f.max_bags is not None and units > f.max_bags:
        return False
    return True


def _rider_search_hit(r: Rider, query: str) -> bool:
    if query in r.name.lower() or query in str(r.flight_id):
        return True
    if r.flight_no and query in r.flight_no.lower():
        return True
    if r.airline_iata and r.flight_no and query in f"{r.airline_iata}{r.flight_no}".lower():
        return True
    return False


def rider_matches(r: Rider, f: BoardFilter) -> bool:
    if f.airports is not None and r.airport not in f.airports:
        return False
    if not _in_dates(r.date, f):
        return False
    if not _in_bags(r.bag_units, f):
        return False
    query = f.search.strip().lower()
    if query and not _rider_search_hit(r, query):
        return False
    return True


def group_matches(g: Group, f: BoardFilter) -> bool:
    if f.airports is not None and g.airport not in f.airports:
        return False
    if not _in_dates(g.date, f):
        return False

    if f.time_start and f.time_end and g.window:
        start, end = g.window[0].time(), g.window[1].time()
        in_range = (
            f.time_start <= start <= f.time_end
            or f.time_start <= end <= f.time_end
            or (start <= f.time_start and end >= f.time_end)
        )
        if not in_range:
            return False

    if f.subsidy == "subsidized" and not g.is_subsidized:
        return False
    if f.subsidy == "unsubsidized" and g.is_subsidized:
        return False
    if not _in_bags(g.bag_units, f):
        return False

    query = f.search.strip().lower()
    if query:
        hit = (
            query in str(g.ride_id)
            or any(_rider_search_hit(r, query) for r in g.riders)
            or query in format_voucher(g.voucher).lower()
        )
        if not hit:
            return False
    return True


def filter_groups(groups: Iterable[Group], f: BoardFilter) -> List[Group]:
    return [g for g in groups if group_matches(g, f)]


def filter_riders(riders: Iterable[Rider], f: BoardFilter) -> List[Rider]:
    return [r for r in riders if rider_matches(r, f)]


GROUP_KEYS: Dict[str, Callable[[Group], object]] = {
    "bag_size": lambda g: g.bag_units,
    "group_size": lambda g: len(g.riders),
    "date": lambda g: g.date,
    "time": lambda g: g.window[0].time() if g.window else time.min,
    "ride_id": lambda g: g.ride_id,
}

# riders have no group size; ride_id sorts by flight_id
RIDER_KEYS: Dict[str, Callable[[Rider], object]] = {
    "bag_size": lambda r: r.bag_units,
    "date": lambda r: r.date,
    "time": lambda r: r.earliest_time,
    "ride_id": lambda r: r.flight_id,
}


def _sort(items: list, rules: Sequence[SortRule], keys: Dict[str, Callable], day_of, today: date) -> list:
    """Apply rules in priority order; past-dated items always come last.

    Stable sorts are applied from the lowest priority rule upwards, so the
    first rule ends up deciding and later rules only break its ties.
    """
    items = list(items)
    for rule in reversed(rules):
        key = keys.get(rule.field)
        if key is None:
            continue
        items.sort(key=key, reverse=rule.direction == "desc")
    items.sort(key=lambda x: day_of(x) < today)
    return items


def sort_groups(groups: Iterable[Group], rules: Sequence[SortRule] = (), today: Optional[date] = None) -> List[Group]:
    return _sort(list(groups), rules, GROUP_KEYS, lambda g: g.date, today or date.today())


def sort_riders(riders: Iterable[Rider], rules: Sequence[SortRule] = (), today: Optional[date] = None) -> List[Rider]:
    return _sort(list(riders), rules, RIDER_KEYS, lambda r: r.date, today or date.today())
