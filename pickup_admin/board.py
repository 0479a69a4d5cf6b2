"""The admin board: every rider sits in exactly one container.

Containers are the unmatched pool, the corral (a holding area for riders
pulled out of a group or the pool while the admin decides where they go)
and the groups. Only the mutation engine moves riders between them.
"""

from collections import Counter
from dataclasses import replace
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from pickup_admin.exceptions import GroupNotFoundError, RiderNotFoundError
from pickup_admin.rider_data import ORIGIN_GROUP, ORIGIN_UNMATCHED, Group, Rider, RiderData

UNMATCHED = "unmatched"
CORRAL = "corral"
GROUP = "group"


class Board:

    def __init__(self, groups: Iterable[Group] = (), unmatched: Iterable[Rider] = ()):
        self.groups: Dict[int, Group] = {g.ride_id: g for g in groups}
        self.unmatched: Dict[int, Rider] = {r.flight_id: r for r in unmatched}
        self.corral: Dict[int, Rider] = {}

    @classmethod
    def load(cls, data: RiderData) -> "Board":
        groups, unmatched = data.fetch_groups_and_unmatched()
        return cls(groups, unmatched)

    # ===================== Lookups =====================

    def locate(self, flight_id: int) -> Tuple[str, Optional[int]]:
        """Return (container, ride_id) for a flight; ride_id is None outside groups."""
        if flight_id in self.unmatched:
            return UNMATCHED, None
        if flight_id in self.corral:
            return CORRAL, None
        for ride_id, g in list(self.groups.items()):
            if g.has(flight_id):
                return GROUP, ride_id
        raise RiderNotFoundError(f"Flight {flight_id} is not on the board")

    def rider(self, flight_id: int) -> Rider:
        where, ride_id = self.locate(flight_id)
        if where == UNMATCHED:
            return self.unmatched[flight_id]
        if where == CORRAL:
            return self.corral[flight_id]
        return next(r for r in self.groups[ride_id].riders if r.flight_id == flight_id)

    def group(self, ride_id: int) -> Group:
        try:
            return self.groups[ride_id]
        except KeyError:
            raise GroupNotFoundError(f"Group #{ride_id} not found") from None

    # unlocked readers go through these while a mutation may be resizing the dicts
    def snapshot(self) -> Tuple[List[Group], List[Rider], List[Rider]]:
        """Copies of (groups, unmatched, corral) taken without holding the mutation lock."""
        return list(self.groups.values()), list(self.unmatched.values()), list(self.corral.values())

    def riders(self) -> Iterator[Rider]:
        groups, unmatched, corral = self.snapshot()
        yield from unmatched
        yield from corral
        for g in groups:
            yield from list(g.riders)

    # how many containers hold each flight; every count must be 1
    def membership_counts(self) -> Counter:
        return Counter(r.flight_id for r in self.riders())

    # ===================== Moves =====================

    def take(self, flight_id: int) -> Rider:
        """Remove a rider from whichever container holds it."""
        where, ride_id = self.locate(flight_id)
        if where == UNMATCHED:
            return self.unmatched.pop(flight_id)
        if where == CORRAL:
            return self.corral.pop(flight_id)
        g = self.groups[ride_id]
        rider = next(r for r in g.riders if r.flight_id == flight_id)
        g.riders = [r for r in g.riders if r.flight_id != flight_id]
        return rider

    def put_unmatched(self, rider: Rider) -> None:
        self.unmatched[rider.flight_id] = _clear_origin(rider)

    def put_corral(self, rider: Rider, origin_group_id: Optional[int] = None) -> None:
        self.corral[rider.flight_id] = replace(
            rider,
            origin_type=ORIGIN_GROUP if origin_group_id is not None else ORIGIN_UNMATCHED,
            origin_group_id=origin_group_id,
        )

    def put_group(self, rider: Rider, ride_id: int) -> None:
        self.group(ride_id).riders.append(_clear_origin(rider))

    def add_group(self, group: Group) -> None:
        self.groups[group.ride_id] = group

    def remove_group(self, ride_id: int) -> List[Rider]:
        g = self.groups.pop(ride_id)
        return [_clear_origin(r) for r in g.riders]


def _clear_origin(rider: Rider) -> Rider:
    if rider.origin_type is None and rider.origin_group_id is None:
        return rider
    return replace(rider, origin_type=None, origin_group_id=None)
