"""
Mutation engine for the groups board.

Every move of a rider between the unmatched pool, the corral and a group goes
through GroupsManager. Each method validates first, writes to storage, then
updates the board, and finally appends one ChangeLog entry. Hard validation
failures raise before anything is written. Secondary writes that fail after
the primary write succeeded come back as warnings on the result.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pickup_admin import capacity, config
from pickup_admin.board import CORRAL, GROUP, UNMATCHED, Board
from pickup_admin.changelog import Action, Actor, ChangeLog, ChangeLogEntry
from pickup_admin.compatibility import capacity_compatible, route_compatible, time_compatible
from pickup_admin.exceptions import (
    AuditWriteError,
    CapacityWarning,
    ChangeLogWriteError,
    DuplicateFlightError,
    InvalidGroupError,
    MissingScheduleError,
    NoOverlapError,
    NotInCorralError,
    PartialPersistenceError,
    RiderNotFoundError,
    RouteMismatchError,
    StorageError,
    ValidationFailure,
)
from pickup_admin.rider_data import (
    ORIGIN_GROUP,
    Group,
    Rider,
    RiderData,
    match_row,
    normalize_airport,
    rider_from_row,
)
from pickup_admin.windows import Consensus, consensus_window, format_time, parse_date, parse_time

logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    """Outcome of a successful mutation.

    A non-empty ``warnings`` list means the primary change was stored but a
    follow-up write was not; the admin should refresh and reconcile.
    """
    entry: Optional[ChangeLogEntry] = None
    warnings: List[str] = field(default_factory=list)
    group: Optional[Group] = None
    rider: Optional[Rider] = None

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.to_dict() if self.entry else None,
            "warnings": list(self.warnings),
            "group": self.group.to_dict() if self.group else None,
            "rider": self.rider.to_dict() if self.rider else None,
        }


def _snapshot(group: Group) -> Dict[str, Any]:
    vc = group.vehicle_class
    return {
        "flight_ids": [r.flight_id for r in group.riders],
        "bag_units": group.bag_units,
        "vehicle_class": vc.value if vc else None,
        "is_subsidized": group.is_subsidized,
    }


def _no_vehicle_message(size: int, units: int) -> str:
    ceiling = capacity.size_ceiling(size)
    if ceiling is None:
        return f"Invalid group size and bag combination: no vehicle seats {size} riders"
    return f"Invalid group size and bag combination: {size} riders can carry at most {ceiling} bag units, not {units}"


class GroupsManager:

    def __init__(self, board: Board, data: RiderData, changelog: ChangeLog, actor: Actor):
        self.board = board
        self.data = data
        self.changelog = changelog
        self.actor = actor

    # ===================== helpers =====================

    def _record(
        self,
        result: MutationResult,
        action: Action,
        metadata: Dict[str, Any],
        target_group_id: Optional[int] = None,
        target_user_id: Optional[str] = None,
        ignored_error: bool = False,
    ) -> MutationResult:
        try:
            result.entry = self.changelog.append(
                self.actor, action, metadata,
                target_group_id=target_group_id,
                target_user_id=target_user_id,
                ignored_error=ignored_error,
            )
        except ChangeLogWriteError as e:
            raise AuditWriteError(result, e) from e
        return result

    # run a follow-up write; a failure becomes a warning instead of an error
    def _try(self, warnings: List[str], what: str, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except StorageError as e:
            logger.warning("%s failed after the main change was stored: %s", what, e)
            warnings.append(f"{what} failed; refresh to reconcile")

    # write the current class/subsidy onto every Matches row of the ride
    def _sync_group(self, group: Group, warnings: List[str]) -> None:
        if not group.riders:
            return
        vc = group.vehicle_class
        if vc is None:
            warnings.append(
                f"Group #{group.ride_id} has no valid vehicle for "
                f"{len(group.riders)} riders and {group.bag_units} bag units"
            )
            return
        self._try(
            warnings, f"Updating vehicle class of group #{group.ride_id}",
            self.data.update_matches, group.ride_id,
            {"vehicle_class": vc.value, "is_subsidized": group.is_subsidized},
        )

    def _corral_rider(self, flight_id: int) -> Rider:
        where, _ = self.board.locate(flight_id)
        if where != CORRAL:
            raise NotInCorralError(f"Flight {flight_id} is not in the corral")
        return self.board.corral[flight_id]

    # store the Matches row, then move the rider from the corral into the group
    def _join(self, group: Group, rider: Rider) -> List[str]:
        members = group.riders + [rider]
        vc = capacity.vehicle_class(len(members), capacity.bag_units(members))
        row = match_row(group, rider, vc.value if vc else None, capacity.is_subsidized(group.airport, len(members)))
        self.data.insert_matches([row])

        warnings: List[str] = []
        self._try(warnings, f"Marking flight {rider.flight_id} matched",
                  self.data.set_flights_matched, [rider.flight_id], True)
        self.board.take(rider.flight_id)
        self.board.put_group(rider, group.ride_id)
        self._sync_group(group, warnings)
        return warnings

    # ===================== corral moves =====================

    def move_to_corral(self, flight_id: int) -> MutationResult:
        """Pull a rider out of the unmatched pool or a group into the corral.

        Always allowed. Leaving a group deletes the rider's Matches row; the
        group itself stays, even when it ends up empty.
        """
        where, ride_id = self.board.locate(flight_id)
        rider = self.board.rider(flight_id)
        if where == CORRAL:
            return MutationResult(rider=rider)
        if where == UNMATCHED:
            # pool -> corral touches no stored rows
            self.board.take(flight_id)
            self.board.put_corral(rider)
            return MutationResult(rider=self.board.corral[flight_id])

        group = self.board.group(ride_id)
        before = _snapshot(group)
        self.data.delete_match(ride_id, flight_id)

        warnings: List[str] = []
        self._try(warnings, f"Marking flight {flight_id} unmatched",
                  self.data.set_flights_matched, [flight_id], False)
        self.board.take(flight_id)
        self.board.put_corral(rider, origin_group_id=ride_id)
        self._sync_group(group, warnings)

        result = MutationResult(warnings=warnings, group=group, rider=self.board.corral[flight_id])
        return self._record(
            result, Action.REMOVE_FROM_GROUP,
            {
                "from_group": ride_id,
                "to": "corral",
                "rider_name": rider.name,
                "rider_user_id": rider.user_id,
                "flight_id": flight_id,
                "before": before,
                "after": _snapshot(group),
            },
            target_group_id=ride_id, target_user_id=rider.user_id,
        )

    def return_from_corral(self, flight_id: int) -> MutationResult:
        """Send a corral rider back where it came from.

        A rider pulled from a group goes back into that group if it still
        exists; everyone else goes back to the unmatched pool. No validation.
        """
        rider = self._corral_rider(flight_id)
        origin = rider.origin_group_id
        if rider.origin_type != ORIGIN_GROUP or origin not in self.board.groups:
            self.board.take(flight_id)
            self.board.put_unmatched(rider)
            return MutationResult(rider=self.board.unmatched[flight_id])

        group = self.board.group(origin)
        before = _snapshot(group)
        warnings = self._join(group, rider)
        result = MutationResult(warnings=warnings, group=group, rider=group.riders[-1])
        return self._record(
            result, Action.ADD_TO_GROUP,
            {
                "from": "corral",
                "to_group": origin,
                "ride_id": origin,
                "restored": True,
                "rider_name": rider.name,
                "rider_user_id": rider.user_id,
                "flight_id": flight_id,
                "before": before,
                "after": _snapshot(group),
            },
            target_group_id=origin, target_user_id=rider.user_id,
        )

    def release_to_unmatched(self, flight_id: int) -> MutationResult:
        # corral -> pool; a rider from a group already lost its Matches row on the way in
        rider = self._corral_rider(flight_id)
        self.board.take(flight_id)
        self.board.put_unmatched(rider)
        return MutationResult(rider=self.board.unmatched[flight_id])

    def assign_from_corral_to_group(self, flight_id: int, ride_id: int, override: bool = False) -> MutationResult:
        """Move a corral rider into an existing group.

        Raises RouteMismatchError, NoOverlapError or InvalidGroupError (hard)
        before anything is written, so a warning is only ever raised for a
        move that an override can complete. Going over the recommended bag units raises CapacityWarning
        unless ``override`` is set, in which case the entry is written with
        ``ignored_error=True`` and the warning in its metadata.
        """
        rider = self._corral_rider(flight_id)
        group = self.board.group(ride_id)

        if not route_compatible(group, rider):
            raise RouteMismatchError(
                f"{rider.name} is {rider.direction} {rider.airport}, "
                f"group #{ride_id} is {'to_airport' if group.to_airport else 'from_airport'} {group.airport}"
            )
        if not time_compatible(group, rider):
            raise NoOverlapError()

        units = capacity.bag_units(group.riders + [rider])
        if capacity.vehicle_class(len(group.riders) + 1, units) is None:
            raise InvalidGroupError(_no_vehicle_message(len(group.riders) + 1, units))

        warning = None
        if not capacity_compatible(group, rider):
            if not override:
                raise CapacityWarning(units)
            warning = {
                "type": "bag_capacity",
                "message": CapacityWarning(units).message,
                "bag_units": units,
                "limit": config.RECOMMENDED_MAX_BAG_UNITS,
            }
            logger.info("Bag capacity warning overridden for flight %s into group #%s", flight_id, ride_id)

        before = _snapshot(group)
        warnings = self._join(group, rider)

        metadata = {
            "from": "corral",
            "origin": rider.origin_type,
            "to_group": ride_id,
            "ride_id": ride_id,
            "rider_name": rider.name,
            "rider_user_id": rider.user_id,
            "flight_id": flight_id,
            "before": before,
            "after": _snapshot(group),
        }
        if warning:
            metadata["warning"] = warning
        result = MutationResult(warnings=warnings, group=group, rider=group.riders[-1])
        return self._record(
            result, Action.ADD_TO_GROUP, metadata,
            target_group_id=ride_id, target_user_id=rider.user_id,
            ignored_error=warning is not None,
        )

    # ===================== groups =====================

    def consensus_for(self, flight_ids: Iterable[int]) -> Optional[Consensus]:
        return consensus_window(self.board.rider(fid) for fid in flight_ids)

    def create_group(
        self,
        flight_ids: Iterable[int],
        ride_date: Optional[Union[str, date]],
        pickup_time: Optional[Union[str, time]],
        voucher: Optional[str] = None,
        is_subsidized: Optional[bool] = None,
    ) -> MutationResult:
        """Create a new group from corral and/or unmatched riders.

        Writes the Rides row, then the Matches rows, then flags the flights.
        If the Matches insert fails the ride row is deleted again and nothing
        changes. If only the flag update fails the group exists and the
        result carries a warning. ``is_subsidized`` defaults to the airport
        rule; the voucher is kept only for subsidized groups.
        """
        ids = list(dict.fromkeys(int(f) for f in flight_ids))
        if not config.MIN_GROUP_SIZE <= len(ids) <= config.MAX_GROUP_SIZE:
            raise InvalidGroupError(f"Group must have {config.MIN_GROUP_SIZE}-{config.MAX_GROUP_SIZE} riders")
        if not ride_date or not pickup_time:
            raise MissingScheduleError()

        riders: List[Rider] = []
        for fid in ids:
            where, current = self.board.locate(fid)
            if where == GROUP:
                raise InvalidGroupError(f"Flight {fid} is already in group #{current}")
            riders.append(self.board.rider(fid))

        if len({(r.airport, r.to_airport) for r in riders}) > 1:
            raise RouteMismatchError("All riders in a group must share an airport and direction")

        units = capacity.bag_units(riders)
        vc = capacity.vehicle_class(len(riders), units)
        if vc is None:
            raise InvalidGroupError(_no_vehicle_message(len(riders), units))

        d = parse_date(ride_date)
        t = parse_time(pickup_time)
        airport = riders[0].airport
        subsidized = capacity.is_subsidized(airport, len(riders)) if is_subsidized is None else is_subsidized

        ride_id = self.data.create_ride(d)
        group = Group(
            ride_id=ride_id,
            airport=airport,
            date=d,
            to_airport=riders[0].to_airport,
            match_time=t,
            voucher=(voucher or None) if subsidized else None,
        )
        try:
            self.data.insert_matches([match_row(group, r, vc.value, subsidized) for r in riders])
        except StorageError as e:
            try:
                self.data.delete_ride(ride_id)
            except StorageError as undo:
                raise PartialPersistenceError(
                    f"Ride {ride_id} was created but its matches were not, and the ride could not be removed: {undo}"
                ) from e
            logger.info("Rolled back ride %s after matches failed", ride_id)
            raise

        warnings: List[str] = []
        self._try(warnings, f"Marking flights {ids} matched", self.data.set_flights_matched, ids, True)

        self.board.add_group(group)
        for r in riders:
            self.board.take(r.flight_id)
            self.board.put_group(r, ride_id)
        logger.info("Created group #%s with %d riders (%s, %d bag units)", ride_id, len(riders), vc.value, units)

        result = MutationResult(warnings=warnings, group=group)
        return self._record(
            result, Action.CREATE_GROUP,
            {
                "ride_id": ride_id,
                "rider_count": len(riders),
                "rider_names": [r.name for r in riders],
                "rider_user_ids": [r.user_id for r in riders],
                "flight_ids": ids,
                "date": d.isoformat(),
                "time": format_time(t),
                "vehicle_class": vc.value,
                "bag_units": units,
                "is_subsidized": subsidized,
                "voucher": group.voucher,
            },
            target_group_id=ride_id,
        )

    def delete_group(self, ride_id: int) -> MutationResult:
        """Delete a group explicitly; its riders go back to the unmatched pool."""
        group = self.board.group(ride_id)
        flight_ids = [r.flight_id for r in group.riders]

        self.data.delete_matches(ride_id)
        warnings: List[str] = []
        self._try(warnings, f"Deleting ride {ride_id}", self.data.delete_ride, ride_id)
        self._try(warnings, f"Marking flights {flight_ids} unmatched", self.data.set_flights_matched, flight_ids, False)

        released = self.board.remove_group(ride_id)
        for r in released:
            self.board.put_unmatched(r)

        result = MutationResult(warnings=warnings, group=group)
        return self._record(
            result, Action.DELETE_GROUP,
            {
                "ride_id": ride_id,
                "rider_names": [r.name for r in released],
                "rider_user_ids": [r.user_id for r in released],
                "flight_ids": flight_ids,
            },
            target_group_id=ride_id,
        )

    def update_group_time(
        self, ride_id: int, pickup_time: Union[str, time], ride_date: Optional[Union[str, date]] = None
    ) -> MutationResult:
        group = self.board.group(ride_id)
        t = parse_time(pickup_time)
        d = parse_date(ride_date) if ride_date else group.date

        before = {"date": group.date.isoformat(), "time": format_time(group.match_time) if group.match_time else None}
        fields = {"time": format_time(t)}
        if d != group.date:
            fields["date"] = d.isoformat()
        self.data.update_matches(ride_id, fields)
        group.match_time = t
        group.date = d

        return self._record(
            MutationResult(group=group), Action.UPDATE_GROUP_TIME,
            {"ride_id": ride_id, "before": before, "after": {"date": d.isoformat(), "time": format_time(t)}},
            target_group_id=ride_id,
        )

    def update_voucher(self, ride_id: int, voucher: Optional[str]) -> MutationResult:
        group = self.board.group(ride_id)
        before = group.voucher
        self.data.update_matches(ride_id, {"voucher": voucher or ""})
        group.voucher = voucher or None
        return self._record(
            MutationResult(group=group), Action.UPDATE_VOUCHER,
            {"ride_id": ride_id, "before": before, "after": group.voucher},
            target_group_id=ride_id,
        )

    # ===================== riders =====================

    def update_rider_details(
        self,
        flight_id: int,
        checked_bags: Optional[int] = None,
        carry_on_bags: Optional[int] = None,
        earliest_time: Optional[Union[str, time]] = None,
        latest_time: Optional[Union[str, time]] = None,
    ) -> MutationResult:
        """Correct a rider's bags or window; the containing group is re-classified."""
        where, ride_id = self.board.locate(flight_id)
        rider = self.board.rider(flight_id)

        changes: Dict[str, Any] = {}
        if checked_bags is not None:
            changes["checked_bags"] = int(checked_bags)
        if carry_on_bags is not None:
            changes["carry_on_bags"] = int(carry_on_bags)
        if earliest_time is not None:
            changes["earliest_time"] = parse_time(earliest_time)
        if latest_time is not None:
            changes["latest_time"] = parse_time(latest_time)
        if not changes:
            raise ValidationFailure("Nothing to update")
        if any(v < 0 for k, v in changes.items() if k.endswith("_bags")):
            raise ValidationFailure("Bag counts cannot be negative")

        columns = {
            "checked_bags": "bag_no_large",
            "carry_on_bags": "bag_no",
            "earliest_time": "earliest_time",
            "latest_time": "latest_time",
        }
        stored = {
            columns[k]: (format_time(v) if isinstance(v, time) else v)
            for k, v in changes.items()
        }
        before = {k: (format_time(getattr(rider, k)) if k.endswith("_time") else getattr(rider, k)) for k in changes}
        self.data.update_flight(flight_id, stored)
        for k, v in changes.items():
            setattr(rider, k, v)

        warnings: List[str] = []
        group = None
        if where == GROUP:
            group = self.board.group(ride_id)
            self._sync_group(group, warnings)

        after = {k: (format_time(getattr(rider, k)) if k.endswith("_time") else getattr(rider, k)) for k in changes}
        result = MutationResult(warnings=warnings, group=group, rider=rider)
        return self._record(
            result, Action.UPDATE_RIDER_DETAILS,
            {
                "rider_name": rider.name,
                "rider_user_id": rider.user_id,
                "flight_id": flight_id,
                "ride_id": ride_id,
                "before": before,
                "after": after,
            },
            target_group_id=ride_id, target_user_id=rider.user_id,
        )

    def add_flight(
        self,
        user_id: str,
        ride_date: Union[str, date],
        earliest_time: Union[str, time],
        latest_time: Union[str, time],
        airport: str = "LAX",
        to_airport: bool = True,
        checked_bags: int = 0,
        carry_on_bags: int = 0,
        flight_no: Optional[str] = None,
        airline_iata: Optional[str] = None,
    ) -> MutationResult:
        """Add a flight for an existing user; it lands in the unmatched pool."""
        user = self.data.fetch_user(user_id)
        if user is None:
            raise RiderNotFoundError(f"User {user_id} not found")

        d = parse_date(ride_date)
        airline = airline_iata.strip().upper() if airline_iata else None
        flight_no = str(flight_no).strip() if flight_no else None
        if flight_no:
            existing = self.data.find_flights(user_id, d, flight_no)
            if airline and any((f.get("airline_iata") or "").upper() == airline for f in existing):
                raise DuplicateFlightError(f"Flight {airline} {flight_no} already exists for this user on {d}")
            if not airline and existing:
                raise DuplicateFlightError(
                    f"Flight number {flight_no} already exists for this user on {d}. "
                    "Please provide an airline code if this is a different flight."
                )

        row = {
            "user_id": user_id,
            "flight_no": flight_no,
            "airline_iata": airline,
            "airport": normalize_airport(airport),
            "to_airport": bool(to_airport),
            "date": d.isoformat(),
            "earliest_time": format_time(parse_time(earliest_time)),
            "latest_time": format_time(parse_time(latest_time)),
            "bag_no": int(carry_on_bags),
            "bag_no_large": int(checked_bags),
            "bag_no_personal": 0,
            "matched": False,
            "opt_in": True,
        }
        stored = self.data.insert_flight(row)
        rider = rider_from_row(stored, user)
        self.board.put_unmatched(rider)

        label = f"{airline} {flight_no}" if airline and flight_no else (f"Flight {flight_no}" if flight_no else "Flight (no number)")
        result = MutationResult(rider=rider)
        return self._record(
            result, Action.ADD_FLIGHT,
            {
                "action_description": f"Added new unmatched rider: {rider.name} with {label} on {d.isoformat()}",
                "rider_name": rider.name,
                "rider_user_id": user_id,
                "flight_id": rider.flight_id,
                "date": d.isoformat(),
                "flight_no": flight_no,
                "airline_iata": airline,
                "airport": rider.airport,
                "to_airport": rider.to_airport,
                "earliest_time": row["earliest_time"],
                "latest_time": row["latest_time"],
                "source": "manual_add",
                "is_unmatched": True,
            },
            target_user_id=user_id,
        )
