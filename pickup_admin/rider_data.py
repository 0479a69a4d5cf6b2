# this module is in charge of getting riders and groups out of our supabase database and writing group changes back
# it is the only place that interprets raw Flights / Users / Matches / Rides rows
import logging
from dataclasses import dataclass, field
from datetime import date, time, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from postgrest.exceptions import APIError
from supabase import Client

from pickup_admin import capacity, config
from pickup_admin.exceptions import StorageError
from pickup_admin.windows import (
    Interval,
    format_hhmm,
    format_time,
    intersection,
    parse_date,
    parse_time,
    window,
)

logger = logging.getLogger(__name__)

FLIGHT_COLUMNS = (
    "flight_id,user_id,airport,date,earliest_time,latest_time,to_airport,"
    "bag_no,bag_no_large,bag_no_personal,matched,flight_no,airline_iata"
)
MATCH_COLUMNS = "ride_id,flight_id,user_id,date,time,voucher,is_subsidized,vehicle_class"
USER_COLUMNS = "user_id,firstname,lastname,phonenumber"

ORIGIN_UNMATCHED = "unmatched"
ORIGIN_GROUP = "group"


# normalize airport names to IATA codes when possible
def normalize_airport(raw: Optional[str]) -> str:
    if not raw:
        return "UNKNOWN"
    return str(raw).strip().upper()


# one person's single-leg request, as shown on the board
@dataclass
class Rider:
    user_id: str
    flight_id: int
    name: str
    phone: str
    date: date
    earliest_time: time
    latest_time: time
    airport: str
    to_airport: bool
    checked_bags: int = 0
    carry_on_bags: int = 0
    flight_no: Optional[str] = None
    airline_iata: Optional[str] = None
    # provenance, only set while the rider sits in the corral
    origin_type: Optional[str] = None
    origin_group_id: Optional[int] = None

    @property
    def window(self) -> Interval:
        return window(self.date, self.earliest_time, self.latest_time)

    @property
    def time_range(self) -> str:
        return f"{format_hhmm(self.earliest_time)} - {format_hhmm(self.latest_time)}"

    @property
    def direction(self) -> str:
        return "to_airport" if self.to_airport else "from_airport"

    @property
    def bag_units(self) -> int:
        return capacity.bag_units([self])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "flight_id": self.flight_id,
            "name": self.name,
            "phone": self.phone,
            "date": self.date.isoformat(),
            "time_range": self.time_range,
            "airport": self.airport,
            "to_airport": self.to_airport,
            "checked_bags": self.checked_bags,
            "carry_on_bags": self.carry_on_bags,
            "bag_units": self.bag_units,
            "flight_no": self.flight_no,
            "airline_iata": self.airline_iata,
            "origin_type": self.origin_type,
            "origin_group_id": self.origin_group_id,
        }


# a shared ride; size, class and subsidy are always derived from the current riders
@dataclass
class Group:
    ride_id: int
    airport: str
    date: date
    to_airport: bool
    riders: List[Rider] = field(default_factory=list)
    match_time: Optional[time] = None
    voucher: Optional[str] = None

    @property
    def bag_units(self) -> int:
        return capacity.bag_units(self.riders)

    @property
    def vehicle_class(self) -> Optional[capacity.VehicleClass]:
        return capacity.vehicle_class(len(self.riders), self.bag_units)

    @property
    def is_subsidized(self) -> bool:
        return capacity.is_subsidized(self.airport, len(self.riders))

    @property
    def window(self) -> Optional[Interval]:
        """Overlap of every member's window, or the first member's when they share none."""
        if not self.riders:
            return None
        common = intersection(r.window for r in self.riders)
        return common or self.riders[0].window

    @property
    def time_range(self) -> str:
        w = self.window
        if w is None:
            return ""
        return f"{format_hhmm(w[0].time())} - {format_hhmm(w[1].time())}"

    # time written on new Matches rows for this ride
    @property
    def pickup_time(self) -> time:
        if self.match_time is not None:
            return self.match_time
        if self.riders:
            return self.riders[0].earliest_time
        return time(0, 0)

    def has(self, flight_id: int) -> bool:
        return any(r.flight_id == flight_id for r in self.riders)

    def to_dict(self) -> Dict[str, Any]:
        vc = self.vehicle_class
        return {
            "ride_id": self.ride_id,
            "airport": self.airport,
            "date": self.date.isoformat(),
            "to_airport": self.to_airport,
            "time_range": self.time_range,
            "match_time": format_time(self.match_time) if self.match_time else None,
            "voucher": self.voucher,
            "bag_units": self.bag_units,
            "vehicle_class": vc.value if vc else None,
            "is_subsidized": self.is_subsidized,
            "riders": [r.to_dict() for r in self.riders],
        }


# Users may come back as an object or a one-element list depending on how the join was written
def _user_record(user: Any) -> Mapping[str, Any]:
    if isinstance(user, list):
        return user[0] if user else {}
    return user or {}


def rider_from_row(flight: Mapping[str, Any], user: Any = None) -> Rider:
    """Build a Rider from a Flights row and its (optional) Users row."""
    u = _user_record(user if user is not None else flight.get("Users"))
    name = f"{u.get('firstname') or ''} {u.get('lastname') or ''}".strip() or "Unknown"
    return Rider(
        user_id=str(flight["user_id"]),
        flight_id=int(flight["flight_id"]),
        name=name,
        phone=u.get("phonenumber") or "N/A",
        date=parse_date(flight["date"]),
        earliest_time=parse_time(flight["earliest_time"]),
        latest_time=parse_time(flight["latest_time"]),
        airport=normalize_airport(flight.get("airport")),
        to_airport=bool(flight.get("to_airport")),
        # bag_no_large holds checked bags, bag_no carry-ons
        checked_bags=int(flight.get("bag_no_large") or 0),
        carry_on_bags=int(flight.get("bag_no") or 0),
        flight_no=(str(flight["flight_no"]) if flight.get("flight_no") not in (None, "") else None),
        airline_iata=flight.get("airline_iata") or None,
    )


# the ride date lives on Matches (admins can move it); older rows without one use the first flight's
def group_from_match(match: Mapping[str, Any], first: Rider) -> Group:
    return Group(
        ride_id=int(match["ride_id"]),
        airport=first.airport,
        date=parse_date(match["date"]) if match.get("date") else first.date,
        to_airport=first.to_airport,
        match_time=parse_time(match["time"]) if match.get("time") else None,
        voucher=match.get("voucher") or None,
    )


# Matches row for one member of a ride
def match_row(group: Group, rider: Rider, vehicle_class: Optional[str], is_subsidized: bool) -> Dict[str, Any]:
    return {
        "ride_id": group.ride_id,
        "user_id": rider.user_id,
        "flight_id": rider.flight_id,
        "date": group.date.isoformat(),
        "time": format_time(group.pickup_time),
        "source": config.MATCH_SOURCE,
        "voucher": group.voucher or "",
        "contingency_voucher": None,
        "is_verified": False,
        "is_subsidized": is_subsidized,
        "vehicle_class": vehicle_class,
    }


class RiderData:
    # fetch/write layer for flights + users + matches -> Rider / Group objects

    def __init__(self, sb: Client):
        self.sb = sb

    def _run(self, query, what: str) -> List[dict]:
        try:
            resp = query.execute()
        except APIError as e:
            logger.error("%s failed: %s", what, e.message)
            raise StorageError(f"{what} failed: {e.message}") from e
        return resp.data or []

    # ===================== Reads =====================

    # every flight, paged (a select returns at most FLIGHTS_PAGE_SIZE rows)
    def fetch_flights(self) -> List[dict]:
        flights: List[dict] = []
        start = 0
        while True:
            page = self._run(
                self.sb.table("Flights")
                .select(FLIGHT_COLUMNS)
                .order("flight_id", desc=False)
                .range(start, start + config.FLIGHTS_PAGE_SIZE - 1),
                "Fetching flights",
            )
            flights.extend(page)
            if len(page) < config.FLIGHTS_PAGE_SIZE:
                break
            start += config.FLIGHTS_PAGE_SIZE
        return flights

    def fetch_flights_by_ids(self, flight_ids: Iterable[int]) -> List[dict]:
        ids = sorted(set(flight_ids))
        if not ids:
            return []
        return self._run(
            self.sb.table("Flights").select(FLIGHT_COLUMNS).in_("flight_id", ids),
            "Fetching match flights",
        )

    # user_id -> Users row, batched so the .in_() list stays short
    def fetch_users(self, user_ids: Iterable[str], columns: str = USER_COLUMNS) -> Dict[str, dict]:
        ids = sorted({str(uid) for uid in user_ids if uid})
        users: Dict[str, dict] = {}
        for i in range(0, len(ids), config.USERS_BATCH_SIZE):
            batch = ids[i:i + config.USERS_BATCH_SIZE]
            rows = self._run(
                self.sb.table("Users").select(columns).in_("user_id", batch),
                f"Fetching users batch {i // config.USERS_BATCH_SIZE + 1}",
            )
            for row in rows:
                users[str(row["user_id"])] = row
        return users

    def fetch_user_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        users = self.fetch_users(user_ids, columns="user_id,firstname,lastname")
        return {
            uid: f"{u.get('firstname') or ''} {u.get('lastname') or ''}".strip() or "Unknown"
            for uid, u in users.items()
        }

    def fetch_matches(self) -> List[dict]:
        return self._run(self.sb.table("Matches").select(MATCH_COLUMNS), "Fetching matches")

    def fetch_groups_and_unmatched(self) -> Tuple[List[Group], List[Rider]]:
        """Load every group and the unmatched pool.

        A flight is unmatched only when no Matches row points at it and its
        matched flag is explicitly false.
        """
        flights = self.fetch_flights()
        matches = self.fetch_matches()

        by_id = {int(f["flight_id"]): f for f in flights}
        missing = [int(m["flight_id"]) for m in matches if int(m["flight_id"]) not in by_id]
        for f in self.fetch_flights_by_ids(missing):
            by_id[int(f["flight_id"])] = f

        users = self.fetch_users(f["user_id"] for f in by_id.values() if f.get("user_id"))

        groups: Dict[int, Group] = {}
        in_matches = set()
        for m in matches:
            flight = by_id.get(int(m["flight_id"]))
            if flight is None:
                logger.warning(
                    "Match has no associated flight (flight_id: %s, ride_id: %s); skipping",
                    m["flight_id"], m["ride_id"],
                )
                continue
            in_matches.add(int(m["flight_id"]))
            rider = rider_from_row(flight, users.get(str(flight["user_id"])))
            ride_id = int(m["ride_id"])
            if ride_id not in groups:
                groups[ride_id] = group_from_match(m, rider)
            if not groups[ride_id].has(rider.flight_id):
                groups[ride_id].riders.append(rider)

        unmatched = [
            rider_from_row(f, users.get(str(f["user_id"])))
            for fid, f in by_id.items()
            if fid not in in_matches and f.get("matched") is False
        ]
        logger.info("Loaded %d groups and %d unmatched riders", len(groups), len(unmatched))
        return list(groups.values()), unmatched

    def fetch_last_algorithm_run(self) -> Optional[date]:
        rows = self._run(
            self.sb.table("AlgorithmStatus")
            .select("finished_at")
            .eq("status", "success")
            .order("finished_at", desc=True)
            .limit(1),
            "Fetching last algorithm run",
        )
        if not rows or not rows[0].get("finished_at"):
            return None
        return parse_date(rows[0]["finished_at"])

    # default board date range: last successful run .. ALGORITHM_WINDOW_DAYS later
    def default_date_range(self) -> Optional[Tuple[date, date]]:
        last_run = self.fetch_last_algorithm_run()
        if last_run is None:
            return None
        return last_run, last_run + timedelta(days=config.ALGORITHM_WINDOW_DAYS)

    def fetch_actor_role(self, user_id: str) -> str:
        rows = self._run(
            self.sb.table("Users").select("role").eq("user_id", user_id),
            "Fetching actor role",
        )
        if rows and rows[0].get("role"):
            return rows[0]["role"]
        return config.DEFAULT_ACTOR_ROLE

    def fetch_user(self, user_id: str) -> Optional[dict]:
        rows = self._run(
            self.sb.table("Users").select(USER_COLUMNS).eq("user_id", user_id),
            "Fetching user",
        )
        return rows[0] if rows else None

    # flights a user already has on a date with the same flight number
    def find_flights(self, user_id: str, on: date, flight_no: str) -> List[dict]:
        return self._run(
            self.sb.table("Flights")
            .select("flight_id,flight_no,airline_iata")
            .eq("user_id", user_id)
            .eq("date", on.isoformat())
            .eq("flight_no", flight_no),
            "Checking for duplicate flight",
        )

    # ===================== Writes =====================

    def create_ride(self, ride_date: date) -> int:
        rows = self._run(
            self.sb.table("Rides").insert({"ride_date": ride_date.isoformat()}),
            "Creating ride",
        )
        if not rows or "ride_id" not in rows[0]:
            raise StorageError("Creating ride failed: no ride_id returned")
        ride_id = int(rows[0]["ride_id"])
        logger.info("Created ride %s for %s", ride_id, ride_date)
        return ride_id

    def delete_ride(self, ride_id: int) -> None:
        self._run(self.sb.table("Rides").delete().eq("ride_id", ride_id), f"Deleting ride {ride_id}")

    def insert_matches(self, rows: List[Dict[str, Any]]) -> None:
        if rows:
            self._run(self.sb.table("Matches").insert(rows), f"Inserting {len(rows)} matches")

    def delete_match(self, ride_id: int, flight_id: int) -> None:
        self._run(
            self.sb.table("Matches").delete().eq("ride_id", ride_id).eq("flight_id", flight_id),
            f"Removing flight {flight_id} from ride {ride_id}",
        )

    def delete_matches(self, ride_id: int) -> None:
        self._run(self.sb.table("Matches").delete().eq("ride_id", ride_id), f"Deleting matches of ride {ride_id}")

    # same fields on every Matches row of a ride
    def update_matches(self, ride_id: int, fields: Dict[str, Any]) -> None:
        self._run(
            self.sb.table("Matches").update(fields).eq("ride_id", ride_id),
            f"Updating matches of ride {ride_id}",
        )

    def set_flights_matched(self, flight_ids: List[int], matched: bool) -> None:
        if flight_ids:
            self._run(
                self.sb.table("Flights").update({"matched": matched}).in_("flight_id", flight_ids),
                f"Marking flights {flight_ids} matched={matched}",
            )

    def update_flight(self, flight_id: int, fields: Dict[str, Any]) -> None:
        self._run(
            self.sb.table("Flights").update(fields).eq("flight_id", flight_id),
            f"Updating flight {flight_id}",
        )

    def insert_flight(self, row: Dict[str, Any]) -> dict:
        rows = self._run(self.sb.table("Flights").insert(row), "Creating flight")
        if not rows:
            raise StorageError("Flight was created but no data was returned")
        return rows[0]
