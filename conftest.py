"""
Shared fixtures: an in-memory stand-in for the Supabase client and a small
seeded board (one ride, #42, plus a handful of unmatched flights on 2026-01-17).
"""

import copy
import uuid
from datetime import date, datetime, time, timezone
from types import SimpleNamespace

import pytest
from postgrest.exceptions import APIError

from pickup_admin.board import Board
from pickup_admin.changelog import Actor, ChangeLog
from pickup_admin.mutations import GroupsManager
from pickup_admin.rider_data import Group, Rider, RiderData

AUTO_IDS = {"Rides": "ride_id", "Flights": "flight_id", "ChangeLog": "id"}


class FakeQuery:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.columns = "*"
        self.filters = []
        self.orders = []
        self.window = None

    # builder methods mirror postgrest's chainable API
    def select(self, columns="*"):
        self.columns = columns
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def update(self, fields):
        self.op, self.payload = "update", fields
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, col, value):
        self.filters.append(lambda r: r.get(col) == value)
        return self

    def in_(self, col, values):
        values = list(values)
        self.filters.append(lambda r: r.get(col) in values)
        return self

    def gt(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) > value)
        return self

    def order(self, col, desc=False):
        self.orders.append((col, desc))
        return self

    def range(self, start, end):
        self.window = (start, end + 1)
        return self

    def limit(self, n):
        self.window = (0, n)
        return self

    def _matching(self):
        return [r for r in self.db.tables.setdefault(self.table, []) if all(f(r) for f in self.filters)]

    def _project(self, row):
        if self.columns.strip() == "*":
            return dict(row)
        return {c.strip(): row.get(c.strip()) for c in self.columns.split(",") if c.strip()}

    def execute(self):
        self.db.calls.append((self.table, self.op))
        if (self.table, self.op) in self.db.failures:
            raise APIError({"message": f"{self.op} on {self.table} refused", "code": "500"})

        rows = self.db.tables.setdefault(self.table, [])
        if self.op == "insert":
            new = self.payload if isinstance(self.payload, list) else [self.payload]
            out = []
            for row in new:
                row = copy.deepcopy(row)
                key = AUTO_IDS.get(self.table)
                if key and row.get(key) is None:
                    row[key] = self.db.next_id(self.table, key)
                if self.table == "ChangeLog":
                    row.setdefault("created_at", self.db.now().isoformat())
                rows.append(row)
                out.append(dict(row))
            return SimpleNamespace(data=out)

        if self.op == "update":
            hit = self._matching()
            for r in hit:
                r.update(copy.deepcopy(self.payload))
            return SimpleNamespace(data=[dict(r) for r in hit])

        if self.op == "delete":
            hit = self._matching()
            self.db.tables[self.table] = [r for r in rows if r not in hit]
            return SimpleNamespace(data=[dict(r) for r in hit])

        out = self._matching()
        for col, desc in reversed(self.orders):
            out.sort(key=lambda r: (r.get(col) is None, r.get(col)), reverse=desc)
        if self.window:
            out = out[self.window[0]:self.window[1]]
        return SimpleNamespace(data=[self._project(r) for r in out])


class FakeSupabase:
    def __init__(self, tables=None):
        self.tables = copy.deepcopy(tables or {})
        self.failures = set()
        self.calls = []
        self.clock = datetime(2026, 1, 10, 18, 0, tzinfo=timezone.utc)

    def table(self, name):
        return FakeQuery(self, name)

    def fail(self, table, op):
        self.failures.add((table, op))

    def now(self):
        return self.clock

    def next_id(self, table, key):
        if key == "id":
            return str(uuid.uuid4())
        existing = [r[key] for r in self.tables.get(table, []) if isinstance(r.get(key), int)]
        return max(existing, default=0) + 1

    def rows(self, table, **where):
        return [r for r in self.tables.get(table, []) if all(r.get(k) == v for k, v in where.items())]


def flight(flight_id, user_id, earliest, latest, large=0, small=0, matched=False,
           day="2026-01-17", airport="LAX", to_airport=True, flight_no=None, airline=None):
    return {
        "flight_id": flight_id,
        "user_id": user_id,
        "airport": airport,
        "date": day,
        "earliest_time": earliest,
        "latest_time": latest,
        "to_airport": to_airport,
        "bag_no": small,
        "bag_no_large": large,
        "bag_no_personal": 1,
        "matched": matched,
        "flight_no": flight_no,
        "airline_iata": airline,
    }


SEED = {
    "Users": [
        {"user_id": "admin-1", "firstname": "Ana", "lastname": "Admin", "phonenumber": "555-0100", "role": "Admin"},
        {"user_id": "u1", "firstname": "Bo", "lastname": "Li", "phonenumber": "555-0101"},
        {"user_id": "u2", "firstname": "Cy", "lastname": "Diaz", "phonenumber": "555-0102"},
        {"user_id": "u3", "firstname": "Di", "lastname": "Park", "phonenumber": "555-0103"},
        {"user_id": "u4", "firstname": "Ed", "lastname": "Wong", "phonenumber": "555-0104"},
        {"user_id": "u5", "firstname": "Fa", "lastname": "Khan", "phonenumber": "555-0105"},
        {"user_id": "u6", "firstname": "Gi", "lastname": "Ross", "phonenumber": None},
        {"user_id": "u7", "firstname": "Ha", "lastname": "Yu", "phonenumber": "555-0107"},
        {"user_id": "u8", "firstname": "Io", "lastname": "Ma", "phonenumber": "555-0108"},
    ],
    "Flights": [
        flight(1, "u1", "09:00:00", "12:00:00", large=1, small=1, matched=True, flight_no="1234", airline="AA"),
        flight(2, "u2", "10:00:00", "13:00:00", large=1, small=1, matched=True),
        flight(3, "u3", "10:30:00", "11:30:00", small=1),
        flight(4, "u4", "06:00:00", "08:00:00"),
        flight(5, "u5", "11:00:00", "12:00:00", large=2, small=1),
        flight(6, "u6", "10:00:00", "11:00:00", airport="ONT", to_airport=False),
        flight(7, "u7", "10:00:00", "12:00:00", day="2026-01-18"),
        flight(8, "u8", "10:00:00", "12:00:00", matched=None),
    ],
    "Rides": [{"ride_id": 42, "ride_date": "2026-01-17"}],
    "Matches": [
        {"ride_id": 42, "flight_id": 1, "user_id": "u1", "date": "2026-01-17", "time": "10:00:00",
         "voucher": "https://vouchers.example/ride/CODE42", "is_subsidized": False, "vehicle_class": "XL"},
        {"ride_id": 42, "flight_id": 2, "user_id": "u2", "date": "2026-01-17", "time": "10:00:00",
         "voucher": "https://vouchers.example/ride/CODE42", "is_subsidized": False, "vehicle_class": "XL"},
    ],
    "ChangeLog": [],
    "AlgorithmStatus": [
        {"status": "success", "finished_at": "2026-01-05T08:00:00+00:00"},
        {"status": "failed", "finished_at": "2026-01-09T08:00:00+00:00"},
    ],
}


def make_rider(flight_id=1, earliest="09:00", latest="12:00", checked=0, carry_on=0,
               day=date(2026, 1, 17), airport="LAX", to_airport=True, name=None):
    return Rider(
        user_id=f"u{flight_id}",
        flight_id=flight_id,
        name=name or f"Rider {flight_id}",
        phone="N/A",
        date=day,
        earliest_time=time.fromisoformat(earliest),
        latest_time=time.fromisoformat(latest),
        airport=airport,
        to_airport=to_airport,
        checked_bags=checked,
        carry_on_bags=carry_on,
    )


def make_group(riders, ride_id=42, day=date(2026, 1, 17), airport="LAX", to_airport=True, voucher=None):
    return Group(ride_id=ride_id, airport=airport, date=day, to_airport=to_airport,
                 riders=list(riders), voucher=voucher)


@pytest.fixture
def sb():
    return FakeSupabase(SEED)


@pytest.fixture
def data(sb):
    return RiderData(sb)


@pytest.fixture
def manager(sb, data):
    return GroupsManager(Board.load(data), data, ChangeLog(sb), Actor("admin-1", "Admin"))
