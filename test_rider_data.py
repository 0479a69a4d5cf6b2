"""
Tests for reading riders and groups out of storage
"""

from datetime import date, time

import pytest

from pickup_admin import config
from pickup_admin.exceptions import StorageError
from pickup_admin.rider_data import normalize_airport, rider_from_row

from conftest import flight


def test_rider_from_row_maps_bags_and_user():
    """bag_no_large is checked bags, bag_no is carry-ons; Users may be a list or an object"""
    row = flight(10, "u1", "09:00:00", "12:00:00", large=2, small=1, airport=" lax ")
    as_list = rider_from_row({**row, "Users": [{"firstname": "Bo", "lastname": "Li", "phonenumber": "555"}]})
    as_obj = rider_from_row({**row, "Users": {"firstname": "Bo", "lastname": "Li", "phonenumber": "555"}})

    for r in (as_list, as_obj):
        assert r.name == "Bo Li"
        assert r.phone == "555"
        assert r.checked_bags == 2 and r.carry_on_bags == 1
        assert r.bag_units == 5, f"2 checked + 1 carry-on should be 5 units, got {r.bag_units}"
        assert r.airport == "LAX"
        assert r.earliest_time == time(9) and r.date == date(2026, 1, 17)


def test_rider_from_row_without_user():
    r = rider_from_row(flight(11, "ghost", "09:00:00", "10:00:00"))
    assert r.name == "Unknown"
    assert r.phone == "N/A"
    assert normalize_airport(None) == "UNKNOWN"


def test_board_load_splits_groups_and_unmatched(data):
    groups, unmatched = data.fetch_groups_and_unmatched()
    assert [g.ride_id for g in groups] == [42]
    group = groups[0]
    assert sorted(r.flight_id for r in group.riders) == [1, 2]
    assert group.bag_units == 6
    assert group.voucher == "https://vouchers.example/ride/CODE42"
    assert group.match_time == time(10)

    ids = sorted(r.flight_id for r in unmatched)
    assert ids == [3, 4, 5, 6, 7], f"Flight 8 has matched=None and must not be unmatched, got {ids}"
    names = {r.flight_id: r.name for r in unmatched}
    assert names[3] == "Di Park"


def test_match_without_flight_is_skipped(sb, data):
    sb.tables["Matches"].append({"ride_id": 77, "flight_id": 999, "user_id": "u9", "date": "2026-01-17", "time": None})
    groups, _ = data.fetch_groups_and_unmatched()
    assert 77 not in {g.ride_id for g in groups}, "A match whose flight is gone builds no group"


def test_flights_are_paged(sb, data, monkeypatch):
    monkeypatch.setattr(config, "FLIGHTS_PAGE_SIZE", 3)
    flights = data.fetch_flights()
    assert [f["flight_id"] for f in flights] == list(range(1, 9))
    pages = [c for c in sb.calls if c == ("Flights", "select")]
    assert len(pages) == 3, f"8 flights at 3 per page is 3 selects, got {len(pages)}"


def test_users_are_batched(sb, data, monkeypatch):
    monkeypatch.setattr(config, "USERS_BATCH_SIZE", 2)
    users = data.fetch_users(["u1", "u2", "u3", "u4", "u5"])
    assert len(users) == 5
    assert sb.calls.count(("Users", "select")) == 3


def test_default_date_range_uses_last_successful_run(data):
    start, end = data.default_date_range()
    assert start == date(2026, 1, 5), "Failed runs are ignored"
    assert end == date(2026, 1, 20)


def test_default_date_range_without_runs(sb, data):
    sb.tables["AlgorithmStatus"] = []
    assert data.default_date_range() is None


def test_actor_role(data):
    assert data.fetch_actor_role("admin-1") == "Admin"
    assert data.fetch_actor_role("u1") == config.DEFAULT_ACTOR_ROLE


def test_api_error_becomes_storage_error(sb, data):
    sb.fail("Matches", "select")
    with pytest.raises(StorageError):
        data.fetch_matches()


def test_group_date_comes_from_matches(sb, data):
    """Matches.date wins over the member flights' date; rows without one fall back to the flight"""
    for row in sb.tables["Matches"]:
        row["date"] = "2026-01-18"
    groups, _ = data.fetch_groups_and_unmatched()
    assert groups[0].date == date(2026, 1, 18)

    for row in sb.tables["Matches"]:
        row["date"] = None
    groups, _ = data.fetch_groups_and_unmatched()
    assert groups[0].date == date(2026, 1, 17)
