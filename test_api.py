"""
Tests for the HTTP endpoints using Flask's test client
"""

import pytest

from pickup_admin.api import create_app
from pickup_admin.mutations import GroupsManager

HEADERS = {"X-Actor-Id": "admin-1"}


@pytest.fixture
def client(sb):
    app = create_app(sb)
    app.config["TESTING"] = True
    return app.test_client()


def test_health_needs_no_actor(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "healthy"


def test_actor_header_required(client):
    assert client.get("/api/board").status_code == 401


def test_board(client):
    resp = client.get("/api/board", headers=HEADERS)
    assert resp.status_code == 200
    body = resp.get_json()
    assert [g["ride_id"] for g in body["groups"]] == [42]
    assert body["groups"][0]["vehicle_class"] == "XL"
    assert sorted(r["flight_id"] for r in body["unmatched"]) == [3, 4, 5, 6, 7]
    assert body["corral"] == []
    assert body["airports"] == ["LAX", "ONT"]


def test_board_filters_from_query(client):
    resp = client.get("/api/board?airports=ont&sort=date:asc", headers=HEADERS)
    body = resp.get_json()
    assert body["groups"] == []
    assert [r["flight_id"] for r in body["unmatched"]] == [6]


def test_capacity_warning_needs_confirmation(client):
    client.post("/api/corral", json={"flight_id": 5}, headers=HEADERS)

    resp = client.post("/api/groups/42/riders", json={"flight_id": 5}, headers=HEADERS)
    assert resp.status_code == 409
    assert resp.get_json()["requires_confirmation"] is True

    resp = client.post("/api/groups/42/riders", json={"flight_id": 5, "override": True}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.get_json()["entry"]["ignored_error"] is True


def test_hard_rejection_is_unprocessable(client):
    client.post("/api/corral", json={"flight_id": 4}, headers=HEADERS)
    resp = client.post("/api/groups/42/riders", json={"flight_id": 4}, headers=HEADERS)
    assert resp.status_code == 422
    assert resp.get_json()["error"] == "These flights have no overlap"


def test_corral_return(client):
    client.post("/api/corral", json={"flight_id": 1}, headers=HEADERS)
    board = client.get("/api/board", headers=HEADERS).get_json()
    assert [r["origin_group_id"] for r in board["corral"]] == [42]

    resp = client.post("/api/corral/1/return", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.get_json()["entry"]["action"] == "ADD_TO_GROUP"


def test_consensus_and_create(client, sb):
    resp = client.post("/api/groups/consensus", json={"flight_ids": [3, 5]}, headers=HEADERS)
    assert resp.get_json() == {
        "overlap": True, "date": "2026-01-17", "time": "11:00:00", "earliest_end": "2026-01-17T11:30:00",
    }

    resp = client.post("/api/groups", json={"flight_ids": [3, 5], "date": "2026-01-17", "time": "11:00"},
                       headers=HEADERS)
    assert resp.status_code == 200
    assert resp.get_json()["group"]["ride_id"] == 43
    assert len(sb.rows("Matches", ride_id=43)) == 2


def test_create_storage_failure(client, sb):
    sb.fail("Matches", "insert")
    resp = client.post("/api/groups", json={"flight_ids": [3, 5], "date": "2026-01-17", "time": "11:00"},
                       headers=HEADERS)
    assert resp.status_code == 502
    assert resp.get_json()["partial"] is False


def test_missing_field_and_unknown_group(client):
    assert client.post("/api/flights", json={"date": "2026-01-20"}, headers=HEADERS).status_code == 400
    assert client.delete("/api/groups/999", headers=HEADERS).status_code == 404


def test_patch_group(client, sb):
    resp = client.patch("/api/groups/42", json={"time": "10:15", "voucher": "https://vouchers.example/ride/Z"},
                        headers=HEADERS)
    assert resp.status_code == 200
    assert [e["entry"]["action"] for e in resp.get_json()] == ["UPDATE_GROUP_TIME", "UPDATE_VOUCHER"]
    assert client.patch("/api/groups/42", json={}, headers=HEADERS).status_code == 422


def test_changelog_endpoint(client):
    client.post("/api/corral", json={"flight_id": 1}, headers=HEADERS)
    client.post("/api/corral/1/return", headers=HEADERS)

    resp = client.get("/api/changelog?actions=ADD_TO_GROUP", headers=HEADERS)
    entries = resp.get_json()
    assert len(entries) == 1
    assert entries[0]["actor_name"] == "Ana Admin"
    assert "added user Bo Li to group #42" in entries[0]["description"]


def test_missing_body_field_names_it(client):
    resp = client.post("/api/flights", json={"date": "2026-01-20"}, headers=HEADERS)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Missing field user_id"
    assert client.post("/api/corral", json={}, headers=HEADERS).status_code == 400


def test_internal_key_error_is_not_a_bad_request(client, monkeypatch):
    """Only request-body parsing answers 400; a KeyError inside the engine stays a server error"""
    def broken(self, ride_id):
        raise KeyError("ride_id")

    monkeypatch.setattr(GroupsManager, "delete_group", broken)
    with pytest.raises(KeyError):
        client.delete("/api/groups/42", headers=HEADERS)
