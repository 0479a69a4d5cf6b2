"""
JSON endpoints behind the admin Groups Management page.

The auth layer in front of this service puts the signed-in admin's id in the
X-Actor-Id header. Each admin gets their own board; mutations on a board run
one at a time, reads never wait for them.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from supabase import Client, create_client

from pickup_admin import config
from pickup_admin.board import Board
from pickup_admin.changelog import Action, Actor, ChangeLog, ChangeLogQuery
from pickup_admin.exceptions import (
    AuditWriteError,
    CapacityWarning,
    DuplicateFlightError,
    GroupNotFoundError,
    PartialPersistenceError,
    RiderNotFoundError,
    StorageError,
    ValidationFailure,
)
from pickup_admin.filters import BoardFilter, SortRule, filter_groups, filter_riders, sort_groups, sort_riders
from pickup_admin.mutations import GroupsManager
from pickup_admin.rider_data import RiderData
from pickup_admin.windows import format_time, parse_date, parse_time

logger = logging.getLogger(__name__)

SERVICE_NAME = "pickup-admin-groups"
SERVICE_VERSION = "0.1.0"
START_TIME = datetime.now()


class AdminSession:
    # one admin's board plus the lock that serializes their mutations

    def __init__(self, manager: GroupsManager):
        self.manager = manager
        self.lock = threading.Lock()

    @property
    def board(self) -> Board:
        return self.manager.board


class Sessions:

    def __init__(self, sb: Client):
        self.sb = sb
        self.data = RiderData(sb)
        self.changelog = ChangeLog(sb)
        self._sessions: Dict[str, AdminSession] = {}
        self._lock = threading.Lock()

    def get(self, actor_id: str, reload: bool = False) -> AdminSession:
        with self._lock:
            session = self._sessions.get(actor_id)
            if session is None or reload:
                actor = Actor(actor_id, self.data.fetch_actor_role(actor_id))
                board = Board.load(self.data)
                session = AdminSession(GroupsManager(board, self.data, self.changelog, actor))
                self._sessions[actor_id] = session
            return session


# ===================== request parsing =====================

def _arg_date(name: str):
    value = request.args.get(name)
    return parse_date(value) if value else None


def _arg_time(name: str):
    value = request.args.get(name)
    return parse_time(value) if value else None


def _arg_int(name: str) -> Optional[int]:
    value = request.args.get(name)
    return int(value) if value not in (None, "") else None


# "date:asc,bag_size:desc" -> [SortRule, ...]
def _sort_rules(raw: Optional[str]) -> List[SortRule]:
    rules = []
    for part in (raw or "").split(","):
        if not part.strip():
            continue
        name, _, direction = part.strip().partition(":")
        rules.append(SortRule(name, direction or "asc"))
    return rules


def _board_filter(data: RiderData) -> BoardFilter:
    airports = request.args.get("airports")
    f = BoardFilter(
        airports={a.strip().upper() for a in airports.split(",") if a.strip()} if airports else None,
        date_start=_arg_date("date_start"),
        date_end=_arg_date("date_end"),
        time_start=_arg_time("time_start"),
        time_end=_arg_time("time_end"),
        subsidy=request.args.get("subsidy", "all"),
        min_bags=_arg_int("min_bags"),
        max_bags=_arg_int("max_bags"),
        search=request.args.get("search", ""),
    )
    # no dates asked for: show from the last algorithm run onwards
    if f.date_start is None and f.date_end is None:
        default = data.default_date_range()
        if default:
            f.date_start = default[0]
    return f


def _body() -> dict:
    return request.get_json(silent=True) or {}


# a required request-body field; missing ones answer 400 through the ValueError handler
def _require(body: dict, name: str):
    value = body.get(name)
    if value is None or value == "":
        raise ValueError(f"Missing field {name}")
    return value


def create_app(sb: Optional[Client] = None) -> Flask:
    app = Flask(__name__)
    CORS(app)

    if sb is None:
        sb = create_client(config.SUPABASE_URL, config.SUPABASE_KEY)
    sessions = Sessions(sb)
    app.extensions["pickup_sessions"] = sessions

    def session() -> AdminSession:
        return g.session

    @app.before_request
    def _load_actor():
        if request.endpoint in (None, "health_check", "static"):
            return None
        actor_id = request.headers.get("X-Actor-Id")
        if not actor_id:
            return jsonify({"error": "Missing X-Actor-Id"}), 401
        g.session = sessions.get(actor_id)
        return None

    def mutate(fn, *args, **kwargs):
        s = session()
        with s.lock:
            result = fn(s.manager, *args, **kwargs)
        return jsonify(result.to_dict()), 200

    # ===================== errors =====================

    @app.errorhandler(ValidationFailure)
    def _validation(e: ValidationFailure):
        return jsonify({"error": e.message, "dismiss_after": e.dismiss_after}), 422

    @app.errorhandler(CapacityWarning)
    def _capacity(e: CapacityWarning):
        return jsonify({
            "warning": e.message,
            "bag_units": e.bag_units,
            "limit": e.limit,
            "requires_confirmation": True,
            "dismiss_after": e.dismiss_after,
        }), 409

    @app.errorhandler(RiderNotFoundError)
    @app.errorhandler(GroupNotFoundError)
    def _not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(DuplicateFlightError)
    def _duplicate(e):
        return jsonify({"error": str(e)}), 409

    @app.errorhandler(StorageError)
    def _storage(e: StorageError):
        partial = isinstance(e, PartialPersistenceError)
        return jsonify({
            "error": str(e),
            "partial": partial,
            "dismiss_after": config.CREATE_ERROR_DISMISS_SECONDS,
        }), 502

    @app.errorhandler(AuditWriteError)
    def _audit(e: AuditWriteError):
        return jsonify({"error": str(e), "audit_failed": True, "result": e.result.to_dict()}), 500

    @app.errorhandler(ValueError)
    def _bad_request(e: ValueError):
        return jsonify({"error": str(e)}), 400

    # ===================== routes =====================

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint for monitoring and container orchestration"""
        uptime = (datetime.now() - START_TIME).total_seconds()
        return jsonify({
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "uptime_seconds": uptime,
            "timestamp": datetime.now().isoformat(),
        })

    @app.route("/api/board", methods=["GET"])
    def get_board():
        all_groups, all_unmatched, all_corral = session().board.snapshot()
        f = _board_filter(sessions.data)
        rules = _sort_rules(request.args.get("sort"))
        groups = sort_groups(filter_groups(all_groups, f), rules)
        unmatched = sort_riders(filter_riders(all_unmatched, f), rules)
        corral = sort_riders(all_corral, rules)
        airports = {r.airport for r in all_unmatched + all_corral}
        airports.update(gr.airport for gr in all_groups)
        return jsonify({
            "groups": [gr.to_dict() for gr in groups],
            "unmatched": [r.to_dict() for r in unmatched],
            "corral": [r.to_dict() for r in corral],
            "airports": sorted(airports),
        })

    @app.route("/api/board/refresh", methods=["POST"])
    def refresh_board():
        g.session = sessions.get(request.headers["X-Actor-Id"], reload=True)
        return get_board()

    @app.route("/api/corral", methods=["POST"])
    def add_to_corral():
        return mutate(GroupsManager.move_to_corral, int(_require(_body(), "flight_id")))

    @app.route("/api/corral/<int:flight_id>/return", methods=["POST"])
    def return_from_corral(flight_id: int):
        return mutate(GroupsManager.return_from_corral, flight_id)

    @app.route("/api/corral/<int:flight_id>/release", methods=["POST"])
    def release_to_unmatched(flight_id: int):
        return mutate(GroupsManager.release_to_unmatched, flight_id)

    @app.route("/api/groups/<int:ride_id>/riders", methods=["POST"])
    def add_to_group(ride_id: int):
        body = _body()
        return mutate(
            GroupsManager.assign_from_corral_to_group,
            int(_require(body, "flight_id")), ride_id, override=bool(body.get("override")),
        )

    @app.route("/api/groups/consensus", methods=["POST"])
    def consensus():
        c = session().manager.consensus_for(int(f) for f in _body().get("flight_ids", []))
        if c is None:
            return jsonify({"overlap": False}), 200
        return jsonify({
            "overlap": True,
            "date": c.date.isoformat(),
            "time": format_time(c.time),
            "earliest_end": c.earliest_end.isoformat(),
        }), 200

    @app.route("/api/groups", methods=["POST"])
    def create_group():
        body = _body()
        return mutate(
            GroupsManager.create_group,
            body.get("flight_ids", []),
            body.get("date"),
            body.get("time"),
            voucher=body.get("voucher"),
            is_subsidized=body.get("is_subsidized"),
        )

    @app.route("/api/groups/<int:ride_id>", methods=["DELETE"])
    def delete_group(ride_id: int):
        return mutate(GroupsManager.delete_group, ride_id)

    @app.route("/api/groups/<int:ride_id>", methods=["PATCH"])
    def patch_group(ride_id: int):
        body = _body()
        s = session()
        results = []
        with s.lock:
            if body.get("time"):
                results.append(s.manager.update_group_time(ride_id, body["time"], body.get("date")))
            if "voucher" in body:
                results.append(s.manager.update_voucher(ride_id, body["voucher"]))
        if not results:
            raise ValidationFailure("Nothing to update")
        return jsonify([r.to_dict() for r in results]), 200

    @app.route("/api/flights", methods=["POST"])
    def add_flight():
        body = _body()
        return mutate(
            GroupsManager.add_flight,
            *(_require(body, name) for name in ("user_id", "date", "earliest_time", "latest_time")),
            airport=body.get("airport", "LAX"),
            to_airport=body.get("to_airport", True),
            checked_bags=int(body.get("checked_bags", 0)),
            carry_on_bags=int(body.get("carry_on_bags", 0)),
            flight_no=body.get("flight_no"),
            airline_iata=body.get("airline_iata"),
        )

    @app.route("/api/flights/<int:flight_id>", methods=["PATCH"])
    def patch_flight(flight_id: int):
        body = _body()
        return mutate(
            GroupsManager.update_rider_details, flight_id,
            checked_bags=body.get("checked_bags"),
            carry_on_bags=body.get("carry_on_bags"),
            earliest_time=body.get("earliest_time"),
            latest_time=body.get("latest_time"),
        )

    @app.route("/api/changelog", methods=["GET"])
    def get_changelog():
        actions = request.args.get("actions")
        q = ChangeLogQuery(
            actor_name=request.args.get("actor", ""),
            actions={Action(a.strip()) for a in actions.split(",") if a.strip()} if actions else set(),
            date_from=_arg_date("from"),
            date_to=_arg_date("to"),
            sort_by=request.args.get("sort", "date"),
            descending=request.args.get("direction", "desc") != "asc",
        )
        return jsonify([e.to_dict() for e in sessions.changelog.query(q)]), 200

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    create_app().run(host=config.API_HOST, port=config.API_PORT, threaded=True)
