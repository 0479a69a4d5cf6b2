"""Append-only audit trail of every admin change to groups and riders."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

from postgrest.exceptions import APIError
from supabase import Client

from pickup_admin import config
from pickup_admin.exceptions import ChangeLogWriteError, StorageError
from pickup_admin.rider_data import RiderData

logger = logging.getLogger(__name__)

CHANGELOG_COLUMNS = (
    "id,actor_user_id,actor_role,action,algorithm_run_id,target_group_id,"
    "target_user_id,ignored_error,metadata,created_at"
)


class Action(str, Enum):
    RUN_ALGORITHM = "RUN_ALGORITHM"
    ADD_TO_GROUP = "ADD_TO_GROUP"
    REMOVE_FROM_GROUP = "REMOVE_FROM_GROUP"
    CREATE_GROUP = "CREATE_GROUP"
    DELETE_GROUP = "DELETE_GROUP"
    IGNORE_ERROR = "IGNORE_ERROR"
    UPDATE_GROUP_TIME = "UPDATE_GROUP_TIME"
    UPDATE_VOUCHER = "UPDATE_VOUCHER"
    UPDATE_RIDER_DETAILS = "UPDATE_RIDER_DETAILS"
    EMAIL_CONFIRMED = "EMAIL_CONFIRMED"
    ADD_FLIGHT = "ADD_FLIGHT"


# who is making the change (identity comes from the auth layer)
@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = config.DEFAULT_ACTOR_ROLE


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class ChangeLogEntry:
    id: str
    actor_user_id: str
    actor_role: str
    action: Action
    created_at: datetime
    target_group_id: Optional[int] = None
    target_user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ignored_error: bool = False
    algorithm_run_id: Optional[str] = None
    actor_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any], actor_name: Optional[str] = None) -> "ChangeLogEntry":
        return cls(
            id=str(row["id"]),
            actor_user_id=str(row["actor_user_id"]),
            actor_role=row.get("actor_role") or config.DEFAULT_ACTOR_ROLE,
            action=Action(row["action"]),
            created_at=parse_timestamp(row.get("created_at") or datetime.now(timezone.utc)),
            target_group_id=row.get("target_group_id"),
            target_user_id=row.get("target_user_id"),
            metadata=row.get("metadata") or {},
            ignored_error=bool(row.get("ignored_error")),
            algorithm_run_id=row.get("algorithm_run_id"),
            actor_name=actor_name,
        )

    # created_at as a calendar day in the display timezone
    @property
    def local_date(self) -> date:
        return self.created_at.astimezone(ZoneInfo(config.DISPLAY_TIMEZONE)).date()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "actor_role": self.actor_role,
            "actor_name": self.actor_name,
            "action": self.action.value,
            "target_group_id": self.target_group_id,
            "target_user_id": self.target_user_id,
            "metadata": self.metadata,
            "ignored_error": self.ignored_error,
            "created_at": self.created_at.isoformat(),
            "description": describe(self),
        }


@dataclass
class ChangeLogQuery:
    actor_name: str = ""                              # case-insensitive substring
    actions: Set[Action] = field(default_factory=set)  # empty means any
    date_from: Optional[date] = None                  # inclusive
    date_to: Optional[date] = None                    # inclusive
    sort_by: str = "date"                             # date | actor | action
    descending: bool = True


SORT_KEYS = {
    "date": lambda e: e.created_at,
    "actor": lambda e: (e.actor_name or "").lower(),
    "action": lambda e: e.action.value,
}


def query_entries(entries: Iterable[ChangeLogEntry], q: ChangeLogQuery) -> List[ChangeLogEntry]:
    """Filter and sort already-loaded entries. Pure."""
    if q.sort_by not in SORT_KEYS:
        raise ValueError(f"Unknown change log sort field: {q.sort_by}")

    needle = q.actor_name.strip().lower()
    wanted = {Action(a) for a in q.actions}
    picked = []
    for e in entries:
        if needle and needle not in (e.actor_name or "").lower():
            continue
        if wanted and e.action not in wanted:
            continue
        if q.date_from and e.local_date < q.date_from:
            continue
        if q.date_to and e.local_date > q.date_to:
            continue
        picked.append(e)

    return sorted(picked, key=SORT_KEYS[q.sort_by], reverse=q.descending)


class ChangeLog:
    """Writes and reads the ChangeLog table. Rows are never updated or deleted."""

    def __init__(self, sb: Client):
        self.sb = sb
        self.data = RiderData(sb)

    def append(
        self,
        actor: Actor,
        action: Action,
        metadata: Optional[Dict[str, Any]] = None,
        target_group_id: Optional[int] = None,
        target_user_id: Optional[str] = None,
        ignored_error: bool = False,
    ) -> ChangeLogEntry:
        try:
            action = Action(action)
        except ValueError:
            raise ValueError(f"Unknown change log action: {action}") from None

        row = {
            "actor_user_id": actor.user_id,
            "actor_role": actor.role,
            "action": action.value,
            "target_group_id": target_group_id,
            "target_user_id": target_user_id,
            "metadata": metadata or {},
            "ignored_error": ignored_error,
        }
        try:
            resp = self.sb.table("ChangeLog").insert(row).execute()
        except APIError as e:
            logger.error("Error logging %s to ChangeLog: %s", action.value, e.message)
            raise ChangeLogWriteError(f"Logging {action.value} failed: {e.message}") from e
        if not resp.data:
            raise ChangeLogWriteError(f"Logging {action.value} failed: no row returned")

        entry = ChangeLogEntry.from_row(resp.data[0])
        logger.info("ChangeLog %s by %s (%s)", action.value, actor.user_id, entry.id)
        return entry

    def fetch(self) -> List[ChangeLogEntry]:
        """Every entry, newest first, with actor display names joined in.

        Read in pages of CHANGELOG_PAGE_SIZE since a select returns at most
        that many rows; id breaks created_at ties so pages do not overlap.
        """
        rows: List[dict] = []
        start = 0
        while True:
            try:
                page = (
                    self.sb.table("ChangeLog")
                    .select(CHANGELOG_COLUMNS)
                    .order("created_at", desc=True)
                    .order("id", desc=True)
                    .range(start, start + config.CHANGELOG_PAGE_SIZE - 1)
                    .execute()
                ).data or []
            except APIError as e:
                logger.error("Fetching change log page at %d failed: %s", start, e.message)
                raise StorageError(f"Fetching change log failed: {e.message}") from e
            rows.extend(page)
            if len(page) < config.CHANGELOG_PAGE_SIZE:
                break
            start += config.CHANGELOG_PAGE_SIZE

        names = self.data.fetch_user_names(r["actor_user_id"] for r in rows)
        # collapse duplicate ids, keeping the first (newest) copy
        unique: Dict[str, ChangeLogEntry] = {}
        for r in rows:
            if str(r["id"]) in unique:
                continue
            unique[str(r["id"])] = ChangeLogEntry.from_row(r, names.get(str(r["actor_user_id"]), "Unknown"))
        return list(unique.values())

    def query(self, q: ChangeLogQuery) -> List[ChangeLogEntry]:
        return query_entries(self.fetch(), q)


# ===================== Display =====================

def _group_label(entry: ChangeLogEntry) -> Optional[str]:
    md = entry.metadata
    if entry.action == Action.REMOVE_FROM_GROUP and md.get("from_group"):
        return f"#{md['from_group']}"
    for key in ("ride_id", "to_group", "from_group"):
        if md.get(key):
            return f"#{md[key]}"
    if entry.target_group_id:
        return f"#{entry.target_group_id}"
    return None


def _action_text(entry: ChangeLogEntry, person: Optional[str], group: Optional[str]) -> str:
    md = entry.metadata
    who = f"user {person}" if person else "a rider"
    where = f"group {group}" if group else "a group"

    if entry.action == Action.ADD_TO_GROUP:
        source = " from unmatched" if md.get("from") == "unmatched" else ""
        return f"added {who} to {where}{source}"
    if entry.action == Action.REMOVE_FROM_GROUP:
        if md.get("to") == "corral":
            return f"moved {who} from {where} to corral" if group else f"moved {who} to corral"
        if md.get("to") == "unmatched":
            return f"removed {who} from {where} and left them as unmatched"
        return f"removed {who} from {where}"
    if entry.action == Action.CREATE_GROUP:
        return f"created group {group}" if group else "created a new group"
    if entry.action == Action.DELETE_GROUP:
        return f"deleted group {group}" if group else "deleted a group"
    if entry.action == Action.RUN_ALGORITHM:
        return f"ran the matching algorithm for {md.get('target') or 'all targets'} ({md.get('mode') or 'manual'} mode)"
    if entry.action == Action.IGNORE_ERROR:
        return "ignored an error"
    if entry.action == Action.UPDATE_GROUP_TIME:
        return f"changed the pickup time of {where} to {md.get('after', {}).get('time', '?')}"
    if entry.action == Action.UPDATE_VOUCHER:
        return f"updated the voucher for {where}"
    if entry.action == Action.UPDATE_RIDER_DETAILS:
        return f"updated details for {who}"
    if entry.action == Action.EMAIL_CONFIRMED:
        return f"confirmed the email for {where}"
    return f"added a flight for {who}"


def describe(entry: ChangeLogEntry) -> str:
    """One line for the log panel, e.g. "Admin Ana Diaz moved user Bo Li from group #42 to corral · Jan 17, 2026, 9:05 AM PT"."""
    person = entry.metadata.get("rider_name")
    group = _group_label(entry)
    local = entry.created_at.astimezone(ZoneInfo(config.DISPLAY_TIMEZONE))
    hour = local.hour % 12 or 12
    stamp = f"{local.strftime('%b')} {local.day}, {local.year}, {hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'} PT"
    actor = entry.actor_name or "Unknown"
    suffix = " (warning overridden)" if entry.ignored_error else ""
    return f"{entry.actor_role} {actor} {_action_text(entry, person, group)}{suffix} · {stamp}"
