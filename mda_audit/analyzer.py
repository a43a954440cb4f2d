"""
Orphan/usage classification and record aggregation for model-driven apps.

Each model-driven app is folded into one immutable AnalysisRecord from its
app row, its resolved role access and its audit rows.

This module contains pure functions with no I/O, so it is fully unit-testable
with mock data.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Iterable

# ── Constants ─────────────────────────────────────────────────────────────────

USAGE_SOURCE_AUDIT = "audit"
USAGE_SOURCE_MODIFIED = "modified"

STATE_LABELS = {0: "Active", 1: "Inactive"}

_FORMATTED = "@OData.Community.Display.V1.FormattedValue"

# ── Data classes ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Application:
    app_id: str
    name: str | None = None
    unique_name: str | None = None
    state: int | None = None
    status: int | None = None
    created_on: datetime | None = None
    modified_on: datetime | None = None
    published_on: datetime | None = None
    created_by: str | None = None
    modified_by: str | None = None
    created_by_name: str | None = None
    modified_by_name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.unique_name or self.app_id

    @property
    def state_label(self) -> str:
        if self.state is None:
            return "Unknown"
        return STATE_LABELS.get(self.state, str(self.state))


@dataclass(frozen=True)
class RoleAccess:
    """One role an app is shared with and the principals holding it."""

    name: str
    users: tuple[str, ...] = ()
    teams: tuple[str, ...] = ()


@dataclass(frozen=True)
class UsageSignal:
    timestamp: datetime
    count: int
    source: str  # "audit" | "modified"

    @property
    def is_proxy(self) -> bool:
        return self.source == USAGE_SOURCE_MODIFIED


@dataclass(frozen=True)
class AnalysisRecord:
    app: Application
    is_orphaned: bool
    roles: tuple[RoleAccess, ...] = ()
    all_users: tuple[str, ...] = ()
    all_teams: tuple[str, ...] = ()
    usage: UsageSignal | None = None

    @property
    def shared_count(self) -> int:
        return len(self.roles)

    @property
    def roles_assigned(self) -> list[str]:
        return [role.name for role in self.roles]

    @property
    def role_users(self) -> dict[str, list[str]]:
        return {role.name: list(role.users) for role in self.roles}

    @property
    def role_teams(self) -> dict[str, list[str]]:
        return {role.name: list(role.teams) for role in self.roles}

    @property
    def total_users(self) -> int:
        return len(self.all_users)

    @property
    def total_teams(self) -> int:
        return len(self.all_teams)

    @property
    def last_used(self) -> datetime | None:
        return self.usage.timestamp if self.usage else None


# ── Helpers ───────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        # Dataverse returns ISO 8601 with a trailing Z
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (ValueError, TypeError, AttributeError):
        return None


def _parse_int(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _lookup_name(row: dict, nav: str, lookup: str) -> str | None:
    expanded = row.get(nav)
    if isinstance(expanded, dict) and expanded.get("fullname"):
        return expanded["fullname"]
    return row.get(f"{lookup}{_FORMATTED}") or None


def days_since(dt: datetime | None, now: datetime | None = None) -> int | None:
    """Whole calendar days between dt and now, ignoring the time of day."""
    if dt is None:
        return None
    now = now or _utcnow()
    return (_as_utc_date(now) - _as_utc_date(dt)).days


def _as_utc_date(dt: datetime) -> date:
    if dt.tzinfo is None:
        return dt.date()
    return dt.astimezone(timezone.utc).date()


def unique_names(names: Iterable[str | None]) -> list[str]:
    """Drop blanks and repeats, keeping the first occurrence's position."""
    seen: list[str] = []
    for name in names:
        if name and name not in seen:
            seen.append(name)
    return seen


# ── Parsing ───────────────────────────────────────────────────────────────────


def parse_application(row: dict) -> Application | None:
    """Build an Application from an appmodules row. Returns None without an id."""
    app_id = row.get("appmoduleid")
    if not app_id:
        return None
    return Application(
        app_id=app_id,
        name=row.get("name") or None,
        unique_name=row.get("uniquename") or None,
        state=_parse_int(row.get("statecode")),
        status=_parse_int(row.get("statuscode")),
        created_on=_parse_dt(row.get("createdon")),
        modified_on=_parse_dt(row.get("modifiedon")),
        published_on=_parse_dt(row.get("publishedon")),
        created_by=row.get("_createdby_value") or None,
        modified_by=row.get("_modifiedby_value") or None,
        created_by_name=_lookup_name(row, "createdby", "_createdby_value"),
        modified_by_name=_lookup_name(row, "modifiedby", "_modifiedby_value"),
    )


# ── Classification ────────────────────────────────────────────────────────────


def is_orphaned(created_by: str | None) -> bool:
    """An app is orphaned when no creator is recorded."""
    return not created_by


def classify_usage(audit_rows: list[dict], modified_on: datetime | None) -> UsageSignal | None:
    """
    Resolve the last-used signal for an app.

    Audit rows win whenever there is at least one; otherwise modified-on stands
    in as a proxy with a zero count. Without either there is no signal.
    """
    if audit_rows:
        stamps = [dt for row in audit_rows if (dt := _parse_dt(row.get("createdon")))]
        if stamps:
            return UsageSignal(timestamp=max(stamps), count=len(audit_rows), source=USAGE_SOURCE_AUDIT)
    if modified_on is not None:
        return UsageSignal(timestamp=modified_on, count=0, source=USAGE_SOURCE_MODIFIED)
    return None


# ── Aggregation ───────────────────────────────────────────────────────────────


def build_record(
    app: Application,
    roles: Iterable[RoleAccess],
    usage: UsageSignal | None,
) -> AnalysisRecord:
    """Fold one app and its role/usage results into an AnalysisRecord."""
    roles = tuple(roles)
    all_users = unique_names(user for role in roles for user in role.users)
    all_teams = unique_names(team for role in roles for team in role.teams)
    return AnalysisRecord(
        app=app,
        is_orphaned=is_orphaned(app.created_by),
        roles=roles,
        all_users=tuple(all_users),
        all_teams=tuple(all_teams),
        usage=usage,
    )


def summary_counts(records: list[AnalysisRecord]) -> dict[str, int]:
    """Return headline counts for the terminal summary and JSON output."""
    return {
        "total": len(records),
        "shared": sum(1 for r in records if r.shared_count > 0),
        "not_shared": sum(1 for r in records if r.shared_count == 0),
        "orphaned": sum(1 for r in records if r.is_orphaned),
        "audit_usage": sum(1 for r in records if r.usage and not r.usage.is_proxy),
        "no_usage": sum(1 for r in records if r.usage is None),
    }
