"""
Report generation for the model-driven app audit.

Produces, per run:
  - JSON dump of every AnalysisRecord (parseable back with `load_dump`)
  - Detailed narrative text report
  - Orphaned apps list (only when there are orphans)
  - Sharing summary
  - Users & teams breakdown
  - Usage ranking
  - CSV export (one row per app)

Every view is a pure function of the records and the RunContext.
"""

from __future__ import annotations

import csv
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape
from rich.console import Console

from . import __version__
from .analyzer import (
    AnalysisRecord,
    Application,
    RoleAccess,
    UsageSignal,
    days_since,
    _parse_dt,
)

console = Console()

TEMPLATES_DIR = Path(__file__).parent / "templates"

LIST_SEPARATOR = "; "
UNKNOWN = "Unknown"

CSV_COLUMNS = [
    "AppName",
    "AppId",
    "UniqueName",
    "State",
    "IsOrphaned",
    "SharedWithRoles",
    "SharedCount",
    "TotalUsers",
    "TotalTeams",
    "UsersList",
    "TeamsList",
    "LastUsed",
    "DaysSinceLastUse",
    "CreatedOn",
    "CreatedBy",
    "ModifiedOn",
    "ModifiedBy",
]

REPORT_FILES = {
    "dump": "app_analysis.json",
    "narrative": "app_report.txt",
    "csv": "app_analysis.csv",
    "orphans": "orphaned_apps.txt",
    "sharing": "sharing_summary.txt",
    "breakdown": "users_teams_breakdown.txt",
    "usage": "usage_ranking.txt",
}


@dataclass(frozen=True)
class RunContext:
    """Run metadata shared by every report."""

    environment_name: str
    url_prefix: str
    run_at: datetime

    def app_url(self, app_id: str) -> str:
        return f"{self.url_prefix}main.aspx?appid={app_id}"


# ── Jinja2 filters ─────────────────────────────────────────────────────────────


def _format_dt(value: datetime | None, fmt: str = "%Y-%m-%d %H:%M UTC") -> str:
    if value is None:
        return UNKNOWN
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(fmt)


def _join_or_none(items) -> str:
    return ", ".join(items) if items else "none"


def _env_slug(display_name: str) -> str:
    """Sanitize an environment display name for use in file paths."""
    return re.sub(r"[^\w\-]", "_", display_name).lower()


def _build_jinja_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html", "xml"]),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["format_dt"] = _format_dt
    env.filters["join_or_none"] = _join_or_none
    return env


def _render(template_name: str, ctx: RunContext, **kwargs: Any) -> str:
    template = _build_jinja_env().get_template(template_name)

    def usage_line(record: AnalysisRecord) -> str:
        usage = record.usage
        if usage is None:
            return f"{UNKNOWN} (no audit activity or modified date)"
        days = days_since(usage.timestamp, ctx.run_at)
        if usage.is_proxy:
            detail = "last modified, no audit activity"
        else:
            detail = f"{usage.count} audit event(s)"
        return f"{_format_dt(usage.timestamp)} ({days} days ago, {detail})"

    def person(name: str | None, user_id: str | None) -> str:
        return name or user_id or UNKNOWN

    return template.render(
        ctx=ctx,
        version=__version__,
        usage_line=usage_line,
        person=person,
        **kwargs,
    )


# ── Views ──────────────────────────────────────────────────────────────────────


def sorted_by_name(records: list[AnalysisRecord]) -> list[AnalysisRecord]:
    return sorted(records, key=lambda r: r.app.display_name.lower())


def orphaned_records(records: list[AnalysisRecord]) -> list[AnalysisRecord]:
    return [r for r in records if r.is_orphaned]


def usage_ranking(records: list[AnalysisRecord]) -> list[AnalysisRecord]:
    """Most recently used first; apps without a usage timestamp go last, in input order."""
    floor = datetime.min.replace(tzinfo=timezone.utc)
    # sorted() stays stable with reverse=True, so ties keep input order
    return sorted(records, key=lambda r: r.last_used or floor, reverse=True)


def render_narrative(records: list[AnalysisRecord], ctx: RunContext) -> str:
    return _render("app_report.txt.j2", ctx, records=sorted_by_name(records))


def render_orphans(records: list[AnalysisRecord], ctx: RunContext) -> str | None:
    """Render the orphan list, or None when no app is orphaned."""
    orphans = orphaned_records(records)
    if not orphans:
        return None
    return _render("orphaned_apps.txt.j2", ctx, orphans=orphans, total=len(records))


def render_sharing_summary(records: list[AnalysisRecord], ctx: RunContext) -> str:
    ordered = sorted_by_name(records)
    return _render(
        "sharing_summary.txt.j2",
        ctx,
        not_shared=[r for r in ordered if r.shared_count == 0],
        shared=[r for r in ordered if r.shared_count > 0],
    )


def render_breakdown(records: list[AnalysisRecord], ctx: RunContext) -> str:
    shared = [r for r in sorted_by_name(records) if r.shared_count > 0]
    return _render("users_teams_breakdown.txt.j2", ctx, shared=shared)


def render_usage_ranking(records: list[AnalysisRecord], ctx: RunContext) -> str:
    return _render("usage_ranking.txt.j2", ctx, ranked=usage_ranking(records))


# ── JSON dump ──────────────────────────────────────────────────────────────────


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def record_to_dict(record: AnalysisRecord) -> dict:
    app = record.app
    usage = record.usage
    return {
        "AppId": app.app_id,
        "AppName": app.name,
        "UniqueName": app.unique_name,
        "State": app.state,
        "StatusCode": app.status,
        "CreatedOn": _iso(app.created_on),
        "CreatedBy": app.created_by,
        "CreatedByName": app.created_by_name,
        "ModifiedOn": _iso(app.modified_on),
        "ModifiedBy": app.modified_by,
        "ModifiedByName": app.modified_by_name,
        "PublishedOn": _iso(app.published_on),
        "IsOrphaned": record.is_orphaned,
        "SharedWithRoles": record.roles_assigned,
        "SharedCount": record.shared_count,
        "RoleUsers": record.role_users,
        "RoleTeams": record.role_teams,
        "AllUsers": list(record.all_users),
        "AllTeams": list(record.all_teams),
        "LastUsed": _iso(usage.timestamp) if usage else None,
        "UsageCount": usage.count if usage else None,
        "UsageSource": usage.source if usage else None,
    }


def record_from_dict(data: dict) -> AnalysisRecord:
    app = Application(
        app_id=data["AppId"],
        name=data.get("AppName"),
        unique_name=data.get("UniqueName"),
        state=data.get("State"),
        status=data.get("StatusCode"),
        created_on=_parse_dt(data.get("CreatedOn")),
        modified_on=_parse_dt(data.get("ModifiedOn")),
        published_on=_parse_dt(data.get("PublishedOn")),
        created_by=data.get("CreatedBy"),
        modified_by=data.get("ModifiedBy"),
        created_by_name=data.get("CreatedByName"),
        modified_by_name=data.get("ModifiedByName"),
    )
    role_users = data.get("RoleUsers") or {}
    role_teams = data.get("RoleTeams") or {}
    roles = tuple(
        RoleAccess(
            name=name,
            users=tuple(role_users.get(name, [])),
            teams=tuple(role_teams.get(name, [])),
        )
        for name in data.get("SharedWithRoles") or []
    )
    last_used = _parse_dt(data.get("LastUsed"))
    usage = None
    if last_used is not None:
        usage = UsageSignal(
            timestamp=last_used,
            count=data.get("UsageCount") or 0,
            source=data.get("UsageSource") or "audit",
        )
    return AnalysisRecord(
        app=app,
        is_orphaned=bool(data.get("IsOrphaned")),
        roles=roles,
        all_users=tuple(data.get("AllUsers") or []),
        all_teams=tuple(data.get("AllTeams") or []),
        usage=usage,
    )


def render_dump(records: list[AnalysisRecord], ctx: RunContext) -> str:
    document = {
        "schema_version": __version__,
        "environment": ctx.environment_name,
        "url_prefix": ctx.url_prefix,
        "generated_at": ctx.run_at.isoformat(),
        "apps": [record_to_dict(r) for r in records],
    }
    return json.dumps(document, indent=2)


def load_dump(text: str) -> list[AnalysisRecord]:
    """Parse a JSON dump (or a bare list of app dicts) back into records."""
    data = json.loads(text)
    if isinstance(data, dict):
        data = data.get("apps", [])
    return [record_from_dict(item) for item in data]


# ── CSV export ─────────────────────────────────────────────────────────────────


def _csv_safe(value: str) -> str:
    """Prefix formula-triggering characters so spreadsheets treat them as literals."""
    if value and value[0] in ("=", "+", "-", "@", "\t", "\r"):
        return "'" + value
    return value


def csv_row(record: AnalysisRecord, run_at: datetime) -> dict[str, Any]:
    app = record.app
    days = days_since(record.last_used, run_at)
    return {
        "AppName": _csv_safe(app.name or ""),
        "AppId": app.app_id,
        "UniqueName": _csv_safe(app.unique_name or ""),
        "State": app.state_label,
        "IsOrphaned": "True" if record.is_orphaned else "False",
        "SharedWithRoles": _csv_safe(LIST_SEPARATOR.join(record.roles_assigned)),
        "SharedCount": record.shared_count,
        "TotalUsers": record.total_users,
        "TotalTeams": record.total_teams,
        "UsersList": _csv_safe(LIST_SEPARATOR.join(record.all_users)),
        "TeamsList": _csv_safe(LIST_SEPARATOR.join(record.all_teams)),
        "LastUsed": _iso(record.last_used) or "",
        "DaysSinceLastUse": days if days is not None else UNKNOWN,
        "CreatedOn": _iso(app.created_on) or "",
        "CreatedBy": _csv_safe(app.created_by_name or app.created_by or ""),
        "ModifiedOn": _iso(app.modified_on) or "",
        "ModifiedBy": _csv_safe(app.modified_by_name or app.modified_by or ""),
    }


def generate_csv(records: list[AnalysisRecord], run_at: datetime, output_path: Path) -> Path:
    """Write a flat CSV with one row per app."""
    with output_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for r in records:
            writer.writerow(csv_row(r, run_at))
    return output_path


# ── Orchestrator ───────────────────────────────────────────────────────────────


def run_directory(output_dir: Path, ctx: RunContext) -> Path:
    """Timestamped directory that holds one run's artifacts."""
    stamp = ctx.run_at.strftime("%Y%m%d_%H%M%S")
    return output_dir / f"{_env_slug(ctx.environment_name)}_{stamp}"


def generate_all(
    records: list[AnalysisRecord],
    ctx: RunContext,
    output_dir: Path,
    skip_json: bool = False,
    skip_text: bool = False,
    skip_csv: bool = False,
) -> dict[str, Path | None]:
    """Write every report for the run. Returns dict of report key → output path."""
    run_dir = run_directory(output_dir, ctx)
    run_dir.mkdir(parents=True, exist_ok=True)

    outputs: dict[str, Path | None] = {key: None for key in REPORT_FILES}

    def write(key: str, content: str | None) -> None:
        if content is None:
            return
        path = run_dir / REPORT_FILES[key]
        path.write_text(content, encoding="utf-8")
        outputs[key] = path
        console.print(f"[green]{key}:[/green] {path}")

    if not skip_json:
        write("dump", render_dump(records, ctx))

    if not skip_text:
        write("narrative", render_narrative(records, ctx))
        write("orphans", render_orphans(records, ctx))
        write("sharing", render_sharing_summary(records, ctx))
        write("breakdown", render_breakdown(records, ctx))
        write("usage", render_usage_ranking(records, ctx))

    if not skip_csv:
        outputs["csv"] = generate_csv(records, ctx.run_at, run_dir / REPORT_FILES["csv"])
        console.print(f"[green]csv:[/green] {outputs['csv']}")

    return outputs
