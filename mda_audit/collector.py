"""
Data collection orchestration for the model-driven app audit.

Fetches apps, role sharing and audit rows from a row source and assembles one
AnalysisRecord per in-scope app, ready for reporting.

A row source is any callable taking a `Query` and returning a list of row
dicts; `DataverseClient.query` is the production one.
"""

from __future__ import annotations

from contextlib import nullcontext
from typing import Callable

import requests
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .analyzer import (
    AnalysisRecord,
    Application,
    RoleAccess,
    build_record,
    classify_usage,
    parse_application,
    unique_names,
)
from .dataverse import (
    UNIFIED_CLIENT_TYPE,
    Query,
    app_audit_query,
    app_roles_query,
    apps_query,
    role_teams_query,
    role_users_query,
)

console = Console()

RowSource = Callable[[Query], list[dict]]

FETCH_ERRORS = (PermissionError, RuntimeError, requests.RequestException)


def try_fetch(source: RowSource, query: Query) -> list[dict]:
    """Run a sub-query, treating any failure as "no rows"."""
    try:
        return list(source(query))
    except FETCH_ERRORS as exc:
        console.print(f"[yellow]Warning: could not read {query.describe()} ({exc}). Treating as empty.[/yellow]")
        return []


# ── Role resolution ───────────────────────────────────────────────────────────


def resolve_roles(source: RowSource, app_id: str) -> tuple[RoleAccess, ...]:
    """
    Return the roles an app is shared with, in discovery order.

    Role rows with the same name (business-unit copies of one role) are folded
    into a single entry whose users/teams cover every copy, ordered by name.
    """
    role_ids: dict[str, list[str]] = {}
    for row in try_fetch(source, app_roles_query(app_id)):
        name = row.get("name")
        role_id = row.get("roleid")
        if not name or not role_id:
            continue
        ids = role_ids.setdefault(name, [])
        if role_id not in ids:
            ids.append(role_id)

    return tuple(
        RoleAccess(
            name=name,
            users=tuple(_role_users(source, ids)),
            teams=tuple(_role_teams(source, ids)),
        )
        for name, ids in role_ids.items()
    )


def _role_users(source: RowSource, role_ids: list[str]) -> list[str]:
    names = unique_names(
        row.get("fullname")
        for role_id in role_ids
        for row in try_fetch(source, role_users_query(role_id))
        if not row.get("isdisabled")
    )
    # each copy arrives sorted; the concatenation across copies does not
    return sorted(names, key=str.lower)


def _role_teams(source: RowSource, role_ids: list[str]) -> list[str]:
    names = unique_names(
        row.get("name")
        for role_id in role_ids
        for row in try_fetch(source, role_teams_query(role_id))
        if not row.get("isdefault")
    )
    return sorted(names, key=str.lower)


# ── Per-app analysis ──────────────────────────────────────────────────────────


def analyze_application(source: RowSource, app: Application) -> AnalysisRecord:
    """Resolve sharing and usage for one app. Sub-query failures never escape."""
    roles = resolve_roles(source, app.app_id)
    audit_rows = try_fetch(source, app_audit_query(app.app_id))
    usage = classify_usage(audit_rows, app.modified_on)
    return build_record(app, roles, usage)


def select_apps(rows: list[dict]) -> list[Application]:
    """Keep unified-client apps once each, in source order."""
    apps: list[Application] = []
    seen: set[str] = set()
    for row in rows:
        client_type = row.get("clienttype")
        if client_type is not None and str(client_type) != str(UNIFIED_CLIENT_TYPE):
            continue
        app = parse_application(row)
        if app is None:
            console.print("[yellow]Warning: skipping app row with missing appmoduleid[/yellow]")
            continue
        if app.app_id in seen:
            continue
        seen.add(app.app_id)
        apps.append(app)
    return apps


def collect(source: RowSource, show_progress: bool = True) -> list[AnalysisRecord]:
    """
    Build one AnalysisRecord per in-scope model-driven app.

    The app list query is not absorbed: if it fails the environment is
    unusable and the error propagates to the caller.
    """
    status = console.status("[cyan]Fetching model-driven apps...") if show_progress else nullcontext()
    with status:
        apps = select_apps(list(source(apps_query())))
    if show_progress:
        console.print(f"[green]Model-driven apps found:[/green] {len(apps):,}")

    records: list[AnalysisRecord] = []

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        disable=not show_progress,
    ) as progress:
        task = progress.add_task("Analyzing app access...", total=len(apps))

        for app in apps:
            records.append(analyze_application(source, app))
            progress.advance(task)

    return records
