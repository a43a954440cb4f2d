"""
Unit tests for mda_audit/collector.py.

Runs the collector against an in-memory row source. No network calls are made.
"""

from datetime import datetime, timezone

import pytest
import requests

from mda_audit.analyzer import Application
from mda_audit.collector import (
    analyze_application,
    collect,
    resolve_roles,
    select_apps,
    try_fetch,
)
from mda_audit.dataverse import Query, apps_query
from mda_audit.reporter import RunContext, render_orphans, render_sharing_summary, usage_ranking


class FakeSource:
    """
    Row source keyed by the id embedded in each query's $filter.

    `failing` holds entity sets or ids whose queries raise RuntimeError.
    """

    def __init__(self, apps=(), roles=None, users=None, teams=None, audits=None, failing=()):
        self.apps = list(apps)
        self.tables = {
            "roles": roles or {},
            "systemusers": users or {},
            "teams": teams or {},
            "audits": audits or {},
        }
        self.failing = set(failing)
        self.calls: list[Query] = []

    def __call__(self, query: Query) -> list[dict]:
        self.calls.append(query)
        if query.entity_set in self.failing or any(key in (query.filter or "") for key in self.failing):
            raise RuntimeError(f"Dataverse API error 500: {query.entity_set} unavailable")
        if query.entity_set == "appmodules":
            return list(self.apps)
        for key, rows in self.tables.get(query.entity_set, {}).items():
            if key in (query.filter or ""):
                return list(rows)
        return []


def _app_row(app_id: str, name: str, creator: str | None = "creator-1", modified: str | None = "2024-01-01T00:00:00Z") -> dict:
    return {
        "appmoduleid": app_id,
        "name": name,
        "uniquename": name.lower().replace(" ", "_"),
        "clienttype": 4,
        "statecode": 0,
        "_createdby_value": creator,
        "modifiedon": modified,
    }


def _user(name: str, disabled: bool = False) -> dict:
    return {"systemuserid": f"id-{name}", "fullname": name, "isdisabled": disabled}


def _team(name: str, default: bool = False) -> dict:
    return {"teamid": f"id-{name}", "name": name, "isdefault": default}


CTX = RunContext(
    environment_name="Contoso Sales",
    url_prefix="https://contoso.crm.dynamics.com/",
    run_at=datetime(2024, 6, 15, 10, 0, tzinfo=timezone.utc),
)


# ── try_fetch ──────────────────────────────────────────────────────────────────


class TestTryFetch:
    def test_returns_rows(self):
        assert try_fetch(lambda q: [{"a": 1}], Query("roles")) == [{"a": 1}]

    @pytest.mark.parametrize(
        "exc",
        [
            RuntimeError("server error"),
            PermissionError("denied"),
            requests.ConnectionError("unreachable"),
        ],
    )
    def test_fetch_failures_become_empty(self, exc):
        def source(query):
            raise exc

        assert try_fetch(source, Query("roles")) == []

    def test_programming_errors_propagate(self):
        def source(query):
            raise KeyError("bug")

        with pytest.raises(KeyError):
            try_fetch(source, Query("roles"))


# ── resolve_roles ──────────────────────────────────────────────────────────────


class TestResolveRoles:
    def test_roles_users_and_teams(self):
        source = FakeSource(
            roles={"app-a": [{"roleid": "role-sm", "name": "Sales Manager"}]},
            users={"role-sm": [_user("Alice"), _user("Bob")]},
            teams={"role-sm": [_team("EMEA Sales")]},
        )
        roles = resolve_roles(source, "app-a")
        assert len(roles) == 1
        assert roles[0].name == "Sales Manager"
        assert roles[0].users == ("Alice", "Bob")
        assert roles[0].teams == ("EMEA Sales",)

    def test_discovery_order_preserved(self):
        source = FakeSource(
            roles={"app-a": [
                {"roleid": "role-z", "name": "Zeta"},
                {"roleid": "role-a", "name": "Alpha"},
            ]},
        )
        assert [r.name for r in resolve_roles(source, "app-a")] == ["Zeta", "Alpha"]

    def test_disabled_users_and_default_teams_dropped(self):
        source = FakeSource(
            roles={"app-a": [{"roleid": "role-sm", "name": "Sales Manager"}]},
            users={"role-sm": [_user("Alice"), _user("Ghost", disabled=True)]},
            teams={"role-sm": [_team("contoso", default=True), _team("Field Sales")]},
        )
        role = resolve_roles(source, "app-a")[0]
        assert role.users == ("Alice",)
        assert role.teams == ("Field Sales",)

    def test_same_named_roles_merged(self):
        source = FakeSource(
            roles={"app-a": [
                {"roleid": "role-root", "name": "Salesperson"},
                {"roleid": "role-child", "name": "Salesperson"},
            ]},
            users={
                "role-root": [_user("Alice"), _user("Bob")],
                "role-child": [_user("Bob"), _user("Cara")],
            },
        )
        roles = resolve_roles(source, "app-a")
        assert len(roles) == 1
        assert roles[0].users == ("Alice", "Bob", "Cara")

    def test_same_named_roles_merged_in_name_order(self):
        source = FakeSource(
            roles={"app-a": [
                {"roleid": "role-root", "name": "Salesperson"},
                {"roleid": "role-child", "name": "Salesperson"},
            ]},
            users={"role-root": [_user("Zed")], "role-child": [_user("amy"), _user("Zed")]},
            teams={"role-root": [_team("Zulu Team")], "role-child": [_team("Alpha Team")]},
        )
        role = resolve_roles(source, "app-a")[0]
        assert role.users == ("amy", "Zed")
        assert role.teams == ("Alpha Team", "Zulu Team")

    def test_rows_without_name_or_id_skipped(self):
        source = FakeSource(
            roles={"app-a": [{"roleid": "role-1"}, {"name": "No Id"}, {"roleid": "role-2", "name": "Kept"}]},
        )
        assert [r.name for r in resolve_roles(source, "app-a")] == ["Kept"]

    def test_roles_query_failure_means_not_shared(self):
        source = FakeSource(failing={"roles"})
        assert resolve_roles(source, "app-a") == ()

    def test_users_failure_keeps_teams(self):
        source = FakeSource(
            roles={"app-a": [{"roleid": "role-sm", "name": "Sales Manager"}]},
            teams={"role-sm": [_team("EMEA Sales")]},
            failing={"systemusers"},
        )
        role = resolve_roles(source, "app-a")[0]
        assert role.users == ()
        assert role.teams == ("EMEA Sales",)

    def test_teams_failure_keeps_users(self):
        source = FakeSource(
            roles={"app-a": [{"roleid": "role-sm", "name": "Sales Manager"}]},
            users={"role-sm": [_user("Alice")]},
            failing={"teams"},
        )
        role = resolve_roles(source, "app-a")[0]
        assert role.users == ("Alice",)
        assert role.teams == ()


# ── analyze_application ────────────────────────────────────────────────────────


class TestAnalyzeApplication:
    def test_audit_rows_drive_usage(self):
        app = Application(app_id="app-d", name="D", created_by="c")
        source = FakeSource(audits={"app-d": [
            {"createdon": "2024-03-03T00:00:00Z"},
            {"createdon": "2024-03-02T00:00:00Z"},
            {"createdon": "2024-03-01T00:00:00Z"},
        ]})
        record = analyze_application(source, app)
        assert record.usage.count == 3
        assert record.usage.timestamp == datetime(2024, 3, 3, tzinfo=timezone.utc)

    def test_audit_failure_falls_back_to_modified(self):
        modified = datetime(2024, 2, 1, tzinfo=timezone.utc)
        app = Application(app_id="app-e", name="E", created_by="c", modified_on=modified)
        source = FakeSource(failing={"audits"})
        record = analyze_application(source, app)
        assert record.usage.timestamp == modified
        assert record.usage.count == 0

    def test_audit_query_targets_app(self):
        app = Application(app_id="app-q", name="Q", created_by="c")
        source = FakeSource()
        analyze_application(source, app)
        audit_queries = [q for q in source.calls if q.entity_set == "audits"]
        assert len(audit_queries) == 1
        assert "app-q" in audit_queries[0].filter


# ── select_apps ────────────────────────────────────────────────────────────────


class TestSelectApps:
    def test_other_client_types_dropped(self):
        rows = [_app_row("app-a", "A"), {**_app_row("app-b", "B"), "clienttype": 2}]
        assert [a.app_id for a in select_apps(rows)] == ["app-a"]

    def test_string_client_type_accepted(self):
        rows = [{**_app_row("app-a", "A"), "clienttype": "4"}]
        assert len(select_apps(rows)) == 1

    def test_duplicates_and_missing_ids_skipped(self):
        rows = [_app_row("app-a", "A"), _app_row("app-a", "A"), {"name": "No Id", "clienttype": 4}]
        assert [a.app_id for a in select_apps(rows)] == ["app-a"]


# ── collect ────────────────────────────────────────────────────────────────────


class TestCollect:
    def test_one_record_per_app_in_source_order(self):
        source = FakeSource(apps=[_app_row("app-a", "Alpha"), _app_row("app-b", "Beta"), _app_row("app-c", "Gamma")])
        records = collect(source, show_progress=False)
        assert [r.app.app_id for r in records] == ["app-a", "app-b", "app-c"]

    def test_app_with_no_roles_still_has_record(self):
        source = FakeSource(apps=[_app_row("app-b", "B")])
        records = collect(source, show_progress=False)
        assert len(records) == 1
        assert records[0].shared_count == 0
        assert records[0].all_users == ()

    def test_sub_query_failure_does_not_abort_siblings(self):
        source = FakeSource(
            apps=[_app_row("app-a", "A"), _app_row("app-b", "B")],
            roles={"app-b": [{"roleid": "role-1", "name": "Reader"}]},
            failing={"app-a"},
        )
        records = collect(source, show_progress=False)
        assert len(records) == 2
        assert records[0].shared_count == 0
        assert records[1].roles_assigned == ["Reader"]

    def test_apps_query_failure_propagates(self):
        source = FakeSource(failing={"appmodules"})
        with pytest.raises(RuntimeError):
            collect(source, show_progress=False)

    def test_no_status_output_without_progress(self, capsys):
        collect(FakeSource(apps=[_app_row("app-a", "A")]), show_progress=False)
        out = capsys.readouterr().out
        assert "Fetching model-driven apps" not in out
        assert "Model-driven apps found" not in out

    def test_apps_query_requests_unified_client(self):
        source = FakeSource()
        collect(source, show_progress=False)
        assert source.calls[0] == apps_query()
        assert "clienttype eq 4" in source.calls[0].filter


# ── End-to-end scenarios ───────────────────────────────────────────────────────


class TestScenarios:
    def test_shared_and_unshared_apps(self):
        source = FakeSource(
            apps=[_app_row("app-a", "App A"), _app_row("app-b", "App B")],
            roles={"app-a": [{"roleid": "role-sm", "name": "Sales Manager"}]},
            users={"role-sm": [_user("Alice"), _user("Bob")]},
        )
        a, b = collect(source, show_progress=False)
        assert a.shared_count == 1
        assert b.shared_count == 0

        summary = render_sharing_summary([a, b], CTX)
        not_shared, shared = summary.split("SHARED WITH ROLES")
        assert "App B" in not_shared
        assert "App A" not in not_shared
        assert "App A" in shared
        assert "Sales Manager" in shared
        assert "Alice, Bob" in shared

    def test_orphan_list_contains_only_creatorless_app(self):
        source = FakeSource(apps=[_app_row("app-c", "App C", creator=None), _app_row("app-x", "App X")])
        records = collect(source, show_progress=False)
        text = render_orphans(records, CTX)
        assert "App C" in text
        assert "App X" not in text

    def test_audit_usage_ranks_against_modified_proxy(self):
        source = FakeSource(
            apps=[
                _app_row("app-e", "App E", modified="2024-04-01T00:00:00Z"),
                _app_row("app-d", "App D", modified="2023-01-01T00:00:00Z"),
            ],
            audits={"app-d": [
                {"createdon": "2024-05-03T00:00:00Z"},
                {"createdon": "2024-05-02T00:00:00Z"},
                {"createdon": "2024-05-01T00:00:00Z"},
            ]},
        )
        e, d = collect(source, show_progress=False)
        assert (d.usage.count, d.usage.source) == (3, "audit")
        assert (e.usage.count, e.usage.source) == (0, "modified")
        assert usage_ranking([e, d]) == [d, e]
