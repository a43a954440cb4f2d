"""
Dataverse Web API client with automatic pagination and retry logic.

All methods are read-only GET requests. No POST/PATCH/DELETE calls are made.
Respects Retry-After headers on 429 responses and retries up to MAX_RETRIES times.

Queries are described declaratively with `Query` so the analysis code can treat
the client as a plain `query -> rows` function.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Generator

import requests
from rich.console import Console

console = Console()

API_PATH = "/api/data/v9.2"
MAX_RETRIES = 5
RETRY_BACKOFF_BASE = 2  # seconds; doubles each retry
MAX_PAGE_SIZE = 5000

# appmodule.clienttype value for Unified Interface (model-driven) apps
UNIFIED_CLIENT_TYPE = 4

# audit.action option-set values that count as "the app was used"
USAGE_AUDIT_ACTIONS: dict[str, int] = {
    "created": 1,
    "executed": 64,
}

APP_COLUMNS = (
    "appmoduleid",
    "name",
    "uniquename",
    "clienttype",
    "statecode",
    "statuscode",
    "createdon",
    "modifiedon",
    "publishedon",
    "_createdby_value",
    "_modifiedby_value",
)


@dataclass(frozen=True)
class Query:
    """A declarative Web API query: entity set plus OData system options."""

    entity_set: str
    select: tuple[str, ...] = ()
    filter: str | None = None
    orderby: str | None = None
    expand: str | None = None

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.select:
            params["$select"] = ",".join(self.select)
        if self.filter:
            params["$filter"] = self.filter
        if self.orderby:
            params["$orderby"] = self.orderby
        if self.expand:
            params["$expand"] = self.expand
        return params

    def describe(self) -> str:
        return f"{self.entity_set} ({self.filter})" if self.filter else self.entity_set


# ── Query builders ────────────────────────────────────────────────────────────


def apps_query() -> Query:
    """All model-driven apps in the environment, ordered by name."""
    return Query(
        entity_set="appmodules",
        select=APP_COLUMNS,
        filter=f"clienttype eq {UNIFIED_CLIENT_TYPE}",
        orderby="name asc",
        expand="createdby($select=fullname),modifiedby($select=fullname)",
    )


def app_roles_query(app_id: str) -> Query:
    """Security roles the app has been shared with."""
    return Query(
        entity_set="roles",
        select=("roleid", "name"),
        filter=f"appmoduleroles_association/any(a: a/appmoduleid eq {app_id})",
        orderby="name asc",
    )


def role_users_query(role_id: str) -> Query:
    """Enabled users holding a role."""
    return Query(
        entity_set="systemusers",
        select=("systemuserid", "fullname", "isdisabled"),
        filter=(
            "isdisabled eq false and "
            f"systemuserroles_association/any(r: r/roleid eq {role_id})"
        ),
        orderby="fullname asc",
    )


def role_teams_query(role_id: str) -> Query:
    """Non-default teams holding a role."""
    return Query(
        entity_set="teams",
        select=("teamid", "name", "isdefault"),
        filter=(
            "isdefault eq false and "
            f"teamroles_association/any(r: r/roleid eq {role_id})"
        ),
        orderby="name asc",
    )


def app_audit_query(app_id: str) -> Query:
    """Audit rows recording the app being created or opened, newest first."""
    actions = " or ".join(f"action eq {code}" for code in USAGE_AUDIT_ACTIONS.values())
    return Query(
        entity_set="audits",
        select=("auditid", "action", "createdon"),
        filter=f"_objectid_value eq {app_id} and ({actions})",
        orderby="createdon desc",
    )


def organization_query() -> Query:
    return Query(entity_set="organizations", select=("organizationid", "friendlyname"))


# ── Client ────────────────────────────────────────────────────────────────────


class DataverseClient:
    """Thin read-only wrapper around the Dataverse Web API."""

    def __init__(self, env_url: str, access_token: str) -> None:
        self.env_url = env_url.rstrip("/")
        self.api_base = f"{self.env_url}{API_PATH}"
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                "OData-MaxVersion": "4.0",
                "OData-Version": "4.0",
                "Prefer": (
                    f"odata.maxpagesize={MAX_PAGE_SIZE},"
                    'odata.include-annotations="OData.Community.Display.V1.FormattedValue"'
                ),
            }
        )

    def _get(self, url: str, params: dict | None = None) -> dict:
        """Single GET request with retry on 429 / transient errors."""
        for attempt in range(MAX_RETRIES):
            try:
                resp = self._session.get(url, params=params, timeout=60)
            except requests.RequestException as exc:
                if attempt < MAX_RETRIES - 1:
                    wait = RETRY_BACKOFF_BASE ** attempt
                    console.print(f"[yellow]Network error ({exc}). Retrying in {wait}s...[/yellow]")
                    time.sleep(wait)
                    continue
                raise

            if resp.status_code == 200:
                return resp.json()

            if resp.status_code == 429:
                try:
                    retry_after = int(resp.headers.get("Retry-After", RETRY_BACKOFF_BASE ** attempt))
                except ValueError:
                    retry_after = RETRY_BACKOFF_BASE ** attempt
                console.print(f"[yellow]Rate limited. Waiting {retry_after}s...[/yellow]")
                time.sleep(retry_after)
                continue

            if resp.status_code in (401, 403):
                raise PermissionError(
                    f"Dataverse access denied ({resp.status_code}): {_error_message(resp)}"
                )

            if resp.status_code in (500, 502, 503, 504) and attempt < MAX_RETRIES - 1:
                wait = RETRY_BACKOFF_BASE ** attempt
                console.print(f"[yellow]Server error {resp.status_code}. Retrying in {wait}s...[/yellow]")
                time.sleep(wait)
                continue

            raise RuntimeError(f"Dataverse API error {resp.status_code}: {_error_message(resp)}")

        raise RuntimeError(f"Dataverse request failed after {MAX_RETRIES} retries: {url}")

    def get_paged(self, entity_set: str, params: dict | None = None) -> Generator[dict, None, None]:
        """
        Yield individual rows from an entity set.

        Automatically follows @odata.nextLink until all pages are consumed.
        """
        url: str | None = f"{self.api_base}/{entity_set}"
        query = params or None

        while url:
            data = self._get(url, params=query)
            # nextLink already carries the encoded query options
            query = None
            yield from data.get("value", [])
            url = data.get("@odata.nextLink")

    def query(self, query: Query) -> list[dict]:
        """Run a declarative query and return every matching row."""
        return list(self.get_paged(query.entity_set, query.to_params()))


def _error_message(resp: requests.Response) -> str:
    try:
        return resp.json().get("error", {}).get("message", resp.text)
    except ValueError:
        return resp.text
