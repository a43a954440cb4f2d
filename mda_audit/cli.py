"""
mda-audit CLI entrypoint.

Usage:
    mda-audit [OPTIONS]
    python -m mda_audit.cli [OPTIONS]
"""

from __future__ import annotations

import json
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .analyzer import summary_counts
from .auth import get_token
from .collector import FETCH_ERRORS, collect, try_fetch
from .dataverse import DataverseClient, organization_query
from .reporter import RunContext, generate_all

console = Console()


def _environment_name(client: DataverseClient, configured: str | None) -> str:
    """Configured name, else the organization's friendly name, else the host."""
    if configured:
        return configured
    rows = try_fetch(client.query, organization_query())
    if rows and rows[0].get("friendlyname"):
        return rows[0]["friendlyname"]
    return urlparse(client.env_url).hostname or client.env_url


@click.command()
@click.option(
    "--env-url", "-e",
    default=None,
    metavar="URL",
    help="Dataverse environment URL (e.g. https://contoso.crm.dynamics.com). Reads from config file if omitted.",
)
@click.option(
    "--tenant", "-t",
    default=None,
    metavar="TENANT_ID",
    help="Entra tenant ID or domain. Defaults to 'organizations'.",
)
@click.option(
    "--client-id", "-c",
    default=None,
    metavar="CLIENT_ID",
    help="Public client application ID used for sign-in.",
)
@click.option(
    "--config",
    default=None,
    type=click.Path(exists=False, path_type=Path),
    metavar="PATH",
    help="Path to mda_audit_config.json (default: ./mda_audit_config.json).",
)
@click.option(
    "--env-name",
    default=None,
    metavar="NAME",
    help="Environment display name for reports. Read from the environment if omitted.",
)
@click.option(
    "--output", "-o",
    default="./output",
    show_default=True,
    type=click.Path(path_type=Path),
    metavar="DIR",
    help="Directory under which a timestamped run folder is created.",
)
@click.option(
    "--output-format",
    default="all",
    show_default=True,
    type=click.Choice(["all", "text", "json", "csv"], case_sensitive=False),
    help="Report format(s) to generate.",
)
@click.option(
    "--quiet",
    is_flag=True,
    default=False,
    help="Suppress banner, progress and decorative output. Only print errors and output paths.",
)
@click.option(
    "--json-output",
    "json_output",
    is_flag=True,
    default=False,
    help="Print a structured JSON summary to stdout after the run.",
)
@click.version_option(__version__, "--version", "-V")
def main(
    env_url: str | None,
    tenant: str | None,
    client_id: str | None,
    config: Path | None,
    env_name: str | None,
    output: Path,
    output_format: str,
    quiet: bool,
    json_output: bool,
) -> None:
    """
    mda-audit: model-driven app access & usage auditor for Dataverse.

    Signs in with device code flow, reads every model-driven app in the
    environment, works out which security roles, users and teams can open
    it, flags apps with no recorded creator, and estimates when each app
    was last used. Writes JSON, text and CSV reports.

    Exit codes:
      0  Run completed and reports were written
      1  Setup failed (configuration, sign-in or environment unreachable)
    """
    _run_start = time.monotonic()

    if not quiet:
        console.print(
            Panel(
                f"[bold]mda-audit[/bold] v{__version__}\n"
                "[bold green]The scan is read-only.[/bold green] "
                "No changes will be made to your environment.",
                border_style="cyan",
                title="[bold cyan]Model-Driven App Audit[/bold cyan]",
            )
        )

    # ── Authenticate ──────────────────────────────────────────────────────────
    token, auth_config = get_token(env_url, tenant, client_id, config)
    client = DataverseClient(auth_config["env_url"], access_token=token)
    if not quiet:
        console.print(f"[green]Connected to:[/green] {client.env_url}")

    environment_name = _environment_name(client, env_name or auth_config.get("environment_name"))
    run_at = datetime.now(timezone.utc)
    ctx = RunContext(
        environment_name=environment_name,
        url_prefix=f"{client.env_url}/",
        run_at=run_at,
    )

    # ── Collect and analyze ───────────────────────────────────────────────────
    try:
        records = collect(client.query, show_progress=not quiet)
    except FETCH_ERRORS as exc:
        console.print(
            Panel(
                f"[red]Could not read model-driven apps from {client.env_url}.[/red]\n\n{exc}",
                title="[red]Environment Unavailable[/red]",
                border_style="red",
            )
        )
        sys.exit(1)

    counts = summary_counts(records)

    # ── Terminal summary ──────────────────────────────────────────────────────
    if not quiet:
        summary_table = Table(
            title=f"App Access Summary: {environment_name}",
            show_header=True,
            header_style="bold",
        )
        summary_table.add_column("Measure", style="bold")
        summary_table.add_column("Count", justify="right")

        summary_table.add_row("Model-driven apps", str(counts["total"]))
        summary_table.add_row("Shared with roles", str(counts["shared"]))
        summary_table.add_row("Not shared", str(counts["not_shared"]), style="yellow" if counts["not_shared"] else "dim")
        summary_table.add_row("Orphaned (no creator)", str(counts["orphaned"]), style="bold red" if counts["orphaned"] else "dim")
        summary_table.add_row("Usage from audit log", str(counts["audit_usage"]))
        summary_table.add_row("No usage data", str(counts["no_usage"]), style="dim")
        console.print(summary_table)

    # ── Generate reports ──────────────────────────────────────────────────────
    if not quiet:
        console.print("\n[cyan]Generating reports...[/cyan]")
    fmt = output_format.lower()
    outputs = generate_all(
        records, ctx, Path(output),
        skip_json=fmt not in ("all", "json"),
        skip_text=fmt not in ("all", "text"),
        skip_csv=fmt not in ("all", "csv"),
    )

    elapsed = time.monotonic() - _run_start
    elapsed_str = f"{int(elapsed // 60)}m {int(elapsed % 60)}s" if elapsed >= 60 else f"{elapsed:.1f}s"

    written = [path for path in outputs.values() if path is not None]
    console.print(
        Panel(
            "\n".join(
                [
                    "[bold green]Audit complete![/bold green]",
                    "",
                    *[f"[bold]{path.name}[/bold]" for path in written],
                    "",
                    f"[dim]Output folder: {written[0].parent if written else '-'}[/dim]",
                    f"[dim]Apps: {counts['total']} · Shared: {counts['shared']} · "
                    f"Orphaned: {counts['orphaned']}[/dim]",
                    f"[dim]Completed in {elapsed_str}[/dim]",
                ]
            ),
            title="[bold cyan]mda-audit[/bold cyan]",
            border_style="cyan",
        )
    )

    # ── JSON output ───────────────────────────────────────────────────────────
    if json_output:
        summary = {
            "environment": environment_name,
            "environment_url": client.env_url,
            "scanned_at": run_at.isoformat(),
            "counts": counts,
            "outputs": {k: str(v) if v else None for k, v in outputs.items()},
        }
        click.echo(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
