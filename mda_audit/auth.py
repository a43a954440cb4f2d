"""
MSAL device code flow authentication against a Dataverse environment.

Reads env_url, tenant_id and client_id from mda_audit_config.json or accepts
them as explicit arguments. The access token is held only in memory and
never written to disk.
"""

import json
import sys
from pathlib import Path

import msal
from rich.console import Console
from rich.panel import Panel

console = Console()

# Public client registered by Microsoft for Dataverse tooling and samples
DEFAULT_CLIENT_ID = "51f81489-12ee-4a9e-aaae-a2591f45987d"
DEFAULT_TENANT = "organizations"

DEFAULT_CONFIG_FILE = Path(__file__).parent.parent / "mda_audit_config.json"


def dataverse_scopes(env_url: str) -> list[str]:
    return [f"{env_url.rstrip('/')}/user_impersonation"]


def load_config(config_path: Path | None = None) -> dict:
    """Load env_url, tenant_id and client_id from the JSON config file."""
    path = config_path or DEFAULT_CONFIG_FILE
    if not path.exists():
        console.print(
            Panel(
                "[bold red]Config file not found.[/bold red]\n\n"
                f"Create [cyan]{path.name}[/cyan] with an [cyan]env_url[/cyan] key,\n"
                "or pass [cyan]--env-url[/cyan] directly.",
                title="[red]Setup Required[/red]",
                border_style="red",
            )
        )
        sys.exit(1)
    try:
        return json.loads(path.read_text(encoding="utf-8-sig"))
    except json.JSONDecodeError as exc:
        console.print(f"[red]Error reading config file {path}: {exc}[/red]")
        sys.exit(1)


def acquire_token(env_url: str, tenant_id: str, client_id: str) -> str:
    """
    Run MSAL device code flow and return an access token string.

    Prompts the user to visit https://microsoft.com/devicelogin and enter a code.
    Token is returned as a plain string and never cached to disk.
    """
    authority = f"https://login.microsoftonline.com/{tenant_id}"
    app = msal.PublicClientApplication(client_id=client_id, authority=authority)

    flow = app.initiate_device_flow(scopes=dataverse_scopes(env_url))
    if "user_code" not in flow:
        console.print(f"[red]Failed to create device flow: {flow.get('error_description', 'unknown error')}[/red]")
        sys.exit(1)

    console.print(
        Panel(
            f"[bold yellow]Open your browser and go to:[/bold yellow]\n\n"
            f"  [cyan underline]{flow.get('verification_uri', 'https://microsoft.com/devicelogin')}[/cyan underline]\n\n"
            f"[bold yellow]Enter the code:[/bold yellow]\n\n"
            f"  [bold white on blue]  {flow['user_code']}  [/bold white on blue]\n\n"
            f"[dim]Waiting for authentication... (expires in {flow.get('expires_in', 900) // 60} minutes)[/dim]",
            title="[bold cyan]Dataverse Authentication Required[/bold cyan]",
            border_style="cyan",
        )
    )

    result = app.acquire_token_by_device_flow(flow)

    if "access_token" not in result:
        error = result.get("error_description") or result.get("error") or "Unknown error"
        console.print(f"[red]Authentication failed: {error}[/red]")
        sys.exit(1)

    console.print("[green]Authentication successful.[/green]")
    return result["access_token"]


def resolve_config(
    env_url: str | None,
    tenant_id: str | None,
    client_id: str | None,
    config_path: Path | None = None,
) -> dict:
    """
    Merge command-line values over the config file.

    The config file is only required when --env-url is not given.
    """
    if env_url:
        config = {}
        if config_path and config_path.exists():
            config = load_config(config_path)
        config["env_url"] = env_url
    else:
        config = load_config(config_path)
    if tenant_id:
        config["tenant_id"] = tenant_id
    if client_id:
        config["client_id"] = client_id

    if not config.get("env_url"):
        console.print("[red]No environment URL configured. Pass --env-url or set env_url in the config file.[/red]")
        sys.exit(1)

    config["env_url"] = config["env_url"].rstrip("/")
    config.setdefault("tenant_id", DEFAULT_TENANT)
    config.setdefault("client_id", DEFAULT_CLIENT_ID)
    return config


def get_token(
    env_url: str | None,
    tenant_id: str | None,
    client_id: str | None,
    config_path: Path | None = None,
) -> tuple[str, dict]:
    """Resolve configuration and return (access_token, config_dict)."""
    config = resolve_config(env_url, tenant_id, client_id, config_path)
    token = acquire_token(config["env_url"], config["tenant_id"], config["client_id"])
    return token, config
