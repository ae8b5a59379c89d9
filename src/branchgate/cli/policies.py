"""
CLI subcommands for inspecting session policy tables.

Usage:
    branchgate policies list [--file PATH]
    branchgate policies check PATH
"""

from pathlib import Path
from typing import Optional

import typer

from branchgate.errors import ConfigError
from branchgate.session.policy import PolicyRegistry, load_policy_registry

policies_app = typer.Typer(help="Inspect and validate session policy tables")


def format_duration(ms: int) -> str:
    """Render milliseconds as the largest whole unit (24h, 15m, 30s, 250ms)."""
    for unit, size in (("h", 3_600_000), ("m", 60_000), ("s", 1000)):
        if ms and ms % size == 0:
            return f"{ms // size}{unit}"
    return f"{ms}ms"


def _load(path: Optional[Path]) -> PolicyRegistry:
    if path is None:
        from branchgate.config import CONFIG

        path = CONFIG.policy_file
    try:
        return load_policy_registry(path)
    except ConfigError as e:
        typer.echo(f"❌ Invalid policy table: {e.message}")
        raise typer.Exit(code=1)


@policies_app.command("list")
def policies_list(
    file: Optional[Path] = typer.Option(
        None, "--file", "-f", help="Policy YAML file (defaults to the configured table)"
    ),
):
    """List the session policy for every access method."""
    registry = _load(file)

    typer.echo(f"{len(registry)} access method(s):\n")
    for method in registry.access_methods():
        policy = registry.policy_for(method)
        flags = []
        if policy.require_reauth:
            flags.append(f"reauth every {format_duration(policy.reauth_interval)}")
        if policy.auto_terminate_after_transaction:
            flags.append("single transaction")

        typer.echo(
            f"  {method:<18} duration {format_duration(policy.session_duration):>5}  "
            f"idle {format_duration(policy.inactivity_timeout):>4}  "
            f"warn {format_duration(policy.warning_lead_time):>4}"
            + (f"  ({', '.join(flags)})" if flags else "")
        )


@policies_app.command("check")
def policies_check(
    path: Path = typer.Argument(help="Policy YAML file to validate"),
):
    """Validate a policy file without starting the server."""
    registry = _load(path)
    typer.echo(
        f"✅ {path}: {len(registry)} valid policies ({', '.join(registry.access_methods())})"
    )
