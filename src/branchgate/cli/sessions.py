"""
CLI subcommands for the session held by a running server.

Usage:
    branchgate sessions status
    branchgate sessions end [--reason manual]
    branchgate sessions reconcile
"""

import typer

from branchgate.cli._http import _http_delete, _http_get, _http_post
from branchgate.cli.policies import format_duration

sessions_app = typer.Typer(help="Inspect and end the server's current session")


def _echo_current(data: dict) -> None:
    session = data.get("session")
    if not session:
        typer.echo("No active session.")
        return

    context = session.get("branchContext", {})
    typer.echo(f"Session {session['sessionId'][:8]}  [{data.get('state')}]")
    typer.echo(f"  Access method:  {session['accessMethod']}")
    typer.echo(f"  Branch:         {context.get('branchName') or context.get('branchId')}")
    typer.echo(f"  Expires at:     {session['expiresAt']}")
    typer.echo(f"  Remaining:      {format_duration(data.get('remainingTime', 0))}")
    typer.echo(f"  Transactions:   {session['transactionCount']}")


@sessions_app.command("status")
def sessions_status():
    """Show the current session, its state and remaining time."""
    _echo_current(_http_get("/sessions/current"))


@sessions_app.command("end")
def sessions_end(
    reason: str = typer.Option(
        "manual", "--reason", "-r", help="manual, expired, inactive or transaction_complete"
    ),
):
    """Terminate the current session."""
    _http_delete("/sessions/current", params={"reason": reason})
    typer.echo(f"✅ Session ended ({reason})")


@sessions_app.command("reconcile")
def sessions_reconcile():
    """Retry terminal writes the store did not confirm."""
    data = _http_post("/sessions/reconcile")
    pending = data.get("pending", 0)
    if pending:
        typer.echo(f"⚠️  {pending} session(s) still awaiting a confirmed write")
        for session_id in data.get("sessionIds", []):
            typer.echo(f"  • {session_id[:8]}")
        raise typer.Exit(code=1)
    typer.echo("✅ Nothing left to reconcile")
