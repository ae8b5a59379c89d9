"""
branchgate CLI.

This package splits CLI commands into focused modules:
- main:     serve
- policies: list, check
- sessions: status, end, reconcile (talks to a running server)
"""

import typer

from branchgate.cli._http import _http_delete, _http_get, _http_post  # noqa: F401 — re-export for test patching
from branchgate.cli.main import configure_logging, load_environment, register_commands
from branchgate.cli.policies import policies_app
from branchgate.cli.sessions import sessions_app

app = typer.Typer(help="branchgate - multi-channel session lifecycle service")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    branchgate - multi-channel session lifecycle service.
    """
    configure_logging(verbose)
    load_environment()


register_commands(app)

app.add_typer(policies_app, name="policies")
app.add_typer(sessions_app, name="sessions")

if __name__ == "__main__":
    app()
