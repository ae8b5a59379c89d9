"""
Top-level CLI commands: serve.
"""

import os
from typing import Optional

import typer
from dotenv import load_dotenv


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    from branchgate.logger import setup_logging

    log_level = "DEBUG" if verbose else "WARNING"
    setup_logging(level=log_level)

    if not verbose:
        os.environ["LOGURU_LEVEL"] = "WARNING"


def load_environment():
    """Load BRANCHGATE_* settings from a .env file and refresh CONFIG."""
    from branchgate.config import CONFIG

    if load_dotenv():
        CONFIG.reload()


def register_commands(app: typer.Typer):
    @app.command()
    def serve(
        host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
        port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
    ):
        """Run the session API server."""
        import uvicorn

        from branchgate.config import CONFIG
        from branchgate.logger import setup_logging
        from branchgate.server import create_app

        setup_logging(level=CONFIG.log_level, log_file=CONFIG.log_file)

        host = host or CONFIG.host
        port = port or CONFIG.port
        typer.echo(f"🚀 Serving branchgate on http://{host}:{port}")
        uvicorn.run(create_app(CONFIG), host=host, port=port, log_level=CONFIG.log_level.lower())
