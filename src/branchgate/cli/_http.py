"""
Shared HTTP helpers for CLI commands that talk to the running server.
"""

import os

import typer


def get_server_url() -> str:
    """Server URL from BRANCHGATE_SERVER_URL, else the configured host and port."""
    explicit = os.getenv("BRANCHGATE_SERVER_URL")
    if explicit:
        return explicit.rstrip("/")

    from branchgate.config import CONFIG

    return f"http://{CONFIG.host}:{CONFIG.port}"


def _request(method: str, path: str, **kwargs) -> dict:
    import httpx

    url = f"{get_server_url()}{path}"
    try:
        resp = httpx.request(method, url, timeout=10.0, **kwargs)
        resp.raise_for_status()
        return resp.json()
    except httpx.ConnectError:
        typer.echo("❌ Cannot connect to branchgate server. Is it running?")
        raise typer.Exit(code=1)
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("error", str(e))
        except ValueError:
            detail = str(e)
        typer.echo(f"❌ Server error: {detail}")
        raise typer.Exit(code=1)


def _http_get(path: str, params: dict = None) -> dict:
    """Make a GET request to the running server."""
    return _request("GET", path, params=params)


def _http_post(path: str, data: dict = None) -> dict:
    """Make a POST request to the running server."""
    return _request("POST", path, json=data or {})


def _http_delete(path: str, params: dict = None) -> dict:
    """Make a DELETE request to the running server."""
    return _request("DELETE", path, params=params)
