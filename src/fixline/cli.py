from __future__ import annotations

import sys
from datetime import datetime, timezone
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _settings():
    from fixline.core.config import Settings

    return Settings.from_env()


def _setup_logging(stream=None) -> None:
    """Configure centralized logging to the console and log files."""
    from fixline.core.logging_config import setup_logging

    settings = _settings()
    setup_logging(
        log_dir=settings.log_dir,
        log_level=settings.log_level,
        clear_on_launch=settings.clear_logs_on_launch,
        stream=stream,
    )


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default FIXLINE_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default FIXLINE_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """Serve the MCP tools over HTTP at /mcp."""
    _load_env()
    _setup_logging()
    settings = _settings()
    uvicorn.run(
        "fixline.mcp.server:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )


@app.command()
def stdio() -> None:
    """Serve the MCP tools over stdin/stdout (for agents that spawn the server)."""
    _load_env()
    _setup_logging(stream=sys.stderr)

    from fixline.mcp.server import build_runtime
    from fixline.mcp.stdio import run_stdio

    run_stdio(build_runtime(_settings()))


@app.command()
def login(
    token: str = typer.Option(..., prompt=True, hide_input=True, help="API access token"),
    project_id: Optional[str] = typer.Option(None, help="Default project id"),
    base_url: Optional[str] = typer.Option(None, help="Backend base URL"),
) -> None:
    """Store an access token in the credentials file."""
    _load_env()
    from fixline.core.auth import AuthState, CredentialStore

    settings = _settings()
    store = CredentialStore(settings.credentials_path)
    data = store.load() if store.exists() else {}
    data["baseUrl"] = base_url or data.get("baseUrl") or settings.base_url
    data["auth"] = AuthState.from_dict({"accessToken": token}).to_dict()
    if project_id:
        data.setdefault("defaults", {})["projectId"] = project_id
    store.save(data)
    typer.echo(f"✅ Credentials saved to {store.path}")


@app.command()
def status() -> None:
    """Show configuration and token state."""
    _load_env()
    from fixline.core.auth import CredentialStore
    from fixline.core.errors import ConfigError

    settings = _settings()
    store = CredentialStore(settings.credentials_path)
    typer.echo(f"Backend:      {settings.base_url}")
    typer.echo(f"Credentials:  {store.path}")
    try:
        auth = store.load_auth() if store.exists() else None
        project_id = settings.project_id or store.default_project_id()
    except ConfigError as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=1)
    if auth is None:
        typer.echo("Token:        not logged in (run: fixline login)")
        raise typer.Exit(code=1)
    if auth.expires_at is None:
        typer.echo("Token:        present (no expiry)")
    else:
        remaining = auth.expires_at - datetime.now(timezone.utc)
        state = "expired" if remaining.total_seconds() <= 0 else f"valid for {int(remaining.total_seconds() // 60)} min"
        typer.echo(f"Token:        {state} (expires {auth.expires_at.isoformat()})")
    typer.echo(f"Project:      {project_id or 'auto (most recent project)'}")


@app.command()
def version() -> None:
    from fixline import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
