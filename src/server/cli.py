"""Click CLI for running the relay server."""

from __future__ import annotations

import click
import uvicorn


@click.group()
def cli() -> None:
    """WhatsApp chat relay CLI."""


@cli.command()
@click.option("--host", default="0.0.0.0", help="Interface to bind.")
@click.option("--port", default=8000, type=int, help="Port to listen on.")
@click.option("--reload", is_flag=True, help="Reload on code changes (development).")
def serve(host: str, port: int, reload: bool) -> None:
    """Serve the webhook endpoints with uvicorn."""
    uvicorn.run(
        "src.server.app:create_app_from_env",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


@cli.command("check-config")
def check_config() -> None:
    """Report missing required environment variables."""
    from src.server.config import Settings

    missing = Settings.from_env().missing()
    if missing:
        click.echo(f"Missing: {', '.join(missing)}", err=True)
        raise SystemExit(1)
    click.echo("Configuration OK")
