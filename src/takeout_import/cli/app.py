"""Typer CLI root application with serve command."""

import typer

from takeout_import.core.config import get_settings
from takeout_import.core.logging import setup_logging

app = typer.Typer(name="takeout-import", help="Google Takeout import worker orchestration CLI")


@app.callback()
def _main_callback() -> None:
    """Initialize logging for all CLI commands."""
    settings = get_settings()
    setup_logging(settings.log_level, log_dir=settings.log_dir)


@app.command()
def serve(
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload for development"),
    host: str = typer.Option("0.0.0.0", "--host", help="Bind host"),  # noqa: S104
    port: int = typer.Option(8000, "--port", help="Bind port"),
) -> None:
    """Start the API server."""
    import uvicorn

    uvicorn.run(
        "takeout_import.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


def _register_subcommands() -> None:
    """Register all CLI subcommand groups."""
    from takeout_import.cli.db_cmd import db_app
    from takeout_import.cli.workers_cmd import workers_app

    app.add_typer(db_app, name="db", help="Database migration commands")
    app.add_typer(workers_app, name="workers", help="Inspect and sweep Fly worker machines and volumes")


_register_subcommands()
