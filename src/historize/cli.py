"""historize Command Line Interface.

Entry point for the historize CLI tool.
"""

from __future__ import annotations

from pathlib import Path

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from historize import __version__
from historize.contracts.errors import HistorizeError
from historize.core.config import HistorizeSettings, load_settings

__all__ = [
    "app",
]

app = typer.Typer(
    name="historize",
    help="historize: transactional change capture for tracked tables.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"historize version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """historize: transactional change capture for tracked tables."""
    from historize.core.logging import configure_logging

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)
    ctx.obj = {"verbose": verbose, "json_logs": json_logs}


def _load(ctx: typer.Context, settings: str) -> HistorizeSettings:
    settings_path = Path(settings).expanduser()
    try:
        config = load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None

    _apply_logging(ctx, config)
    return config


def _apply_logging(ctx: typer.Context, config: HistorizeSettings) -> None:
    """Reconfigure logging from settings; --verbose and --json-logs win over them."""
    from historize.core.logging import configure_logging

    flags = ctx.obj or {}
    level = "DEBUG" if flags.get("verbose") else config.logging.level
    json_output = bool(flags.get("json_logs")) or config.logging.json_output
    configure_logging(json_output=json_output, level=level)


@app.command()
def tables(
    ctx: typer.Context,
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """List tracked tables and whether each has a history table."""
    from historize.core.history.database import HistoryDB

    config = _load(ctx, settings)
    with HistoryDB.from_settings(config) as db, db.mirror() as mirror:
        tracked = [name for name in mirror.catalog.table_names() if db.naming.is_tracked(name)]
        if not tracked:
            typer.echo("No tracked tables.")
            return
        for name in tracked:
            history = db.naming.history_name(name)
            if mirror.history_catalog.has_table(history):
                typer.echo(f"{name} -> {history}")
            else:
                typer.secho(f"{name} -> (missing {history})", fg=typer.colors.YELLOW)


@app.command("create-history")
def create_history(
    ctx: typer.Context,
    table: str = typer.Argument(..., help="Tracked table to build a history table for."),
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Create the history table for an existing tracked table."""
    from historize.core.history.database import HistoryDB

    config = _load(ctx, settings)
    if not config.enabled:
        typer.echo("History logging is disabled in settings; nothing to do.", err=True)
        raise typer.Exit(1)
    with HistoryDB.from_settings(config) as db:
        try:
            with db.mirror() as mirror:
                history = mirror.create_history_table(table)
        except HistorizeError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None
    typer.echo(f"Created {history} for {table}")
