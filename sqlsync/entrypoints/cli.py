"""sqlsync CLI entrypoint.

Command-line interface for keeping Meilisearch indexes in sync with SQLite.
"""

from __future__ import annotations

import functools
import logging
import signal
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from sqlsync.domain.config import AppConfig

from sqlsync.core.errors import SyncCliError
from sqlsync.domain.entities import CycleOutcome, CycleSummary
from sqlsync.domain.exceptions import SyncDomainError
from sqlsync.version import __version__

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def handle_cli_errors(command_name: str):
    """Decorator to handle common CLI errors.

    SyncCliError propagates unchanged to use its own formatting. Domain errors
    become SyncCliError with their hint. Anything else is reported as an
    unexpected error, with a traceback in verbose mode.

    Args:
        command_name: Name of the command for error messages.

    Returns:
        Decorated function with error handling.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (SyncCliError, click.exceptions.Exit, click.Abort):
                raise
            except SyncDomainError as e:
                raise SyncCliError(e.message, hint=e.hint) from e
            except Exception as e:
                ctx = click.get_current_context()
                if ctx.obj.get("verbose", False):
                    import traceback

                    traceback.print_exc()
                raise SyncCliError(
                    f"Unexpected error in {command_name}: {e}",
                    hint="Run with --verbose for more details",
                ) from e

        return wrapper

    return decorator


def configure_logging(verbose: bool, quiet: bool, log_level: str | None) -> None:
    """Configure root logging for the CLI process."""
    if log_level:
        level = getattr(logging, log_level.upper())
    elif verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    # Request-level noise from the HTTP stack is only useful when debugging
    if level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_config(config_path: Path) -> AppConfig:
    """Load configuration through the TOML provider (global cascade included)."""
    from sqlsync.adapters.factory import ConfigFactory

    return ConfigFactory().create_config_provider().load(config_path)


class ClickCycleReporter:
    """Prints one line per finished cycle."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet
        self._lock = threading.Lock()

    def on_cycle_complete(self, summary: CycleSummary) -> None:
        with self._lock:
            _print_summary(summary, quiet=self.quiet)


def _print_summary(summary: CycleSummary, quiet: bool = False) -> None:
    """Print a cycle summary.

    Args:
        summary: Summary to print.
        quiet: Only print failures.
    """
    target = f"{summary.table} -> {summary.index_name}"
    if summary.outcome is CycleOutcome.FAILED:
        click.echo(f"✗ {target}: {summary.error} ({summary.error_type.value})", err=True)
        if summary.failed_keys:
            shown = ", ".join(str(key) for key in summary.failed_keys[:10])
            more = len(summary.failed_keys) - 10
            suffix = f" and {more} more" if more > 0 else ""
            click.echo(f"  • failed keys: {shown}{suffix}", err=True)
        return
    if quiet:
        return
    if summary.outcome is CycleOutcome.SKIPPED:
        click.echo(f"… {target}: previous cycle still running, tick skipped")
        return
    if summary.outcome is CycleOutcome.CANCELLED:
        click.echo(f"… {target}: cancelled by shutdown")
        return

    if summary.total_changes == 0:
        click.echo(f"✓ {target}: up to date ({summary.unchanged} unchanged)")
    else:
        reindex = " (full reindex)" if summary.full_reindex else ""
        click.echo(
            f"✓ {target}: {summary.created} created, {summary.updated} updated, "
            f"{summary.deleted} deleted in {summary.duration_seconds:.2f}s{reindex}"
        )
    if summary.skipped_rows:
        click.echo(f"  • {summary.skipped_rows} row(s) skipped (null or invalid key)")


@click.group()
@click.version_option(version=__version__, prog_name="sqlsync")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Explicit log level (overrides --verbose/--quiet).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, log_level: str | None) -> None:
    """sqlsync - Keep Meilisearch indexes in sync with SQLite tables.

    Polls each configured table, detects row and schema changes, and pushes
    only what changed.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    configure_logging(verbose, quiet, log_level)


config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("sqlsync.toml"),
    show_default=True,
    help="Path to the config file.",
)


@cli.command()
@config_option
@click.pass_context
@handle_cli_errors("run")
def run(ctx: click.Context, config_path: Path) -> None:
    """Poll every configured table until interrupted.

    SIGINT or SIGTERM stops new cycles; running cycles finish first.
    """
    from sqlsync.adapters.factory import SyncEngineFactory

    config = _load_config(config_path)
    if not config.database.tables:
        raise SyncCliError(
            "No tables configured", hint="Add [[database.tables]] entries to the config"
        )

    reporter = ClickCycleReporter(quiet=ctx.obj.get("quiet", False))
    stop_requested = threading.Event()

    def _handle_shutdown_signal(signum, frame):
        click.echo("Shutting down after in-flight cycles finish...", err=True)
        stop_requested.set()

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGINT, _handle_shutdown_signal)
    signal.signal(signal.SIGTERM, _handle_shutdown_signal)

    try:
        with SyncEngineFactory(config).create_engine(reporter=reporter) as engine:
            engine.scheduler.start()
            try:
                while not stop_requested.is_set():
                    if engine.scheduler.wait(timeout=0.5):
                        break
            finally:
                engine.scheduler.stop()
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


@cli.command()
@config_option
@click.option(
    "--table",
    "-t",
    "tables",
    multiple=True,
    help="Only sync this table (repeatable).",
)
@click.pass_context
@handle_cli_errors("sync")
def sync(ctx: click.Context, config_path: Path, tables: tuple[str, ...]) -> None:
    """Run one sync cycle per table and exit."""
    from sqlsync.adapters.factory import SyncEngineFactory

    config = _load_config(config_path)
    configured = [table.name for table in config.database.tables]
    unknown = [name for name in tables if name not in configured]
    if unknown:
        raise SyncCliError(
            f"Table(s) not in config: {', '.join(unknown)}",
            hint=f"Configured tables: {', '.join(configured) or 'none'}",
        )

    with SyncEngineFactory(config).create_engine() as engine:
        summaries = engine.scheduler.run_once(list(tables) or None)

    quiet = ctx.obj.get("quiet", False)
    for summary in summaries:
        _print_summary(summary, quiet=quiet)

    failed = [s.table for s in summaries if s.outcome is CycleOutcome.FAILED]
    if failed:
        raise SyncCliError(
            f"Sync failed for {len(failed)} table(s): {', '.join(failed)}",
            hint="Unchanged state is kept; the next sync retries the same changes",
        )


@cli.command()
@click.option(
    "--database-url",
    "-d",
    required=True,
    help="SQLite path or sqlite: URL of the database to introspect.",
)
@click.option(
    "--meilisearch-host",
    default="http://localhost:7700",
    show_default=True,
    help="Meilisearch base URL.",
)
@click.option("--meilisearch-key", default=None, help="Meilisearch API key.")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("sqlsync.toml"),
    show_default=True,
    help="Where to write the generated config.",
)
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=60.0,
    show_default=True,
    help="Poll interval in seconds for every table.",
)
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing output file.")
@click.pass_context
@handle_cli_errors("generate")
def generate(
    ctx: click.Context,
    database_url: str,
    meilisearch_host: str,
    meilisearch_key: str | None,
    output: Path,
    poll_interval: float,
    force: bool,
) -> None:
    """Generate a config file from an existing database."""
    from sqlsync.adapters.factory import create_database_adapter
    from sqlsync.core.config.generate_usecase import (
        GenerateConfigUseCase,
        GenerateRequest,
    )
    from sqlsync.shared.config_io import save_config

    if output.exists() and not force:
        raise SyncCliError(
            f"{output} already exists", hint="Use --force to overwrite it"
        )

    database = create_database_adapter(database_url)
    try:
        response = GenerateConfigUseCase(database).execute(
            GenerateRequest(
                connection_string=database_url,
                meilisearch_host=meilisearch_host,
                meilisearch_api_key=meilisearch_key,
                poll_interval_seconds=poll_interval,
            )
        )
    finally:
        database.close()

    save_config(response.config, output)

    for name, reason in response.skipped_tables.items():
        click.echo(f"Warning: skipped table '{name}': {reason}", err=True)
    click.echo(
        f"✓ Wrote {output} with {len(response.config.database.tables)} table(s)"
    )


@cli.command()
@config_option
@click.pass_context
@handle_cli_errors("validate")
def validate(ctx: click.Context, config_path: Path) -> None:
    """Check a config file without contacting the database or Meilisearch."""
    config = _load_config(config_path)
    click.echo(f"✓ {config_path} is valid")
    if ctx.obj.get("quiet", False):
        return
    click.echo(f"  • Meilisearch: {config.meilisearch.host}")
    click.echo(f"  • Database: {config.database.connection_string}")
    for registration in config.registrations():
        click.echo(
            f"  • {registration.table} -> {registration.index_name} "
            f"(every {registration.poll_interval_seconds:g}s, "
            f"batch {registration.batch_size}, "
            f"concurrency {registration.max_concurrency})"
        )


if __name__ == "__main__":
    cli()
