"""Operator command line for backup, restore and health of the managed stack.

Lifecycle commands (start, stop, logs, shell) stay with the container runtime
itself; this CLI only wraps the operations that need safety checks.
"""
from __future__ import annotations

import json
import sqlite3
import textwrap
from pathlib import Path
from typing import Callable

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .backup import BackupEngine, list_backup_sets, restorable_timestamps
from .config import AppConfig, load_config
from .errors import ConfigurationError, next_step_hint
from .health import HealthAggregator
from .k8s import KubernetesAuthenticationError
from .logging_setup import configure_logging
from .metadata import OperationHistoryStore
from .models import CheckName, HealthReport, RestoreState
from .restore import RestoreEngine
from .runtime import RuntimeGateway, build_runtime_gateway

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

console = Console()
logger = structlog.get_logger(__name__)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="YAML file overriding NSM_* environment defaults.",
    dir_okay=False,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Backup, restore and health checks for an application + PostgreSQL stack.

        Backups land in the configured backup directory as database_<ts>.sql.gz,
        files_<ts>.tar.gz and env_<ts>. Restores stop the whole stack and ask for
        confirmation before touching any data.
        """
    ).strip(),
)


def _print_status(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}")


def _print_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {escape(message)}")


def _print_error(message: str) -> None:
    console.print(f"[red]✗[/red] {escape(message)}")


@app.callback()
def _root(
    ctx: typer.Context,
    config_file: Path | None = CONFIG_FILE_OPTION,
    log_level: str = typer.Option("WARNING", "--log-level", help="Controller log level."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit controller logs as JSON lines."),
) -> None:
    """Load settings once for every command."""
    try:
        configure_logging(log_level, json_output=json_logs)
    except ValueError as error:
        _print_error(str(error))
        raise typer.Exit(code=EXIT_USAGE) from error

    try:
        ctx.obj = load_config(config_file)
    except ConfigurationError as error:
        _print_error(str(error))
        raise typer.Exit(code=EXIT_USAGE) from error


def _config(ctx: typer.Context) -> AppConfig:
    config = ctx.obj
    if isinstance(config, AppConfig):
        return config
    return load_config(None)


def _gateway(config: AppConfig) -> RuntimeGateway:
    try:
        return build_runtime_gateway(config)
    except (ConfigurationError, KubernetesAuthenticationError) as error:
        _print_error(str(error))
        raise typer.Exit(code=EXIT_FAILURE) from error


def _record(config: AppConfig, write: Callable[[OperationHistoryStore], None]) -> None:
    try:
        store = OperationHistoryStore(config.metadata_db_path)
        store.initialize()
        write(store)
    except (OSError, sqlite3.Error) as error:
        logger.warning("history_record_failed", path=str(config.metadata_db_path), error=str(error))


def _prompt_confirmation(prompt: str) -> str | None:
    try:
        return typer.prompt(prompt.rstrip(), default="", show_default=False, prompt_suffix=" ")
    except typer.Abort:
        return None


def _print_available_backups(config: AppConfig) -> None:
    timestamps = restorable_timestamps(config.backup_dir)
    if not timestamps:
        console.print(f"No complete backups found in {config.backup_dir}")
        return
    console.print("Available backups:")
    for timestamp in timestamps:
        console.print(f"  {timestamp}")


@app.command()
def backup(ctx: typer.Context) -> None:
    """Create a database dump, data archive and env snapshot sharing one timestamp."""
    config = _config(ctx)
    engine = BackupEngine(gateway=_gateway(config), config=config)

    console.print("Creating backup...")
    result = engine.create_backup()
    _record(config, lambda store: store.record_backup(result))

    if result.status == "success":
        _print_status("Backup created:")
        for label, path in zip(("Database", "Files", "Config"), result.artifacts, strict=False):
            console.print(f"  {label}: {path}")
        return

    _print_error(next_step_hint(result.message))
    if result.artifacts:
        console.print("Partial artifacts kept for inspection:")
        for path in result.artifacts:
            console.print(f"  {path}")
    raise typer.Exit(code=EXIT_FAILURE)


@app.command()
def restore(
    ctx: typer.Context,
    timestamp: str | None = typer.Argument(None, help="Backup timestamp, for example 20241201_120000."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the interactive confirmation. Intended for automation only.",
    ),
) -> None:
    """Restore database and data directory from a complete backup set."""
    config = _config(ctx)
    if timestamp is None:
        console.print("Usage: nerdy-stack-manager restore <timestamp>")
        _print_available_backups(config)
        raise typer.Exit(code=EXIT_USAGE)

    engine = RestoreEngine(gateway=_gateway(config), config=config, confirm=_prompt_confirmation)
    console.print(f"Restoring from backup {timestamp}...")
    result = engine.restore(timestamp, assume_yes=yes)
    _record(config, lambda store: store.record_restore(result))

    if result.status == "success":
        _print_status("Restore completed!")
        return
    if result.status == "aborted" and result.failed_stage == "confirm":
        console.print("Restore cancelled")
        return
    if result.status == "aborted":
        _print_error(next_step_hint(result.message))
        _print_available_backups(config)
        raise typer.Exit(code=EXIT_USAGE)

    _print_error(next_step_hint(result.message))
    if RestoreState.STOPPED in result.transitions:
        console.print(f"Restore stopped in state {result.state.value}; the service was left stopped.")
    else:
        console.print("Restore aborted before any data was modified.")
    raise typer.Exit(code=EXIT_FAILURE)


@app.command()
def health(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON."),
) -> None:
    """Check containers, application endpoint, database readiness and disk usage."""
    config = _config(ctx)
    report = HealthAggregator(gateway=_gateway(config), config=config).check_health()

    if json_output:
        typer.echo(json.dumps(_report_payload(report), indent=2))
    else:
        console.print("=== Health Check ===")
        for check in report.checks:
            if check.ok:
                _print_status(check.detail)
            elif check.name == CheckName.DISK_OK:
                _print_warning(check.detail)
            else:
                _print_error(check.detail)

    if not report.healthy:
        raise typer.Exit(code=EXIT_FAILURE)


@app.command("list")
def list_backups(ctx: typer.Context) -> None:
    """List backup sets, including incomplete ones that cannot be restored."""
    config = _config(ctx)
    statuses = list_backup_sets(config.backup_dir)
    if not statuses:
        console.print(f"No backups found in {config.backup_dir}")
        return

    table = Table("Timestamp", "Status", "Missing")
    for status in statuses:
        table.add_row(
            status.timestamp,
            "[green]complete[/green]" if status.is_complete else "[red]incomplete[/red]",
            ", ".join(kind.value for kind in status.missing) or "-",
        )
    console.print(table)


@app.command()
def history(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", min=1, help="Number of entries to show."),
) -> None:
    """Show recent backup and restore outcomes."""
    config = _config(ctx)
    if not config.metadata_db_path.exists():
        console.print("No operation history yet.")
        return

    store = OperationHistoryStore(config.metadata_db_path)
    store.initialize()
    rows = store.get_recent_results(limit=limit)
    if not rows:
        console.print("No operation history yet.")
        return

    table = Table("Finished", "Operation", "Target", "Status", "Message")
    for row in rows:
        table.add_row(
            str(row["finished_at"]),
            str(row["operation"]),
            str(row["target"]),
            str(row["status"]),
            escape(str(row["message"] or "")),
        )
    console.print(table)


def _report_payload(report: HealthReport) -> dict[str, object]:
    return {
        "healthy": report.healthy,
        "checked_at": report.checked_at,
        "checks": [
            {"name": check.name.value, "ok": check.ok, "detail": check.detail}
            for check in report.checks
        ],
    }


def main() -> None:
    app()


if __name__ == "__main__":
    main()
