"""Command-line interface for Mail Sweeper.

Provides commands for configuration validation, running a scan, and the API
server.

Usage:
    python -m sweeper validate-config
    python -m sweeper scan --query "in:inbox older_than:30d" --max-items 200
    python -m sweeper serve
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from sweeper.config import resolve_config_path, validate_config_file
from sweeper.core.logging import configure_logging

if TYPE_CHECKING:
    from sweeper.engine.scan import BatchProgress
    from sweeper.services import Services

console = Console()

DEFAULT_CLI_USER = "local"


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Mail Sweeper - scan, categorize and clean up a mailbox."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: $SWEEPER_CONFIG_PATH or config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    config_path = resolve_config_path(config_path)
    console.print(f"Validating config: [cyan]{config_path}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the JSON API server."""
    import uvicorn

    from sweeper.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "The API trusts the X-User-Id header. Put it behind an authenticating proxy."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


@cli.command("scan")
@click.option("--query", "-q", default=None, help="Gmail search query (default from config)")
@click.option(
    "--max-items",
    "-n",
    default=None,
    type=int,
    help="Maximum messages to scan (default from config)",
)
@click.option(
    "--user",
    "user_id",
    default=DEFAULT_CLI_USER,
    show_default=True,
    help="User id the scan is recorded under",
)
def scan(query: str | None, max_items: int | None, user_id: str) -> None:
    """Scan the mailbox and print the suggested cleanup.

    Runs every batch to completion. Nothing is changed in the mailbox;
    suggestions are stored for review and execution through the API.
    """
    try:
        asyncio.run(_run_scan(query, max_items, user_id))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow] Resume through the API with the scan id.")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _init_services() -> Services:
    """Load config and build services. Prints an actionable error and exits on failure."""
    from sweeper.config import get_config
    from sweeper.core.errors import ConfigLoadError, ConfigValidationError
    from sweeper.services import build_services

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and edit it."
        )
        sys.exit(1)

    return await build_services(config)


async def _run_scan(query: str | None, max_items: int | None, user_id: str) -> None:
    """Async implementation of the scan command."""
    services = await _init_services()
    scan_config = services.config.scan
    orchestrator = services.orchestrator

    started = await orchestrator.start_scan(
        user_id,
        query or scan_config.default_query,
        max_items or scan_config.default_max_items,
    )
    console.print(
        f"Scan [cyan]{started.scan_id}[/cyan]: {started.total_ids} messages listed"
    )

    progress = await orchestrator.get_progress(user_id, started.scan_id)
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    ) as bar:
        task = bar.add_task("Classifying", total=started.total_ids)
        while progress.next_offset is not None:
            progress = await orchestrator.process_next_batch(
                user_id, started.scan_id, progress.next_offset
            )
            bar.update(task, completed=progress.processed_count)

    _print_summary(services, progress)
    if progress.phase == "completed":
        scan_record = await services.store.get_scan(user_id, started.scan_id)
        if scan_record is not None:
            console.print(
                f"LLM calls: {scan_record.llm_calls}, tokens in/out: "
                f"{scan_record.llm_input_tokens}/{scan_record.llm_output_tokens}, "
                f"estimated cost: ${scan_record.llm_cost_usd:.4f}"
            )


def _print_summary(services: Services, progress: BatchProgress) -> None:
    if progress.phase == "failed":
        console.print(f"\n[red]Scan failed:[/red] {progress.error}")
        sys.exit(1)

    table = Table(title="Categories")
    table.add_column("Category", style="cyan")
    table.add_column("Messages", justify="right")
    for category, count in sorted(
        progress.category_counts.items(), key=lambda item: item[1], reverse=True
    ):
        table.add_row(category, str(count))
    console.print(table)

    if progress.skipped_count:
        console.print(f"[yellow]Skipped {progress.skipped_count} unreadable messages[/yellow]")
    console.print(
        f"\n[green]✓[/green] Scan {progress.scan_id} {progress.phase}: "
        f"{progress.processed_count}/{progress.total_ids} processed"
    )


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
