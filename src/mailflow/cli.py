"""Command-line interface for mailflow.

Provides commands for configuration validation, one-off maintenance, and the server.

Usage:
    python -m mailflow validate-config
    python -m mailflow sweep
    python -m mailflow stats
    python -m mailflow cleanup --days 30
    python -m mailflow send-test --to you@example.com
    python -m mailflow serve
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from mailflow.config import validate_config_file
from mailflow.core.logging import configure_logging

if TYPE_CHECKING:
    from mailflow.runtime import Runtime

console = Console()


async def _init_runtime() -> Runtime:
    """Load config and build the shared runtime.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from mailflow.config import get_config
    from mailflow.core.errors import ConfigLoadError, ConfigValidationError, TrackingStoreError
    from mailflow.runtime import build_runtime

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and edit it,\n"
            "or point MAILFLOW_CONFIG_PATH at your config file."
        )
        sys.exit(1)

    try:
        return await build_runtime(config)
    except TrackingStoreError as e:
        console.print(f"[red]Storage error:[/red] {e}")
        sys.exit(1)


def _run(coro) -> None:
    """Run an async command body with the CLI's standard error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailflow - automation email scheduling and delivery."""
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
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("sweep")
def sweep() -> None:
    """Process every due tracking record once and exit.

    Only meaningful with the sqlite storage backend; the memory backend
    starts empty on every invocation.
    """
    _run(_run_sweep())


async def _run_sweep() -> None:
    runtime = await _init_runtime()
    if runtime.config.storage.backend == "memory":
        console.print("[yellow]Warning:[/yellow] memory storage has no persisted records to sweep.")

    result = await runtime.engine.process_scheduled_emails()

    console.print(f"\n[bold]Sweep Summary[/bold] (sweep {result.sweep_id[:8]}...)")
    console.print(f"  Duration:   {result.duration_ms}ms")
    console.print(f"  Processed:  {result.processed}")
    console.print(f"  Sent:       {result.sent}")
    console.print(f"  Failed:     {result.failed}")
    console.print(f"  Skipped:    {result.skipped}")


@cli.command("stats")
def stats() -> None:
    """Show quota usage and per-automation tracking counts."""
    _run(_run_stats())


async def _run_stats() -> None:
    runtime = await _init_runtime()
    result = await runtime.engine.get_automation_stats()

    usage = result.daily_usage
    console.print(
        f"Daily quota: [cyan]{usage.count}[/cyan]/{usage.limit} "
        f"({usage.date or 'no sends yet'})"
    )
    console.print(f"Pending: {result.pending_count}  Total: {result.total_scheduled}")
    console.print(f"Success rate: {result.success_rate:.1f}%\n")

    table = Table(title="Automations")
    table.add_column("Type", style="cyan")
    table.add_column("Scheduled", justify="right")
    table.add_column("Sent", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    for name, breakdown in sorted(result.per_type_breakdown.items()):
        table.add_row(
            name, str(breakdown.scheduled), str(breakdown.sent), str(breakdown.failed)
        )
    console.print(table)


@cli.command("cleanup")
@click.option(
    "--days",
    default=None,
    type=click.IntRange(min=1),
    help="Keep records newer than this many days (default: sweep.retention_days)",
)
def cleanup(days: int | None) -> None:
    """Delete old sent, failed and cancelled tracking records."""
    _run(_run_cleanup(days))


async def _run_cleanup(days: int | None) -> None:
    runtime = await _init_runtime()
    days = days or runtime.config.sweep.retention_days
    removed = await runtime.engine.cleanup_old_tracking_records(days)
    console.print(f"Removed [cyan]{removed}[/cyan] tracking records older than {days} days")


@cli.command("send-test")
@click.option("--to", "to_email", required=True, help="Recipient address")
@click.option("--subject", default="mailflow test message", help="Subject line")
def send_test(to_email: str, subject: str) -> None:
    """Send one message through the provider chain and report which provider took it."""
    _run(_run_send_test(to_email, subject))


async def _run_send_test(to_email: str, subject: str) -> None:
    from mailflow.core.errors import DeliveryError
    from mailflow.delivery.dispatcher import NO_PROVIDER
    from mailflow.delivery.providers import EmailPayload

    runtime = await _init_runtime()
    payload = EmailPayload(
        to=to_email,
        subject=subject,
        html="<p>This is a test message from mailflow.</p>",
        text="This is a test message from mailflow.\n",
        category="test",
    )

    try:
        result = await runtime.dispatcher.send(payload)
    except DeliveryError as e:
        console.print(f"[red]Delivery failed:[/red] {e}")
        for provider_id, error in e.attempts:
            console.print(f"  [dim]{provider_id}:[/dim] {error}")
        sys.exit(1)

    if result.provider_id == NO_PROVIDER:
        console.print(
            "[yellow]No provider configured;[/yellow] the message was only logged.\n"
            "Set SENDGRID_API_KEY, BREVO_API_KEY, MAILGUN_API_KEY/MAILGUN_DOMAIN or SMTP_HOST."
        )
        return
    console.print(
        f"[green]✓[/green] Sent via [cyan]{result.provider_id}[/cyan] "
        f"(message id: {result.message_id or 'n/a'})"
    )


@cli.command("serve")
@click.option(
    "--host",
    default=None,
    help="Host to bind to (default: server.host, localhost only)",
)
@click.option(
    "--port",
    default=None,
    type=int,
    help="Port to bind to (default: server.port)",
)
def serve(host: str | None, port: int | None) -> None:
    """Start the HTTP API with the sweep, cleanup and cart-scan scheduler."""
    import uvicorn

    from mailflow.config import get_config
    from mailflow.core.errors import ConfigLoadError, ConfigValidationError
    from mailflow.web.app import create_app

    try:
        server = get_config().server
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(f"[red]Config error:[/red] {e}")
        sys.exit(1)
    host = host or server.host
    port = port or server.port

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "The API has no authentication. Put it behind a proxy or use 127.0.0.1."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
