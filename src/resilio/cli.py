"""Resilio Command Line Interface."""

import asyncio
import json
import os
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from resilio.logging import configure_logging, get_logger

app = typer.Typer(
    name="resilio",
    help="Resilio: resilient execution of fallible network operations",
    no_args_is_help=True,
)
console = Console()
logger = get_logger(__name__, component="cli")

_STATUS_STYLE = {
    "available": "green",
    "degraded": "yellow",
    "maintenance": "magenta",
    "unavailable": "red",
}


@app.command()
def version():
    """Show version information."""
    from resilio import __version__

    console.print(f"Resilio version {__version__}")


@app.command()
def classify(
    message: str = typer.Argument("", help="Error message text"),
    status: Optional[int] = typer.Option(None, "--status", "-s", help="HTTP status code"),
    code: Optional[str] = typer.Option(None, "--code", "-c", help="Provider error code"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Error class name"),
):
    """Classify an error and show the retry decision for its first attempt."""
    from resilio.classification import ErrorClassifier
    from resilio.retry import RetryPolicy

    error = {"message": message, "status": status, "code": code, "name": name}
    kind, rule = ErrorClassifier().explain(error)
    policy = RetryPolicy()
    decision = policy.decide(kind, 1, 0)

    table = Table(title="Classification")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Kind", kind.value)
    table.add_row("Rule", rule)
    table.add_row("Can retry", "[green]yes[/green]" if decision.should_retry else "[red]no[/red]")
    table.add_row("Retry after", f"{decision.delay_ms} ms" if decision.should_retry else "-")
    console.print(table)


@app.command()
def policy():
    """Show the retry rules for every error kind."""
    from resilio.classification import ErrorKind
    from resilio.retry import RetryPolicy

    retry_policy = RetryPolicy()
    table = Table(title="Retry Policy")
    table.add_column("Kind", style="cyan")
    table.add_column("Retryable")
    table.add_column("Max retries", justify="right")
    table.add_column("Budget", justify="right")
    table.add_column("First delay", justify="right")
    table.add_column("Cap", justify="right")

    for kind in ErrorKind:
        rule = retry_policy.rule_for(kind)
        table.add_row(
            kind.value,
            "[green]yes[/green]" if rule.retryable else "[red]no[/red]",
            str(rule.max_retries),
            f"{rule.max_elapsed_ms / 1000:g} s",
            f"{retry_policy.next_delay(kind, 1, jitter=False)} ms",
            f"{retry_policy.max_delay_for(kind) / 1000:g} s",
        )
    console.print(table)


@app.command()
def probe(
    url: str = typer.Argument(..., help="Health endpoint URL"),
    timeout_ms: int = typer.Option(5000, "--timeout", "-t", help="Probe timeout in milliseconds"),
    get: bool = typer.Option(False, "--get", help="Use GET instead of HEAD"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Probe a health endpoint once and report the resulting status.

    Exits with code 1 when the service is not usable.
    """
    from resilio.availability import AvailabilityMonitor
    from resilio.probes import HttpProbe

    async def _probe():
        async with HttpProbe(url, timeout_ms=timeout_ms, use_head=not get) as http_probe:
            monitor = AvailabilityMonitor(http_probe)
            await monitor.check()
            return monitor.snapshot()

    snapshot = asyncio.run(_probe())

    if json_output:
        console.print_json(json.dumps(snapshot.model_dump(mode="json")))
    else:
        style = _STATUS_STYLE.get(snapshot.status.value, "white")
        console.print(f"Status: [{style}]{snapshot.status.value}[/{style}]")
        if snapshot.last_latency_ms is not None:
            console.print(f"Latency: {snapshot.last_latency_ms:.0f} ms ({snapshot.latency_quality})")
        if snapshot.last_kind is not None:
            console.print(f"Failure kind: {snapshot.last_kind.value}")

    if not snapshot.is_usable:
        raise typer.Exit(code=1)


@app.command()
def config(
    config_dir: Path = typer.Argument(Path("config"), help="Configuration directory"),
):
    """Validate a configuration directory and print the effective settings."""
    from resilio.config import load_config
    from resilio.errors import ConfigurationError

    try:
        loaded = load_config(config_dir)
    except (FileNotFoundError, ConfigurationError) as e:
        logger.error("config_load_failed", config_dir=str(config_dir), error=str(e))
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ Configuration valid[/green] ({loaded.environment})")
    console.print_json(loaded.model_dump_json())


@app.command()
def metrics(
    port: int = typer.Option(9090, "--port", "-p", help="Port to expose metrics"),
    addr: str = typer.Option("0.0.0.0", "--addr", "-a", help="Address to bind to"),
    log_level: str = typer.Option(
        os.getenv("RESILIO_LOG_LEVEL", "INFO"),
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    ),
):
    """Start the Prometheus metrics server and block until interrupted."""
    from resilio.metrics import get_metrics_collector, start_metrics_server

    configure_logging(log_level=log_level)
    get_metrics_collector()
    start_metrics_server(port=port, addr=addr)
    console.print(f"Metrics endpoint: [cyan]http://{addr}:{port}/metrics[/cyan]")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Metrics server stopped[/yellow]")


if __name__ == "__main__":
    app()
