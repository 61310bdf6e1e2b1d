"""Health monitoring command"""

import asyncio
import json
import time
import typer
import aiohttp
from rich.console import Console
from rich.table import Table
from pathlib import Path
from typing import Any, Dict, Optional

from llmserve.client import LLMServeClient
from llmserve.errors import APIError
from llmserve.metrics.health import HealthManager

console = Console()
app = typer.Typer(help="Gateway and host health checks")

STATUS_COLOR = {
    "healthy": "green",
    "warning": "yellow",
    "critical": "red",
    "unknown": "white",
}

KEY_METRICS = (
    ("cpu_usage", "CPU: {:.1f}%"),
    ("memory_usage", "Mem: {:.1f}%"),
    ("disk_usage", "Disk: {:.1f}%"),
    ("error_rate", "Errors: {:.1f}%"),
    ("avg_latency", "Latency: {:.3f}s"),
    ("active_requests", "Active: {}"),
)


def _display_components(components: Dict[str, Dict[str, Any]], overall: str) -> None:
    """Display health reports in a formatted table."""
    color = STATUS_COLOR.get(overall, "white")
    console.print(f"\n[{color}]Overall Status: {overall.upper()}[/{color}]")
    console.print(f"Last Updated: {time.strftime('%Y-%m-%d %H:%M:%S')}")

    table = Table(title="Component Health Details")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Checks", style="blue")
    table.add_column("Key Metrics", style="magenta")
    table.add_column("Message", style="white")

    for name, report in components.items():
        status = report.get("status", "unknown")
        status_color = STATUS_COLOR.get(status, "white")

        checks = report.get("checks", {})
        passed = sum(1 for ok in checks.values() if ok)

        metrics = report.get("metrics", {})
        key_metrics = [fmt.format(metrics[key]) for key, fmt in KEY_METRICS if key in metrics]

        message = report.get("message", "")
        table.add_row(
            name.title(),
            f"[{status_color}]{status}[/{status_color}]",
            f"{passed}/{len(checks)} passed",
            "; ".join(key_metrics[:3]),
            message[:50] + "..." if len(message) > 50 else message,
        )

    console.print(table)


async def _fetch_health(url: str) -> Dict[str, Any]:
    async with LLMServeClient(url) as client:
        return await client.health()


@app.command()
def check(
    url: str = typer.Option("http://localhost:8000", help="Gateway base URL"),
    save_report: Optional[Path] = typer.Option(None, help="Save health report to file"),
) -> None:
    """Check the health of a running gateway."""

    console.print(f"[blue]Checking {url}...[/blue]")
    try:
        payload = asyncio.run(_fetch_health(url))
    except (APIError, aiohttp.ClientError) as e:
        console.print(f"[red]Health check failed: {e}[/red]")
        raise typer.Exit(1)

    backend_state = "[green]up[/green]" if payload.get("backend_healthy") else "[red]down[/red]"
    console.print(f"Backend: {payload.get('backend')} ({payload.get('model')}) {backend_state}")
    _display_components(payload.get("components", {}), payload.get("status", "unknown"))

    if save_report:
        save_report.write_text(json.dumps(payload, indent=2))
        console.print(f"[green]Health report saved to {save_report}[/green]")

    if not payload.get("backend_healthy"):
        raise typer.Exit(1)


@app.command()
def local(
    save_report: Optional[Path] = typer.Option(None, help="Save health report to file"),
) -> None:
    """Show health of the local host."""

    health_manager = HealthManager(cpu_interval=0.5)
    reports = health_manager.get_current_health()
    overall = health_manager.get_overall_status(reports)
    _display_components({name: report.to_dict() for name, report in reports.items()}, overall.value)

    if save_report:
        health_manager.save_health_report(str(save_report))
        console.print(f"[green]Health report saved to {save_report}[/green]")
