"""
Serve command - start the inference gateway
"""

import asyncio
import typer
from rich.console import Console
from rich.table import Table
from typing import Optional

from llmserve.config import load_config
from llmserve.errors import ConfigError, LLMServeError
from llmserve.logger import setup_logging
from llmserve.serve.server import create_inference_server

console = Console()
app = typer.Typer(help="Start the inference gateway")


@app.command()
def start(
    ctx: typer.Context,
    backend: Optional[str] = typer.Option(None, help="Generation backend (pipeline, tgi)"),
    model: Optional[str] = typer.Option(None, help="Model id or path (required for pipeline)"),
    endpoint: Optional[str] = typer.Option(None, help="TGI server URL (tgi backend)"),
    host: Optional[str] = typer.Option(None, help="Server host"),
    port: Optional[int] = typer.Option(None, help="Server port"),
    max_concurrent: Optional[int] = typer.Option(None, help="Maximum concurrent requests"),
    max_new_tokens_limit: Optional[int] = typer.Option(None, help="Upper bound for max_tokens"),
    device: Optional[str] = typer.Option(None, help="Device for the pipeline backend (auto, cuda, cpu)"),
    num_shard: Optional[int] = typer.Option(None, help="TGI shard count (reported only)"),
    max_batch_total_tokens: Optional[int] = typer.Option(None, help="TGI batch token budget (reported only)"),
    quantize: Optional[str] = typer.Option(None, help="TGI quantization mode (reported only)"),
    otlp_endpoint: Optional[str] = typer.Option(None, help="OpenTelemetry endpoint URL"),
    no_metrics: bool = typer.Option(False, "--no-metrics", help="Disable the /metrics route"),
) -> None:
    """Start the gateway in front of a pipeline or a TGI server."""

    obj = ctx.obj or {}
    try:
        config = load_config(
            obj.get("config_path"),
            backend=backend,
            model=model,
            endpoint=endpoint,
            host=host,
            port=port,
            max_concurrent=max_concurrent,
            max_new_tokens_limit=max_new_tokens_limit,
            device=device,
            num_shard=num_shard,
            max_batch_total_tokens=max_batch_total_tokens,
            quantize=quantize,
            otlp_endpoint=otlp_endpoint,
            enable_metrics=False if no_metrics else None,
            log_level=obj.get("log_level"),
        )
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)

    if not obj.get("verbose"):
        setup_logging(config.log_level)

    table = Table(title="Gateway configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow")
    table.add_row("Backend", config.backend)
    table.add_row("Model", config.model or "(discovered from TGI)")
    if config.backend == "tgi":
        table.add_row("Endpoint", config.endpoint)
    else:
        table.add_row("Device", config.device)
    table.add_row("Server", f"{config.host}:{config.port}")
    table.add_row("Max concurrent", str(config.max_concurrent))
    for key, value in config.launch_options().items():
        table.add_row(key, str(value))
    console.print(table)

    try:
        server = create_inference_server(config)
        asyncio.run(server.start_server())
    except KeyboardInterrupt:
        console.print("\n[yellow]Server shutdown requested[/yellow]")
    except LLMServeError as e:
        console.print(f"[red]Server error: {e}[/red]")
        raise typer.Exit(1)
