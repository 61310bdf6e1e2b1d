"""
Main CLI entry point for llmserve
"""

import typer
from rich.console import Console
from rich.traceback import install
from typing import Optional
from pathlib import Path

from llmserve import __version__
from llmserve.logger import setup_logging

# Install rich traceback handler
install(show_locals=False)

console = Console()

app = typer.Typer(
    name="llmserve",
    help="Chat-completions gateway for transformers pipelines and TGI",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

from .commands import (
    serve,
    chat,
    generate,
    models,
    health,
)

app.add_typer(serve.app, name="serve", help="Start the inference gateway")
app.add_typer(chat.app, name="chat", help="Send chat requests to a running gateway")
app.add_typer(generate.app, name="generate", help="Run a local pipeline generation")
app.add_typer(models.app, name="models", help="List served models")
app.add_typer(health.app, name="health", help="Gateway and host health checks")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"llmserve {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Configuration file path (TOML)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Log level (defaults to the config file's log_level, then info)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """
    Chat-completions gateway for transformers pipelines and TGI

    Serves an OpenAI-style /v1/chat/completions API in front of an in-process
    transformers pipeline or a remote Text Generation Inference server, with
    token streaming over server-sent events.
    """
    try:
        setup_logging("debug" if verbose else (log_level or "info"))
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)

    ctx.obj = {"config_path": config, "log_level": log_level, "verbose": verbose}
    if verbose:
        console.print(f"[dim]Global options: config={config}, log_level={log_level}[/dim]")


if __name__ == "__main__":
    app()
