"""
Generate command - one-shot local generation through the transformers pipeline
"""

import asyncio
import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from typing import Optional

from llmserve.backends.base import GenerationParams
from llmserve.backends.pipeline import PipelineBackend
from llmserve.errors import LLMServeError

console = Console()
app = typer.Typer(help="Run a local pipeline generation")


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Prompt text"),
    model: str = typer.Option(..., help="Model id or local path"),
    max_tokens: int = typer.Option(128, help="Maximum new tokens", min=1),
    temperature: float = typer.Option(0.7, help="Sampling temperature (0 = greedy)", min=0.0),
    top_p: float = typer.Option(1.0, help="Nucleus sampling threshold"),
    seed: Optional[int] = typer.Option(None, help="Random seed for reproducibility"),
    device: str = typer.Option("auto", help="Device to use (auto, cuda, cpu)"),
    chat: bool = typer.Option(False, "--chat", help="Wrap the prompt as a user chat turn"),
) -> None:
    """Generate text locally without starting a server."""

    if not prompt.strip():
        console.print("[red]Error: prompt must not be empty[/red]")
        raise typer.Exit(1)

    backend = PipelineBackend(model, device=device)

    try:
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
            progress.add_task(f"Loading {model} on {backend.device}...", total=None)
            backend.load()

        params = GenerationParams(max_new_tokens=max_tokens, temperature=temperature, top_p=top_p, seed=seed)
        text = backend.render([{"role": "user", "content": prompt}]) if chat else prompt
        result = asyncio.run(backend.generate(text, params))
    except LLMServeError as e:
        console.print(f"[red]Generation failed: {e}[/red]")
        raise typer.Exit(1)

    console.print(result.text, markup=False, highlight=False)
    console.print(
        f"[dim]{result.prompt_tokens} prompt + {result.completion_tokens} completion tokens, "
        f"finish reason: {result.finish_reason}[/dim]"
    )
