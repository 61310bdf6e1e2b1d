"""
Chat command - talk to a running gateway
"""

import asyncio
import typer
import aiohttp
from rich.console import Console
from rich.table import Table
from typing import List, Optional

from llmserve.client import LLMServeClient
from llmserve.errors import APIError

console = Console()
app = typer.Typer(help="Send chat requests to a running gateway")


def build_messages(prompt: str, system: Optional[str] = None) -> List[dict]:
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


async def _send(url: str, messages: List[dict], stream: bool, **options) -> None:
    async with LLMServeClient(url) as client:
        if stream:
            async for text in client.stream_chat(messages, **options):
                console.print(text, end="", markup=False, highlight=False)
            console.print()
            return

        reply = await client.chat(messages, **options)
        choice = reply.choices[0]
        console.print(choice.message.content, markup=False, highlight=False)

        table = Table(title="Usage")
        table.add_column("Prompt tokens", style="cyan")
        table.add_column("Completion tokens", style="cyan")
        table.add_column("Finish reason", style="yellow")
        table.add_row(
            str(reply.usage.prompt_tokens),
            str(reply.usage.completion_tokens),
            choice.finish_reason or "",
        )
        console.print(table)


@app.command()
def send(
    prompt: str = typer.Argument(..., help="User message"),
    url: str = typer.Option("http://localhost:8000", help="Gateway base URL"),
    system: Optional[str] = typer.Option(None, help="Optional system message"),
    model: Optional[str] = typer.Option(None, help="Model name to request"),
    max_tokens: Optional[int] = typer.Option(None, help="Maximum tokens to generate"),
    temperature: Optional[float] = typer.Option(None, help="Sampling temperature (0 = greedy)"),
    stream: bool = typer.Option(False, "--stream", help="Stream tokens as they are generated"),
) -> None:
    """Send a single chat message and print the reply."""

    if not prompt.strip():
        console.print("[red]Error: prompt must not be empty[/red]")
        raise typer.Exit(1)

    messages = build_messages(prompt, system)
    try:
        asyncio.run(_send(url, messages, stream, model=model, max_tokens=max_tokens, temperature=temperature))
    except APIError as e:
        console.print(f"[red]Request failed: {e}[/red]")
        raise typer.Exit(1)
    except aiohttp.ClientConnectionError:
        console.print(f"[red]Could not connect to {url}. Is the gateway running?[/red]")
        raise typer.Exit(1)
