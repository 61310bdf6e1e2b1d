"""Models command"""

import asyncio
import typer
import aiohttp
from rich.console import Console

from llmserve.client import LLMServeClient
from llmserve.errors import APIError

console = Console()
app = typer.Typer(help="List served models")


async def _fetch(url: str):
    async with LLMServeClient(url) as client:
        return await client.models()


@app.command("list")
def list_models(
    url: str = typer.Option("http://localhost:8000", help="Gateway base URL"),
) -> None:
    """List the models a gateway serves."""
    try:
        names = asyncio.run(_fetch(url))
    except (APIError, aiohttp.ClientError) as e:
        console.print(f"[red]Failed to list models: {e}[/red]")
        raise typer.Exit(1)

    for name in names:
        console.print(f"[green]{name}[/green]")
