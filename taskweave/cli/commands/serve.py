"""taskweave serve — Start the API server."""

from typing import Optional

import typer
from rich.console import Console

console = Console()


def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind to (default: TASKWEAVE_HOST)"),
    port: Optional[int] = typer.Option(None, help="Port to listen on (default: TASKWEAVE_PORT)"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Start the taskweave API server."""
    import uvicorn
    from taskweave.config import config

    host = host or config.host
    port = port or config.port
    console.print(f"[green]Starting taskweave on {host}:{port}[/green]")
    uvicorn.run("taskweave.api.main:app", host=host, port=port, reload=reload)
