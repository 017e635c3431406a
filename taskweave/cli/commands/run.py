"""taskweave run — Execute a workflow file against an in-memory engine."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich import box

console = Console()

_STATUS_COLOR = {
    "completed": "green",
    "failed": "red",
    "cancelled": "red",
    "waiting": "yellow",
    "in_progress": "cyan",
    "pending": "dim",
    "running": "cyan",
}


def _print_tasks(run, tasks) -> None:
    color = _STATUS_COLOR.get(run.status.value, "white")
    console.print(f"Run [bold]{run.id}[/bold]: [{color}]{run.status.value}[/{color}]")

    table = Table(box=box.SIMPLE, show_header=True, header_style="bold dim", padding=(0, 1))
    table.add_column("Task", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Title")
    for task in tasks:
        status = task.status.value
        c = _STATUS_COLOR.get(status, "white")
        table.add_row(
            task.id[:8],
            task.workflow_step_id or "—",
            task.task_type.value,
            f"[{c}]{status}[/{c}]",
            task.title,
        )
    console.print(table)
    if run.error:
        console.print(f"[red]Error:[/red] {run.error}")


async def _run(path: Path, workflow_id: Optional[str], payload: dict):
    from taskweave.db.memory import InMemoryDocumentStore
    from taskweave.core.orchestrator import RunOrchestrator
    from taskweave.types import StartWorkflowInput
    from taskweave.workflows.loader import load_definitions

    definitions = load_definitions(path)
    if not definitions:
        raise typer.BadParameter(f"No workflow definitions in {path}")
    orchestrator = RunOrchestrator(InMemoryDocumentStore())
    await orchestrator.start(sweep=False)
    try:
        for definition in definitions:
            await orchestrator.workflows.register(definition)
        target = workflow_id or definitions[0].id
        run, _root = await orchestrator.start_workflow(
            StartWorkflowInput(workflow_id=target, input_payload=payload, source="cli"),
        )
        return await orchestrator.get_workflow_run_with_tasks(run.id)
    finally:
        await orchestrator.stop()


def run_workflow(
    path: Path = typer.Argument(..., help="YAML or JSON workflow file"),
    input_json: str = typer.Option("{}", "--input", "-i", help="Input payload as JSON"),
    workflow_id: Optional[str] = typer.Option(None, "--workflow", "-w", help="Definition id (default: first in file)"),
):
    """Start a run and print the tasks it produced.

    Outbound HTTP steps call their real URLs.  Agent and manual steps stay
    pending, so the run usually stops at the first of them.

    Example:
        taskweave run workflows/onboarding.yaml --input '{"user": {"name": "Ann"}}'
    """
    from taskweave.exceptions import TaskweaveError

    try:
        payload = json.loads(input_json)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"--input is not valid JSON: {exc}")
    if not isinstance(payload, dict):
        raise typer.BadParameter("--input must be a JSON object")

    try:
        run, tasks = asyncio.run(_run(path, workflow_id, payload))
    except TaskweaveError as exc:
        console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
        for violation in getattr(exc, "violations", []):
            console.print(f"  • {violation}")
        raise typer.Exit(code=1)
    _print_tasks(run, tasks)
