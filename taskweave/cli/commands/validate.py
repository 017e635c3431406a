"""taskweave validate — Check workflow definitions without running them."""

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table
from rich import box

console = Console()


def validate_file(
    path: Path = typer.Argument(..., help="YAML or JSON workflow file"),
):
    """Validate every definition in PATH and print a report.

    Exits with status 1 if any definition has errors.

    Example:
        taskweave validate workflows/onboarding.yaml
    """
    from taskweave.config import TaskweaveConfig
    from taskweave.workflows.loader import load_definitions
    from taskweave.workflows.validator import WorkflowValidator

    try:
        definitions = load_definitions(path)
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    except ValidationError as exc:
        console.print(f"[red]Not a workflow definition:[/red] {exc}")
        raise typer.Exit(code=1)

    max_steps = TaskweaveConfig().max_workflow_steps
    validator = WorkflowValidator()
    failed = False
    for definition in definitions:
        issues = validator.validate(definition, max_steps=max_steps)
        errors = [i for i in issues if not i.startswith("WARNING:")]
        failed = failed or bool(errors)

        table = Table(box=box.SIMPLE, show_header=True, header_style="bold dim")
        table.add_column("Level", width=9)
        table.add_column("Message")
        for issue in issues:
            if issue.startswith("WARNING:"):
                table.add_row("[yellow]warning[/yellow]", issue[len("WARNING:"):].strip())
            else:
                table.add_row("[red]error[/red]", issue)

        mark = "[bold red]✗[/bold red]" if errors else "[bold green]✓[/bold green]"
        console.print(f"{mark} [bold]{definition.name}[/bold] [dim]({definition.id}, {len(definition.steps)} steps)[/dim]")
        if issues:
            console.print(table)

    if failed:
        raise typer.Exit(code=1)
