"""taskweave CLI — Typer application."""

import logging

import typer
from rich.console import Console

from taskweave.version import __version__

app = typer.Typer(
    name="taskweave",
    help="taskweave — workflow execution engine.",
    no_args_is_help=True,
    invoke_without_command=True,
)
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", is_eager=True, help="Show version"),
):
    """taskweave CLI."""
    from taskweave.config import config
    logging.basicConfig(level=config.log_level.upper())
    if version:
        console.print(f"taskweave v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


from taskweave.cli.commands import run, serve, validate  # noqa: E402

app.command(name="serve", help="Start the HTTP API server")(serve.serve)
app.command(name="validate", help="Validate workflow definitions in a YAML/JSON file")(validate.validate_file)
app.command(name="run", help="Run a workflow file against an in-memory engine")(run.run_workflow)


if __name__ == "__main__":
    app()
