"""Conduit CLI: Typer application."""

import logging

import typer
from rich.console import Console

from conduit.config import config
from conduit.version import __version__

app = typer.Typer(
    name="conduit",
    help="Conduit: run declarative multi-step tools and edit them with JSON Patch.",
    no_args_is_help=True,
    invoke_without_command=True,
)
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", is_eager=True, help="Show version"),
    log_level: str = typer.Option(None, "--log-level", help="Override CONDUIT_LOG_LEVEL"),
):
    """Conduit CLI."""
    if version:
        console.print(f"Conduit v{__version__}")
        raise typer.Exit()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


from conduit.cli.commands import run, patch, validate, evaluate  # noqa: E402

app.command(name="run", help="Execute a tool file against a payload")(run.run_tool)
app.command(name="patch", help="Apply a JSON Patch batch to a tool file")(patch.patch_tool)
app.command(name="validate", help="Check a tool file against the structural rules")(validate.validate_tool)
app.command(name="eval", help="Resolve one expression against a JSON context")(evaluate.eval_expression)


if __name__ == "__main__":
    app()
