"""conduit validate: check a tool file without running it."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from conduit.exceptions import ToolLoadError

console = Console()


def validate_tool(
    tool_file: Path = typer.Argument(..., help="Tool document (JSON or YAML)"),
    system_id: Optional[list[str]] = typer.Option(
        None, "--system-id", "-s", help="Allowed system id (repeatable)",
    ),
):
    """Report structural violations and schema errors.

    Example:
        conduit validate tool.yaml -s crm -s billing
    """
    from conduit.loader import load_document, parse_tool
    from conduit.patches import structural_violations

    try:
        document = load_document(tool_file)
    except ToolLoadError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)

    problems = structural_violations(document, system_id or None)
    if not problems:
        try:
            parse_tool(document, source=str(tool_file))
        except ToolLoadError as exc:
            problems = exc.details.get("errors", [str(exc)])

    if problems:
        console.print(f"[red]✗ {tool_file}[/red] has {len(problems)} problem(s):")
        for problem in problems:
            console.print(f"  [dim]-[/dim] {problem}")
        raise typer.Exit(1)
    console.print(f"[green]✓ {tool_file}[/green] is valid")
