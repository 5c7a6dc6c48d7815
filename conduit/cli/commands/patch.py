"""conduit patch: apply a JSON Patch batch to a tool file."""

import json
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from conduit.exceptions import ConduitError, PatchValidationError, StructuralInvalidError

console = Console()


def patch_tool(
    tool_file: Path = typer.Argument(..., help="Tool document (JSON or YAML)"),
    patches_file: Path = typer.Argument(..., help="Patch batch: a list of RFC 6902 operations"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the patched tool here"),
    system_id: Optional[list[str]] = typer.Option(
        None, "--system-id", "-s", help="Allowed system id (repeatable)",
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not print the patched document"),
):
    """Validate and apply a patch batch. The input file is never modified.

    Example:
        conduit patch tool.json edits.json -o tool.patched.json
    """
    from conduit.loader import load_document
    from conduit.patches import apply_patches, format_diff_summary

    try:
        document = load_document(tool_file)
        patches = load_document(patches_file)
        result = apply_patches(document, patches, system_ids=system_id or None)
    except (PatchValidationError, StructuralInvalidError) as exc:
        console.print(f"[red]Rejected:[/red] {exc}")
        for violation in exc.violations[1:]:
            console.print(f"  [dim]-[/dim] {violation}")
        raise typer.Exit(1)
    except ConduitError as exc:
        console.print(f"[red]Rejected:[/red] {exc}")
        raise typer.Exit(1)

    table = Table(box=box.SIMPLE, show_header=True, header_style="bold dim", title="[bold]Applied[/bold]")
    table.add_column("#", justify="right", width=3, style="dim")
    table.add_column("Operation")
    for i, diff in enumerate(result.diffs, 1):
        table.add_row(str(i), format_diff_summary(diff))
    console.print(table)

    if output is not None:
        if output.suffix.lower() in (".yaml", ".yml"):
            output.write_text(yaml.safe_dump(result.document, sort_keys=False))
        else:
            output.write_text(json.dumps(result.document, indent=2) + "\n")
        console.print(f"[green]Wrote[/green] {output}")
    elif not quiet:
        console.print_json(json.dumps(result.document))
