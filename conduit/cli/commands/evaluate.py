"""conduit eval: resolve an expression the way a step would."""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from conduit.exceptions import ConduitError

console = Console()


def eval_expression(
    expression: str = typer.Argument(..., help="A key name, a function expression, or a <<template>>"),
    context: Optional[str] = typer.Option(None, "--context", "-c", help="Context as a JSON object"),
    context_file: Optional[Path] = typer.Option(None, "--context-file", help="Context file (JSON or YAML)"),
):
    """Evaluate against a context and print the JSON result.

    Example:
        conduit eval "(sourceData) => sourceData.items.length" -c '{"items": [1, 2]}'
        conduit eval "Bearer <<token>>" -c '{"token": "abc"}'
    """
    from conduit.core import ExpressionResolver
    from conduit.expressions import undefined_to_none
    from conduit.loader import load_document

    try:
        if context_file is not None:
            ctx = load_document(context_file)
        else:
            ctx = json.loads(context) if context else {}
    except json.JSONDecodeError as exc:
        console.print(f"[red]Error:[/red] --context is not valid JSON: {exc}")
        raise typer.Exit(1)
    except ConduitError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)
    if not isinstance(ctx, dict):
        console.print("[red]Error:[/red] the context must be a JSON object")
        raise typer.Exit(1)

    resolver = ExpressionResolver()
    try:
        if "<<" in expression:
            value = resolver.resolve_string(expression, ctx)
        else:
            value = resolver.resolve_expression(expression, ctx)
    except ConduitError as exc:
        console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
        raise typer.Exit(1)
    console.print_json(json.dumps(undefined_to_none(value), default=str))
