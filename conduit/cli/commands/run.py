"""conduit run: execute a tool file from the command line."""

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from conduit.exceptions import ConduitError

console = Console()

_STATUS_COLOR = {
    "completed": "green",
    "failed": "red",
    "aborted": "yellow",
}


def _load_object(path: Optional[Path], inline: Optional[str], label: str) -> dict[str, Any]:
    from conduit.loader import load_document

    if path is not None and inline is not None:
        raise typer.BadParameter(f"give either --{label} or --{label}-file, not both")
    if path is not None:
        value = load_document(path)
    elif inline is not None:
        try:
            value = json.loads(inline)
        except json.JSONDecodeError as exc:
            raise typer.BadParameter(f"--{label} is not valid JSON: {exc}") from exc
    else:
        return {}
    if not isinstance(value, dict):
        raise typer.BadParameter(f"{label} must be a JSON object")
    return value


def _print_steps(result) -> None:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold dim", padding=(0, 1))
    table.add_column("Step", style="cyan")
    table.add_column("Mode", width=7)
    table.add_column("Items", justify="right", width=6)
    table.add_column("Result")

    for step in result.step_results:
        mode = step.outcome.kind if step.outcome is not None else "-"
        items = len(step.outcome.envelopes) if step.outcome is not None else 0
        failed = len(step.outcome.failures) if step.outcome is not None else 0
        if not step.success:
            verdict = f"[red]failed[/red] [dim]{step.error}[/dim]"
        elif failed:
            verdict = f"[yellow]ok, {failed} item(s) failed[/yellow]"
        else:
            verdict = "[green]ok[/green]"
        table.add_row(step.step_id, mode, str(items), verdict)
    console.print(table)


async def _execute(tool_path: Path, payload: dict, credentials: dict, timeout: Optional[float],
                   webhook: Optional[str] = None) -> Any:
    from conduit.core import ToolEngine
    from conduit.loader import load_tool
    from conduit.types import RunOptions

    tool = load_tool(tool_path)
    engine = ToolEngine()
    options = RunOptions(timeout_seconds=timeout, credentials=credentials, webhook_url=webhook)
    with console.status(f"[blue]Running[/blue] {tool.id}"):
        result = await engine.run_tool(tool, payload, options)
        await engine.wait_for_notifications()
    return result


def run_tool(
    tool_file: Path = typer.Argument(..., help="Tool document (JSON or YAML)"),
    payload: str = typer.Option(None, "--payload", "-p", help="Payload as a JSON object"),
    payload_file: Path = typer.Option(None, "--payload-file", help="Payload file (JSON or YAML)"),
    credentials_file: Path = typer.Option(
        None, "--credentials-file", "-c", help="Credentials file: {systemId: {key: value}}",
    ),
    timeout: float = typer.Option(None, "--timeout", "-t", help="Abort the run after this many seconds"),
    webhook: str = typer.Option(None, "--webhook", "-w", help="Notify this http(s) URL when the run ends"),
    output_only: bool = typer.Option(False, "--output-only", help="Print only the run's data as JSON"),
):
    """Execute a tool and print its step results and output.

    Example:
        conduit run tool.json --payload '{"userId": 42}'
        conduit run tool.yaml --payload-file input.yaml -c creds.json --timeout 30
        conduit run tool.json --webhook https://hooks.example.com/runs
    """
    try:
        body = _load_object(payload_file, payload, "payload")
        creds = _load_object(credentials_file, None, "credentials")
        result = asyncio.run(_execute(tool_file, body, creds, timeout, webhook))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        raise typer.Exit(1)
    except ConduitError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)

    if output_only:
        console.print_json(json.dumps(result.data, default=str))
        raise typer.Exit(0 if result.success else 1)

    status = result.status.value
    color = _STATUS_COLOR.get(status, "white")
    summary = (
        f"[bold]Tool:[/bold] {result.tool_id}\n"
        f"[bold]Run:[/bold] [dim]{result.run_id}[/dim]\n"
        f"[bold]Status:[/bold] [{color}]{status.upper()}[/{color}]"
    )
    if result.error:
        summary += f"\n[bold]Error:[/bold] [red]{result.error}[/red]"
    console.print(Panel(summary, title="[bold blue]Conduit Run[/bold blue]", border_style=color))
    _print_steps(result)
    if result.success:
        console.print_json(json.dumps(result.data, default=str))
    else:
        raise typer.Exit(1)
