"""
CLI interface for nodeflow
"""
import json
import sys
from pathlib import Path

import click
import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich import box

from ..core.config import Config
from ..core.execution import ExecutionEngine, ExecutionOptions, ExecutionStatus, GraphInvalid, GraphCyclic
from ..core.services import SimulatedServices, HttpServices
from ..utils.logger import redirect_logs

console = Console()

_STATE_STYLES = {
    "Succeeded": "green",
    "Failed": "bold red",
    "Skipped": "yellow",
    "Cancelled": "magenta",
}


def _load_workflow(path: str):
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except ValueError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}")


def _trace_table(log) -> Table:
    table = Table(box=box.SIMPLE_HEAVY, show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Node")
    table.add_column("Type", style="cyan")
    table.add_column("Iteration", style="dim")
    table.add_column("State")
    table.add_column("ms", justify="right")
    table.add_column("Detail", overflow="fold")

    for index, entry in enumerate(log, 1):
        state = entry["state"]
        detail = entry.get("error") or entry.get("skipReason") or ""
        if entry.get("coercions"):
            detail = (detail + " " if detail else "") + f"coerced {', '.join(entry['coercions'])}"
        if len(entry.get("attempts", [])) > 1:
            detail = (detail + " " if detail else "") + f"({len(entry['attempts'])} attempts)"
        table.add_row(
            str(index),
            entry["nodeId"],
            entry["type"],
            ".".join(str(i) for i in entry["iteration"]) or "-",
            Text(state, style=_STATE_STYLES.get(state, "")),
            f"{entry['elapsedMs']:.1f}",
            detail,
        )
    return table


@click.group()
def cli():
    """nodeflow - workflow execution engine"""
    pass


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--input', 'input_text', default=None, help='Top-level input (JSON, or raw text)')
@click.option('--input-file', type=click.Path(exists=True, dir_okay=False), default=None, help='Read the top-level input from a file')
@click.option('--concurrency', type=click.IntRange(min=1), default=None, help='Maximum nodes running at once')
@click.option('--deadline-ms', type=click.FloatRange(min=0, min_open=True), default=None, help='Execution deadline in milliseconds')
@click.option('--verbose', is_flag=True, help='Include full node inputs/outputs in the trace')
@click.option('--http/--simulate', 'use_http', default=False, help='Call real webhooks instead of simulated services')
@click.option('--json', 'as_json', is_flag=True, help='Print the execution record as JSON')
def run(workflow_file, input_text, input_file, concurrency, deadline_ms, verbose, use_http, as_json):
    """Execute a workflow file"""
    workflow = _load_workflow(workflow_file)
    if input_file:
        input_text = Path(input_file).read_text(encoding="utf-8")

    options = {"verbose": verbose}
    if concurrency is not None:
        options["concurrency"] = concurrency
    if deadline_ms is not None:
        options["deadline_ms"] = deadline_ms

    engine = ExecutionEngine()
    services = HttpServices() if use_http else SimulatedServices()
    # Keep stdout clean for the JSON record
    previous_stream = redirect_logs(sys.stderr) if as_json else None
    try:
        result = engine.execute(workflow, input=input_text, options=ExecutionOptions(**options), services=services)
    finally:
        if previous_stream is not None:
            redirect_logs(previous_stream)

    if as_json:
        workflow_id = workflow.get("id", Path(workflow_file).stem) if isinstance(workflow, dict) else Path(workflow_file).stem
        click.echo(json.dumps(result.to_record(workflow_id), indent=2, ensure_ascii=False))
    else:
        if result.log:
            console.print(_trace_table(result.log))
        style = "green" if result.success else "red"
        body = Text()
        body.append(f"Status: {result.status.value}\n", style=f"bold {style}")
        body.append(f"Elapsed: {result.elapsed_ms:.1f} ms\n")
        if result.error:
            body.append(f"Error ({result.error_kind}): {result.error}\n", style="red")
        body.append("Output: ")
        body.append(json.dumps(result.output, ensure_ascii=False, default=str))
        console.print(Panel(body, title=Path(workflow_file).name, border_style=style))

    sys.exit(0 if result.status == ExecutionStatus.COMPLETED else 1)


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file):
    """Validate a workflow file without running it"""
    workflow = _load_workflow(workflow_file)
    try:
        graph = ExecutionEngine().validate(workflow)
    except (GraphInvalid, GraphCyclic) as e:
        console.print(f"[bold red]✗ {e.kind}[/bold red]")
        problems = e.problems if isinstance(e, GraphInvalid) else [str(e)]
        for problem in problems:
            console.print(f"  • {problem}")
        sys.exit(1)

    console.print(f"[bold green]✓ Valid[/bold green] {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    console.print(f"  Outputs: {', '.join(graph.output_nodes) or '-'}")
    if graph.loops:
        console.print(f"  Loops: {', '.join(sorted(graph.loops))}")
    if graph.dead:
        console.print(f"  [yellow]Unreachable: {', '.join(sorted(graph.dead))}[/yellow]")


@cli.command()
@click.option('--port', default=None, type=int, help='Port to run the API server on')
@click.option('--host', default=None, help='Host to bind to')
def serve(port, host):
    """Run the API server"""
    if not Config.validate():
        click.echo("❌ Configuration validation failed. Please check your environment variables.")
        sys.exit(1)

    from ..api.server import app

    host = host or Config.API_HOST
    port = port or Config.API_PORT
    click.echo("🚀 Starting nodeflow API server...")
    click.echo(f"   Host: {host}")
    click.echo(f"   Port: {port}")

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
