"""CLI entry point for the ruleflow engine.

Provides ``validate``, ``simulate``, ``import``, ``export``,
``variables`` and ``dot`` sub-commands using Click and Rich for output
formatting.  FLOW arguments accept a saved-flow file, bare Graph JSON,
a rule document (or list of them) or a GraphViz ``.dot`` file.

Usage::

    ruleflow validate flow.json --strict
    ruleflow simulate flow.json --set age=25 --config test.json
    ruleflow import rules.json -o flows/
    ruleflow export flows/*.json -o rules.json
    ruleflow variables flow.json
    ruleflow dot flow.json --set age=25 -o flow.dot
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, NoReturn

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ruleflow.flow.converter import ConversionError, detect_shape, export_rules, import_rules
from ruleflow.flow.dot import DotParseError, graph_to_dot, parse_dot_file
from ruleflow.flow.flowfile import SavedFlow, is_saved_flow, save_flow
from ruleflow.flow.models import Graph, GraphFormatError
from ruleflow.flow.simulator import ExecutionTrace, FlowSimulator, StepStatus
from ruleflow.flow.validator import Severity, ValidationResult, validate_flow
from ruleflow.flow.variables import default_configuration, detect_variables
from ruleflow.settings import EngineSettings, SettingsError

console = Console()

_LOAD_ERRORS = (
    OSError,
    json.JSONDecodeError,
    GraphFormatError,
    ConversionError,
    DotParseError,
)

_STATUS_STYLES = {
    StepStatus.INFO: "green",
    StepStatus.WARNING: "yellow",
    StepStatus.ERROR: "red",
}


def _setup_logging(verbose: bool, level_name: str = "WARNING") -> None:
    level = logging.DEBUG if verbose else logging.getLevelName(level_name)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _fail(message: str, exc: Exception) -> NoReturn:
    console.print(f"[red]{escape(message)}:[/red] {escape(str(exc))}")
    raise SystemExit(1) from exc


@click.group()
@click.version_option(package_name="ruleflow")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Validate, simulate and convert rule flow graphs."""
    load_dotenv(".env")
    load_dotenv(".env.local")
    try:
        settings = EngineSettings.from_env()
    except SettingsError as exc:
        _fail("Invalid settings", exc)
    _setup_logging(verbose, settings.log_level)
    ctx.obj = settings


@main.command()
@click.argument("flow", type=click.Path(exists=True))
@click.option("--strict", is_flag=True, help="Treat warnings as errors.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
def validate(flow: str, strict: bool, as_json: bool) -> None:
    """Validate FLOW without simulating it."""
    graphs = _load_graphs(flow)
    results = [(graph, validate_flow(graph)) for graph in graphs]

    if as_json:
        payload = [{"name": g.name, **r.to_dict()} for g, r in results]
        click.echo(json.dumps(payload[0] if len(payload) == 1 else payload, indent=2))
    else:
        for graph, result in results:
            _print_validation(graph, result)

    failed = any(not r.is_valid or (strict and r.warnings) for _, r in results)
    if failed:
        raise SystemExit(1)


@main.command()
@click.argument("flow", type=click.Path(exists=True))
@click.option("--set", "assignments", multiple=True, metavar="KEY=VALUE",
              help="Configuration value; may be repeated.")
@click.option("--config", "config_file", type=click.Path(exists=True), default=None,
              help="JSON file with configuration values.")
@click.option("--json", "as_json", is_flag=True, help="Print the trace as JSON.")
@click.pass_obj
def simulate(
    settings: EngineSettings,
    flow: str,
    assignments: tuple[str, ...],
    config_file: str | None,
    as_json: bool,
) -> None:
    """Simulate FLOW against the given configuration."""
    graphs = _load_graphs(flow)
    configuration = _load_configuration(config_file, assignments)
    simulator = FlowSimulator(settings=settings)
    traces = [(graph, simulator.simulate(graph, configuration)) for graph in graphs]

    if as_json:
        payload = [{"name": g.name, **t.to_dict()} for g, t in traces]
        click.echo(json.dumps(payload[0] if len(payload) == 1 else payload, indent=2, default=str))
        return
    for graph, trace in traces:
        _print_trace(graph, trace)


@main.command("import")
@click.argument("rules", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(file_okay=False), default=None,
              help="Directory to write saved-flow files into.")
def import_command(rules: str, output: str | None) -> None:
    """Import rule documents from RULES as flow graphs."""
    try:
        payload = json.loads(Path(rules).read_text())
        documents = payload if isinstance(payload, list) else [payload]
        shapes = [detect_shape(doc) for doc in documents]
        graphs = import_rules(payload)
    except _LOAD_ERRORS as exc:
        _fail("Failed to import rules", exc)

    table = Table(title="Imported Rules")
    table.add_column("Name", style="cyan")
    table.add_column("Shape")
    table.add_column("Nodes", justify="right")
    table.add_column("Edges", justify="right")
    table.add_column("File")
    for graph, shape in zip(graphs, shapes):
        written = ""
        if output is not None:
            written = str(save_flow(SavedFlow.from_graph(graph), output))
        table.add_row(graph.name, shape.value, str(len(graph.nodes)), str(len(graph.edges)), written)
    console.print(table)


@main.command("export")
@click.argument("flows", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None,
              help="File to write the rule documents to (stdout if omitted).")
def export_command(flows: tuple[str, ...], output: str | None) -> None:
    """Export FLOWS as rule documents."""
    graphs = [graph for flow in flows for graph in _load_graphs(flow)]
    documents = export_rules(graphs)
    text = json.dumps(documents[0] if len(documents) == 1 else documents, indent=2)
    if output is None:
        click.echo(text)
        return
    Path(output).write_text(text)
    console.print(f"[green]Exported {len(documents)} rule document(s) to {output}[/green]")


@main.command()
@click.argument("flow", type=click.Path(exists=True))
def variables(flow: str) -> None:
    """List the test variables FLOW's conditions reference."""
    for graph in _load_graphs(flow):
        detected = detect_variables(graph)
        if not detected:
            console.print(f"[yellow]No test variables detected in {graph.name}.[/yellow]")
            continue
        defaults = default_configuration(detected)
        table = Table(title=f"Test Variables: {graph.name}")
        table.add_column("Name", style="cyan")
        table.add_column("Source")
        table.add_column("Type")
        table.add_column("Default")
        for variable in detected:
            table.add_row(
                variable.name,
                variable.source.value,
                variable.data_type,
                defaults.get(variable.name, ""),
            )
        console.print(table)


@main.command()
@click.argument("flow", type=click.Path(exists=True))
@click.option("--set", "assignments", multiple=True, metavar="KEY=VALUE",
              help="Simulate with this configuration value and highlight the trace.")
@click.option("--config", "config_file", type=click.Path(exists=True), default=None,
              help="JSON configuration file; simulates and highlights the trace.")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None,
              help="File to write the DOT source to (stdout if omitted).")
@click.pass_obj
def dot(
    settings: EngineSettings,
    flow: str,
    assignments: tuple[str, ...],
    config_file: str | None,
    output: str | None,
) -> None:
    """Render FLOW as GraphViz DOT."""
    graph = _load_graphs(flow)[0]
    trace = None
    if assignments or config_file:
        configuration = _load_configuration(config_file, assignments)
        trace = FlowSimulator(settings=settings).simulate(graph, configuration)
    text = graph_to_dot(graph, trace)
    if output is None:
        click.echo(text)
        return
    Path(output).write_text(text)
    console.print(f"[green]Wrote {output}[/green]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_graphs(path: str) -> list[Graph]:
    """Load every flow graph stored at *path*."""
    try:
        if Path(path).suffix.lower() in (".dot", ".gv"):
            return [parse_dot_file(path)]
        data = json.loads(Path(path).read_text())
        if is_saved_flow(data):
            return [SavedFlow.from_dict(data).graph]
        if isinstance(data, dict) and "nodes" in data:
            return [Graph.from_dict(data, name=Path(path).stem)]
        return import_rules(data)
    except _LOAD_ERRORS as exc:
        _fail(f"Failed to load {path}", exc)


def _load_configuration(config_file: str | None, assignments: tuple[str, ...]) -> dict[str, Any]:
    configuration: dict[str, Any] = {}
    if config_file is not None:
        try:
            data = json.loads(Path(config_file).read_text())
        except (OSError, json.JSONDecodeError) as exc:
            _fail("Failed to read configuration", exc)
        if not isinstance(data, dict):
            console.print("[red]Configuration file must contain a JSON object[/red]")
            raise SystemExit(1)
        configuration.update({str(k): v for k, v in data.items()})
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        if not sep or not key.strip():
            console.print(f"[red]Invalid --set value {assignment!r}; expected KEY=VALUE[/red]")
            raise SystemExit(1)
        configuration[key.strip()] = value
    return configuration


def _print_validation(graph: Graph, result: ValidationResult) -> None:
    summary = result.summary
    console.print(
        f"[bold]{graph.name or 'flow'}[/bold]: {summary.node_count} nodes, "
        f"{summary.edge_count} edges, {summary.reachable_count} reachable"
    )
    if not result.issues:
        console.print("[green]Flow is valid.[/green]")
        return

    table = Table(title="Validation Results")
    table.add_column("Level", style="bold")
    table.add_column("Kind")
    table.add_column("Node")
    table.add_column("Message")
    for issue in result.issues:
        style = "red" if issue.severity == Severity.ERROR else "yellow"
        location = issue.node_id or ", ".join(issue.node_ids or [])
        table.add_row(
            f"[{style}]{issue.severity.value}[/{style}]", issue.kind, escape(location), escape(issue.message)
        )
    console.print(table)


def _print_trace(graph: Graph, trace: ExecutionTrace) -> None:
    table = Table(title=f"Execution Trace: {graph.name or 'flow'}")
    table.add_column("#", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Status")
    table.add_column("Message")
    for index, step in enumerate(trace.steps, start=1):
        style = _STATUS_STYLES[step.status]
        message = escape(step.message)
        if step.suggestion:
            message = f"{message}\n[dim]{escape(step.suggestion)}[/dim]"
        table.add_row(str(index), step.node_id, f"[{style}]{step.status.value}[/{style}]", message)
    console.print(table)


if __name__ == "__main__":
    main()
