"""GraphViz DOT interchange for flow graphs.

Uses the ``pydot`` library to read flows authored as DOT and to render
graphs (optionally overlaid with an execution trace) back to DOT.

Node kind resolution is shape-based: a node's shape selects its kind via
:data:`SHAPE_KIND_MAP`, and an explicit ``type`` attribute overrides it.
Node payloads come from attributes: ``label`` for every kind,
``variable``/``value`` for inputs, ``condition`` for conditions, ``code``
for functions, ``id_label`` for starts and ``link_target`` for ends.
Condition edges carry a ``branch`` attribute, or a ``true``/``false``
label.

Example::

    digraph adult_check {
        start [shape=Mdiamond]
        age   [shape=parallelogram, variable="age", value="25"]
        check [shape=diamond, condition="age >= 18"]
        adult [shape=Msquare, label="Adult"]
        minor [shape=Msquare, label="Minor"]
        start -> age -> check
        check -> adult [branch=true]
        check -> minor [branch=false]
    }
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import pydot

from ruleflow.flow.models import (
    Branch,
    ConditionData,
    Edge,
    EndData,
    FunctionData,
    Graph,
    InputData,
    Node,
    NodeKind,
    Payload,
    Position,
    StartData,
)

logger = logging.getLogger(__name__)


class DotParseError(Exception):
    """Raised when DOT content cannot be turned into a flow graph."""


SHAPE_KIND_MAP: dict[str, NodeKind] = {
    "Mdiamond": NodeKind.START,
    "Msquare": NodeKind.END,
    "diamond": NodeKind.CONDITION,
    "parallelogram": NodeKind.INPUT,
    "box": NodeKind.FUNCTION,
}
KIND_SHAPE_MAP: dict[NodeKind, str] = {kind: shape for shape, kind in SHAPE_KIND_MAP.items()}

VISITED_COLOR = "palegreen"
FAILED_COLOR = "salmon"

_ESCAPE_RE = re.compile(r'\\(["\\n])')
_PSEUDO_NODES = ("node", "edge", "graph", "")


def parse_dot_file(path: str | Path) -> Graph:
    """Parse a DOT file at *path* and return a :class:`Graph`.

    Raises:
        DotParseError: If the file cannot be parsed.
        FileNotFoundError: If *path* does not exist.
    """
    path = Path(path)
    return parse_dot_string(path.read_text(), name=path.stem)


def parse_dot_string(dot_content: str, name: str = "flow") -> Graph:
    """Parse a DOT string and return a :class:`Graph`.

    Args:
        dot_content: Raw DOT source text.
        name: Fallback graph name if the DOT graph is unnamed.

    Raises:
        DotParseError: If the DOT content is invalid or empty, or a node
            declares an unknown ``type``.
    """
    graphs = pydot.graph_from_dot_data(dot_content)
    if not graphs:
        raise DotParseError("No graph found in DOT content")

    dot_graph = graphs[0]
    graph_name = _unquote(dot_graph.get_name() or "") or name

    nodes: list[Node] = []
    edges: list[Edge] = []
    _collect(dot_graph, nodes, edges, {}, {})

    logger.debug("Parsed DOT graph %r: %d nodes, %d edges", graph_name, len(nodes), len(edges))
    return Graph(nodes=tuple(nodes), edges=tuple(edges), name=graph_name)


def graph_to_dot(graph: Graph, trace: Any | None = None) -> str:
    """Render *graph* as DOT source.

    Args:
        graph: The graph to render.
        trace: Optional :class:`~ruleflow.flow.simulator.ExecutionTrace`;
            visited nodes are filled green and nodes with error records red.
    """
    visited: set[str] = set()
    failed: set[str] = set()
    if trace is not None:
        visited = set(trace.visited())
        failed = {s.node_id for s in trace.steps if s.status.value == "error"}

    dot = pydot.Dot(_quote(graph.name or "flow"), graph_type="digraph")
    dot.set("rankdir", "TB")
    for node in graph.nodes:
        attrs = _node_attrs(node)
        if node.id in failed:
            attrs.update(style="filled", fillcolor=FAILED_COLOR)
        elif node.id in visited:
            attrs.update(style="filled", fillcolor=VISITED_COLOR)
        dot.add_node(pydot.Node(_quote(node.id), **attrs))
    for edge in graph.edges:
        attrs = {"id": _quote(edge.id)}
        if edge.branch is not None:
            attrs["branch"] = edge.branch.value
            attrs["label"] = edge.branch.value
        dot.add_edge(pydot.Edge(_quote(edge.source), _quote(edge.target), **attrs))
    return dot.to_string()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _collect(
    dot_graph: pydot.Dot | pydot.Subgraph,
    nodes: list[Node],
    edges: list[Edge],
    node_defaults: dict[str, str],
    edge_defaults: dict[str, str],
) -> None:
    """Gather nodes and edges from *dot_graph* and its subgraphs."""
    node_defaults = dict(node_defaults)
    edge_defaults = dict(edge_defaults)
    for dot_node in dot_graph.get_nodes():
        raw_name = _unquote(dot_node.get_name())
        if raw_name == "node":
            node_defaults.update(_clean_attrs(dot_node.obj_dict.get("attributes", {})))
        elif raw_name == "edge":
            edge_defaults.update(_clean_attrs(dot_node.obj_dict.get("attributes", {})))

    for dot_node in dot_graph.get_nodes():
        raw_name = _unquote(dot_node.get_name())
        if raw_name in _PSEUDO_NODES:
            continue
        nodes.append(_build_node(dot_node, raw_name, node_defaults))

    for index, dot_edge in enumerate(dot_graph.get_edges(), start=len(edges)):
        edges.append(_build_edge(dot_edge, edge_defaults, index))

    for subgraph in dot_graph.get_subgraphs():
        _collect(subgraph, nodes, edges, node_defaults, edge_defaults)


def _build_node(dot_node: pydot.Node, raw_name: str, node_defaults: dict[str, str]) -> Node:
    merged = dict(node_defaults)
    merged.update(_clean_attrs(dot_node.obj_dict.get("attributes", {})))

    explicit_type = merged.pop("type", None)
    shape = merged.pop("shape", "box")
    if explicit_type is not None:
        try:
            kind = NodeKind(explicit_type)
        except ValueError as exc:
            raise DotParseError(
                f"Node '{raw_name}' has unknown type {explicit_type!r}"
            ) from exc
    else:
        kind = SHAPE_KIND_MAP.get(shape, NodeKind.FUNCTION)

    label = merged.get("label")
    payload: Payload
    if kind == NodeKind.START:
        payload = StartData(label=label or "Start", id_label=merged.get("id_label"))
    elif kind == NodeKind.INPUT:
        payload = InputData(
            variable_name=merged.get("variable", ""),
            literal_value=merged.get("value", ""),
            label=label or "Input",
        )
    elif kind == NodeKind.CONDITION:
        payload = ConditionData(expression=merged.get("condition", ""), label=label or raw_name)
    elif kind == NodeKind.FUNCTION:
        payload = FunctionData(body=merged.get("code", ""), label=label or raw_name)
    else:
        payload = EndData(label=label or "End", link_target=merged.get("link_target"))

    return Node(id=raw_name, kind=kind, payload=payload, position=_parse_pos(merged.get("pos")))


def _build_edge(dot_edge: pydot.Edge, edge_defaults: dict[str, str], index: int) -> Edge:
    source = _endpoint_name(str(dot_edge.get_source()))
    target = _endpoint_name(str(dot_edge.get_destination()))

    merged = dict(edge_defaults)
    merged.update(_clean_attrs(dot_edge.obj_dict.get("attributes", {})))

    raw_branch = merged.get("branch") or merged.get("label", "")
    raw_branch = raw_branch.strip().lower()
    branch = Branch(raw_branch) if raw_branch in ("true", "false") else None
    edge_id = merged.get("id") or f"edge_{source}_{target}_{index}"
    return Edge(id=edge_id, source=source, target=target, branch=branch)


def _node_attrs(node: Node) -> dict[str, str]:
    payload = node.payload
    attrs: dict[str, str] = {
        "shape": KIND_SHAPE_MAP[node.kind],
        "type": node.kind.value,
        "label": _quote(payload.label),
        "pos": _quote(f"{node.position.x:g},{node.position.y:g}"),
    }
    if isinstance(payload, StartData) and payload.id_label is not None:
        attrs["id_label"] = _quote(payload.id_label)
    elif isinstance(payload, InputData):
        attrs["variable"] = _quote(payload.variable_name)
        attrs["value"] = _quote(payload.literal_value)
    elif isinstance(payload, ConditionData):
        attrs["condition"] = _quote(payload.expression)
    elif isinstance(payload, FunctionData):
        attrs["code"] = _quote(payload.body)
    elif isinstance(payload, EndData) and payload.link_target is not None:
        attrs["link_target"] = _quote(payload.link_target)
    return attrs


def _parse_pos(raw: str | None) -> Position:
    if not raw:
        return Position()
    parts = raw.rstrip("!").split(",")
    try:
        return Position(x=float(parts[0]), y=float(parts[1]))
    except (IndexError, ValueError) as exc:
        raise DotParseError(f"Invalid pos attribute {raw!r}; expected 'x,y'") from exc


def _endpoint_name(raw: str) -> str:
    """Return the node id of an edge endpoint, dropping any port suffix."""
    if raw.startswith('"'):
        return _unquote(raw)
    return raw.split(":", 1)[0]


def _clean_attrs(attrs: dict[str, Any]) -> dict[str, str]:
    """Strip surrounding quotes from attribute values and unescape them."""
    return {k: _unescape(_unquote(str(v))) for k, v in attrs.items()}


def _unquote(value: str) -> str:
    """Remove surrounding double-quotes from a string."""
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def _unescape(value: str) -> str:
    return _ESCAPE_RE.sub(lambda m: "\n" if m.group(1) == "n" else m.group(1), value)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'
