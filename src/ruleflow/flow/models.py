"""Flow graph data models.

Defines the node, edge and graph structures shared by the validator,
the simulator and the rule-document converter.  Graphs are immutable
values: every edit returns a new :class:`Graph`, and node/edge
collections are only ever exposed as tuples.
"""

from __future__ import annotations

import copy
import enum
import re
import types
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Union


class GraphFormatError(Exception):
    """Raised when Graph JSON cannot be turned into a :class:`Graph`."""


class NodeKind(str, enum.Enum):
    """The five step types a flow graph is built from."""

    START = "start"
    INPUT = "input"
    CONDITION = "condition"
    FUNCTION = "function"
    END = "end"


class Branch(str, enum.Enum):
    """Outcome selector on edges leaving a Condition node."""

    TRUE = "true"
    FALSE = "false"

    @classmethod
    def for_result(cls, result: bool) -> Branch:
        return cls.TRUE if result else cls.FALSE


Scalar = Union[int, float, str, bool, None]

_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")


def parse_literal(raw: str) -> int | float | str:
    """Parse *raw* to a number when it looks numeric, else return it unchanged."""
    text = raw.strip()
    if _INT_RE.match(text):
        return int(text)
    if _FLOAT_RE.match(text):
        return float(text)
    return raw


def coerce_value(raw: Any) -> Scalar:
    """Coerce a configuration value to a typed scalar.

    Numeric strings become numbers and ``"true"``/``"false"`` become
    booleans.  Non-string values are returned as-is.
    """
    if not isinstance(raw, str):
        return raw
    if raw.strip().lower() in ("true", "false"):
        return raw.strip().lower() == "true"
    return parse_literal(raw)


# ---------------------------------------------------------------------------
# Node payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Position:
    x: float = 0.0
    y: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass(frozen=True)
class StartData:
    """Start payload.

    Attributes:
        label: Display label.
        id_label: External identifier of the rule the graph was built from.
    """

    label: str = "Start"
    id_label: str | None = None


@dataclass(frozen=True)
class InputData:
    """Input payload binding *variable_name* to *literal_value*."""

    variable_name: str = "value"
    literal_value: str = ""
    label: str = "Input"

    @property
    def parsed_value(self) -> int | float | str:
        return parse_literal(self.literal_value)


@dataclass(frozen=True)
class ConditionData:
    expression: str = ""
    label: str = "Condition"


@dataclass(frozen=True)
class FunctionData:
    body: str = ""
    label: str = "Function"


@dataclass(frozen=True)
class EndData:
    """End payload.

    Attributes:
        label: Display label.
        link_target: Name of another rule this end hands over to, if any.
    """

    label: str = "End"
    link_target: str | None = None


Payload = Union[StartData, InputData, ConditionData, FunctionData, EndData]

_PAYLOAD_TYPES: dict[NodeKind, type] = {
    NodeKind.START: StartData,
    NodeKind.INPUT: InputData,
    NodeKind.CONDITION: ConditionData,
    NodeKind.FUNCTION: FunctionData,
    NodeKind.END: EndData,
}

# Legacy label convention for end nodes that hand over to another rule.
LINK_LABEL_MARKER = "TRUE: → "


@dataclass(frozen=True)
class Node:
    """A single step in the flow graph."""

    id: str
    kind: NodeKind
    payload: Payload
    position: Position = field(default_factory=Position)

    @property
    def label(self) -> str:
        return self.payload.label


@dataclass(frozen=True)
class Edge:
    """A directed edge.  *branch* is only set on edges leaving a Condition."""

    id: str
    source: str
    target: str
    branch: Branch | None = None


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Graph:
    """An immutable flow graph.

    No validation is performed here: dangling edges and duplicate ids are
    representable and are reported by :mod:`ruleflow.flow.validator`.

    Attributes:
        nodes: All nodes, in authoring order.
        edges: All edges, in authoring order.
        name: Human-readable graph name.
        origin: The external rule document this graph was imported from,
            if any, as a read-only view.  Used to export the exact original
            document.
    """

    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    name: str = ""
    origin: Mapping[str, Any] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))
        if self.origin is not None and not isinstance(self.origin, types.MappingProxyType):
            frozen = types.MappingProxyType(copy.deepcopy(dict(self.origin)))
            object.__setattr__(self, "origin", frozen)

    # -- queries -----------------------------------------------------------

    def node(self, node_id: str) -> Node | None:
        """Return the first node with *node_id*, or ``None``."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def nodes_of_kind(self, kind: NodeKind) -> list[Node]:
        return [n for n in self.nodes if n.kind == kind]

    def edges_from(self, node_id: str, branch: Branch | str | None = None) -> list[Edge]:
        """Return edges leaving *node_id*, optionally only those serving *branch*."""
        if branch is None:
            return [e for e in self.edges if e.source == node_id]
        wanted = Branch(branch)
        return [e for e in self.edges if e.source == node_id and e.branch == wanted]

    def edges_to(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    # -- copy-on-write edits -----------------------------------------------

    def with_node(self, node: Node) -> Graph:
        return replace(self, nodes=self.nodes + (node,))

    def replace_node(self, node_id: str, **changes: Any) -> Graph:
        """Return a graph where node *node_id* has *changes* applied.

        ``payload`` fields may be passed directly (e.g. ``expression=...``);
        anything that is not a :class:`Node` field is applied to the payload.
        """
        node_fields = {"kind", "payload", "position"}
        nodes = []
        for node in self.nodes:
            if node.id == node_id:
                direct = {k: v for k, v in changes.items() if k in node_fields}
                payload_changes = {
                    k: v for k, v in changes.items() if k not in node_fields
                }
                node = replace(node, **direct)
                if payload_changes:
                    node = replace(node, payload=replace(node.payload, **payload_changes))
            nodes.append(node)
        return replace(self, nodes=tuple(nodes))

    def without_node(self, node_id: str) -> Graph:
        """Remove *node_id* and every edge touching it."""
        return replace(
            self,
            nodes=tuple(n for n in self.nodes if n.id != node_id),
            edges=tuple(
                e for e in self.edges if e.source != node_id and e.target != node_id
            ),
        )

    def with_edge(self, edge: Edge) -> Graph:
        return replace(self, edges=self.edges + (edge,))

    def without_edge(self, edge_id: str) -> Graph:
        return replace(self, edges=tuple(e for e in self.edges if e.id != edge_id))

    def with_positions(self, positions: dict[str, Position]) -> Graph:
        nodes = tuple(
            replace(n, position=positions[n.id]) if n.id in positions else n
            for n in self.nodes
        )
        return replace(self, nodes=nodes)

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to Graph JSON (``nodes``/``edges`` arrays)."""
        return {
            "nodes": [_node_to_dict(n) for n in self.nodes],
            "edges": [_edge_to_dict(e) for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], name: str = "") -> Graph:
        """Build a graph from Graph JSON.

        Raises:
            GraphFormatError: If a node has an unknown type or the
                document lacks the ``nodes``/``edges`` arrays.
        """
        if not isinstance(data, dict) or not isinstance(data.get("nodes"), list):
            raise GraphFormatError("Graph JSON must contain a 'nodes' array")
        edges_raw = data.get("edges", [])
        if not isinstance(edges_raw, list):
            raise GraphFormatError("Graph JSON 'edges' must be an array")
        nodes = tuple(_node_from_dict(raw) for raw in data["nodes"])
        edges = tuple(_edge_from_dict(raw, i) for i, raw in enumerate(edges_raw))
        return cls(nodes=nodes, edges=edges, name=name or str(data.get("name", "")))


def _node_to_dict(node: Node) -> dict[str, Any]:
    payload = node.payload
    if isinstance(payload, StartData):
        data: dict[str, Any] = {"label": payload.label}
        if payload.id_label is not None:
            data["idLabel"] = payload.id_label
    elif isinstance(payload, InputData):
        data = {
            "label": payload.label,
            "variable": payload.variable_name,
            "value": payload.literal_value,
        }
    elif isinstance(payload, ConditionData):
        data = {"label": payload.label, "condition": payload.expression}
    elif isinstance(payload, FunctionData):
        data = {"label": payload.label, "code": payload.body}
    else:
        data = {"label": payload.label}
        if payload.link_target is not None:
            data["linkTarget"] = payload.link_target
    return {
        "id": node.id,
        "type": node.kind.value,
        "position": node.position.to_dict(),
        "data": data,
    }


def _node_from_dict(raw: dict[str, Any]) -> Node:
    try:
        node_id = str(raw["id"])
        kind = NodeKind(raw["type"])
    except KeyError as exc:
        raise GraphFormatError(f"Node is missing field {exc}") from exc
    except ValueError as exc:
        raise GraphFormatError(f"Unknown node type {raw.get('type')!r}") from exc

    data = raw.get("data") or {}
    pos = raw.get("position") or {}
    position = Position(x=float(pos.get("x", 0)), y=float(pos.get("y", 0)))

    if kind == NodeKind.START:
        payload: Payload = StartData(
            label=str(data.get("label", "Start")),
            id_label=data.get("idLabel"),
        )
    elif kind == NodeKind.INPUT:
        payload = InputData(
            variable_name=str(data.get("variable", "")),
            literal_value=str(data.get("value", "")),
            label=str(data.get("label", "Input")),
        )
    elif kind == NodeKind.CONDITION:
        payload = ConditionData(
            expression=str(data.get("condition", "")),
            label=str(data.get("label", "Condition")),
        )
    elif kind == NodeKind.FUNCTION:
        payload = FunctionData(
            body=str(data.get("code", "")),
            label=str(data.get("label", "Function")),
        )
    else:
        label = str(data.get("label", "End"))
        link_target = data.get("linkTarget")
        if link_target is None and LINK_LABEL_MARKER in label:
            link_target = label.split(LINK_LABEL_MARKER, 1)[1].strip() or None
        payload = EndData(label=label, link_target=link_target)

    return Node(id=node_id, kind=kind, payload=payload, position=position)


def _edge_to_dict(edge: Edge) -> dict[str, Any]:
    data: dict[str, Any] = {"id": edge.id, "source": edge.source, "target": edge.target}
    if edge.branch is not None:
        data["sourceHandle"] = edge.branch.value
    return data


def _edge_from_dict(raw: dict[str, Any], index: int) -> Edge:
    try:
        source = str(raw["source"])
        target = str(raw["target"])
    except KeyError as exc:
        raise GraphFormatError(f"Edge is missing field {exc}") from exc
    handle = raw.get("sourceHandle")
    branch = Branch(handle) if handle in ("true", "false") else None
    edge_id = str(raw.get("id") or f"edge_{source}_{target}_{index}")
    return Edge(id=edge_id, source=source, target=target, branch=branch)


# ---------------------------------------------------------------------------
# Authoring helpers
# ---------------------------------------------------------------------------


class IdSequence:
    """Per-instance id generator producing ``"<prefix>_<n>"`` ids.

    A single counter is shared by all prefixes so ids stay unique across
    node kinds within one graph.
    """

    def __init__(self, start: int = 1) -> None:
        self._next = start

    def next(self, prefix: str) -> str:
        value = f"{prefix}_{self._next}"
        self._next += 1
        return value


class GraphBuilder:
    """Mutable helper for assembling a :class:`Graph` step by step.

    Example::

        b = GraphBuilder("adult check")
        start = b.add_start()
        age = b.add_input("age", "25")
        cond = b.add_condition("age >= 18")
        b.connect(start, age)
        b.connect(age, cond)
        b.connect(cond, b.add_end("Adult"), Branch.TRUE)
        graph = b.build()
    """

    def __init__(self, name: str = "", ids: IdSequence | None = None) -> None:
        self._name = name
        self._ids = ids or IdSequence()
        self._nodes: list[Node] = []
        self._edges: list[Edge] = []

    @property
    def ids(self) -> IdSequence:
        return self._ids

    def add_node(
        self,
        kind: NodeKind,
        payload: Payload | None = None,
        position: Position | None = None,
        node_id: str | None = None,
    ) -> str:
        payload = payload if payload is not None else _PAYLOAD_TYPES[kind]()
        node_id = node_id or self._ids.next(kind.value)
        self._nodes.append(
            Node(id=node_id, kind=kind, payload=payload, position=position or Position())
        )
        return node_id

    def add_start(self, label: str = "Start", id_label: str | None = None, **kw: Any) -> str:
        return self.add_node(NodeKind.START, StartData(label=label, id_label=id_label), **kw)

    def add_input(self, variable: str, value: str, label: str = "Input", **kw: Any) -> str:
        return self.add_node(
            NodeKind.INPUT,
            InputData(variable_name=variable, literal_value=str(value), label=label),
            **kw,
        )

    def add_condition(self, expression: str, label: str = "Condition", **kw: Any) -> str:
        return self.add_node(
            NodeKind.CONDITION, ConditionData(expression=expression, label=label), **kw
        )

    def add_function(self, body: str, label: str = "Function", **kw: Any) -> str:
        return self.add_node(NodeKind.FUNCTION, FunctionData(body=body, label=label), **kw)

    def add_end(self, label: str = "End", link_target: str | None = None, **kw: Any) -> str:
        return self.add_node(
            NodeKind.END, EndData(label=label, link_target=link_target), **kw
        )

    def connect(
        self,
        source: str,
        target: str,
        branch: Branch | str | None = None,
        edge_id: str | None = None,
    ) -> str:
        branch = Branch(branch) if branch is not None else None
        edge_id = edge_id or f"edge_{source}_{target}"
        self._edges.append(Edge(id=edge_id, source=source, target=target, branch=branch))
        return edge_id

    def build(self, origin: dict[str, Any] | None = None) -> Graph:
        return Graph(
            nodes=tuple(self._nodes),
            edges=tuple(self._edges),
            name=self._name,
            origin=origin,
        )
