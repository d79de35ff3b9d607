"""Flow validation.

Statically checks a :class:`Graph` for structural errors and warnings
before it is simulated or exported.  Every check runs independently and
all findings are collected; nothing is raised unless the caller asks
for it via :func:`validate_or_raise`.
"""

from __future__ import annotations

import enum
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ruleflow.flow.expressions import validate_expression_syntax, validate_program_syntax
from ruleflow.flow.models import (
    ConditionData,
    FunctionData,
    Graph,
    InputData,
    Node,
    NodeKind,
)

logger = logging.getLogger(__name__)


class Severity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Issue:
    """A single validation finding."""

    kind: str
    message: str
    severity: Severity = Severity.ERROR
    node_id: str | None = None
    node_ids: list[str] | None = None

    def __str__(self) -> str:
        location = f" (node '{self.node_id}')" if self.node_id else ""
        return f"[{self.severity.value.upper()}]{location} [{self.kind}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "severity": self.severity.value,
        }
        if self.node_id is not None:
            data["nodeId"] = self.node_id
        if self.node_ids is not None:
            data["nodeIds"] = list(self.node_ids)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        return cls(
            kind=str(data.get("kind", data.get("type", ""))),
            message=str(data.get("message", "")),
            severity=Severity(data.get("severity", "error")),
            node_id=data.get("nodeId"),
            node_ids=data.get("nodeIds"),
        )


@dataclass
class ValidationSummary:
    node_count: int = 0
    edge_count: int = 0
    start_count: int = 0
    end_count: int = 0
    reachable_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "nodeCount": self.node_count,
            "edgeCount": self.edge_count,
            "startCount": self.start_count,
            "endCount": self.end_count,
            "reachableCount": self.reachable_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationSummary:
        return cls(
            node_count=int(data.get("nodeCount", 0)),
            edge_count=int(data.get("edgeCount", 0)),
            start_count=int(data.get("startCount", 0)),
            end_count=int(data.get("endCount", 0)),
            reachable_count=int(data.get("reachableCount", 0)),
        )


@dataclass
class ValidationResult:
    """Outcome of :func:`validate_flow`."""

    errors: list[Issue] = field(default_factory=list)
    warnings: list[Issue] = field(default_factory=list)
    summary: ValidationSummary = field(default_factory=ValidationSummary)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def issues(self) -> list[Issue]:
        return [*self.errors, *self.warnings]

    def kinds(self) -> set[str]:
        return {issue.kind for issue in self.issues}

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "summary": self.summary.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationResult:
        return cls(
            errors=[Issue.from_dict(e) for e in data.get("errors", [])],
            warnings=[Issue.from_dict(w) for w in data.get("warnings", [])],
            summary=ValidationSummary.from_dict(data.get("summary", {})),
        )


@runtime_checkable
class LintRule(Protocol):
    """Protocol for custom validation rules."""

    name: str

    def check(self, graph: Graph) -> list[Issue]: ...


def validate_flow(
    graph: Graph,
    extra_rules: list[LintRule] | None = None,
) -> ValidationResult:
    """Run all validation checks on *graph*.

    Args:
        graph: The flow graph to validate.
        extra_rules: Additional lint rules to run for this call only.

    Returns:
        A :class:`ValidationResult`; ``is_valid`` is true iff no
        error-severity issue was found.
    """
    issues: list[Issue] = []

    _check_duplicate_ids(graph, issues)
    _check_dangling_edges(graph, issues)
    _check_start_nodes(graph, issues)
    _check_end_nodes(graph, issues)
    _check_start_connected(graph, issues)
    _check_end_connected(graph, issues)
    _check_node_connections(graph, issues)
    _check_condition_paths(graph, issues)
    reachable = _check_reachability(graph, issues)
    _check_condition_syntax(graph, issues)
    _check_function_syntax(graph, issues)
    _check_input_variables(graph, issues)

    if extra_rules:
        for rule in extra_rules:
            found = rule.check(graph)
            logger.debug("Lint rule %s reported %d issue(s)", rule.name, len(found))
            issues.extend(found)

    result = ValidationResult(
        errors=[i for i in issues if i.severity == Severity.ERROR],
        warnings=[i for i in issues if i.severity == Severity.WARNING],
        summary=ValidationSummary(
            node_count=len(graph.nodes),
            edge_count=len(graph.edges),
            start_count=len(graph.nodes_of_kind(NodeKind.START)),
            end_count=len(graph.nodes_of_kind(NodeKind.END)),
            reachable_count=len(reachable),
        ),
    )
    logger.debug(
        "Validated graph %r: %d error(s), %d warning(s)",
        graph.name,
        len(result.errors),
        len(result.warnings),
    )
    return result


class ValidationException(Exception):
    """Raised by :func:`validate_or_raise` when error-severity issues exist."""

    def __init__(self, result: ValidationResult) -> None:
        self.result = result
        self.errors = result.errors
        super().__init__("\n".join(str(e) for e in result.errors))


def validate_or_raise(
    graph: Graph,
    extra_rules: list[LintRule] | None = None,
) -> ValidationResult:
    """Run validation and raise on any error-severity issue.

    Returns:
        The full result (only warnings if no exception).

    Raises:
        ValidationException: If any error-severity issues are found.
    """
    result = validate_flow(graph, extra_rules=extra_rules)
    if not result.is_valid:
        raise ValidationException(result)
    return result


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _describe(node: Node) -> str:
    return f'{node.kind.value} node "{node.label}"'


def _check_duplicate_ids(graph: Graph, issues: list[Issue]) -> None:
    counts = Counter(n.id for n in graph.nodes)
    for node_id, count in counts.items():
        if count > 1:
            issues.append(
                Issue(
                    kind="duplicate_node_id",
                    message=f"Node id '{node_id}' is used by {count} nodes",
                    node_id=node_id,
                )
            )


def _check_dangling_edges(graph: Graph, issues: list[Issue]) -> None:
    known = graph.node_ids()
    for edge in graph.edges:
        missing = [end for end in (edge.source, edge.target) if end not in known]
        if missing:
            issues.append(
                Issue(
                    kind="dangling_edge",
                    message=(
                        f"Edge '{edge.id}' references unknown node(s): "
                        f"{', '.join(missing)}"
                    ),
                    node_ids=missing,
                )
            )


def _check_start_nodes(graph: Graph, issues: list[Issue]) -> None:
    starts = graph.nodes_of_kind(NodeKind.START)
    if not starts:
        issues.append(
            Issue(kind="missing_start", message="Flow must have at least one Start node")
        )
    elif len(starts) > 1:
        issues.append(
            Issue(
                kind="multiple_starts",
                message="Multiple Start nodes found - only one will be used for execution",
                severity=Severity.WARNING,
                node_ids=[n.id for n in starts],
            )
        )


def _check_end_nodes(graph: Graph, issues: list[Issue]) -> None:
    if not graph.nodes_of_kind(NodeKind.END):
        issues.append(
            Issue(kind="missing_end", message="Flow must have at least one End node")
        )


def _check_start_connected(graph: Graph, issues: list[Issue]) -> None:
    for node in graph.nodes_of_kind(NodeKind.START):
        if not graph.edges_from(node.id):
            issues.append(
                Issue(
                    kind="disconnected_start",
                    message=f'Start node "{node.label}" is not connected to any other nodes',
                    node_id=node.id,
                )
            )


def _check_end_connected(graph: Graph, issues: list[Issue]) -> None:
    for node in graph.nodes_of_kind(NodeKind.END):
        if not graph.edges_to(node.id):
            issues.append(
                Issue(
                    kind="orphaned_end",
                    message=f'End node "{node.label}" is not connected from any other nodes',
                    node_id=node.id,
                )
            )


def _check_node_connections(graph: Graph, issues: list[Issue]) -> None:
    for node in graph.nodes:
        if node.kind in (NodeKind.START, NodeKind.END):
            continue
        if not graph.edges_to(node.id) or not graph.edges_from(node.id):
            issues.append(
                Issue(
                    kind="orphaned_node",
                    message=f"{_describe(node)} is not properly connected",
                    node_id=node.id,
                )
            )


def _check_condition_paths(graph: Graph, issues: list[Issue]) -> None:
    for node in graph.nodes_of_kind(NodeKind.CONDITION):
        for branch in ("true", "false"):
            if not graph.edges_from(node.id, branch):
                issues.append(
                    Issue(
                        kind=f"missing_{branch}_path",
                        message=(
                            f'Condition node "{node.label}" is missing '
                            f"{branch.upper()} path"
                        ),
                        severity=Severity.WARNING,
                        node_id=node.id,
                    )
                )


def reachable_from_starts(graph: Graph) -> set[str]:
    """Return ids of all nodes reachable from any Start node (BFS)."""
    known = graph.node_ids()
    adj: dict[str, list[str]] = {}
    for edge in graph.edges:
        if edge.target in known:
            adj.setdefault(edge.source, []).append(edge.target)

    reachable: set[str] = set()
    queue: deque[str] = deque(n.id for n in graph.nodes_of_kind(NodeKind.START))
    while queue:
        current = queue.popleft()
        if current in reachable:
            continue
        reachable.add(current)
        for neighbor in adj.get(current, []):
            if neighbor not in reachable:
                queue.append(neighbor)
    return reachable


def _check_reachability(graph: Graph, issues: list[Issue]) -> set[str]:
    """Warn about nodes unreachable from every Start node."""
    reachable = reachable_from_starts(graph)
    if not reachable:
        return reachable  # already covered by _check_start_nodes

    for node in graph.nodes:
        if node.kind != NodeKind.START and node.id not in reachable:
            issues.append(
                Issue(
                    kind="unreachable_node",
                    message=f"{_describe(node)} is unreachable from Start node",
                    severity=Severity.WARNING,
                    node_id=node.id,
                )
            )
    return reachable


def _check_condition_syntax(graph: Graph, issues: list[Issue]) -> None:
    for node in graph.nodes_of_kind(NodeKind.CONDITION):
        assert isinstance(node.payload, ConditionData)
        error = validate_expression_syntax(node.payload.expression)
        if error is not None:
            issues.append(
                Issue(
                    kind="invalid_expression",
                    message=f'Condition node "{node.label}" has an invalid expression: {error}',
                    severity=Severity.WARNING,
                    node_id=node.id,
                )
            )


def _check_function_syntax(graph: Graph, issues: list[Issue]) -> None:
    for node in graph.nodes_of_kind(NodeKind.FUNCTION):
        assert isinstance(node.payload, FunctionData)
        error = validate_program_syntax(node.payload.body)
        if error is not None:
            issues.append(
                Issue(
                    kind="invalid_function_body",
                    message=f'Function node "{node.label}" has an invalid body: {error}',
                    severity=Severity.WARNING,
                    node_id=node.id,
                )
            )


def _check_input_variables(graph: Graph, issues: list[Issue]) -> None:
    for node in graph.nodes_of_kind(NodeKind.INPUT):
        assert isinstance(node.payload, InputData)
        if not node.payload.variable_name.strip():
            issues.append(
                Issue(
                    kind="empty_variable_name",
                    message=f'Input node "{node.label}" does not name a variable',
                    severity=Severity.WARNING,
                    node_id=node.id,
                )
            )
