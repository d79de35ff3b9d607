"""Flow execution simulator.

Walks a :class:`Graph` from its first Start node, depth-first and
pre-order, and records a deterministic :class:`ExecutionTrace`.  A run
is one synchronous in-memory walk: nothing is persisted and no error
aborts the run.  Failures become trace records and stop only the path
they occur on.
"""

from __future__ import annotations

import datetime
import enum
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ruleflow.flow.evaluator import (
    ExpressionIssue,
    evaluate_substituted,
    run_function_body,
    substitute_expression,
    to_string,
)
from ruleflow.flow.expressions import ExpressionError
from ruleflow.flow.models import (
    Branch,
    ConditionData,
    EndData,
    FunctionData,
    Graph,
    InputData,
    Node,
    NodeKind,
    Position,
)
from ruleflow.settings import EngineSettings

logger = logging.getLogger(__name__)


class StepStatus(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class ConditionDetail:
    original_expression: str
    substituted_expression: str
    result: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "originalExpression": self.original_expression,
            "substitutedExpression": self.substituted_expression,
            "result": self.result,
        }


@dataclass
class StepRecord:
    """One entry of an execution trace.

    Attributes:
        node_id: The node the record belongs to (``"system"`` for run-level
            records).
        message: Human-readable description of what happened.
        variables: Snapshot of the branch's variables when recorded.
        status: ``info``, ``warning`` or ``error``.
        kind: Machine-checkable outcome tag, e.g. ``missing_false_path``.
    """

    node_id: str
    message: str
    variables: dict[str, Any] = field(default_factory=dict)
    status: StepStatus = StepStatus.INFO
    kind: str | None = None
    position: Position | None = None
    condition_detail: ConditionDetail | None = None
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "nodeId": self.node_id,
            "message": self.message,
            "variables": dict(self.variables),
            "status": self.status.value,
        }
        if self.kind is not None:
            data["kind"] = self.kind
        if self.position is not None:
            data["position"] = self.position.to_dict()
        if self.condition_detail is not None:
            data["conditionDetail"] = self.condition_detail.to_dict()
        if self.suggestion is not None:
            data["suggestion"] = self.suggestion
        return data


@dataclass(frozen=True)
class PathStep:
    node_id: str
    position: Position

    def to_dict(self) -> dict[str, Any]:
        return {"nodeId": self.node_id, "position": self.position.to_dict()}


@dataclass
class ExecutionTrace:
    """Ordered step records plus the node visitation path."""

    steps: list[StepRecord] = field(default_factory=list)
    path: list[PathStep] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(s.status == StepStatus.ERROR for s in self.steps)

    def kinds(self) -> list[str]:
        return [s.kind for s in self.steps if s.kind is not None]

    def messages(self) -> list[str]:
        return [s.message for s in self.steps]

    def visited(self) -> list[str]:
        return [p.node_id for p in self.path]

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "path": [p.to_dict() for p in self.path],
        }


@dataclass
class _Frame:
    node_id: str
    variables: dict[str, Any]
    on_path: tuple[str, ...] = ()


class FlowSimulator:
    """Single-threaded flow simulator.

    Args:
        settings: Engine settings; ``max_steps`` bounds the walk and
            ``reference_time`` pins the date/time helpers.
        clock: Callable returning the reference instant when settings do
            not pin one.  Called once per run.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._clock = clock or datetime.datetime.now

    def simulate(
        self,
        graph: Graph,
        configuration: Mapping[str, Any] | None = None,
    ) -> ExecutionTrace:
        """Simulate *graph* against *configuration* and return the trace."""
        configuration = dict(configuration or {})
        trace = ExecutionTrace()

        starts = graph.nodes_of_kind(NodeKind.START)
        if not starts:
            logger.warning("Graph %r has no start node; nothing to simulate", graph.name)
            trace.steps.append(
                StepRecord(
                    node_id="system",
                    message="No start node found",
                    status=StepStatus.ERROR,
                    kind="missing_start",
                )
            )
            return trace

        reference = self._settings.reference_time or self._clock()
        logger.info(
            "Simulating graph %r from %s (%d config key(s))",
            graph.name,
            starts[0].id,
            len(configuration),
        )
        _Run(graph, configuration, reference, self._settings.max_steps, trace).walk(starts[0])
        logger.info("Simulation finished after %d step(s)", len(trace.path))
        return trace


def simulate_flow(
    graph: Graph,
    configuration: Mapping[str, Any] | None = None,
    settings: EngineSettings | None = None,
) -> ExecutionTrace:
    """Convenience wrapper around :meth:`FlowSimulator.simulate`."""
    return FlowSimulator(settings=settings).simulate(graph, configuration)


class _Run:
    def __init__(
        self,
        graph: Graph,
        configuration: dict[str, Any],
        reference: datetime.datetime,
        max_steps: int,
        trace: ExecutionTrace,
    ) -> None:
        self._graph = graph
        self._configuration = configuration
        self._reference = reference
        self._max_steps = max_steps
        self._trace = trace

    def walk(self, start: Node) -> None:
        stack: list[_Frame] = [_Frame(start.id, {})]
        steps = 0
        while stack:
            frame = stack.pop()
            if steps >= self._max_steps:
                logger.warning("Step limit of %d reached; stopping walk", self._max_steps)
                self._record(
                    frame.node_id,
                    f"Step limit of {self._max_steps} reached; simulation stopped",
                    frame.variables,
                    status=StepStatus.WARNING,
                    kind="step_limit",
                )
                return
            steps += 1

            node = self._graph.node(frame.node_id)
            if node is None:
                self._record(
                    frame.node_id,
                    f"Node '{frame.node_id}' does not exist",
                    frame.variables,
                    status=StepStatus.WARNING,
                    kind="missing_node",
                )
                continue

            targets = self._visit(node, frame.variables)
            on_path = frame.on_path + (node.id,)
            successors: list[str] = []
            for target in targets:
                if target in on_path:
                    self._record(
                        node.id,
                        f"Edge to '{target}' loops back into this path; path stopped",
                        frame.variables,
                        status=StepStatus.WARNING,
                        kind="cycle_detected",
                        position=node.position,
                    )
                    continue
                successors.append(target)

            for target in reversed(successors):
                variables = dict(frame.variables) if len(successors) > 1 else frame.variables
                stack.append(_Frame(target, variables, on_path))

    def _record(
        self,
        node_id: str,
        message: str,
        variables: dict[str, Any],
        **kw: Any,
    ) -> None:
        self._trace.steps.append(
            StepRecord(node_id=node_id, message=message, variables=dict(variables), **kw)
        )

    def _visit(self, node: Node, variables: dict[str, Any]) -> list[str]:
        """Record the visit, apply the node's effect and return next node ids."""
        logger.debug("Visiting %s node %s", node.kind.value, node.id)
        self._trace.path.append(PathStep(node.id, node.position))
        self._record(
            node.id,
            f"Executing {node.kind.value} node: {node.label}",
            variables,
            position=node.position,
        )

        if node.kind == NodeKind.INPUT:
            self._apply_input(node, variables)
        elif node.kind == NodeKind.CONDITION:
            return self._apply_condition(node, variables)
        elif node.kind == NodeKind.FUNCTION:
            if not self._apply_function(node, variables):
                return []
        elif node.kind == NodeKind.END:
            assert isinstance(node.payload, EndData)
            message = "Flow completed"
            if node.payload.link_target:
                message = f"Flow completed; continues in rule '{node.payload.link_target}'"
            self._record(node.id, message, variables, position=node.position)
            return []

        return [e.target for e in self._graph.edges_from(node.id)]

    def _apply_input(self, node: Node, variables: dict[str, Any]) -> None:
        assert isinstance(node.payload, InputData)
        name = node.payload.variable_name
        if not name.strip():
            self._record(
                node.id,
                "Input node has no variable name; nothing was set",
                variables,
                status=StepStatus.WARNING,
                position=node.position,
            )
            return
        value = node.payload.parsed_value
        variables[name] = value
        self._record(node.id, f"Set {name} = {to_string(value)}", variables, position=node.position)

    def _apply_condition(self, node: Node, variables: dict[str, Any]) -> list[str]:
        assert isinstance(node.payload, ConditionData)
        original = node.payload.expression
        display = substitute_expression(original, variables, self._configuration)
        try:
            result = evaluate_substituted(
                display, variables, self._configuration, self._reference
            )
        except ExpressionError as exc:
            issue = ExpressionIssue.from_error(exc, self._available(variables))
            logger.warning("Condition %s failed: %s", node.id, exc)
            self._record(
                node.id,
                f"Error evaluating condition: {exc}",
                variables,
                status=StepStatus.ERROR,
                kind="condition_error",
                position=node.position,
                condition_detail=ConditionDetail(original, display),
                suggestion=issue.suggestion,
            )
            return []

        self._record(
            node.id,
            f'Condition "{original}" → "{display}" = {to_string(result)}',
            variables,
            position=node.position,
            condition_detail=ConditionDetail(original, display, result),
        )
        branch = Branch.for_result(result)
        edges = self._graph.edges_from(node.id, branch)
        if not edges:
            self._record(
                node.id,
                f"No {branch.value.upper()} path connected from this condition",
                variables,
                status=StepStatus.WARNING,
                kind=f"missing_{branch.value}_path",
                position=node.position,
            )
            return []
        return [e.target for e in edges]

    def _apply_function(self, node: Node, variables: dict[str, Any]) -> bool:
        assert isinstance(node.payload, FunctionData)
        try:
            result = run_function_body(node.payload.body, variables)
        except ExpressionError as exc:
            issue = ExpressionIssue.from_error(exc, self._available(variables))
            logger.warning("Function %s failed: %s", node.id, exc)
            self._record(
                node.id,
                f"Error executing function: {exc}",
                variables,
                status=StepStatus.ERROR,
                kind="function_error",
                position=node.position,
                suggestion=issue.suggestion,
            )
            return False

        if isinstance(result, dict):
            variables.update(result)
        else:
            variables["result"] = result
        self._record(
            node.id,
            f"Function executed, result: {json.dumps(result, default=str)}",
            variables,
            position=node.position,
        )
        return True

    def _available(self, variables: Mapping[str, Any]) -> list[str]:
        return sorted({*variables, *self._configuration})
