"""Conversion between external rule documents and flow graphs.

Three document shapes are understood:

- **endpoint**: ``{"id", "type": "endpoint", "label", "details":
  {"queueName", "isDefault"}}``
- **decision**: ``{"id", "type": "decision", "label", "details":
  {"expressions": [...], "resultType"}}``
- **evaluation chain**: ``{"Id", "Name", "Evaluations": [{"Order",
  "Expression", "Result"}], "DefaultResult"}``

Imported graphs remember the document they came from so that exporting
them returns that exact document.  Graphs authored from scratch are
exported by re-deriving a document from their structure.
"""

from __future__ import annotations

import copy
import enum
import json
import logging
import re
from typing import Any

from ruleflow.flow.expressions import tokenize
from ruleflow.flow.models import (
    LINK_LABEL_MARKER,
    Branch,
    ConditionData,
    FunctionData,
    Graph,
    GraphBuilder,
    IdSequence,
    NodeKind,
    Position,
    StartData,
)

logger = logging.getLogger(__name__)

_COLUMN_X = 200
_DECISION_TRUE_X = 400
_EVALUATION_TRUE_X = 450
_DECISION_STEP_Y = 150
_EVALUATION_STEP_Y = 180

_QUEUE_NAME_RE = re.compile(r"""queueName:\s*("(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')""")
_IS_DEFAULT_RE = re.compile(r"isDefault:\s*(true|false)")


class ConversionError(Exception):
    """Raised when a rule document has an unrecognised or malformed shape."""


class RuleShape(str, enum.Enum):
    ENDPOINT = "endpoint"
    DECISION = "decision"
    EVALUATION = "evaluation"


def detect_shape(document: Any) -> RuleShape:
    """Classify *document* by its ``type`` field or evaluation-chain keys.

    Raises:
        ConversionError: If the document matches no known shape.
    """
    if isinstance(document, dict):
        if document.get("type") == "endpoint":
            return RuleShape.ENDPOINT
        if document.get("type") == "decision":
            return RuleShape.DECISION
        if document.get("Id") and "Evaluations" in document:
            return RuleShape.EVALUATION
    raise ConversionError(
        "Unsupported workflow format. Expected 'endpoint' or 'decision' type "
        "or a workflow with 'Id' and 'Evaluations'."
    )


def import_rule(document: dict[str, Any], name: str | None = None) -> Graph:
    """Build a graph from one rule document.

    Args:
        document: The external rule document.
        name: Graph name; defaults to the document's label or name.

    Raises:
        ConversionError: If the document shape is not recognised or malformed.
    """
    shape = detect_shape(document)
    builder = GraphBuilder(name=name or _document_name(document), ids=IdSequence())
    if shape == RuleShape.ENDPOINT:
        _build_endpoint(builder, document)
    elif shape == RuleShape.DECISION:
        _build_decision(builder, document)
    else:
        _build_evaluation_chain(builder, document)
    graph = builder.build(origin=document)
    logger.debug(
        "Imported %s rule %r: %d nodes, %d edges",
        shape.value,
        graph.name,
        len(graph.nodes),
        len(graph.edges),
    )
    return graph


def import_rules(payload: Any) -> list[Graph]:
    """Import a list of rule documents, or a single bare document.

    Raises:
        ConversionError: If the payload or any document is unrecognised.
    """
    if isinstance(payload, dict):
        return [import_rule(payload)]
    if not isinstance(payload, list):
        raise ConversionError("Rule payload must be a document or a list of documents")
    graphs = [import_rule(doc) for doc in payload]
    logger.info("Imported %d rule document(s)", len(graphs))
    return graphs


def export_rule(graph: Graph) -> dict[str, Any]:
    """Produce the rule document for *graph*.

    Imported graphs yield a copy of their original document.  Otherwise
    a decision document is derived when the graph has Condition nodes,
    an endpoint document when it has a Function node, and a default
    endpoint document for anything else.
    """
    if graph.origin is not None:
        return copy.deepcopy(dict(graph.origin))

    rule_id = _derive_id(graph)
    conditions = graph.nodes_of_kind(NodeKind.CONDITION)
    functions = graph.nodes_of_kind(NodeKind.FUNCTION)

    if conditions:
        expressions = []
        for node in conditions:
            assert isinstance(node.payload, ConditionData)
            expressions.append(node.payload.expression or "true")
        return {
            "id": rule_id,
            "type": "decision",
            "label": graph.name or "Exported Decision Flow",
            "details": {"expressions": expressions, "resultType": "endpoint"},
        }

    if functions:
        payload = functions[0].payload
        assert isinstance(payload, FunctionData)
        queue_name = "DefaultQueue"
        is_default = False
        match = _QUEUE_NAME_RE.search(payload.body)
        if match:
            queue_name = tokenize(match.group(1))[0].value or queue_name
        match = _IS_DEFAULT_RE.search(payload.body)
        if match:
            is_default = match.group(1) == "true"
        return {
            "id": rule_id,
            "type": "endpoint",
            "label": payload.label or graph.name or "Exported Function Flow",
            "details": {"queueName": queue_name, "isDefault": is_default},
        }

    return {
        "id": rule_id,
        "type": "endpoint",
        "label": graph.name or "Exported Flow",
        "details": {"queueName": "DefaultQueue", "isDefault": False},
    }


def export_rules(graphs: list[Graph]) -> list[dict[str, Any]]:
    """Export every graph that has at least one node."""
    return [export_rule(g) for g in graphs if g.nodes]


# ---------------------------------------------------------------------------
# Import shapes
# ---------------------------------------------------------------------------


def _build_endpoint(builder: GraphBuilder, document: dict[str, Any]) -> None:
    details = document.get("details")
    if not isinstance(details, dict):
        raise ConversionError("Endpoint document is missing its 'details' object")
    queue_name = str(details.get("queueName", ""))
    is_default = "true" if details.get("isDefault") else "false"
    body = (
        f"// Queue: {' '.join(queue_name.splitlines())}\n"
        f"// Is Default: {is_default}\n"
        "\n"
        "return {\n"
        f"  queueName: {json.dumps(queue_name)},\n"
        f"  isDefault: {is_default}\n"
        "};"
    )
    start = builder.add_start(id_label=document.get("id"), position=Position(_COLUMN_X, 50))
    function = builder.add_function(
        body, label=str(document.get("label", "Function")), position=Position(_COLUMN_X, 200)
    )
    end = builder.add_end("End", position=Position(_COLUMN_X, 350))
    builder.connect(start, function)
    builder.connect(function, end)


def _build_decision(builder: GraphBuilder, document: dict[str, Any]) -> None:
    details = document.get("details") or {}
    if not isinstance(details, dict):
        raise ConversionError("Decision 'details' must be an object")
    expressions = details.get("expressions") or []
    if not isinstance(expressions, list) or not all(isinstance(e, str) for e in expressions):
        raise ConversionError("Decision 'expressions' must be a list of strings")
    label = str(document.get("label", "Condition"))

    start = builder.add_start(id_label=document.get("id"), position=Position(_COLUMN_X, 50))
    previous = start
    y = 200
    for index, expression in enumerate(expressions, start=1):
        condition = builder.add_condition(
            str(expression), label=label, position=Position(_COLUMN_X, y)
        )
        builder.connect(previous, condition, Branch.FALSE if previous != start else None)
        true_end = builder.add_end(
            f"TRUE: Condition {index}",
            node_id=_end_id(builder, "end_true"),
            position=Position(_DECISION_TRUE_X, y),
        )
        builder.connect(condition, true_end, Branch.TRUE)
        previous = condition
        y += _DECISION_STEP_Y

    false_end = builder.add_end(
        "FALSE: All conditions failed",
        node_id=_end_id(builder, "end_false"),
        position=Position(_COLUMN_X, y),
    )
    builder.connect(previous, false_end, Branch.FALSE if previous != start else None)


def _build_evaluation_chain(builder: GraphBuilder, document: dict[str, Any]) -> None:
    name = document.get("Name", "")
    evaluations = _sorted_evaluations(document.get("Evaluations"))

    start = builder.add_start(id_label=document.get("Id"), position=Position(_COLUMN_X, 50))
    previous = start
    y = 200
    for evaluation in evaluations:
        condition = builder.add_condition(
            evaluation.get("Expression") or "true",
            label=f"{name} ({evaluation.get('Order')})",
            position=Position(_COLUMN_X, y),
        )
        builder.connect(previous, condition, Branch.FALSE if previous != start else None)
        target = _result_target(evaluation.get("Result"), "TRUE", "Endpoint")
        if target is not None:
            label, link = target
            true_end = builder.add_end(
                label,
                link_target=link,
                node_id=_end_id(builder, "end_true"),
                position=Position(_EVALUATION_TRUE_X, y),
            )
            builder.connect(condition, true_end, Branch.TRUE)
        previous = condition
        y += _EVALUATION_STEP_Y

    target = _result_target(document.get("DefaultResult"), "DEFAULT", "Default Endpoint")
    if target is not None:
        label, link = target
        default_end = builder.add_end(
            label,
            link_target=link,
            node_id=_end_id(builder, "end_default"),
            position=Position(_COLUMN_X, y),
        )
        builder.connect(previous, default_end, Branch.FALSE if previous != start else None)


def _sorted_evaluations(raw: Any) -> list[dict[str, Any]]:
    """Return evaluation entries ordered by ``Order``.

    Raises:
        ConversionError: If the entries are not objects with numeric
            ``Order`` values and string ``Expression`` values.
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConversionError("'Evaluations' must be a list of objects")
    for index, evaluation in enumerate(raw):
        if not isinstance(evaluation, dict):
            raise ConversionError(f"Evaluation {index} must be an object")
        order = evaluation.get("Order")
        if order is not None and (isinstance(order, bool) or not isinstance(order, (int, float))):
            raise ConversionError(f"Evaluation {index} has a non-numeric Order: {order!r}")
        expression = evaluation.get("Expression")
        if expression is not None and not isinstance(expression, str):
            raise ConversionError(f"Evaluation {index} has a non-string Expression")
    return sorted(raw, key=lambda e: e.get("Order") or 0)


def _result_target(
    result: Any, prefix: str, fallback: str
) -> tuple[str, str | None] | None:
    """Return the End label and link target for an evaluation result."""
    if not isinstance(result, dict):
        return None
    value = result.get("ResultValue")
    if not isinstance(value, dict):
        return None
    endpoint = value.get("EndPoint")
    if isinstance(endpoint, dict):
        return f"{prefix}: {endpoint.get('Qname') or fallback}", None
    decision = value.get("Decision")
    if isinstance(decision, dict):
        decision = decision.get("Name")
    if decision:
        rule = str(decision)
        marker = LINK_LABEL_MARKER if prefix == "TRUE" else f"{prefix}: → "
        return f"{marker}{rule}", rule
    return None


def _end_id(builder: GraphBuilder, prefix: str) -> str:
    return builder.ids.next(prefix)


def _document_name(document: dict[str, Any]) -> str:
    for key in ("label", "Name", "id", "Id"):
        if document.get(key):
            return str(document[key])
    return ""


def _derive_id(graph: Graph) -> str:
    for node in graph.nodes_of_kind(NodeKind.START):
        assert isinstance(node.payload, StartData)
        if node.payload.id_label:
            return node.payload.id_label
    return slugify(graph.name)


def slugify(name: str) -> str:
    """Turn a flow name into an identifier-safe slug."""
    slug = re.sub(r"[^a-zA-Z0-9\s]", "", name)
    slug = re.sub(r"\s+", "_", slug)
    slug = re.sub(r"_{2,}", "_", slug)
    return slug.strip("_") or "Exported_Workflow"
