"""Rule flow engine.

Builds, validates and simulates directed graphs of typed steps (start,
input, condition, function, end), and converts between those graphs and
external rule documents.  Condition expressions and Function bodies are
interpreted by a small sandboxed dialect with no access to the host.
"""

from ruleflow.flow.converter import (
    ConversionError,
    RuleShape,
    detect_shape,
    export_rule,
    export_rules,
    import_rule,
    import_rules,
)
from ruleflow.flow.dot import DotParseError, graph_to_dot, parse_dot_file, parse_dot_string
from ruleflow.flow.evaluator import (
    EvaluationResult,
    ExpressionIssue,
    evaluate_condition,
    run_function_body,
    substitute_expression,
)
from ruleflow.flow.expressions import (
    ExpressionError,
    ExpressionSyntaxError,
    ExpressionTypeError,
    UnresolvedReferenceError,
)
from ruleflow.flow.flowfile import SavedFlow, save_flow
from ruleflow.flow.layout import auto_layout, detect_overlaps
from ruleflow.flow.models import (
    Branch,
    Edge,
    Graph,
    GraphBuilder,
    GraphFormatError,
    IdSequence,
    Node,
    NodeKind,
    Position,
    parse_literal,
)
from ruleflow.flow.simulator import ExecutionTrace, FlowSimulator, StepRecord, simulate_flow
from ruleflow.flow.validator import (
    Issue,
    LintRule,
    ValidationException,
    ValidationResult,
    validate_flow,
    validate_or_raise,
)
from ruleflow.flow.variables import default_configuration, detect_variables

__all__ = [
    "Branch",
    "ConversionError",
    "DotParseError",
    "Edge",
    "EvaluationResult",
    "ExecutionTrace",
    "ExpressionError",
    "ExpressionIssue",
    "ExpressionSyntaxError",
    "ExpressionTypeError",
    "FlowSimulator",
    "Graph",
    "GraphBuilder",
    "GraphFormatError",
    "IdSequence",
    "Issue",
    "LintRule",
    "Node",
    "NodeKind",
    "Position",
    "RuleShape",
    "SavedFlow",
    "StepRecord",
    "UnresolvedReferenceError",
    "ValidationException",
    "ValidationResult",
    "auto_layout",
    "default_configuration",
    "detect_overlaps",
    "detect_shape",
    "detect_variables",
    "evaluate_condition",
    "export_rule",
    "export_rules",
    "graph_to_dot",
    "import_rule",
    "import_rules",
    "parse_dot_file",
    "parse_dot_string",
    "parse_literal",
    "run_function_body",
    "save_flow",
    "simulate_flow",
    "substitute_expression",
    "validate_flow",
    "validate_or_raise",
]
