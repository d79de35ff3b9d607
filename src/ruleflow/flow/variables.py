"""Test-variable detection.

Scans the Condition expressions of a graph for the values a tester has
to supply before simulating it: system variables (``${Name}``), session
variables (``session['key']``) and plain identifiers.  Names bound by
Input nodes are set by the flow itself and are not reported.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Any

from ruleflow.flow.expressions import KEYWORDS, ExpressionSyntaxError, TokenType, tokenize
from ruleflow.flow.helpers import HELPER_METHOD_NAMES, HELPER_NAMESPACES
from ruleflow.flow.models import ConditionData, Graph, InputData, NodeKind

logger = logging.getLogger(__name__)

_SYSVAR_RE = re.compile(r"\$\{([^}]+)\}")
_SESSION_RE = re.compile(r"""session\[\s*['"]([^'"]+)['"]\s*\]""")
_WORD_RE = re.compile(r"\b([A-Za-z_]\w*)\b")

_SKIP_WORDS = frozenset(
    {*KEYWORDS, "function", "session", *HELPER_NAMESPACES, *HELPER_METHOD_NAMES}
)

DEFAULT_SYSTEM_VALUE = "1"
DEFAULT_SESSION_VALUE = "test_value"


class VariableSource(str, enum.Enum):
    SYSTEM = "system"
    SESSION = "session"
    VARIABLE = "variable"


@dataclass(frozen=True)
class DetectedVariable:
    name: str
    source: VariableSource
    data_type: str

    @property
    def description(self) -> str:
        if self.source == VariableSource.SYSTEM:
            return f"System variable: ${{{self.name}}}"
        if self.source == VariableSource.SESSION:
            return f"Session variable: session['{self.name}']"
        return f"Variable: {self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.source.value,
            "dataType": self.data_type,
            "description": self.description,
        }


def guess_data_type(name: str) -> str:
    """Guess a display data type from a variable's name."""
    lowered = name.lower()
    if "date" in lowered or "time" in lowered:
        return "date"
    if "count" in lowered or "number" in lowered or "age" in lowered:
        return "number"
    if "email" in lowered:
        return "email"
    if "phone" in lowered:
        return "phone"
    if "url" in lowered:
        return "url"
    return "string"


def detect_variables(graph: Graph) -> list[DetectedVariable]:
    """Return the variables referenced by *graph*'s conditions.

    System variables come first, then session variables, then plain
    variables; each group keeps first-seen order.
    """
    system: dict[str, None] = {}
    session: dict[str, None] = {}
    plain: dict[str, None] = {}

    bound = set()
    for node in graph.nodes_of_kind(NodeKind.INPUT):
        assert isinstance(node.payload, InputData)
        bound.add(node.payload.variable_name)

    for node in graph.nodes_of_kind(NodeKind.CONDITION):
        assert isinstance(node.payload, ConditionData)
        expression = node.payload.expression
        for match in _SYSVAR_RE.finditer(expression):
            system.setdefault(match.group(1).strip(), None)
        for match in _SESSION_RE.finditer(expression):
            session.setdefault(match.group(1), None)
        for name in _plain_identifiers(expression):
            if name not in bound:
                plain.setdefault(name, None)

    detected = [
        *(DetectedVariable(n, VariableSource.SYSTEM, guess_data_type(n)) for n in system),
        *(DetectedVariable(n, VariableSource.SESSION, "string") for n in session),
        *(DetectedVariable(n, VariableSource.VARIABLE, guess_data_type(n)) for n in plain),
    ]
    logger.debug("Detected %d variable(s) in graph %r", len(detected), graph.name)
    return detected


def _plain_identifiers(expression: str) -> list[str]:
    try:
        tokens = tokenize(expression)
    except ExpressionSyntaxError:
        stripped = _SESSION_RE.sub(" ", _SYSVAR_RE.sub(" ", expression))
        return [w for w in _WORD_RE.findall(stripped) if w not in _SKIP_WORDS]

    names = []
    for index, token in enumerate(tokens):
        if token.type != TokenType.IDENT or token.value in _SKIP_WORDS:
            continue
        if index and tokens[index - 1].is_op("."):
            continue
        names.append(token.value)
    return names


def default_configuration(detected: list[DetectedVariable]) -> dict[str, str]:
    """Propose starting test values for system and session variables."""
    config: dict[str, str] = {}
    for variable in detected:
        if variable.source == VariableSource.SYSTEM:
            config[variable.name] = DEFAULT_SYSTEM_VALUE
        elif variable.source == VariableSource.SESSION:
            config[variable.name] = DEFAULT_SESSION_VALUE
    return config
