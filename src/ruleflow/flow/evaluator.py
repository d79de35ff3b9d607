"""Expression evaluator for Condition and Function nodes.

Conditions are evaluated in two steps:

1. :func:`substitute_expression` rewrites the expression text, replacing
   ``${system}`` references, ``session['key']`` references and then bare
   variable names with their configured/bound values.  The result is the
   human-readable *display expression* shown in execution traces.
2. :func:`evaluate_substituted` parses the display expression and
   interprets it in a scope holding only the helper namespaces
   (``queue``, ``date``, ``now``, ``today``) and the run's variables.

Function bodies are interpreted by :func:`run_function_body` in a scope
holding the run's variables and a few arithmetic/string primitives.

Examples::

    evaluate_condition("age >= 18", {"age": 25}).value          # True
    evaluate_condition("${Q} == 'abc'", {}, {"Q": "abc"}).display_expression
    # "'abc' == 'abc'"
"""

from __future__ import annotations

import datetime
import json
import logging
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from ruleflow.flow.expressions import (
    ArrayLiteral,
    Assign,
    Binary,
    Call,
    Conditional,
    Declare,
    Expr,
    ExpressionError,
    ExpressionSyntaxError,
    ExpressionTypeError,
    ExprStatement,
    Identifier,
    Index,
    Literal,
    Logical,
    Member,
    ObjectLiteral,
    RegexLiteral,
    Return,
    SystemVariable,
    TokenType,
    Unary,
    UnresolvedReferenceError,
    parse_expression,
    parse_program,
    tokenize,
)
from ruleflow.flow.helpers import HELPER_NAMESPACES, HelperNamespace, build_helpers
from ruleflow.flow.models import coerce_value, parse_literal

logger = logging.getLogger(__name__)

_SYSVAR_RE = re.compile(r"\$\{([^}]+)\}")
_SESSION_RE = re.compile(r"""session\[\s*(['"])(.*?)\1\s*\]""")


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of a condition evaluation.

    Attributes:
        value: The boolean result.
        display_expression: The expression after variable substitution.
    """

    value: bool
    display_expression: str


# ---------------------------------------------------------------------------
# Substitution
# ---------------------------------------------------------------------------


def merged_variables(
    environment: Mapping[str, Any] | None,
    configuration: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Merge configuration (coerced) with environment values; environment wins."""
    merged = {k: coerce_value(v) for k, v in (configuration or {}).items()}
    merged.update(environment or {})
    return merged


def substitute_expression(
    expression: str,
    environment: Mapping[str, Any] | None = None,
    configuration: Mapping[str, Any] | None = None,
) -> str:
    """Return *expression* with configured and bound values substituted.

    Passes run in order, each over the output of the previous one:
    ``${name}`` references, ``session['key']`` references, then bare
    identifiers found in the merged environment/configuration map.
    Unknown references are left untouched.
    """
    configuration = configuration or {}
    text = _substitute_system_variables(expression, configuration)
    text = _substitute_session_variables(text, configuration)
    return _substitute_identifiers(text, merged_variables(environment, configuration))


def _substitute_system_variables(text: str, configuration: Mapping[str, Any]) -> str:
    out: list[str] = []
    for segment, quote in _split_quoted(text):
        if "${" not in segment:
            out.append(segment)
            continue

        def replace(match: re.Match[str], quote: str | None = quote) -> str:
            name = match.group(1).strip()
            if name not in configuration:
                return match.group(0)
            value = str(configuration[name])
            if quote is None:
                return _quote(value)
            return _escape(value, quote)

        out.append(_SYSVAR_RE.sub(replace, segment))
    return "".join(out)


def _substitute_session_variables(text: str, configuration: Mapping[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        key = match.group(2)
        if key not in configuration:
            return match.group(0)
        return _quote(str(configuration[key]))

    return _SESSION_RE.sub(replace, text)


def _substitute_identifiers(text: str, variables: Mapping[str, Any]) -> str:
    if not variables:
        return text
    try:
        tokens = tokenize(text)
    except ExpressionSyntaxError:
        # Left as-is; the parse step reports the syntax error.
        return text

    replacements: list[tuple[int, int, str]] = []
    brackets: list[str] = []
    for index, token in enumerate(tokens):
        if token.is_op("(", "[", "{"):
            brackets.append(token.value)
        elif token.is_op(")", "]", "}") and brackets:
            brackets.pop()
        if token.type != TokenType.IDENT or token.value not in variables:
            continue
        if token.value in HELPER_NAMESPACES:
            continue
        prev = tokens[index - 1] if index else None
        nxt = tokens[index + 1]
        if prev is not None and prev.is_op("."):
            continue
        if nxt.is_op("("):
            continue
        # Object literal key
        if (
            nxt.is_op(":")
            and brackets[-1:] == ["{"]
            and prev is not None
            and prev.is_op("{", ",")
        ):
            continue
        replacements.append((token.start, token.end, format_value(variables[token.value])))

    for start, end, value in reversed(replacements):
        text = text[:start] + value + text[end:]
    return text


def _split_quoted(text: str) -> list[tuple[str, str | None]]:
    """Split *text* into code segments and quoted-string segments.

    Returns ``(segment, quote)`` pairs where *quote* is the quote
    character for string segments (including their quotes) and ``None``
    for code.
    """
    parts: list[tuple[str, str | None]] = []
    buf: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(text):
        ch = text[i]
        if quote is None:
            if ch in "'\"":
                if buf:
                    parts.append(("".join(buf), None))
                    buf = []
                quote = ch
            buf.append(ch)
        else:
            buf.append(ch)
            if ch == "\\" and i + 1 < len(text):
                buf.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                parts.append(("".join(buf), quote))
                buf = []
                quote = None
        i += 1
    if buf:
        parts.append(("".join(buf), quote))
    return parts


def _escape(value: str, quote: str) -> str:
    return value.replace("\\", "\\\\").replace(quote, "\\" + quote)


def _quote(value: str) -> str:
    return "'" + _escape(value, "'") + "'"


def format_value(value: Any) -> str:
    """Render a variable value as expression source text."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _number_text(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    return json.dumps(value, ensure_ascii=False, default=str)


def _number_text(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return repr(value)


# ---------------------------------------------------------------------------
# Public evaluation API
# ---------------------------------------------------------------------------


def evaluate_condition(
    expression: str,
    environment: Mapping[str, Any] | None = None,
    configuration: Mapping[str, Any] | None = None,
    reference: datetime.datetime | None = None,
) -> EvaluationResult:
    """Substitute and evaluate a condition *expression*.

    Args:
        expression: The condition source text.
        environment: Variables bound by Input/Function nodes.
        configuration: Caller-supplied configuration map.
        reference: Fallback instant for the date/time helpers.  Defaults
            to the current time; pin it (or configure ``date``/``now``/
            ``today``) for repeatable results.

    Returns:
        The boolean result and the substituted display expression.

    Raises:
        ExpressionError: If the expression cannot be parsed or evaluated.
    """
    display = substitute_expression(expression, environment, configuration)
    value = evaluate_substituted(display, environment, configuration, reference)
    return EvaluationResult(value=value, display_expression=display)


def evaluate_substituted(
    display_expression: str,
    environment: Mapping[str, Any] | None = None,
    configuration: Mapping[str, Any] | None = None,
    reference: datetime.datetime | None = None,
) -> bool:
    """Evaluate an already-substituted expression to a boolean.

    Raises:
        ExpressionError: If the expression cannot be parsed or evaluated.
    """
    tree = parse_expression(display_expression)
    scope: dict[str, Any] = dict(environment or {})
    scope.update(
        build_helpers(configuration or {}, reference or datetime.datetime.now())
    )
    result = _Interpreter(scope).evaluate(tree)
    logger.debug("Evaluated %r -> %r", display_expression, result)
    return truthy(result)


def run_function_body(body: str, environment: Mapping[str, Any] | None = None) -> Any:
    """Interpret a Function node body and return its value.

    The body runs with the current variables plus arithmetic/string
    primitives in scope.  Assignments are local to the body; only the
    returned value leaves it.  Without a ``return`` statement the value
    of the last expression statement is returned.

    Raises:
        ExpressionError: If the body cannot be parsed or evaluated.
    """
    program = parse_program(body)
    scope: dict[str, Any] = dict(PRIMITIVES)
    scope.update(environment or {})
    interpreter = _Interpreter(scope)

    last: Any = None
    for statement in program.statements:
        if isinstance(statement, Declare):
            scope[statement.name] = (
                interpreter.evaluate(statement.value) if statement.value is not None else None
            )
        elif isinstance(statement, Assign):
            scope[statement.name] = interpreter.evaluate(statement.value)
        elif isinstance(statement, Return):
            return interpreter.evaluate(statement.value) if statement.value is not None else None
        elif isinstance(statement, ExprStatement):
            last = interpreter.evaluate(statement.expr)
    return last


# ---------------------------------------------------------------------------
# Error reporting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExpressionIssue:
    """A caught expression failure, ready to show to an author.

    Attributes:
        kind: ``unresolved_reference``, ``syntax_error``,
            ``undefined_property`` or ``evaluation_error``.
        message: The error text.
        suggestion: A remediation hint.
        identifier: The offending identifier, when known.
    """

    kind: str
    message: str
    suggestion: str
    identifier: str | None = None

    @classmethod
    def from_error(cls, error: ExpressionError, available: list[str]) -> ExpressionIssue:
        identifier = None
        if isinstance(error, UnresolvedReferenceError):
            kind = "unresolved_reference"
            identifier = error.identifier
        elif isinstance(error, ExpressionSyntaxError):
            kind = "syntax_error"
        elif isinstance(error, ExpressionTypeError) and error.property_name is not None:
            kind = "undefined_property"
            identifier = error.property_name
        else:
            kind = "evaluation_error"
        return cls(
            kind=kind,
            message=str(error),
            suggestion=suggest_fix(error, available),
            identifier=identifier,
        )


def suggest_fix(error: ExpressionError, available: list[str]) -> str:
    """Generate a remediation hint for *error*."""
    names = ", ".join(sorted(available)) or "none"
    if isinstance(error, UnresolvedReferenceError):
        if error.identifier.startswith("${"):
            return (
                f'System variable "{error.identifier}" has no configured value. '
                "Add it to the test configuration."
            )
        return f'Variable "{error.identifier}" not found. Available variables: {names}'
    if isinstance(error, ExpressionSyntaxError):
        return (
            "Syntax error. Check for missing quotes around text values "
            "or incorrect operators."
        )
    if isinstance(error, ExpressionTypeError) and error.property_name is not None:
        return "Trying to access property of undefined variable. Check variable names."
    return f"Available variables: {names}. Check the expression against these names."


# ---------------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Regex:
    compiled: re.Pattern[str]
    is_global: bool = False


class _Builtin:
    """A primitive function callable by name from Function bodies."""

    def __init__(self, name: str, fn: Callable[..., Any]) -> None:
        self.name = name
        self._fn = fn

    def __call__(self, *args: Any) -> Any:
        try:
            return self._fn(*args)
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise ExpressionTypeError(f"{self.name}() failed: {exc}") from exc

    def __repr__(self) -> str:
        return f"<builtin {self.name}>"


def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        if value.strip() == "":
            return 0
        parsed = parse_literal(value)
        if isinstance(parsed, (int, float)):
            return parsed
    raise ExpressionTypeError(f"Cannot convert {to_string(value)!r} to a number")


def to_string(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _number_text(value)
    if isinstance(value, list):
        return ",".join("" if v is None else to_string(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    if isinstance(value, _Regex):
        return f"/{value.compiled.pattern}/"
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if left is None or right is None:
        return left is None and right is None
    return left is right


def loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool):
        left = int(left)
    if isinstance(right, bool):
        right = int(right)
    if _is_number(left) and isinstance(right, str):
        right = parse_literal(right) if right.strip() else 0
        return _is_number(right) and left == right
    if isinstance(left, str) and _is_number(right):
        left = parse_literal(left) if left.strip() else 0
        return _is_number(left) and left == right
    return strict_equals(left, right)


def _compare(op: str, left: Any, right: Any) -> bool:
    if not (isinstance(left, str) and isinstance(right, str)):
        left = to_number(left)
        right = to_number(right)
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _compile_regex(pattern: str, flags: str) -> _Regex:
    re_flags = 0
    if "i" in flags:
        re_flags |= re.IGNORECASE
    if "m" in flags:
        re_flags |= re.MULTILINE
    if "s" in flags:
        re_flags |= re.DOTALL
    try:
        return _Regex(compiled=re.compile(pattern, re_flags), is_global="g" in flags)
    except re.error as exc:
        raise ExpressionSyntaxError(f"Invalid regular expression /{pattern}/: {exc}") from exc


def _as_regex(value: Any) -> _Regex:
    if isinstance(value, _Regex):
        return value
    return _Regex(compiled=re.compile(re.escape(to_string(value))))


def _match_list(match: re.Match[str] | None) -> list[Any] | None:
    if match is None:
        return None
    return [match.group(0), *match.groups()]


def _string_method(target: str, name: str, args: list[Any]) -> Any:
    arg = args[0] if args else None
    if name == "includes":
        return to_string(arg) in target
    if name == "startsWith":
        return target.startswith(to_string(arg))
    if name == "endsWith":
        return target.endswith(to_string(arg))
    if name == "toLowerCase":
        return target.lower()
    if name == "toUpperCase":
        return target.upper()
    if name == "trim":
        return target.strip()
    if name == "indexOf":
        return target.find(to_string(arg))
    if name == "match":
        regex = _as_regex(arg)
        if regex.is_global:
            found = [m.group(0) for m in regex.compiled.finditer(target)]
            return found or None
        return _match_list(regex.compiled.search(target))
    if name == "split":
        if arg is None:
            return [target]
        if isinstance(arg, _Regex):
            return regex_split(arg, target)
        sep = to_string(arg)
        return list(target) if sep == "" else target.split(sep)
    if name == "replace":
        if len(args) < 2:
            raise ExpressionTypeError("replace expects a pattern and a replacement")
        regex = _as_regex(args[0])
        replacement = to_string(args[1])
        count = 0 if regex.is_global else 1
        return regex.compiled.sub(lambda _m: replacement, target, count=count)
    raise ExpressionTypeError(f"String method {name!r} is not supported")


def regex_split(regex: _Regex, target: str) -> list[str]:
    return regex.compiled.split(target)


def _regex_method(target: _Regex, name: str, args: list[Any]) -> Any:
    subject = to_string(args[0]) if args else "undefined"
    if name == "test":
        return target.compiled.search(subject) is not None
    if name == "exec":
        return _match_list(target.compiled.search(subject))
    raise ExpressionTypeError(f"Regular expression method {name!r} is not supported")


def _list_method(target: list[Any], name: str, args: list[Any]) -> Any:
    arg = args[0] if args else None
    if name == "includes":
        return any(strict_equals(item, arg) for item in target)
    if name == "indexOf":
        for index, item in enumerate(target):
            if strict_equals(item, arg):
                return index
        return -1
    if name == "join":
        sep = "," if arg is None else to_string(arg)
        return sep.join("" if v is None else to_string(v) for v in target)
    raise ExpressionTypeError(f"Array method {name!r} is not supported")


class _Interpreter:
    """Evaluates expression ASTs against a fixed scope."""

    def __init__(self, scope: dict[str, Any]) -> None:
        self._scope = scope

    def evaluate(self, node: Expr) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Identifier):
            if node.name not in self._scope:
                raise UnresolvedReferenceError(node.name)
            return self._scope[node.name]
        if isinstance(node, SystemVariable):
            name = "${" + node.name + "}"
            raise UnresolvedReferenceError(
                name, f"System variable {name} is not configured"
            )
        if isinstance(node, RegexLiteral):
            return _compile_regex(node.pattern, node.flags)
        if isinstance(node, Member):
            return self._member(self.evaluate(node.obj), node.prop)
        if isinstance(node, Index):
            return self._index(self.evaluate(node.obj), self.evaluate(node.key))
        if isinstance(node, Call):
            return self._call(node)
        if isinstance(node, Unary):
            return self._unary(node.op, self.evaluate(node.operand))
        if isinstance(node, Logical):
            left = self.evaluate(node.left)
            if node.op == "&&":
                return self.evaluate(node.right) if truthy(left) else left
            return left if truthy(left) else self.evaluate(node.right)
        if isinstance(node, Binary):
            return self._binary(node.op, self.evaluate(node.left), self.evaluate(node.right))
        if isinstance(node, Conditional):
            branch = node.consequent if truthy(self.evaluate(node.test)) else node.alternate
            return self.evaluate(branch)
        if isinstance(node, ArrayLiteral):
            return [self.evaluate(item) for item in node.items]
        if isinstance(node, ObjectLiteral):
            return {key: self.evaluate(value) for key, value in node.entries}
        raise ExpressionTypeError(f"Unsupported expression node {type(node).__name__}")

    def _member(self, value: Any, prop: str) -> Any:
        if value is None:
            raise ExpressionTypeError(
                f"Cannot read properties of undefined (reading '{prop}')",
                property_name=prop,
            )
        if isinstance(value, HelperNamespace):
            raise ExpressionTypeError(f"{value.name}.{prop} must be called as a function")
        if prop == "length" and isinstance(value, (str, list)):
            return len(value)
        if isinstance(value, dict):
            return value.get(prop)
        raise ExpressionTypeError(f"Property {prop!r} is not supported on {to_string(value)!r}")

    def _index(self, value: Any, key: Any) -> Any:
        if value is None:
            raise ExpressionTypeError(
                f"Cannot read properties of undefined (reading '{to_string(key)}')",
                property_name=to_string(key),
            )
        if isinstance(value, dict):
            return value.get(to_string(key))
        if isinstance(value, (list, str)) and _is_number(key):
            index = int(key)
            return value[index] if 0 <= index < len(value) else None
        if isinstance(value, (list, str)) and key == "length":
            return len(value)
        raise ExpressionTypeError(f"Cannot index {to_string(value)!r} with {to_string(key)!r}")

    def _call(self, node: Call) -> Any:
        if isinstance(node.callee, Member):
            target = self.evaluate(node.callee.obj)
            args = [self.evaluate(arg) for arg in node.args]
            return self._call_method(target, node.callee.prop, args)
        fn = self.evaluate(node.callee)
        args = [self.evaluate(arg) for arg in node.args]
        if isinstance(fn, _Builtin):
            return fn(*args)
        name = node.callee.name if isinstance(node.callee, Identifier) else "expression"
        raise ExpressionTypeError(f"{name} is not a function")

    @staticmethod
    def _call_method(target: Any, name: str, args: list[Any]) -> Any:
        if target is None:
            raise ExpressionTypeError(
                f"Cannot read properties of undefined (reading '{name}')",
                property_name=name,
            )
        if isinstance(target, HelperNamespace):
            return target.call(name, args)
        if isinstance(target, str):
            return _string_method(target, name, args)
        if isinstance(target, _Regex):
            return _regex_method(target, name, args)
        if isinstance(target, list):
            return _list_method(target, name, args)
        if _is_number(target) and name == "toString":
            return to_string(target)
        if _is_number(target) and name == "toFixed":
            digits = to_number(args[0]) if args else 0
            if not 0 <= digits <= 100:
                raise ExpressionTypeError("toFixed() digits argument must be between 0 and 100")
            return f"{target:.{int(digits)}f}"
        raise ExpressionTypeError(f"{to_string(target)}.{name} is not a function")

    @staticmethod
    def _unary(op: str, value: Any) -> Any:
        if op == "!":
            return not truthy(value)
        if op == "-":
            return -to_number(value)
        return to_number(value)

    @staticmethod
    def _binary(op: str, left: Any, right: Any) -> Any:
        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)
        if op == "===":
            return strict_equals(left, right)
        if op == "!==":
            return not strict_equals(left, right)
        if op in ("<", "<=", ">", ">="):
            return _compare(op, left, right)
        if op == "+":
            if isinstance(left, str) or isinstance(right, str):
                return to_string(left) + to_string(right)
            return to_number(left) + to_number(right)
        a, b = to_number(left), to_number(right)
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if b == 0:
            raise ExpressionTypeError("Division by zero")
        if op == "/":
            result = a / b
            return int(result) if result.is_integer() and isinstance(a, int) and isinstance(b, int) else result
        return math.fmod(a, b) if isinstance(a, float) or isinstance(b, float) else int(math.fmod(a, b))


# ---------------------------------------------------------------------------
# Function-body primitives
# ---------------------------------------------------------------------------


def _math_pow(base: Any, exponent: Any) -> int | float:
    result = to_number(base) ** to_number(exponent)
    if isinstance(result, complex):
        raise ValueError("math domain error")
    return result


class _MathNamespace(HelperNamespace):
    name = "Math"

    def __init__(self) -> None:
        super().__init__()
        self._methods.update(
            abs=lambda x: abs(to_number(x)),
            ceil=lambda x: math.ceil(to_number(x)),
            floor=lambda x: math.floor(to_number(x)),
            round=lambda x: math.floor(to_number(x) + 0.5),
            sqrt=lambda x: math.sqrt(to_number(x)),
            pow=_math_pow,
            max=lambda *xs: max(to_number(x) for x in xs),
            min=lambda *xs: min(to_number(x) for x in xs),
        )


def _parse_int(value: Any, base: Any = 10) -> int:
    match = re.match(r"\s*[+-]?\d+", to_string(value))
    if match is None:
        raise ExpressionTypeError(f"Cannot parse {to_string(value)!r} as an integer")
    return int(match.group(0), int(to_number(base)))


def _parse_float(value: Any) -> float | int:
    match = re.match(r"\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?", to_string(value))
    if match is None:
        raise ExpressionTypeError(f"Cannot parse {to_string(value)!r} as a number")
    return parse_literal(match.group(0).strip())  # type: ignore[return-value]


PRIMITIVES: dict[str, Any] = {
    "Math": _MathNamespace(),
    "Number": _Builtin("Number", to_number),
    "String": _Builtin("String", to_string),
    "Boolean": _Builtin("Boolean", truthy),
    "parseInt": _Builtin("parseInt", _parse_int),
    "parseFloat": _Builtin("parseFloat", _parse_float),
}
