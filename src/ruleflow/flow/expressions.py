"""Tokenizer and parser for the flow expression dialect.

Condition expressions and Function bodies are parsed into a small,
immutable AST.  Uses a custom tokenizer/recursive-descent parser; no
``eval``, ``exec``, or ``ast.parse``.

Supported syntax
~~~~~~~~~~~~~~~~
- Literals: numbers, ``'single'``/``"double"`` quoted strings, ``true``,
  ``false``, ``null``, ``undefined``, regex literals ``/pattern/flags``,
  ``[arrays]`` and ``{object: literals}``
- System variables: ``${Name/With/Slashes}``
- Operators: ``|| && !``, ``== != === !==``, ``< <= > >=``,
  ``+ - * / %``, ternary ``? :``
- Member access, indexing and calls: ``queue.AgentStaffed('1')``,
  ``session['key']``, ``email.includes("@")``
- Statements (Function bodies only): ``let/const/var x = ...``,
  ``x = ...``, ``return ...``, bare expressions; separated by ``;`` or
  newlines, with ``//`` and ``/* */`` comments

Examples::

    parse_expression('age >= 18 && country == "NL"')
    parse_program('const total = price * qty;\\nreturn { total: total };')
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Union


class ExpressionError(Exception):
    """Base class for expression parse and evaluation failures."""


class ExpressionSyntaxError(ExpressionError):
    """Raised when an expression or body cannot be tokenized or parsed."""

    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__(message)
        self.position = position


class UnresolvedReferenceError(ExpressionError):
    """Raised when an identifier is neither a bound variable nor a helper."""

    def __init__(self, identifier: str, message: str | None = None) -> None:
        super().__init__(message or f"{identifier} is not defined")
        self.identifier = identifier


class ExpressionTypeError(ExpressionError):
    """Raised for operations on values of the wrong type.

    Attributes:
        property_name: The property being read when the failure was an
            access on ``null``/``undefined``.
    """

    def __init__(self, message: str, property_name: str | None = None) -> None:
        super().__init__(message)
        self.property_name = property_name


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenType(str, enum.Enum):
    NUMBER = "number"
    STRING = "string"
    REGEX = "regex"
    IDENT = "ident"
    KEYWORD = "keyword"
    SYSVAR = "sysvar"
    OP = "op"
    EOF = "eof"


KEYWORDS = frozenset(
    {"true", "false", "null", "undefined", "let", "const", "var", "return"}
)

_LITERAL_KEYWORDS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
}

_OPERATORS = (
    "===", "!==",
    "==", "!=", "<=", ">=", "&&", "||",
    "<", ">", "!", "=", "+", "-", "*", "/", "%",
    "(", ")", "[", "]", "{", "}", ",", ".", ":", "?", ";",
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}


@dataclass(frozen=True)
class Token:
    """A lexical token.

    Attributes:
        type: Token category.
        value: Decoded value (number, string text, regex ``(pattern, flags)``,
            identifier/operator text, or system variable name).
        start: Offset of the first character in the source.
        end: Offset one past the last character.
        newline_before: Whether a line break separates this token from the
            previous one.
    """

    type: TokenType
    value: Any
    start: int
    end: int
    newline_before: bool = False

    def is_op(self, *ops: str) -> bool:
        return self.type == TokenType.OP and self.value in ops

    def is_keyword(self, *words: str) -> bool:
        return self.type == TokenType.KEYWORD and self.value in words


def _ends_value(token: Token | None) -> bool:
    """Whether a ``/`` after *token* is division rather than a regex."""
    if token is None:
        return False
    if token.type in (TokenType.NUMBER, TokenType.STRING, TokenType.REGEX,
                      TokenType.IDENT, TokenType.SYSVAR):
        return True
    if token.type == TokenType.KEYWORD:
        return token.value in _LITERAL_KEYWORDS
    return token.is_op(")", "]", "}")


def tokenize(source: str) -> list[Token]:
    """Split *source* into tokens, ending with an ``EOF`` token.

    Raises:
        ExpressionSyntaxError: On unterminated strings, regexes, comments or
            system variables, and on unexpected characters.
    """
    tokens: list[Token] = []
    i = 0
    n = len(source)
    newline = False

    while i < n:
        ch = source[i]

        if ch in " \t\r\n":
            if ch == "\n":
                newline = True
            i += 1
            continue

        if source.startswith("//", i):
            end = source.find("\n", i)
            i = n if end == -1 else end
            continue
        if source.startswith("/*", i):
            end = source.find("*/", i + 2)
            if end == -1:
                raise ExpressionSyntaxError("Unterminated comment", i)
            if "\n" in source[i:end]:
                newline = True
            i = end + 2
            continue

        prev = tokens[-1] if tokens else None
        start = i

        if ch == "$" and source.startswith("${", i):
            end = source.find("}", i + 2)
            if end == -1:
                raise ExpressionSyntaxError("Unterminated system variable reference", i)
            name = source[i + 2:end].strip()
            if not name:
                raise ExpressionSyntaxError("Empty system variable reference", i)
            i = end + 1
            tokens.append(Token(TokenType.SYSVAR, name, start, i, newline))
        elif ch.isdigit() or (ch == "." and i + 1 < n and source[i + 1].isdigit()):
            i = _scan_number(source, i)
            text = source[start:i]
            value: Any = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(Token(TokenType.NUMBER, value, start, i, newline))
        elif ch in "'\"":
            text, i = _scan_string(source, i)
            tokens.append(Token(TokenType.STRING, text, start, i, newline))
        elif ch.isalpha() or ch in "_$":
            while i < n and (source[i].isalnum() or source[i] in "_$"):
                i += 1
            word = source[start:i]
            kind = TokenType.KEYWORD if word in KEYWORDS else TokenType.IDENT
            tokens.append(Token(kind, word, start, i, newline))
        elif ch == "/" and not _ends_value(prev):
            pattern, flags, i = _scan_regex(source, i)
            tokens.append(Token(TokenType.REGEX, (pattern, flags), start, i, newline))
        else:
            for op in _OPERATORS:
                if source.startswith(op, i):
                    i += len(op)
                    tokens.append(Token(TokenType.OP, op, start, i, newline))
                    break
            else:
                raise ExpressionSyntaxError(f"Unexpected character {ch!r}", i)
        newline = False

    tokens.append(Token(TokenType.EOF, None, n, n, newline))
    return tokens


def _scan_number(source: str, i: int) -> int:
    n = len(source)
    while i < n and source[i].isdigit():
        i += 1
    if i < n and source[i] == ".":
        i += 1
        while i < n and source[i].isdigit():
            i += 1
    if i < n and source[i] in "eE":
        j = i + 1
        if j < n and source[j] in "+-":
            j += 1
        if j < n and source[j].isdigit():
            i = j
            while i < n and source[i].isdigit():
                i += 1
    return i


def _scan_string(source: str, i: int) -> tuple[str, int]:
    quote = source[i]
    i += 1
    out: list[str] = []
    n = len(source)
    while i < n:
        ch = source[i]
        if ch == quote:
            return "".join(out), i + 1
        if ch == "\n":
            break
        if ch == "\\" and i + 1 < n:
            nxt = source[i + 1]
            if nxt == "u" and i + 5 < n:
                hex_digits = source[i + 2:i + 6]
                try:
                    out.append(chr(int(hex_digits, 16)))
                    i += 6
                    continue
                except ValueError:
                    pass
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    raise ExpressionSyntaxError("Unterminated string literal", i)


def _scan_regex(source: str, i: int) -> tuple[str, str, int]:
    start = i
    i += 1
    n = len(source)
    in_class = False
    while i < n:
        ch = source[i]
        if ch == "\n":
            break
        if ch == "\\":
            i += 2
            continue
        if ch == "[":
            in_class = True
        elif ch == "]":
            in_class = False
        elif ch == "/" and not in_class:
            pattern = source[start + 1:i]
            i += 1
            flags_start = i
            while i < n and source[i].isalpha():
                i += 1
            flags = source[flags_start:i]
            bad = set(flags) - set("gimsuy")
            if bad:
                raise ExpressionSyntaxError(
                    f"Invalid regular expression flags {''.join(sorted(bad))!r}", flags_start
                )
            return pattern, flags, i
        i += 1
    raise ExpressionSyntaxError("Unterminated regular expression literal", start)


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class RegexLiteral:
    pattern: str
    flags: str = ""


@dataclass(frozen=True)
class Identifier:
    name: str


@dataclass(frozen=True)
class SystemVariable:
    name: str


@dataclass(frozen=True)
class Member:
    obj: Expr
    prop: str


@dataclass(frozen=True)
class Index:
    obj: Expr
    key: Expr


@dataclass(frozen=True)
class Call:
    callee: Expr
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Expr


@dataclass(frozen=True)
class Binary:
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Logical:
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Conditional:
    test: Expr
    consequent: Expr
    alternate: Expr


@dataclass(frozen=True)
class ArrayLiteral:
    items: tuple[Expr, ...]


@dataclass(frozen=True)
class ObjectLiteral:
    entries: tuple[tuple[str, Expr], ...]


Expr = Union[
    Literal, RegexLiteral, Identifier, SystemVariable, Member, Index, Call,
    Unary, Binary, Logical, Conditional, ArrayLiteral, ObjectLiteral,
]


@dataclass(frozen=True)
class Declare:
    name: str
    value: Expr | None


@dataclass(frozen=True)
class Assign:
    name: str
    value: Expr


@dataclass(frozen=True)
class Return:
    value: Expr | None


@dataclass(frozen=True)
class ExprStatement:
    expr: Expr


Statement = Union[Declare, Assign, Return, ExprStatement]


@dataclass(frozen=True)
class Program:
    statements: tuple[Statement, ...]


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def parse_expression(source: str) -> Expr:
    """Parse a single condition expression.

    A trailing ``;`` is tolerated.

    Raises:
        ExpressionSyntaxError: If *source* is empty or not a single
            well-formed expression.
    """
    parser = _Parser(source)
    if parser.peek().type == TokenType.EOF:
        raise ExpressionSyntaxError("Empty expression", 0)
    expr = parser.expression()
    while parser.peek().is_op(";"):
        parser.advance()
    parser.expect_eof()
    return expr


def parse_program(source: str) -> Program:
    """Parse a Function body into a :class:`Program`.

    Raises:
        ExpressionSyntaxError: If the body is malformed.
    """
    return _Parser(source).program()


def validate_expression_syntax(source: str) -> str | None:
    """Return ``None`` if *source* parses as an expression, else the error text."""
    try:
        parse_expression(source)
    except ExpressionSyntaxError as exc:
        return str(exc)
    return None


def validate_program_syntax(source: str) -> str | None:
    """Return ``None`` if *source* parses as a Function body, else the error text."""
    try:
        parse_program(source)
    except ExpressionSyntaxError as exc:
        return str(exc)
    return None


_EQUALITY_OPS = ("==", "!=", "===", "!==")
_RELATIONAL_OPS = ("<", "<=", ">", ">=")


class _Parser:
    def __init__(self, source: str) -> None:
        self._tokens = tokenize(source)
        self._pos = 0

    # -- token helpers -----------------------------------------------------

    def peek(self, offset: int = 0) -> Token:
        index = min(self._pos + offset, len(self._tokens) - 1)
        return self._tokens[index]

    def advance(self) -> Token:
        token = self._tokens[self._pos]
        if token.type != TokenType.EOF:
            self._pos += 1
        return token

    def expect_op(self, op: str) -> Token:
        token = self.peek()
        if not token.is_op(op):
            raise self._unexpected(token, expected=op)
        return self.advance()

    def expect_eof(self) -> None:
        token = self.peek()
        if token.type != TokenType.EOF:
            raise self._unexpected(token)

    @staticmethod
    def _unexpected(token: Token, expected: str | None = None) -> ExpressionSyntaxError:
        if token.type == TokenType.EOF:
            text = "Unexpected end of input"
        else:
            shown = token.value if token.type != TokenType.REGEX else token.value[0]
            text = f"Unexpected token {shown!r}"
        if expected:
            text += f"; expected {expected!r}"
        return ExpressionSyntaxError(text, token.start)

    # -- statements --------------------------------------------------------

    def program(self) -> Program:
        statements: list[Statement] = []
        while True:
            while self.peek().is_op(";"):
                self.advance()
            if self.peek().type == TokenType.EOF:
                break
            statements.append(self.statement())
            token = self.peek()
            if token.is_op(";"):
                self.advance()
            elif token.type != TokenType.EOF and not token.newline_before:
                raise self._unexpected(token)
        return Program(statements=tuple(statements))

    def statement(self) -> Statement:
        token = self.peek()
        if token.is_keyword("let", "const", "var"):
            self.advance()
            name_token = self.advance()
            if name_token.type != TokenType.IDENT:
                raise self._unexpected(name_token, expected="identifier")
            value = None
            if self.peek().is_op("="):
                self.advance()
                value = self.expression()
            return Declare(name=name_token.value, value=value)
        if token.is_keyword("return"):
            self.advance()
            nxt = self.peek()
            if nxt.type == TokenType.EOF or nxt.is_op(";", "}") or nxt.newline_before:
                return Return(value=None)
            return Return(value=self.expression())
        if token.type == TokenType.IDENT and self.peek(1).is_op("="):
            self.advance()
            self.advance()
            return Assign(name=token.value, value=self.expression())
        return ExprStatement(expr=self.expression())

    # -- expressions -------------------------------------------------------

    def expression(self) -> Expr:
        test = self._logical_or()
        if self.peek().is_op("?"):
            self.advance()
            consequent = self.expression()
            self.expect_op(":")
            alternate = self.expression()
            return Conditional(test=test, consequent=consequent, alternate=alternate)
        return test

    def _logical_or(self) -> Expr:
        left = self._logical_and()
        while self.peek().is_op("||"):
            self.advance()
            left = Logical(op="||", left=left, right=self._logical_and())
        return left

    def _logical_and(self) -> Expr:
        left = self._equality()
        while self.peek().is_op("&&"):
            self.advance()
            left = Logical(op="&&", left=left, right=self._equality())
        return left

    def _equality(self) -> Expr:
        left = self._relational()
        while self.peek().is_op(*_EQUALITY_OPS):
            op = self.advance().value
            left = Binary(op=op, left=left, right=self._relational())
        return left

    def _relational(self) -> Expr:
        left = self._additive()
        while self.peek().is_op(*_RELATIONAL_OPS):
            op = self.advance().value
            left = Binary(op=op, left=left, right=self._additive())
        return left

    def _additive(self) -> Expr:
        left = self._multiplicative()
        while self.peek().is_op("+", "-"):
            op = self.advance().value
            left = Binary(op=op, left=left, right=self._multiplicative())
        return left

    def _multiplicative(self) -> Expr:
        left = self._unary()
        while self.peek().is_op("*", "/", "%"):
            op = self.advance().value
            left = Binary(op=op, left=left, right=self._unary())
        return left

    def _unary(self) -> Expr:
        if self.peek().is_op("!", "-", "+"):
            op = self.advance().value
            return Unary(op=op, operand=self._unary())
        return self._postfix()

    def _postfix(self) -> Expr:
        expr = self._primary()
        while True:
            token = self.peek()
            if token.is_op("."):
                self.advance()
                name = self.advance()
                if name.type not in (TokenType.IDENT, TokenType.KEYWORD):
                    raise self._unexpected(name, expected="property name")
                expr = Member(obj=expr, prop=name.value)
            elif token.is_op("["):
                self.advance()
                key = self.expression()
                self.expect_op("]")
                expr = Index(obj=expr, key=key)
            elif token.is_op("("):
                self.advance()
                args = self._sequence(")")
                expr = Call(callee=expr, args=args)
            else:
                return expr

    def _sequence(self, closer: str) -> tuple[Expr, ...]:
        items: list[Expr] = []
        if self.peek().is_op(closer):
            self.advance()
            return ()
        while True:
            items.append(self.expression())
            if self.peek().is_op(","):
                self.advance()
                if self.peek().is_op(closer):
                    self.advance()
                    return tuple(items)
                continue
            self.expect_op(closer)
            return tuple(items)

    def _primary(self) -> Expr:
        token = self.advance()
        if token.type in (TokenType.NUMBER, TokenType.STRING):
            return Literal(value=token.value)
        if token.type == TokenType.REGEX:
            pattern, flags = token.value
            return RegexLiteral(pattern=pattern, flags=flags)
        if token.type == TokenType.SYSVAR:
            return SystemVariable(name=token.value)
        if token.type == TokenType.IDENT:
            return Identifier(name=token.value)
        if token.type == TokenType.KEYWORD and token.value in _LITERAL_KEYWORDS:
            return Literal(value=_LITERAL_KEYWORDS[token.value])
        if token.is_op("("):
            expr = self.expression()
            self.expect_op(")")
            return expr
        if token.is_op("["):
            return ArrayLiteral(items=self._sequence("]"))
        if token.is_op("{"):
            return self._object_literal()
        raise self._unexpected(token)

    def _object_literal(self) -> ObjectLiteral:
        entries: list[tuple[str, Expr]] = []
        while not self.peek().is_op("}"):
            key_token = self.advance()
            if key_token.type in (TokenType.IDENT, TokenType.KEYWORD, TokenType.STRING):
                key = str(key_token.value)
            elif key_token.type == TokenType.NUMBER:
                key = str(key_token.value)
            else:
                raise self._unexpected(key_token, expected="property name")
            if self.peek().is_op(":"):
                self.advance()
                value = self.expression()
            elif key_token.type == TokenType.IDENT:
                value = Identifier(name=key)
            else:
                raise self._unexpected(self.peek(), expected=":")
            entries.append((key, value))
            if self.peek().is_op(","):
                self.advance()
            elif not self.peek().is_op("}"):
                raise self._unexpected(self.peek(), expected="}")
        self.expect_op("}")
        return ObjectLiteral(entries=tuple(entries))
