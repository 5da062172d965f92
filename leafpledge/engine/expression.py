"""
leafpledge.engine.expression — Sandboxed Scoring Expressions
=============================================================

Custom scoring rules compute leaves with small arithmetic expressions such
as ``base + (storyPoints ?? 0) * spMult + 15``.  Expressions are parsed by
a hand-written recursive-descent parser into a tiny AST and evaluated
directly; nothing is ever handed to ``eval``.

Grammar (lowest → highest precedence)::

    expr     := term (("+" | "-") term)*
    term     := coalesce (("*" | "/") coalesce)*
    coalesce := unary ("??" unary)*
    unary    := ("-" | "+") unary | primary
    primary  := NUMBER
              | VARIABLE
              | ("min" | "max") "(" expr "," expr ")"
              | "(" expr ")"

Variables: ``base``, ``spMult``, ``storyPoints``, ``issueTypeWeight``.

Pipeline: forbidden-token scan → alphabet check → tokenize → parse →
evaluate.  Anything outside the grammar raises
:class:`~leafpledge.errors.InvalidExpression`; a division by zero or a
non-finite result raises :class:`~leafpledge.errors.EvaluationError`.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache

from leafpledge.engine.validation import ValidationResult
from leafpledge.errors import EvaluationError, ExpressionError, InvalidExpression

__all__ = [
    "ALLOWED_FUNCTIONS",
    "ALLOWED_VARIABLES",
    "evaluate_expression",
    "parse_expression",
    "validate_expression",
]

# Defaults used when a caller leaves a variable out (or passes None).
ALLOWED_VARIABLES: dict[str, float] = {
    "base": 10,
    "spMult": 5,
    "storyPoints": 0,
    "issueTypeWeight": 1.0,
}
ALLOWED_FUNCTIONS: frozenset[str] = frozenset({"min", "max"})

# Representative values for validate_expression().
_PROBE_VARIABLES: dict[str, float] = {
    "base": 10,
    "spMult": 5,
    "storyPoints": 3,
    "issueTypeWeight": 1.0,
}

_FORBIDDEN: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[;{}\[\]]"), "block delimiters"),
    (re.compile(r"=>"), "arrow functions"),
    (re.compile(r"[\"'`]"), "string literals"),
    (re.compile(r"\.\s*[A-Za-z_]\w*\s*\("), "method calls"),
    (
        re.compile(
            r"\b(eval|exec|import|require|function|lambda|compile|open|globals|locals)\b",
            re.IGNORECASE,
        ),
        "dynamic execution keywords",
    ),
    (re.compile(r"__"), "dunder names"),
)
_ALPHABET = re.compile(r"^[A-Za-z0-9_+\-*/()?,.\s]+$")
_TOKEN = re.compile(
    r"\s*(?:(?P<num>\d+(?:\.\d*)?|\.\d+)|(?P<name>[A-Za-z_]\w*)|(?P<op>\?\?|[-+*/(),]))"
)


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------
class Node:
    def evaluate(self, env: Mapping[str, float | None]) -> float | None:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class Number(Node):
    value: float

    def evaluate(self, env):
        return self.value


@dataclass(frozen=True, slots=True)
class Variable(Node):
    name: str

    def evaluate(self, env):
        return env.get(self.name)


@dataclass(frozen=True, slots=True)
class Negate(Node):
    operand: Node

    def evaluate(self, env):
        return -_require(self.operand.evaluate(env))


@dataclass(frozen=True, slots=True)
class BinaryOp(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, env):
        left = _require(self.left.evaluate(env))
        right = _require(self.right.evaluate(env))
        if self.op == "+":
            return left + right
        if self.op == "-":
            return left - right
        if self.op == "*":
            return left * right
        if right == 0:
            raise EvaluationError("Division by zero")
        return left / right


@dataclass(frozen=True, slots=True)
class Coalesce(Node):
    left: Node
    default: Node

    def evaluate(self, env):
        value = self.left.evaluate(env)
        return self.default.evaluate(env) if value is None else value


@dataclass(frozen=True, slots=True)
class Call(Node):
    func: str
    a: Node
    b: Node

    def evaluate(self, env):
        a = _require(self.a.evaluate(env))
        b = _require(self.b.evaluate(env))
        return min(a, b) if self.func == "min" else max(a, b)


def _require(value: float | None) -> float:
    if value is None:
        raise EvaluationError("Null operand in arithmetic")
    return value


# ---------------------------------------------------------------------------
# Tokenizer + parser
# ---------------------------------------------------------------------------
def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    end = len(expression.rstrip())
    while pos < end:
        match = _TOKEN.match(expression, pos)
        if match is None or match.end() == pos:
            raise InvalidExpression(
                f"Unexpected character {expression[pos:pos + 1]!r} at {pos}", expression
            )
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, op: str) -> bool:
        token = self._peek()
        if token is not None and token == ("op", op):
            self.pos += 1
            return True
        return False

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            raise InvalidExpression(f"Expected {op!r}", self.expression)

    def parse(self) -> Node:
        if not self.tokens:
            raise InvalidExpression("Expression is empty", self.expression)
        node = self._expr()
        if self._peek() is not None:
            raise InvalidExpression(
                f"Unexpected token {self._peek()[1]!r}", self.expression
            )
        return node

    def _expr(self) -> Node:
        node = self._term()
        while True:
            if self._accept("+"):
                node = BinaryOp("+", node, self._term())
            elif self._accept("-"):
                node = BinaryOp("-", node, self._term())
            else:
                return node

    def _term(self) -> Node:
        node = self._coalesce()
        while True:
            if self._accept("*"):
                node = BinaryOp("*", node, self._coalesce())
            elif self._accept("/"):
                node = BinaryOp("/", node, self._coalesce())
            else:
                return node

    def _coalesce(self) -> Node:
        node = self._unary()
        while self._accept("??"):
            node = Coalesce(node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("-"):
            return Negate(self._unary())
        if self._accept("+"):
            return self._unary()
        return self._primary()

    def _primary(self) -> Node:
        token = self._peek()
        if token is None:
            raise InvalidExpression("Unexpected end of expression", self.expression)
        kind, text = token

        if kind == "num":
            self.pos += 1
            return Number(float(text))

        if kind == "name":
            self.pos += 1
            if text in ALLOWED_FUNCTIONS:
                self._expect("(")
                a = self._expr()
                self._expect(",")
                b = self._expr()
                self._expect(")")
                return Call(text, a, b)
            if text in ALLOWED_VARIABLES:
                return Variable(text)
            raise InvalidExpression(f"Unknown identifier {text!r}", self.expression)

        if self._accept("("):
            node = self._expr()
            self._expect(")")
            return node

        raise InvalidExpression(f"Unexpected token {text!r}", self.expression)


@lru_cache(maxsize=256)
def parse_expression(expression: str) -> Node:
    """Check *expression* against the grammar and return its AST."""
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidExpression("Expression must be a non-empty string", expression)

    for pattern, label in _FORBIDDEN:
        if pattern.search(expression):
            raise InvalidExpression(f"Forbidden pattern ({label}) in expression", expression)

    if not _ALPHABET.match(expression):
        raise InvalidExpression("Invalid characters in expression", expression)

    return _Parser(expression).parse()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def evaluate_expression(expression: str, variables: Mapping[str, float | None]) -> float:
    """Evaluate *expression* with *variables* and return a finite number.

    Raises
    ------
    InvalidExpression
        The expression contains anything outside the grammar.
    EvaluationError
        Division by zero, or the result is not a finite number.
    """
    if not isinstance(expression, str):
        raise InvalidExpression("Expression must be a non-empty string", None)
    node = parse_expression(expression)

    env: dict[str, float] = {}
    for name, default in ALLOWED_VARIABLES.items():
        value = variables.get(name)
        env[name] = default if value is None else float(value)

    try:
        result = node.evaluate(env)
    except EvaluationError as exc:
        exc.expression = expression
        raise
    except OverflowError as exc:
        raise EvaluationError("Numeric overflow", expression) from exc

    if result is None or not math.isfinite(result):
        raise EvaluationError(
            f"Expression did not evaluate to a finite number: {result}", expression
        )
    return result


def validate_expression(expression: str) -> ValidationResult:
    """Dry-run *expression* with representative values; never raises."""
    try:
        evaluate_expression(expression, _PROBE_VARIABLES)
    except ExpressionError as exc:
        return ValidationResult(valid=False, errors=[str(exc)])
    return ValidationResult(valid=True)
