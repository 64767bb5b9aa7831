"""
Condition expressions for conditional flow steps.

Grammar:
    Expr    := Or
    Or      := And ('||' And)*
    And     := Cmp ('&&' Cmp)*
    Cmp     := Operand Op Operand
    Op      := '==' | '!=' | '>=' | '<=' | '>' | '<'
    Operand := 'string' | "string" | integer | float | state_key

`&&` binds tighter than `||`; both fold left to right and short-circuit.
Operands that are not literals are looked up in the state bag; an unknown
key is an error. Two numbers compare numerically. Anything else compares
by canonical string form, so `'5' == 5` is true and so is `x == '5'`
when x holds 5.0 (integral floats print without a fraction).
"""
from __future__ import annotations

import operator as op
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Union

from utils.errors import ConditionError
from utils.templating import stringify


OPERATORS: dict[str, Any] = {
    "==": op.eq,
    "!=": op.ne,
    ">=": op.ge,
    "<=": op.le,
    ">": op.gt,
    "<": op.lt,
}

# Longest match first so ">=" never lexes as ">" "="
_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<logic>&&|\|\|)
      | (?P<cmp>==|!=|>=|<=|>|<)
      | (?P<str>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<word>[^\s&|=!<>'"]+)
    )""",
    re.VERBOSE,
)
_INT_RE = re.compile(r"[+-]?\d+")
_FLOAT_RE = re.compile(r"[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?")


# ── AST ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Var:
    name: str


Operand = Union[Literal, Var]


@dataclass(frozen=True)
class Comparison:
    left: Operand
    operator: str
    right: Operand


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


Node = Union[Comparison, And, Or]


# ── Parsing ───────────────────────────────────────────────────

def _tokenize(expr: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    expr = expr.rstrip()
    while pos < len(expr):
        m = _TOKEN_RE.match(expr, pos)
        if not m or m.end() == pos:
            raise ConditionError(f"unexpected input at offset {pos} in condition {expr!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


def _operand(kind: str, text: str) -> Operand:
    if kind == "str":
        body = text[1:-1]
        return Literal(re.sub(r"\\(.)", r"\1", body))
    if _INT_RE.fullmatch(text):
        return Literal(int(text))
    if _FLOAT_RE.fullmatch(text):
        return Literal(float(text))
    return Var(text)


class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.pos = 0

    def _peek(self) -> tuple[str, str]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return ("eof", "")

    def _next(self) -> tuple[str, str]:
        tok = self._peek()
        self.pos += 1
        return tok

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionError("empty condition")
        node = self._or()
        if self._peek()[0] != "eof":
            raise ConditionError(
                f"unexpected token {self._peek()[1]!r} in condition {self.expr!r}"
            )
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._peek() == ("logic", "||"):
            self._next()
            node = Or(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._cmp()
        while self._peek() == ("logic", "&&"):
            self._next()
            node = And(node, self._cmp())
        return node

    def _cmp(self) -> Comparison:
        left = self._operand_token()
        kind, text = self._next()
        if kind != "cmp":
            raise ConditionError(
                f"expected comparison operator, got {text or 'end of input'!r} "
                f"in condition {self.expr!r}"
            )
        right = self._operand_token()
        return Comparison(left, text, right)

    def _operand_token(self) -> Operand:
        kind, text = self._next()
        if kind not in ("str", "word"):
            raise ConditionError(
                f"expected operand, got {text or 'end of input'!r} in condition {self.expr!r}"
            )
        return _operand(kind, text)


@lru_cache(maxsize=512)
def parse_condition(expr: str) -> Node:
    """Parse a condition string into an expression tree (cached)."""
    if not isinstance(expr, str):
        raise ConditionError("condition should be a string")
    return _Parser(expr).parse()


# ── Evaluation ────────────────────────────────────────────────

def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _resolve(operand: Operand, state: Mapping[str, Any]) -> Any:
    if isinstance(operand, Literal):
        return operand.value
    try:
        return state[operand.name]
    except KeyError:
        raise ConditionError(f"variable {operand.name} not found in state") from None


def compare_values(left: Any, operator: str, right: Any) -> bool:
    fn = OPERATORS.get(operator)
    if fn is None:
        raise ConditionError(f"unknown operator: {operator}")
    if _is_number(left) and _is_number(right):
        return fn(left, right)
    return fn(stringify(left), stringify(right))


def evaluate(node: Node, state: Mapping[str, Any]) -> bool:
    if isinstance(node, And):
        return evaluate(node.left, state) and evaluate(node.right, state)
    if isinstance(node, Or):
        return evaluate(node.left, state) or evaluate(node.right, state)
    return compare_values(
        _resolve(node.left, state), node.operator, _resolve(node.right, state),
    )


def evaluate_condition(expr: str, state: Mapping[str, Any]) -> bool:
    """Parse (cached) and evaluate a condition string against state."""
    return evaluate(parse_condition(expr), state)
