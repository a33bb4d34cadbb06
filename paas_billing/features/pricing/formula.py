"""
Pricing formula language.

Formulas are small arithmetic expressions evaluated with exact decimals:

    ceil($time_in_seconds / 3600) * 0.01 * $number_of_nodes

Grammar (lowest precedence first)::

    expr    := term (("+" | "-") term)*
    term    := power (("*" | "/") power)*
    power   := unary ("^" power)?
    unary   := ("-" | "+") unary | postfix
    postfix := primary ("::" TYPE)*
    primary := NUMBER | VARIABLE | "ceil" "(" expr ")" | "(" expr ")"

Only the variables in ``VARIABLES`` exist. Anything else is rejected when the
formula is parsed, which happens once at configuration install time.
"""

import re
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, DecimalException, localcontext
from typing import List, Mapping, Optional, Tuple, Union

from paas_billing.core.errors import FormulaError, FormulaEvaluationError

VARIABLES = ("time_in_seconds", "memory_in_mb", "storage_in_mb", "number_of_nodes")
CAST_TYPES = ("integer", "bigint", "numeric")
PRECISION = 34

_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+)
  | (?P<number>\d+(?:\.\d*)?|\.\d+)
  | (?P<variable>\$[A-Za-z_][A-Za-z0-9_]*)
  | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<cast>::)
  | (?P<op>[-+*/^()])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise FormulaError(f"illegal token in formula: {source[pos]}")
        kind = match.lastgroup
        text = match.group()
        pos = match.end()
        if kind == "space":
            continue
        if kind == "variable" and text[1:] not in VARIABLES:
            raise FormulaError(f"illegal token in formula: {text}")
        if kind == "word" and text.lower() not in ("ceil",) + CAST_TYPES:
            raise FormulaError(f"illegal token in formula: {text}")
        tokens.append(Token(kind, text))
    return tokens


# AST

@dataclass(frozen=True)
class Number:
    value: Decimal


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Negate:
    operand: "Node"


@dataclass(frozen=True)
class Ceil:
    operand: "Node"


@dataclass(frozen=True)
class Cast:
    operand: "Node"
    type_name: str


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Number, Variable, Negate, Ceil, Cast, BinaryOp]


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.pos = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise FormulaError(f"unexpected end of formula: {self.source}")
        self.pos += 1
        return token

    def _expect(self, text: str) -> None:
        token = self._next()
        if token.text != text:
            raise FormulaError(f"illegal token in formula: {token.text}")

    def parse(self) -> Node:
        if not self.tokens:
            raise FormulaError("formula is empty")
        node = self._expr()
        leftover = self._peek()
        if leftover is not None:
            raise FormulaError(f"illegal token in formula: {leftover.text}")
        return node

    def _expr(self) -> Node:
        node = self._term()
        while self._peek() is not None and self._peek().text in ("+", "-"):
            op = self._next().text
            node = BinaryOp(op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._power()
        while self._peek() is not None and self._peek().text in ("*", "/"):
            op = self._next().text
            node = BinaryOp(op, node, self._power())
        return node

    def _power(self) -> Node:
        base = self._unary()
        token = self._peek()
        if token is not None and token.text == "^":
            self._next()
            return BinaryOp("^", base, self._power())
        return base

    def _unary(self) -> Node:
        token = self._peek()
        if token is not None and token.text in ("-", "+"):
            self._next()
            operand = self._unary()
            return Negate(operand) if token.text == "-" else operand
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while self._peek() is not None and self._peek().kind == "cast":
            self._next()
            type_token = self._next()
            if type_token.kind != "word" or type_token.text.lower() not in CAST_TYPES:
                raise FormulaError(f"illegal token in formula: {type_token.text}")
            node = Cast(node, type_token.text.lower())
        return node

    def _primary(self) -> Node:
        token = self._next()
        if token.kind == "number":
            return Number(Decimal(token.text))
        if token.kind == "variable":
            return Variable(token.text[1:])
        if token.kind == "word" and token.text.lower() == "ceil":
            self._expect("(")
            inner = self._expr()
            self._expect(")")
            return Ceil(inner)
        if token.text == "(":
            inner = self._expr()
            self._expect(")")
            return inner
        raise FormulaError(f"illegal token in formula: {token.text}")


def _evaluate(node: Node, env: Mapping[str, Decimal]) -> Decimal:
    if isinstance(node, Number):
        return node.value
    if isinstance(node, Variable):
        return env[node.name]
    if isinstance(node, Negate):
        return -_evaluate(node.operand, env)
    if isinstance(node, Ceil):
        return _evaluate(node.operand, env).to_integral_value(rounding=ROUND_CEILING)
    if isinstance(node, Cast):
        value = _evaluate(node.operand, env)
        if node.type_name == "numeric":
            return value
        return value.to_integral_value(rounding=ROUND_HALF_UP)
    left = _evaluate(node.left, env)
    right = _evaluate(node.right, env)
    if node.op == "+":
        return left + right
    if node.op == "-":
        return left - right
    if node.op == "*":
        return left * right
    if node.op == "/":
        return left / right
    return left ** right


def _variables(node: Node) -> Tuple[str, ...]:
    if isinstance(node, Variable):
        return (node.name,)
    if isinstance(node, (Negate, Ceil, Cast)):
        return _variables(node.operand)
    if isinstance(node, BinaryOp):
        return _variables(node.left) + _variables(node.right)
    return ()


class Formula:
    """A parsed formula, evaluated as many times as needed."""

    def __init__(self, source: str):
        self.source = source
        self.ast = _Parser(source).parse()
        self.variables = frozenset(_variables(self.ast))

    def evaluate(self, **values) -> Decimal:
        env = {name: Decimal(values.get(name) or 0) for name in VARIABLES}
        try:
            with localcontext() as ctx:
                ctx.prec = PRECISION
                result = _evaluate(self.ast, env)
        except ZeroDivisionError:
            raise FormulaEvaluationError(f"division by zero in formula: {self.source}") from None
        except DecimalException as exc:
            raise FormulaEvaluationError(f"cannot evaluate formula {self.source}: {exc.__class__.__name__}") from None
        return result

    def __repr__(self) -> str:
        return f"Formula({self.source!r})"


def parse_formula(source: str) -> Formula:
    return Formula(source)
