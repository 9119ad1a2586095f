"""Formula parsing and evaluation.

Formulas are parsed once, when a template is published, into a typed
expression tree. The tree is stored as JSON (``to_dict``), rebuilt with
``from_dict`` and evaluated any number of times with ``evaluate``.

Supported syntax::

    gross_pay * 0.15                      identifiers or {braced} variables
    base_salary × 1.5 ÷ 12                + - * / × ÷, unary minus
    hours_worked > 160 AND NOT on_leave   > >= < <= == != <>, AND OR NOT (&& || !)
    IF(gross_pay > 5000, gross_pay * 0.15, gross_pay * 0.10)
    ROUND(x, 2)  MIN(a, b, ...)  MAX(a, b, ...)  TRUE  FALSE

Values are Decimals; comparisons and boolean operators yield 1 or 0.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Context, Decimal, InvalidOperation, localcontext
from typing import Any, Mapping, Union

from paystructure_engine.calculators.types import FormulaExecution, ResolvedFormula
from paystructure_engine.exceptions import DivisionByZero, FormulaSyntaxError, UnboundVariable

DEFAULT_EPSILON = Decimal("0.000001")

_TRUE = Decimal("1")
_FALSE = Decimal("0")

# Evaluation always runs under this context so results do not depend on
# the caller's thread-local decimal settings.
_CONTEXT = Context(prec=28, rounding=ROUND_HALF_EVEN)


# ===== AST =====


@dataclass(frozen=True)
class Literal:
    value: Decimal


@dataclass(frozen=True)
class VarRef:
    name: str


@dataclass(frozen=True)
class UnaryOp:
    op: str  # "-"
    operand: Node


@dataclass(frozen=True)
class BinaryOp:
    op: str  # + - * /
    left: Node
    right: Node


@dataclass(frozen=True)
class Compare:
    op: str  # > >= < <= == !=
    left: Node
    right: Node


@dataclass(frozen=True)
class BoolOp:
    op: str  # AND / OR
    operands: tuple[Node, ...]


@dataclass(frozen=True)
class Not:
    operand: Node


@dataclass(frozen=True)
class Conditional:
    condition: Node
    then: Node
    otherwise: Node


@dataclass(frozen=True)
class Call:
    name: str  # ROUND / MIN / MAX
    args: tuple[Node, ...]


Node = Union[Literal, VarRef, UnaryOp, BinaryOp, Compare, BoolOp, Not, Conditional, Call]

FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    "IF": (3, 3),
    "ROUND": (1, 2),
    "MIN": (1, None),
    "MAX": (1, None),
}


# ===== Tokenizer =====


@dataclass(frozen=True)
class _Token:
    kind: str  # number, ident, op, cmp, lparen, rparen, comma, eof
    text: str
    position: int


_SINGLE_OPS = {"+": "+", "-": "-", "*": "*", "/": "/", "×": "*", "÷": "/"}
_COMPARATORS = (">=", "<=", "==", "!=", "<>", ">", "<", "=")
_KEYWORDS = {"AND", "OR", "NOT", "TRUE", "FALSE"}


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    i = 0
    n = len(expression)
    while i < n:
        ch = expression[i]
        if ch.isspace():
            i += 1
            continue
        if ch.isdigit() or (ch == "." and i + 1 < n and expression[i + 1].isdigit()):
            start = i
            seen_dot = False
            while i < n and (expression[i].isdigit() or (expression[i] == "." and not seen_dot)):
                if expression[i] == ".":
                    seen_dot = True
                i += 1
            tokens.append(_Token("number", expression[start:i], start))
            continue
        if ch.isalpha() or ch == "_":
            start = i
            while i < n and (expression[i].isalnum() or expression[i] == "_"):
                i += 1
            word = expression[start:i]
            if word.upper() in _KEYWORDS:
                tokens.append(_Token("keyword", word.upper(), start))
            else:
                tokens.append(_Token("ident", word, start))
            continue
        if ch == "{":
            start = i
            end = expression.find("}", i)
            if end == -1:
                raise FormulaSyntaxError(expression, start, "unterminated '{'")
            name = expression[i + 1 : end].strip()
            if not name or not all(c.isalnum() or c == "_" for c in name):
                raise FormulaSyntaxError(expression, start, f"invalid variable name {name!r}")
            tokens.append(_Token("ident", name, start))
            i = end + 1
            continue
        if expression.startswith("&&", i):
            tokens.append(_Token("keyword", "AND", i))
            i += 2
            continue
        if expression.startswith("||", i):
            tokens.append(_Token("keyword", "OR", i))
            i += 2
            continue
        matched = next((c for c in _COMPARATORS if expression.startswith(c, i)), None)
        if matched is not None:
            op = {"<>": "!=", "=": "=="}.get(matched, matched)
            tokens.append(_Token("cmp", op, i))
            i += len(matched)
            continue
        if ch == "!":
            tokens.append(_Token("keyword", "NOT", i))
            i += 1
            continue
        if ch in _SINGLE_OPS:
            tokens.append(_Token("op", _SINGLE_OPS[ch], i))
            i += 1
            continue
        if ch == "(":
            tokens.append(_Token("lparen", ch, i))
        elif ch == ")":
            tokens.append(_Token("rparen", ch, i))
        elif ch == ",":
            tokens.append(_Token("comma", ch, i))
        else:
            raise FormulaSyntaxError(expression, i, f"unexpected character {ch!r}")
        i += 1
    tokens.append(_Token("eof", "", n))
    return tokens


# ===== Parser =====


class _Parser:
    """Recursive-descent parser, lowest precedence first."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.pos]

    def _advance(self) -> _Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _error(self, reason: str, token: _Token | None = None) -> FormulaSyntaxError:
        tok = token or self.current
        return FormulaSyntaxError(self.expression, tok.position, reason)

    def _expect(self, kind: str) -> _Token:
        if self.current.kind != kind:
            found = self.current.text or "end of formula"
            raise self._error(f"expected {kind}, found {found!r}")
        return self._advance()

    def _is_keyword(self, word: str) -> bool:
        return self.current.kind == "keyword" and self.current.text == word

    def parse(self) -> Node:
        if self.current.kind == "eof":
            raise self._error("empty formula")
        node = self._or()
        if self.current.kind != "eof":
            raise self._error(f"unexpected {self.current.text!r}")
        return node

    def _or(self) -> Node:
        operands = [self._and()]
        while self._is_keyword("OR"):
            self._advance()
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else BoolOp("OR", tuple(operands))

    def _and(self) -> Node:
        operands = [self._not()]
        while self._is_keyword("AND"):
            self._advance()
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else BoolOp("AND", tuple(operands))

    def _not(self) -> Node:
        if self._is_keyword("NOT"):
            self._advance()
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._additive()
        if self.current.kind == "cmp":
            op = self._advance().text
            right = self._additive()
            if self.current.kind == "cmp":
                raise self._error("chained comparisons are not supported")
            return Compare(op, left, right)
        return left

    def _additive(self) -> Node:
        node = self._term()
        while self.current.kind == "op" and self.current.text in ("+", "-"):
            op = self._advance().text
            node = BinaryOp(op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._unary()
        while self.current.kind == "op" and self.current.text in ("*", "/"):
            op = self._advance().text
            node = BinaryOp(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self.current.kind == "op" and self.current.text == "-":
            self._advance()
            operand = self._unary()
            if isinstance(operand, Literal):
                return Literal(-operand.value)
            return UnaryOp("-", operand)
        if self.current.kind == "op" and self.current.text == "+":
            self._advance()
            return self._unary()
        return self._primary()

    def _primary(self) -> Node:
        token = self.current
        if token.kind == "number":
            self._advance()
            try:
                return Literal(Decimal(token.text))
            except InvalidOperation:
                raise self._error(f"invalid number {token.text!r}", token) from None
        if token.kind == "keyword" and token.text in ("TRUE", "FALSE"):
            self._advance()
            return Literal(_TRUE if token.text == "TRUE" else _FALSE)
        if token.kind == "lparen":
            self._advance()
            node = self._or()
            self._expect("rparen")
            return node
        if token.kind == "ident":
            self._advance()
            if self.current.kind == "lparen":
                return self._call(token)
            return VarRef(token.text)
        found = token.text or "end of formula"
        raise self._error(f"unexpected {found!r}", token)

    def _call(self, name_token: _Token) -> Node:
        name = name_token.text.upper()
        if name not in FUNCTION_ARITY:
            raise self._error(f"unknown function {name_token.text!r}", name_token)
        self._expect("lparen")
        args: list[Node] = []
        if self.current.kind != "rparen":
            args.append(self._or())
            while self.current.kind == "comma":
                self._advance()
                args.append(self._or())
        self._expect("rparen")

        low, high = FUNCTION_ARITY[name]
        if len(args) < low or (high is not None and len(args) > high):
            raise self._error(f"{name} takes {low}{'' if high == low else '+'} argument(s)", name_token)
        if name == "IF":
            return Conditional(args[0], args[1], args[2])
        return Call(name, tuple(args))


def parse_formula(expression: str) -> Node:
    """Parse formula text into an expression tree.

    Raises FormulaSyntaxError with the offending position.
    """
    return _Parser(expression).parse()


# ===== Serialization =====


def to_dict(node: Node) -> dict[str, Any]:
    """Serialize a tree to JSON-compatible dicts."""
    if isinstance(node, Literal):
        return {"type": "literal", "value": str(node.value)}
    if isinstance(node, VarRef):
        return {"type": "var", "name": node.name}
    if isinstance(node, UnaryOp):
        return {"type": "unary", "op": node.op, "operand": to_dict(node.operand)}
    if isinstance(node, BinaryOp):
        return {"type": "binary", "op": node.op, "left": to_dict(node.left), "right": to_dict(node.right)}
    if isinstance(node, Compare):
        return {"type": "compare", "op": node.op, "left": to_dict(node.left), "right": to_dict(node.right)}
    if isinstance(node, BoolOp):
        return {"type": "bool", "op": node.op, "operands": [to_dict(o) for o in node.operands]}
    if isinstance(node, Not):
        return {"type": "not", "operand": to_dict(node.operand)}
    if isinstance(node, Conditional):
        return {
            "type": "if",
            "condition": to_dict(node.condition),
            "then": to_dict(node.then),
            "else": to_dict(node.otherwise),
        }
    if isinstance(node, Call):
        return {"type": "call", "name": node.name, "args": [to_dict(a) for a in node.args]}
    raise TypeError(f"Not a formula node: {node!r}")


def from_dict(data: Mapping[str, Any]) -> Node:
    """Rebuild a tree serialized by ``to_dict``."""
    node_type = data.get("type")
    if node_type == "literal":
        return Literal(Decimal(data["value"]))
    if node_type == "var":
        return VarRef(data["name"])
    if node_type == "unary":
        return UnaryOp(data["op"], from_dict(data["operand"]))
    if node_type == "binary":
        return BinaryOp(data["op"], from_dict(data["left"]), from_dict(data["right"]))
    if node_type == "compare":
        return Compare(data["op"], from_dict(data["left"]), from_dict(data["right"]))
    if node_type == "bool":
        return BoolOp(data["op"], tuple(from_dict(o) for o in data["operands"]))
    if node_type == "not":
        return Not(from_dict(data["operand"]))
    if node_type == "if":
        return Conditional(from_dict(data["condition"]), from_dict(data["then"]), from_dict(data["else"]))
    if node_type == "call":
        return Call(data["name"], tuple(from_dict(a) for a in data["args"]))
    raise ValueError(f"Unknown formula node type: {node_type!r}")


def extract_variables(node: Node) -> list[str]:
    """Variable names referenced by a tree, in first-use order."""
    seen: dict[str, None] = {}

    def walk(n: Node) -> None:
        if isinstance(n, VarRef):
            seen.setdefault(n.name, None)
        elif isinstance(n, UnaryOp) or isinstance(n, Not):
            walk(n.operand)
        elif isinstance(n, (BinaryOp, Compare)):
            walk(n.left)
            walk(n.right)
        elif isinstance(n, BoolOp):
            for o in n.operands:
                walk(o)
        elif isinstance(n, Conditional):
            walk(n.condition)
            walk(n.then)
            walk(n.otherwise)
        elif isinstance(n, Call):
            for a in n.args:
                walk(a)

    walk(node)
    return list(seen)


# ===== Evaluation =====


def evaluate(
    node: Node,
    variables: Mapping[str, Decimal],
    epsilon: Decimal = DEFAULT_EPSILON,
) -> Decimal:
    """Evaluate a tree against variable bindings.

    Pure: the same tree and bindings always give the same Decimal.
    Raises UnboundVariable for a missing binding and DivisionByZero when a
    divisor's magnitude is below ``epsilon``. IF, AND and OR only evaluate
    the operands they need.
    """
    with localcontext(_CONTEXT):
        return _eval(node, variables, epsilon)


def _truthy(value: Decimal) -> bool:
    return value != 0


def _eval(node: Node, variables: Mapping[str, Decimal], epsilon: Decimal) -> Decimal:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, VarRef):
        try:
            value = variables[node.name]
        except KeyError:
            raise UnboundVariable(node.name) from None
        return Decimal(value)
    if isinstance(node, UnaryOp):
        return -_eval(node.operand, variables, epsilon)
    if isinstance(node, BinaryOp):
        left = _eval(node.left, variables, epsilon)
        right = _eval(node.right, variables, epsilon)
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        if node.op == "/":
            if abs(right) < epsilon:
                raise DivisionByZero(right)
            return left / right
        raise ValueError(f"Unknown operator {node.op!r}")
    if isinstance(node, Compare):
        left = _eval(node.left, variables, epsilon)
        right = _eval(node.right, variables, epsilon)
        result = {
            ">": left > right,
            ">=": left >= right,
            "<": left < right,
            "<=": left <= right,
            "==": left == right,
            "!=": left != right,
        }[node.op]
        return _TRUE if result else _FALSE
    if isinstance(node, BoolOp):
        if node.op == "AND":
            for operand in node.operands:
                if not _truthy(_eval(operand, variables, epsilon)):
                    return _FALSE
            return _TRUE
        for operand in node.operands:
            if _truthy(_eval(operand, variables, epsilon)):
                return _TRUE
        return _FALSE
    if isinstance(node, Not):
        return _FALSE if _truthy(_eval(node.operand, variables, epsilon)) else _TRUE
    if isinstance(node, Conditional):
        if _truthy(_eval(node.condition, variables, epsilon)):
            return _eval(node.then, variables, epsilon)
        return _eval(node.otherwise, variables, epsilon)
    if isinstance(node, Call):
        args = [_eval(a, variables, epsilon) for a in node.args]
        if node.name == "MIN":
            return min(args)
        if node.name == "MAX":
            return max(args)
        if node.name == "ROUND":
            places = int(args[1]) if len(args) > 1 else 0
            return args[0].quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
        raise ValueError(f"Unknown function {node.name!r}")
    raise TypeError(f"Not a formula node: {node!r}")


def evaluate_logged(
    formula: ResolvedFormula,
    variables: Mapping[str, Decimal],
    component_code: str,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> tuple[Decimal, FormulaExecution]:
    """Evaluate and produce the audit record for a persisted component."""
    started = time.perf_counter()
    result = evaluate(formula.ast, variables, epsilon)
    elapsed_ms = Decimal(str(round((time.perf_counter() - started) * 1000, 4)))

    inputs = {
        name: str(variables[name])
        for name in extract_variables(formula.ast)
        if name in variables
    }
    return result, FormulaExecution(
        component_code=component_code,
        formula_id=formula.formula_id,
        expression=formula.expression,
        input_variables=inputs,
        result=result,
        execution_time_ms=elapsed_ms,
    )
