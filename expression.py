"""Condition and arithmetic evaluation.

Conditions are a small typed grammar: literals, variable names, comparison,
boolean and arithmetic operators. Values are ``float``, ``str`` or ``bool``
and coerce the way a loosely typed scripting language does ("5" == 5).
"""

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Union

from lexer import SIGIL, SiglaError, is_identifier_part, is_identifier_start
from parser import format_number, parse_number


class ExpressionError(SiglaError):
    """Raised when a condition or arithmetic fragment cannot be evaluated."""


Value = Union[float, str, bool]

_OPERATORS = ("===", "!==", "==", "!=", "<=", ">=", "&&", "||", "<", ">", "!", "+", "-", "*", "/", "%")
_MATH_TRIGGERS = set("+-*/()")
_MATH_CHARS = set("0123456789.+-*/()")


@dataclass
class ExprToken:
    type: str
    value: str
    position: int


class ExpressionLexer:
    def __init__(self, text: str) -> None:
        self.text = text
        self.index = 0

    def tokenize(self) -> List[ExprToken]:
        tokens: List[ExprToken] = []
        text = self.text
        n = len(text)
        while self.index < n:
            ch = text[self.index]
            if ch.isspace():
                self.index += 1
                continue
            if ch.isdigit() or (ch == "." and self.index + 1 < n and text[self.index + 1].isdigit()):
                tokens.append(self._consume_number())
                continue
            if ch in ('"', "'"):
                tokens.append(self._consume_string())
                continue
            if is_identifier_start(ch):
                start = self.index
                while self.index < n and is_identifier_part(text[self.index]):
                    self.index += 1
                word = text[start:self.index]
                token_type = "BOOL" if word in ("true", "false") else "IDENT"
                tokens.append(ExprToken(token_type, word, start))
                continue
            if ch == "(":
                tokens.append(ExprToken("LPAREN", ch, self.index))
                self.index += 1
                continue
            if ch == ")":
                tokens.append(ExprToken("RPAREN", ch, self.index))
                self.index += 1
                continue
            for op in _OPERATORS:
                if text.startswith(op, self.index):
                    tokens.append(ExprToken("OP", op, self.index))
                    self.index += len(op)
                    break
            else:
                raise ExpressionError(f"Unexpected character '{ch}' at position {self.index}")
        tokens.append(ExprToken("EOF", "", self.index))
        return tokens

    def _consume_number(self) -> ExprToken:
        text = self.text
        n = len(text)
        start = self.index
        while self.index < n and text[self.index].isdigit():
            self.index += 1
        if self.index < n and text[self.index] == ".":
            self.index += 1
            while self.index < n and text[self.index].isdigit():
                self.index += 1
        if self.index < n and text[self.index] in "eE":
            mark = self.index
            self.index += 1
            if self.index < n and text[self.index] in "+-":
                self.index += 1
            if self.index < n and text[self.index].isdigit():
                while self.index < n and text[self.index].isdigit():
                    self.index += 1
            else:
                self.index = mark
        return ExprToken("NUMBER", text[start:self.index], start)

    def _consume_string(self) -> ExprToken:
        text = self.text
        start = self.index
        quote = text[self.index]
        self.index += 1
        chars: List[str] = []
        while self.index < len(text):
            ch = text[self.index]
            if ch == "\\" and self.index + 1 < len(text):
                chars.append(text[self.index + 1])
                self.index += 2
                continue
            if ch == quote:
                self.index += 1
                return ExprToken("STRING", "".join(chars), start)
            chars.append(ch)
            self.index += 1
        raise ExpressionError(f"Unterminated string starting at position {start}")


# ---- AST ----


class Expr:
    pass


@dataclass
class Literal(Expr):
    value: Value


@dataclass
class Name(Expr):
    name: str


@dataclass
class Unary(Expr):
    op: str
    operand: Expr


@dataclass
class Binary(Expr):
    op: str
    left: Expr
    right: Expr


class ExpressionParser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = ExpressionLexer(text).tokenize()
        self.index = 0

    def parse(self) -> Expr:
        expr = self._parse_or()
        token = self._peek()
        if token.type != "EOF":
            raise ExpressionError(f"Unexpected '{token.value}' at position {token.position}")
        return expr

    def _parse_or(self) -> Expr:
        left = self._parse_and()
        while self._match_op("||"):
            left = Binary("||", left, self._parse_and())
        return left

    def _parse_and(self) -> Expr:
        left = self._parse_not()
        while self._match_op("&&"):
            left = Binary("&&", left, self._parse_not())
        return left

    def _parse_not(self) -> Expr:
        if self._match_op("!"):
            return Unary("!", self._parse_not())
        return self._parse_comparison()

    def _parse_comparison(self) -> Expr:
        left = self._parse_sum()
        token = self._peek()
        if token.type == "OP" and token.value in ("==", "!=", "===", "!==", "<", "<=", ">", ">="):
            self.index += 1
            return Binary(token.value, left, self._parse_sum())
        return left

    def _parse_sum(self) -> Expr:
        left = self._parse_product()
        while True:
            token = self._peek()
            if token.type == "OP" and token.value in ("+", "-"):
                self.index += 1
                left = Binary(token.value, left, self._parse_product())
                continue
            return left

    def _parse_product(self) -> Expr:
        left = self._parse_unary()
        while True:
            token = self._peek()
            if token.type == "OP" and token.value in ("*", "/", "%"):
                self.index += 1
                left = Binary(token.value, left, self._parse_unary())
                continue
            return left

    def _parse_unary(self) -> Expr:
        token = self._peek()
        if token.type == "OP" and token.value in ("-", "+"):
            self.index += 1
            return Unary(token.value, self._parse_unary())
        return self._parse_atom()

    def _parse_atom(self) -> Expr:
        token = self._peek()
        self.index += 1
        if token.type == "NUMBER":
            return Literal(float(token.value))
        if token.type == "STRING":
            return Literal(token.value)
        if token.type == "BOOL":
            return Literal(token.value == "true")
        if token.type == "IDENT":
            return Name(token.value)
        if token.type == "LPAREN":
            expr = self._parse_or()
            closing = self._peek()
            if closing.type != "RPAREN":
                raise ExpressionError(f"Expected ')' at position {closing.position}")
            self.index += 1
            return expr
        if token.type == "EOF":
            raise ExpressionError("Unexpected end of expression")
        raise ExpressionError(f"Unexpected '{token.value}' at position {token.position}")

    def _peek(self) -> ExprToken:
        return self.tokens[self.index]

    def _match_op(self, op: str) -> bool:
        token = self._peek()
        if token.type == "OP" and token.value == op:
            self.index += 1
            return True
        return False


# ---- Coercion ----


def to_number(value: Value) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, float):
        return value
    if value.strip() == "":
        return 0.0
    number = parse_number(value)
    return math.nan if number is None else number


def to_text(value: Value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return format_number(value)
    return value


def truthy(value: Value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return value != 0.0 and not math.isnan(value)
    return value != ""


def loose_equals(left: Value, right: Value) -> bool:
    if type(left) is type(right):
        return left == right
    if isinstance(left, bool) or isinstance(right, bool):
        return to_number(left) == to_number(right)
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return to_number(left) == to_number(right)


def _compare(op: str, left: Value, right: Value) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: Union[str, float] = left
        b: Union[str, float] = right
    else:
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


class Evaluator:
    def __init__(self, context: Mapping[str, Value], *, strict_division: bool = False) -> None:
        self.context = context
        self.strict_division = strict_division

    def evaluate(self, expr: Expr) -> Value:
        if isinstance(expr, Literal):
            return expr.value
        if isinstance(expr, Name):
            if expr.name not in self.context:
                raise ExpressionError(f"Unknown name '{expr.name}'")
            return self.context[expr.name]
        if isinstance(expr, Unary):
            operand = self.evaluate(expr.operand)
            if expr.op == "!":
                return not truthy(operand)
            number = to_number(operand)
            return -number if expr.op == "-" else number
        if isinstance(expr, Binary):
            return self._binary(expr)
        raise ExpressionError(f"Unsupported expression node {expr.__class__.__name__}")

    def _binary(self, expr: Binary) -> Value:
        op = expr.op
        left = self.evaluate(expr.left)
        if op == "&&":
            return self.evaluate(expr.right) if truthy(left) else left
        if op == "||":
            return left if truthy(left) else self.evaluate(expr.right)
        right = self.evaluate(expr.right)
        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)
        if op == "===":
            return type(left) is type(right) and left == right
        if op == "!==":
            return not (type(left) is type(right) and left == right)
        if op in ("<", "<=", ">", ">="):
            return _compare(op, left, right)
        if op == "+" and (isinstance(left, str) or isinstance(right, str)):
            return to_text(left) + to_text(right)
        a, b = to_number(left), to_number(right)
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op == "/":
            if b == 0.0:
                if self.strict_division:
                    raise ExpressionError("Division by zero")
                if a == 0.0 or math.isnan(a):
                    return math.nan
                return math.copysign(math.inf, a) * math.copysign(1.0, b)
            return a / b
        if op == "%":
            if b == 0.0:
                if self.strict_division:
                    raise ExpressionError("Division by zero")
                return math.nan
            if math.isinf(a):
                return math.nan
            return math.fmod(a, b)
        raise ExpressionError(f"Unsupported operator '{op}'")


# ---- Entry points ----


def build_context(variables: Mapping[str, str]) -> Dict[str, Value]:
    context: Dict[str, Value] = {}
    for name, text in variables.items():
        number = parse_number(text)
        context[name] = text if number is None else number
    return context


def evaluate_condition(text: str, context: Optional[Mapping[str, Value]] = None) -> bool:
    expr = ExpressionParser(text).parse()
    return truthy(Evaluator(context or {}).evaluate(expr))


def is_math_expression(text: str) -> bool:
    return SIGIL not in text and any(ch in _MATH_TRIGGERS for ch in text)


def sanitize_math(text: str) -> str:
    return "".join(ch for ch in text if ch in _MATH_CHARS)


def evaluate_math(text: str) -> float:
    """Evaluate an arithmetic fragment after dropping every non-arithmetic character."""
    expr = ExpressionParser(sanitize_math(text)).parse()
    result = Evaluator({}, strict_division=True).evaluate(expr)
    return to_number(result)
