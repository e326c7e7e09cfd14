"""
Measure Engine Formula Evaluator
================================
Parses and evaluates arithmetic formulas with {token} placeholders.

Formulas are tokenized, parsed by recursive descent into a small AST and
evaluated by walking that tree. Nothing is ever handed to eval/exec: the
only executable names are the whitelisted functions below, and any other
identifier is a value lookup.

Grammar:
    expr    := term (("+" | "-") term)*
    term    := unary (("*" | "/") unary)*
    unary   := ("+" | "-") unary | power
    power   := primary ("^" unary)?
    primary := NUMBER | "{" token "}" | IDENT "(" args ")" | IDENT | "(" expr ")"

Usage:
    from measure_engine.formula import evaluate_formula

    result = evaluate_formula("{weight} / ({height} * {height})", {"weight": 70, "height": 1.75}, 2)
    if result.success:
        print(result.result)  # 22.86
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .errors import (
    ConfigurationError,
    FormulaArithmeticError,
    MeasureEngineError,
    MeasureErrorCode,
    MissingValueError,
)
from .tokens import parse_dependency_token

EPOCH = date(1970, 1, 1)

OPERATORS = ("+", "-", "*", "/", "^")

# parser recursion (parentheses, signs, powers, call arguments)
MAX_NESTING_DEPTH = 50
# operator chain length the tree walker will recurse through
MAX_EXPRESSION_DEPTH = 200


# =============================================================================
# LEXER
# =============================================================================

@dataclass(frozen=True)
class Lexeme:
    kind: str  # NUMBER, PLACEHOLDER, IDENT, OP, LPAREN, RPAREN, COMMA
    text: str
    pos: int


def tokenize(formula: str) -> List[Lexeme]:
    """Split formula text into lexemes."""
    lexemes: List[Lexeme] = []
    i = 0
    n = len(formula)

    while i < n:
        ch = formula[i]

        if ch.isspace():
            i += 1
            continue

        if ch == "{":
            end = formula.find("}", i + 1)
            if end == -1 or "{" in formula[i + 1:end]:
                raise ConfigurationError(f"Unbalanced braces in formula at position {i}")
            name = formula[i + 1:end].strip()
            if not name:
                raise ConfigurationError(f"Empty placeholder at position {i}")
            lexemes.append(Lexeme("PLACEHOLDER", name, i))
            i = end + 1
            continue

        if ch == "}":
            raise ConfigurationError(f"Unbalanced braces in formula at position {i}")

        if ch.isdigit() or (ch == "." and i + 1 < n and formula[i + 1].isdigit()):
            start = i
            seen_dot = False
            while i < n and (formula[i].isdigit() or formula[i] == "."):
                if formula[i] == ".":
                    if seen_dot:
                        raise ConfigurationError(f"Malformed number at position {start}")
                    seen_dot = True
                i += 1
            lexemes.append(Lexeme("NUMBER", formula[start:i], start))
            continue

        if ch.isalpha() or ch == "_":
            start = i
            while i < n and (formula[i].isalnum() or formula[i] == "_"):
                i += 1
            lexemes.append(Lexeme("IDENT", formula[start:i], start))
            continue

        if ch in OPERATORS:
            lexemes.append(Lexeme("OP", ch, i))
        elif ch == "(":
            lexemes.append(Lexeme("LPAREN", ch, i))
        elif ch == ")":
            lexemes.append(Lexeme("RPAREN", ch, i))
        elif ch == ",":
            lexemes.append(Lexeme("COMMA", ch, i))
        else:
            raise ConfigurationError(f"Unexpected character '{ch}' at position {i}")
        i += 1

    return lexemes


# =============================================================================
# AST
# =============================================================================

@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]


Node = Union[Number, Variable, UnaryOp, BinaryOp, Call]


# =============================================================================
# FUNCTIONS
# =============================================================================

def _day_ordinal_to_date(value: float) -> date:
    try:
        return EPOCH + timedelta(days=int(value))
    except OverflowError as e:
        raise FormulaArithmeticError(f"Date out of range: {value}") from e


def _sqrt(x: float) -> float:
    if x < 0:
        raise FormulaArithmeticError("Cannot take square root of negative number")
    return math.sqrt(x)


def _round(x: float, decimals: float = 0) -> float:
    if decimals != int(decimals) or decimals < 0:
        raise ConfigurationError("round() decimals must be a non-negative integer")
    return round_half_up(x, int(decimals))


def _age_years(birth: float, today: date) -> float:
    born = _day_ordinal_to_date(birth)
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return float(age)


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    impl: Callable[..., float]
    min_args: int
    max_args: Optional[int]  # None = variadic
    description: str
    example: str
    category: str = "math"
    needs_today: bool = False


FUNCTIONS: Dict[str, FunctionSpec] = {
    fn.name: fn for fn in (
        FunctionSpec("sqrt", _sqrt, 1, 1, "Square root", "sqrt({value})"),
        FunctionSpec("abs", abs, 1, 1, "Absolute value", "abs({value})"),
        FunctionSpec("round", _round, 1, 2, "Round to N decimals", "round({value}, 2)"),
        FunctionSpec("floor", math.floor, 1, 1, "Round down", "floor({value})"),
        FunctionSpec("ceil", math.ceil, 1, 1, "Round up", "ceil({value})"),
        FunctionSpec("min", lambda *args: min(args), 1, None, "Minimum value", "min({value1}, {value2})"),
        FunctionSpec("max", lambda *args: max(args), 1, None, "Maximum value", "max({value1}, {value2})"),
        FunctionSpec("today", lambda today: float((today - EPOCH).days), 0, 0,
                     "Current date (days since epoch)", "today()", "date", needs_today=True),
        FunctionSpec("year", lambda d: float(_day_ordinal_to_date(d).year), 1, 1,
                     "Extract year from date", "year({birth_date})", "date"),
        FunctionSpec("month", lambda d: float(_day_ordinal_to_date(d).month), 1, 1,
                     "Extract month (1-12) from date", "month({birth_date})", "date"),
        FunctionSpec("day", lambda d: float(_day_ordinal_to_date(d).day), 1, 1,
                     "Extract day from date", "day({birth_date})", "date"),
        FunctionSpec("age_years", _age_years, 1, 1,
                     "Calculate age in years from birth date", "age_years({date_of_birth})",
                     "date", needs_today=True),
    )
}


# =============================================================================
# PARSER
# =============================================================================

class _Parser:
    def __init__(self, formula: str):
        self.formula = formula
        self.lexemes = tokenize(formula)
        self.pos = 0
        self.depth = 0

    def parse(self) -> Node:
        if not self.lexemes:
            raise ConfigurationError("Formula is empty")
        node = self._expr()
        if self.pos < len(self.lexemes):
            lex = self.lexemes[self.pos]
            if lex.kind == "RPAREN":
                raise ConfigurationError("Mismatched parentheses")
            raise ConfigurationError(f"Unexpected '{lex.text}' at position {lex.pos}")
        return node

    def _peek(self) -> Optional[Lexeme]:
        return self.lexemes[self.pos] if self.pos < len(self.lexemes) else None

    def _next(self) -> Lexeme:
        lex = self._peek()
        if lex is None:
            raise ConfigurationError("Unexpected end of formula")
        self.pos += 1
        return lex

    def _accept_op(self, *ops: str) -> Optional[str]:
        lex = self._peek()
        if lex is not None and lex.kind == "OP" and lex.text in ops:
            self.pos += 1
            return lex.text
        return None

    def _expr(self) -> Node:
        node = self._term()
        while True:
            op = self._accept_op("+", "-")
            if op is None:
                return node
            node = BinaryOp(op, node, self._term())

    def _term(self) -> Node:
        node = self._unary()
        while True:
            op = self._accept_op("*", "/")
            if op is None:
                return node
            node = BinaryOp(op, node, self._unary())

    def _unary(self) -> Node:
        # every nested construct re-enters here
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise ConfigurationError(f"Formula is nested too deeply (max {MAX_NESTING_DEPTH} levels)")
        try:
            op = self._accept_op("+", "-")
            if op is not None:
                return UnaryOp(op, self._unary())
            return self._power()
        finally:
            self.depth -= 1

    def _power(self) -> Node:
        base = self._primary()
        if self._accept_op("^"):
            # right-associative: 2^3^2 == 2^(3^2)
            return BinaryOp("^", base, self._unary())
        return base

    def _primary(self) -> Node:
        lex = self._next()

        if lex.kind == "NUMBER":
            return Number(float(lex.text))

        if lex.kind == "PLACEHOLDER":
            return Variable(parse_dependency_token(lex.text).text)

        if lex.kind == "IDENT":
            nxt = self._peek()
            if nxt is not None and nxt.kind == "LPAREN":
                return self._call(lex)
            return Variable(lex.text)

        if lex.kind == "LPAREN":
            node = self._expr()
            closing = self._peek()
            if closing is None or closing.kind != "RPAREN":
                raise ConfigurationError("Mismatched parentheses")
            self.pos += 1
            return node

        if lex.kind == "RPAREN":
            raise ConfigurationError("Mismatched parentheses")

        raise ConfigurationError(f"Unexpected '{lex.text}' at position {lex.pos}")

    def _call(self, name_lex: Lexeme) -> Node:
        fn = FUNCTIONS.get(name_lex.text)
        if fn is None:
            raise ConfigurationError(f"Unknown function: {name_lex.text}")
        self.pos += 1  # "("

        args: List[Node] = []
        nxt = self._peek()
        if nxt is not None and nxt.kind == "RPAREN":
            self.pos += 1
        else:
            while True:
                args.append(self._expr())
                sep = self._next()
                if sep.kind == "COMMA":
                    continue
                if sep.kind == "RPAREN":
                    break
                raise ConfigurationError(f"Unexpected '{sep.text}' at position {sep.pos}")

        if len(args) < fn.min_args or (fn.max_args is not None and len(args) > fn.max_args):
            raise ConfigurationError(f"Wrong number of arguments for function: {fn.name}")
        return Call(fn.name, tuple(args))


@lru_cache(maxsize=512)
def parse_formula(formula: str) -> Node:
    """Parse formula text into an AST. Raises ConfigurationError if malformed."""
    if not isinstance(formula, str) or not formula.strip():
        raise ConfigurationError("Formula is required")
    tree = _Parser(formula).parse()
    if _tree_depth(tree) > MAX_EXPRESSION_DEPTH:
        raise ConfigurationError(f"Formula is too long (max {MAX_EXPRESSION_DEPTH} chained operations)")
    return tree


def _tree_depth(node: Node) -> int:
    deepest = 0
    stack = [(node, 1)]
    while stack:
        current, depth = stack.pop()
        deepest = max(deepest, depth)
        if isinstance(current, UnaryOp):
            stack.append((current.operand, depth + 1))
        elif isinstance(current, BinaryOp):
            stack.append((current.left, depth + 1))
            stack.append((current.right, depth + 1))
        elif isinstance(current, Call):
            stack.extend((arg, depth + 1) for arg in current.args)
    return deepest


def collect_variables(node: Node) -> List[str]:
    """Variable names referenced by an AST, in order of first appearance."""
    names: List[str] = []

    def walk(n: Node) -> None:
        if isinstance(n, Variable):
            if n.name not in names:
                names.append(n.name)
        elif isinstance(n, UnaryOp):
            walk(n.operand)
        elif isinstance(n, BinaryOp):
            walk(n.left)
            walk(n.right)
        elif isinstance(n, Call):
            for arg in n.args:
                walk(arg)

    walk(node)
    return names


# =============================================================================
# EVALUATION
# =============================================================================

def _finite(value: float, context: str) -> float:
    if isinstance(value, complex) or not math.isfinite(value):
        raise FormulaArithmeticError(f"Non-finite result in {context}")
    return value


def _lookup(name: str, values: Mapping[str, Any]) -> float:
    value = values.get(name)
    if value is None:
        raise MissingValueError(name)
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for variable {name}: {value!r}") from e
    return _finite(number, f"variable {name}")


def _apply_binary(op: str, a: float, b: float) -> float:
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        if b == 0:
            raise FormulaArithmeticError("Division by zero")
        return a / b
    try:
        return math.pow(a, b)
    except (OverflowError, ValueError) as e:
        raise FormulaArithmeticError(f"Invalid power {a} ^ {b}") from e


def evaluate_ast(node: Node, values: Mapping[str, Any], today: date) -> float:
    """Walk an AST and compute its value."""
    if isinstance(node, Number):
        return node.value
    if isinstance(node, Variable):
        return _lookup(node.name, values)
    if isinstance(node, UnaryOp):
        operand = evaluate_ast(node.operand, values, today)
        return -operand if node.op == "-" else operand
    if isinstance(node, BinaryOp):
        left = evaluate_ast(node.left, values, today)
        right = evaluate_ast(node.right, values, today)
        return _finite(_apply_binary(node.op, left, right), f"'{node.op}'")
    if isinstance(node, Call):
        fn = FUNCTIONS[node.name]
        args = [evaluate_ast(arg, values, today) for arg in node.args]
        if node.name == "today":
            return fn.impl(today)
        if fn.needs_today:
            return _finite(float(fn.impl(*args, today)), f"{node.name}()")
        try:
            return _finite(float(fn.impl(*args)), f"{node.name}()")
        except OverflowError as e:
            raise FormulaArithmeticError(f"Overflow in {node.name}()") from e
    raise ConfigurationError(f"Unsupported expression node: {type(node).__name__}")


def round_half_up(value: float, decimal_places: int) -> float:
    """Round half away from zero, e.g. 2.345 -> 2.35 at 2 places."""
    try:
        quantum = Decimal(1).scaleb(-decimal_places)
        rounded = float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        rounded = round(value, decimal_places)
    return rounded if rounded != 0 else 0.0


@dataclass
class FormulaResult:
    """Outcome of evaluate_formula."""
    success: bool
    result: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[MeasureErrorCode] = None


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def evaluate_formula(
    formula: str,
    values: Mapping[str, Any],
    decimal_places: int = 2,
    today: Optional[date] = None,
) -> FormulaResult:
    """
    Evaluate a formula against a token -> value map.

    Args:
        formula: Formula text, e.g. "{weight} / ({height} * {height})"
        values: Map of token text to numeric value; None means missing
        decimal_places: Non-negative rounding precision
        today: Date used by today()/age_years(); defaults to the UTC date

    Returns:
        FormulaResult with the rounded value, or the failure reason.
        Never raises for formula problems.
    """
    if not isinstance(formula, str) or not formula.strip():
        return FormulaResult(False, error="Formula is required",
                             error_code=MeasureErrorCode.CONFIGURATION)
    if values is None or not isinstance(values, Mapping):
        return FormulaResult(False, error="Values must be a mapping",
                             error_code=MeasureErrorCode.CONFIGURATION)
    if not isinstance(decimal_places, int) or decimal_places < 0:
        return FormulaResult(False, error="decimal_places must be a non-negative integer",
                             error_code=MeasureErrorCode.CONFIGURATION)

    try:
        tree = parse_formula(formula)
        raw = evaluate_ast(tree, values, today or utc_today())
        return FormulaResult(True, result=round_half_up(_finite(raw, "result"), decimal_places))
    except MeasureEngineError as e:
        return FormulaResult(False, error=e.message, error_code=e.error_code)


# =============================================================================
# VALIDATION / INTROSPECTION
# =============================================================================

@dataclass
class FormulaValidation:
    valid: bool
    error: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)


def extract_dependencies(formula: str) -> List[str]:
    """
    Tokens a formula references, in order of first appearance.
    Raises ConfigurationError if the formula does not parse.
    """
    return collect_variables(parse_formula(formula))


def validate_formula(formula: str) -> FormulaValidation:
    """
    Check a formula without real data.

    Parses the formula, validates every placeholder (modifier and measure
    name) and trial-evaluates it with every token set to 1. Arithmetic
    failures during the trial (e.g. {a} / ({b} - {c})) do not invalidate
    the formula since they depend on data.
    """
    if not isinstance(formula, str) or not formula.strip():
        return FormulaValidation(False, "Formula is required")
    if formula.count("{") != formula.count("}"):
        return FormulaValidation(False, "Unbalanced braces in formula")

    try:
        dependencies = extract_dependencies(formula)
        for dep in dependencies:
            parse_dependency_token(dep)
        evaluate_ast(parse_formula(formula), {dep: 1 for dep in dependencies}, utc_today())
    except FormulaArithmeticError:
        pass
    except MeasureEngineError as e:
        return FormulaValidation(False, e.message)

    return FormulaValidation(True, None, dependencies)


def available_operators() -> Dict[str, Any]:
    """Operators and functions offered to formula authors."""
    return {
        "operators": list(OPERATORS),
        "functions": [
            {
                "name": fn.name,
                "description": fn.description,
                "example": fn.example,
                "category": fn.category,
            }
            for fn in FUNCTIONS.values()
        ],
    }
