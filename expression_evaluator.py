"""
SheetCalc Expression Evaluator - Arithmetic and Unit Evaluation
Compiles a normalized expression into a checked Python AST and evaluates it
against a scope of named values, with units and currencies handled by pint.
"""

import ast
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, List, Mapping, Optional, Tuple

# Third-party imports
import pint

# Import constants
from constants import (
    BASE_CURRENCY, FALLBACK_RATES, CURRENCY_ALIASES, UNIT_ALIASES,
    CONVERSION_KEYWORDS, MATH_FUNCS, QUANTITY_FUNCS, MATH_CONSTANTS,
    QUANTITY_PRECISION
)

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class EvaluationError(Exception):
    """Base class for every failure raised while compiling or evaluating"""
    kind = "evaluation"


class ExpressionSyntaxError(EvaluationError):
    """The expression cannot be parsed"""
    kind = "syntax"


class UnknownIdentifierError(EvaluationError):
    """A name has no binding, constant, function or unit"""
    kind = "unknown_identifier"

    def __init__(self, name):
        super().__init__(f"Unknown identifier: {name}")
        self.name = name


class UnitIncompatibilityError(EvaluationError):
    """An operation or conversion mixes incompatible dimensions"""
    kind = "unit_incompatibility"


class DomainError(EvaluationError):
    """Arithmetic failure such as division by zero"""
    kind = "domain"


# =============================================================================
# VALUES
# =============================================================================

class ValueKind(Enum):
    NUMBER = "number"
    QUANTITY = "quantity"
    OTHER = "other"


@dataclass(frozen=True)
class Value:
    """
    An evaluated line value tagged with its kind.

    ``raw`` is an int/float for NUMBER, a pint Quantity for QUANTITY and
    anything else for OTHER.
    """
    kind: ValueKind
    raw: Any

    @classmethod
    def number(cls, raw):
        return cls(ValueKind.NUMBER, raw)

    @classmethod
    def quantity(cls, raw):
        return cls(ValueKind.QUANTITY, raw)

    @classmethod
    def other(cls, raw):
        return cls(ValueKind.OTHER, raw)

    @property
    def magnitude(self):
        if self.kind is ValueKind.QUANTITY:
            return self.raw.magnitude
        return self.raw

    @property
    def unit(self) -> str:
        if self.kind is ValueKind.QUANTITY:
            return f"{self.raw.units:~P}"
        return ""


def format_quantity(quantity, precision=QUANTITY_PRECISION) -> str:
    """Render a pint Quantity as '<magnitude> <unit>' at `precision` significant digits"""
    magnitude = f"{quantity.magnitude:.{precision}g}"
    unit = f"{quantity.units:~P}"
    return f"{magnitude} {unit}" if unit else magnitude


# =============================================================================
# UNIT REGISTRY
# =============================================================================

def build_unit_registry(rates: Optional[Mapping[str, float]] = None) -> pint.UnitRegistry:
    """
    Create a pint registry with currency units defined from `rates`.

    Args:
        rates (dict): Value of one unit of each currency in BASE_CURRENCY

    Returns:
        pint.UnitRegistry: Registry with physical and currency units
    """
    rates = dict(FALLBACK_RATES if rates is None else rates)
    ureg = pint.UnitRegistry()

    base_aliases = CURRENCY_ALIASES.get(BASE_CURRENCY, [])
    ureg.define(" = ".join([BASE_CURRENCY, "[currency]", "_"] + base_aliases))

    for code, rate in rates.items():
        if code == BASE_CURRENCY:
            continue
        if rate is None or rate <= 0:
            logger.warning("Skipping currency %s with invalid rate %r", code, rate)
            continue
        aliases = CURRENCY_ALIASES.get(code, [])
        ureg.define(" = ".join([code, f"{rate!r} * {BASE_CURRENCY}", "_"] + aliases))

    for alias, unit in UNIT_ALIASES.items():
        if alias not in ureg:
            ureg.define(f"@alias {unit} = {alias}")

    return ureg


# =============================================================================
# TOKENIZER
# =============================================================================

_TOKEN_RE = re.compile(r"""
    (?P<num>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>\*\*|[-+*/^%])
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
  | (?P<space>\s+)
""", re.VERBOSE)

_OPERAND_START = ("num", "name", "lparen")
_OPERAND_END = ("num", "name", "rparen")

# Prefix for every identifier in generated source so user names never clash with Python keywords
_NAME_PREFIX = "_"


def tokenize(expr) -> List[Tuple[str, str]]:
    """Split an expression into (kind, text) tokens"""
    tokens = []
    pos = 0
    while pos < len(expr):
        match = _TOKEN_RE.match(expr, pos)
        if match is None:
            raise ExpressionSyntaxError(f"Unexpected character {expr[pos]!r} at position {pos}")
        kind = match.lastgroup
        text = match.group()
        pos = match.end()
        if kind == "space":
            continue
        if kind == "num" and text.isdigit():
            text = str(int(text))
        elif kind == "name" and text == "mod":
            kind, text = "op", "%"
        elif kind == "op" and text == "^":
            text = "**"
        tokens.append((kind, text))
    return tokens


def split_conversion(tokens):
    """
    Split tokens at the last top-level conversion keyword.

    Returns:
        tuple: (value tokens, target tokens or None)
    """
    depth = 0
    for idx in range(len(tokens) - 1, -1, -1):
        kind, text = tokens[idx]
        if kind == "rparen":
            depth += 1
        elif kind == "lparen":
            depth -= 1
        elif (depth == 0 and kind == "name" and text.lower() in CONVERSION_KEYWORDS
              and 0 < idx < len(tokens) - 1):
            return tokens[:idx], tokens[idx + 1:]
    return tokens, None


def _atom_start(out) -> int:
    """Index in `out` where the operand ending the output starts"""
    if not out:
        raise ExpressionSyntaxError("Percent sign without a value")
    kind = out[-1][0]
    if kind in ("num", "name"):
        return len(out) - 1
    if kind != "rparen":
        raise ExpressionSyntaxError("Percent sign without a value")
    depth = 0
    for idx in range(len(out) - 1, -1, -1):
        if out[idx][0] == "rparen":
            depth += 1
        elif out[idx][0] == "lparen":
            depth -= 1
            if depth == 0:
                if idx > 0 and out[idx - 1][0] == "func":
                    return idx - 1
                return idx
    raise ExpressionSyntaxError("Unbalanced parentheses")


def _product_start(out) -> int:
    """Like _atom_start, but a power chain (2^3) stays whole"""
    start = _atom_start(out)
    while start >= 2 and out[start - 1] == ("op", "**"):
        start = _atom_start(out[:start - 1])
    return start


def _continues_product(last_kind, nxt) -> bool:
    """True if the token after an operand keeps an implicit product going"""
    if nxt is None:
        return False
    if nxt == ("op", "**"):
        return True
    if nxt[0] not in _OPERAND_START:
        return False
    return not (last_kind == "num" and nxt[0] == "num")


def to_python_source(tokens) -> str:
    """
    Rewrite calculator tokens as Python expression source.

    Inserts implicit multiplication between adjacent operands, turns a
    trailing % into a percentage and prefixes identifiers. Each run of
    implicitly multiplied operands is parenthesized so it binds tighter
    than / and *: '100 km / 2 h' -> '( 100 * _km ) / ( 2 * _h )'.
    """
    out = []
    depth = 0
    groups = []  # paren depth of each open implicit product
    for idx, (kind, text) in enumerate(tokens):
        nxt = tokens[idx + 1] if idx + 1 < len(tokens) else None

        if kind == "name" and (text in MATH_FUNCS or text in QUANTITY_FUNCS):
            if nxt is not None and nxt[0] == "lparen":
                kind = "func"

        if kind == "op" and text == "%" and (nxt is None or nxt[0] not in _OPERAND_START):
            start = _atom_start(out)
            out[start:] = [("lparen", "(")] + out[start:] + [("op", "/"), ("num", "100"), ("rparen", ")")]
        else:
            if out and out[-1][0] in _OPERAND_END and kind in _OPERAND_START + ("func",):
                if not (out[-1][0] == "num" and kind == "num"):
                    if not groups or groups[-1] != depth:
                        out.insert(_product_start(out), ("lparen", "("))
                        groups.append(depth)
                    out.append(("op", "*"))

            if kind == "lparen":
                depth += 1
            elif kind == "rparen":
                depth -= 1
            out.append((kind, text))

        if (groups and groups[-1] == depth and out[-1][0] in _OPERAND_END
                and not _continues_product(out[-1][0], nxt)):
            out.append(("rparen", ")"))
            groups.pop()

    parts = []
    for kind, text in out:
        parts.append(_NAME_PREFIX + text if kind in ("name", "func") else text)
    return " ".join(parts)


# =============================================================================
# COMPILED EXPRESSIONS
# =============================================================================

_ALLOWED_NODES = (
    ast.Expression, ast.BinOp, ast.UnaryOp, ast.Call, ast.Constant,
    ast.Name, ast.Load,
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Pow, ast.Mod,
    ast.UAdd, ast.USub,
)


def _parse(tokens, expr) -> ast.Expression:
    if not tokens:
        raise ExpressionSyntaxError("Empty expression")
    source = to_python_source(tokens)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ExpressionSyntaxError(f"Invalid expression: {expr}") from exc
    except (RecursionError, MemoryError) as exc:
        raise ExpressionSyntaxError("Expression too complex") from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionSyntaxError(f"Unsupported syntax: {type(node).__name__}")
        if isinstance(node, ast.Constant) and not isinstance(node.value, (int, float)):
            raise ExpressionSyntaxError("Only numeric literals are supported")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.keywords:
                raise ExpressionSyntaxError("Unsupported function call")
    return tree


class CompiledExpression:
    """A parsed expression that can be evaluated against any scope"""

    def __init__(self, evaluator, expression, tree, target=None):
        self.evaluator = evaluator
        self.expression = expression
        self.tree = tree
        self.target = target

    def evaluate(self, scope: Optional[Mapping[str, Value]] = None) -> Value:
        """
        Evaluate against `scope` (canonical name -> Value).

        Raises:
            EvaluationError: on any failure, as one of its subclasses
        """
        scope = scope or {}
        try:
            raw = self._evaluate_raw(scope)
        except EvaluationError:
            raise
        except ZeroDivisionError as exc:
            raise DomainError("Division by zero") from exc
        except (RecursionError, MemoryError) as exc:
            raise DomainError("Expression too complex") from exc
        except (pint.DimensionalityError, pint.OffsetUnitCalculusError) as exc:
            raise UnitIncompatibilityError(str(exc)) from exc
        except pint.UndefinedUnitError as exc:
            raise UnknownIdentifierError(str(exc)) from exc
        except pint.PintError as exc:
            raise UnitIncompatibilityError(str(exc)) from exc
        except (ArithmeticError, ValueError, TypeError) as exc:
            raise DomainError(str(exc)) from exc
        return self.evaluator.wrap(raw)

    def _evaluate_raw(self, scope):
        value = self.evaluator.eval_node(self.tree.body, scope)
        if self.target is None:
            return value
        target = self.target._evaluate_raw(scope)
        if not isinstance(target, pint.Quantity):
            raise UnitIncompatibilityError(f"Cannot convert to a plain number in: {self.expression}")
        if not isinstance(value, pint.Quantity):
            raise UnitIncompatibilityError(f"Cannot convert a plain number to {target.units:~P}")
        return value.to(target.units)


# =============================================================================
# EVALUATOR
# =============================================================================

class ExpressionEvaluator:
    """
    Arithmetic/unit evaluator used by the sheet engine.
    Owns one pint registry; quantities from different evaluators must not be mixed.
    """

    def __init__(self, rates: Optional[Mapping[str, float]] = None):
        self.rates = dict(FALLBACK_RATES if rates is None else rates)
        self.ureg = build_unit_registry(self.rates)

    def compile(self, expr) -> CompiledExpression:
        """
        Compile a normalized expression.

        Args:
            expr (str): Expression, optionally ending in 'to <unit>' / 'in <unit>'

        Returns:
            CompiledExpression: Evaluable expression

        Raises:
            ExpressionSyntaxError: if the expression cannot be parsed
        """
        expr = expr.strip()
        value_tokens, target_tokens = split_conversion(tokenize(expr))
        target = None
        if target_tokens is not None:
            target = CompiledExpression(self, expr, _parse(target_tokens, expr))
        return CompiledExpression(self, expr, _parse(value_tokens, expr), target)

    def evaluate(self, expr, scope=None) -> Value:
        """Compile and evaluate in one step"""
        return self.compile(expr).evaluate(scope)

    def quantity(self, magnitude, unit):
        """Build a Quantity on this evaluator's registry"""
        return self.ureg.Quantity(magnitude, unit)

    # -------------------------------------------------------------------------
    # Value tagging
    # -------------------------------------------------------------------------

    def wrap(self, raw) -> Value:
        """Tag a raw result; dimensionless quantities collapse to numbers"""
        if isinstance(raw, pint.Quantity):
            if raw.dimensionless:
                reduced = raw.to_reduced_units()
                if reduced.unitless:
                    return Value.number(reduced.magnitude)
            return Value.quantity(raw)
        if isinstance(raw, bool):
            return Value.other(raw)
        if isinstance(raw, (int, float)):
            return Value.number(raw)
        return Value.other(raw)

    # -------------------------------------------------------------------------
    # AST evaluation
    # -------------------------------------------------------------------------

    def eval_node(self, node, scope):
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return self.resolve_name(node.id[len(_NAME_PREFIX):], scope)

        if isinstance(node, ast.UnaryOp):
            operand = self.eval_node(node.operand, scope)
            return -operand if isinstance(node.op, ast.USub) else +operand

        if isinstance(node, ast.BinOp):
            left = self.eval_node(node.left, scope)
            right = self.eval_node(node.right, scope)
            if isinstance(node.op, ast.Add):
                return left + right
            if isinstance(node.op, ast.Sub):
                return left - right
            if isinstance(node.op, ast.Mult):
                return left * right
            if isinstance(node.op, ast.Div):
                return left / right
            if isinstance(node.op, ast.Mod):
                return left % right
            return self._power(left, right)

        if isinstance(node, ast.Call):
            name = node.func.id[len(_NAME_PREFIX):]
            args = [self.eval_node(arg, scope) for arg in node.args]
            return self.call_function(name, args)

        raise ExpressionSyntaxError(f"Unsupported syntax: {type(node).__name__}")

    def resolve_name(self, name, scope):
        """Scope first, then constants, then units"""
        if name in scope:
            value = scope[name]
            return value.raw if isinstance(value, Value) else value
        if name in MATH_CONSTANTS:
            return MATH_CONSTANTS[name]
        if name in MATH_FUNCS or name in QUANTITY_FUNCS:
            raise ExpressionSyntaxError(f"Function {name} must be called with parentheses")
        try:
            unit = self.ureg.parse_units(name)
        except (pint.UndefinedUnitError, AttributeError, ValueError) as exc:
            raise UnknownIdentifierError(name) from exc
        return self.ureg.Quantity(1, unit)

    def call_function(self, name, args):
        if name in QUANTITY_FUNCS:
            return self._quantity_function(name, args)
        func = MATH_FUNCS.get(name)
        if func is None:
            raise UnknownIdentifierError(name)
        return func(*[self._plain(arg, name) for arg in args])

    def _quantity_function(self, name, args):
        if not args:
            raise ExpressionSyntaxError(f"{name}() needs at least one argument")
        if name == "sqrt":
            (arg,) = args
            if isinstance(arg, pint.Quantity):
                return arg ** 0.5
            return math.sqrt(arg)
        if name == "pow":
            base, exponent = args
            return self._power(base, exponent)
        if name == "abs":
            (arg,) = args
            return abs(arg)
        if name == "round":
            arg = args[0]
            digits = int(self._plain(args[1], name)) if len(args) > 1 else 0
            if len(args) > 2:
                raise ExpressionSyntaxError("round() takes at most two arguments")
            if isinstance(arg, pint.Quantity):
                return self.ureg.Quantity(round(arg.magnitude, digits), arg.units)
            return round(arg, digits)
        if name == "min":
            return min(args)
        return max(args)

    def _plain(self, value, func_name):
        """Strip a dimensionless quantity down to a number"""
        if isinstance(value, pint.Quantity):
            if not value.dimensionless:
                raise UnitIncompatibilityError(f"{func_name}() expects a plain number, got {value.units:~P}")
            return value.to("dimensionless").magnitude
        return value

    def _power(self, base, exponent):
        exponent = self._plain(exponent, "pow")
        if isinstance(base, pint.Quantity):
            return base ** exponent
        if isinstance(base, int) and isinstance(exponent, int) and abs(exponent) <= 64:
            return base ** exponent
        result = float(base) ** exponent
        if isinstance(result, complex):
            raise DomainError(f"{base} ^ {exponent} is not a real number")
        return result


@lru_cache(maxsize=None)
def default_evaluator() -> ExpressionEvaluator:
    """Shared evaluator with the static currency rates"""
    return ExpressionEvaluator()
