"""
SheetCalc Core Engine - Line-by-Line Sheet Evaluation
Turns the lines of a calculation sheet into one result per line: variable
names (with spaces), line references, prev/previous, currency glyphs and
word operators are resolved before each line is handed to the evaluator.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

# Import constants
from constants import (
    CURRENCY_SYMBOLS, CANONICAL_JOIN, LINE_REF_PREFIX, PREVIOUS_ALIASES,
    INVALID_EXPRESSION, NUMBER_MAX_FRACTION_DIGITS, QUANTITY_PRECISION
)

from expression_evaluator import (
    EvaluationError, ExpressionEvaluator, Value, ValueKind,
    default_evaluator, format_quantity
)

logger = logging.getLogger(__name__)


# =============================================================================
# SYMBOL NORMALIZATION
# =============================================================================

_NUMBER = r"(\d+(?:\.\d+)?|\.\d+)"
_IDENT_CHAR = r"[A-Za-z0-9_]"

_OF_RE = re.compile(r"\bof\b", re.IGNORECASE)
_AS_RE = re.compile(r"\bas\b", re.IGNORECASE)


def substitute_variables(expr, names: Mapping[str, str]) -> str:
    """
    Replace whole-word display names with their canonical names.

    Args:
        expr (str): Expression text
        names (dict): Display name -> canonical name

    Returns:
        str: Expression using canonical names
    """
    for display in sorted(names, key=len, reverse=True):
        pattern = rf"(?<!{_IDENT_CHAR}){re.escape(display)}(?!{_IDENT_CHAR})"
        canonical = names[display]
        expr = re.sub(pattern, lambda m: canonical, expr)
    return expr


def substitute_currency_symbols(expr) -> str:
    """Rewrite $50, 50$ and bare $ as '50 USD' / 'USD' (likewise for every glyph)"""
    for symbol, code in CURRENCY_SYMBOLS.items():
        escaped = re.escape(symbol)
        expr = re.sub(rf"{escaped}\s*{_NUMBER}", rf"\1 {code}", expr)
        expr = re.sub(rf"{_NUMBER}\s*{escaped}", rf"\1 {code}", expr)
        expr = expr.replace(symbol, code)
    return expr


def substitute_word_operators(expr) -> str:
    """'of' multiplies, 'as' converts"""
    expr = _OF_RE.sub("*", expr)
    return _AS_RE.sub("to", expr)


def normalize_expression(expr, names: Optional[Mapping[str, str]] = None) -> str:
    """
    Normalize a line's expression for the evaluator.

    Known variables are substituted first, then currency glyphs, then word
    operators; each step works on the output of the previous one.
    """
    expr = substitute_variables(expr, names or {})
    expr = substitute_currency_symbols(expr)
    return substitute_word_operators(expr)


# =============================================================================
# VARIABLE REGISTRY
# =============================================================================

ASSIGNMENT_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_\s]*?)\s*[:=]\s*(.*)$")


def canonical_name(display) -> str:
    """'Total Income' -> 'Total_Income'"""
    return re.sub(r"\s+", CANONICAL_JOIN, display.strip())


@dataclass(frozen=True)
class Assignment:
    display: str
    canonical: str
    expression: str


class VariableRegistry:
    """
    Names assigned so far in one evaluation pass.
    Created empty for every pass and only ever grows during it.
    """

    def __init__(self):
        self.names: Dict[str, str] = {}         # display -> canonical
        self.owners: Dict[str, str] = {}        # canonical -> last display name
        self.bindings: Dict[str, Value] = {}    # canonical -> value

    def match_assignment(self, line) -> Optional[Assignment]:
        """Detect 'Name = expr' / 'Name: expr'; nothing is registered yet"""
        match = ASSIGNMENT_RE.match(line.strip())
        if not match:
            return None
        display = match.group(1).strip()
        return Assignment(display, canonical_name(display), match.group(2))

    def register(self, assignment: Assignment, value: Value):
        """Bind a successfully evaluated assignment; last write wins"""
        owner = self.owners.get(assignment.canonical)
        if owner is not None and owner != assignment.display:
            logger.warning(
                "Variable '%s' shares the name %s with '%s'; the new value replaces the old one",
                assignment.display, assignment.canonical, owner
            )
        self.names[assignment.display] = assignment.canonical
        self.owners[assignment.canonical] = assignment.display
        self.bindings[assignment.canonical] = value

    def snapshot(self) -> Dict[str, str]:
        return dict(self.names)


# =============================================================================
# SCOPE
# =============================================================================

def build_scope(prior_results, bindings: Mapping[str, Value], last_value=None) -> Dict[str, Value]:
    """
    Assemble the names visible to the next line.

    Args:
        prior_results (list): LineResults of every earlier line, in order
        bindings (dict): Canonical name -> value assigned by earlier lines
        last_value (Value): Most recent non-empty result, if any

    Returns:
        dict: Canonical name -> Value
    """
    scope = {}
    for line_num, result in enumerate(prior_results, start=1):
        if result.value is not None:
            scope[f"{LINE_REF_PREFIX}{line_num}"] = result.value
    # Named variables win over lineN
    scope.update(bindings)
    if last_value is not None:
        for alias in PREVIOUS_ALIASES:
            scope[alias] = last_value
    return scope


# =============================================================================
# FORMATTING
# =============================================================================

def format_number(value, max_fraction_digits=NUMBER_MAX_FRACTION_DIGITS) -> str:
    """Comma-grouped, at most `max_fraction_digits` decimals, no trailing zeros"""
    if isinstance(value, int):
        return f"{value:,}"
    if not math.isfinite(value):
        return str(value)
    display = f"{value:,.{max_fraction_digits}f}"
    if "." in display:
        display = display.rstrip("0").rstrip(".")
    return display


def format_value(value: Optional[Value]) -> str:
    """Render a line value for display; never raises"""
    if value is None or value.raw is None:
        return ""
    try:
        if value.kind is ValueKind.QUANTITY:
            return format_quantity(value.raw, QUANTITY_PRECISION)
        if value.kind is ValueKind.NUMBER:
            return format_number(value.raw)
    except (TypeError, ValueError) as e:
        logger.debug("Falling back to str() for %r: %s", value.raw, e)
    return str(value.raw)


def value_to_json(value: Optional[Value]) -> Any:
    """JSON-safe form of a value: number, {magnitude, unit}, string or None"""
    if value is None:
        return None
    if value.kind is ValueKind.QUANTITY:
        return {"magnitude": _json_number(value.raw.magnitude), "unit": value.unit}
    if value.kind is ValueKind.NUMBER:
        return _json_number(value.raw)
    return str(value.raw)


def _json_number(number):
    if isinstance(number, float) and not math.isfinite(number):
        return str(number)
    return number


# =============================================================================
# LINE RESULTS
# =============================================================================

@dataclass
class LineResult:
    """Outcome of one line of the sheet"""
    value: Optional[Value] = None
    formatted: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None
    variable: Optional[str] = None
    is_assignment: bool = False
    expression: Optional[str] = None
    scope: Optional[Dict[str, Value]] = None

    @property
    def is_blank(self) -> bool:
        return self.value is None and self.error is None and self.expression is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": value_to_json(self.value),
            "formatted": self.formatted,
            "error": self.error,
            "variable": self.variable,
            "isAssignment": self.is_assignment,
        }


def split_lines(content) -> List[str]:
    """Split editor content into lines, keeping a trailing empty line"""
    return content.replace("\r\n", "\n").split("\n")


# =============================================================================
# SHEET EVALUATION
# =============================================================================

class SheetEvaluator:
    """
    Evaluates a whole sheet top to bottom.

    Each call to evaluate() is an independent pass: the registry, scope and
    previous value are created for the pass and dropped when it ends.
    """

    def __init__(self, evaluator: Optional[ExpressionEvaluator] = None):
        self.evaluator = evaluator or default_evaluator()

    def evaluate(self, lines: Sequence[str]) -> List[LineResult]:
        """
        Evaluate every line in order.

        Args:
            lines (list): Raw lines of the sheet

        Returns:
            list: One LineResult per line, in the same order
        """
        registry = VariableRegistry()
        results: List[LineResult] = []
        last_value = None

        for line_num, line in enumerate(lines, start=1):
            result = self.evaluate_line(line, line_num, results, registry, last_value)
            if result.value is not None:
                last_value = result.value
            results.append(result)

        failed = sum(1 for r in results if r.error is not None)
        logger.debug("Evaluated %d lines (%d failed)", len(results), failed)
        return results

    def evaluate_text(self, content) -> List[LineResult]:
        return self.evaluate(split_lines(content))

    def evaluate_line(self, line, line_num, prior_results, registry, last_value) -> LineResult:
        """Evaluate a single line against everything before it"""
        trimmed = line.strip()
        if not trimmed:
            return LineResult()

        scope = build_scope(prior_results, registry.bindings, last_value)

        assignment = registry.match_assignment(trimmed)
        raw_expr = assignment.expression if assignment else trimmed
        expr = normalize_expression(raw_expr, registry.snapshot())

        try:
            value = self.evaluator.compile(expr).evaluate(scope)
        except EvaluationError as e:
            logger.debug("Line %d (%r) failed: %s", line_num, expr, e)
            return LineResult(error=INVALID_EXPRESSION, error_kind=e.kind, expression=expr)

        if assignment:
            registry.register(assignment, value)
            scope[assignment.canonical] = value

        return LineResult(
            value=value,
            formatted=format_value(value),
            variable=assignment.display if assignment else None,
            is_assignment=assignment is not None,
            expression=expr,
            scope=dict(scope),
        )


def evaluate_sheet(lines: Sequence[str], evaluator: Optional[ExpressionEvaluator] = None) -> List[LineResult]:
    """Evaluate a sheet with a fresh pass"""
    return SheetEvaluator(evaluator).evaluate(lines)
