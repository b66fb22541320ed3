"""
Tests for the sheet engine: normalization, variables, scope and full passes.
"""

import logging

import pytest

from expression_evaluator import Value, ValueKind
from sheet_engine import (
    LineResult, SheetEvaluator, VariableRegistry, build_scope, canonical_name,
    evaluate_sheet, format_number, format_value, normalize_expression,
    split_lines, substitute_currency_symbols, substitute_variables,
    substitute_word_operators
)


# =============================================================================
# NORMALIZATION
# =============================================================================

def test_currency_symbols():
    """Test currency glyph rewriting"""
    test_cases = [
        ("$50", "50 USD"),
        ("50$", "50 USD"),
        ("50 USD", "50 USD"),
        ("$ 12.5", "12.5 USD"),
        ("€50 + 20 €", "50 EUR + 20 EUR"),
        ("₩100", "100 KRW"),
        ("£3 in $", "3 GBP in USD"),
        ("1 ₿ to $", "1 BTC to USD"),
    ]

    for expr, expected in test_cases:
        assert substitute_currency_symbols(expr) == expected, expr


def test_word_operators():
    assert substitute_word_operators("5 of 20%") == "5 * 20%"
    assert substitute_word_operators("10% OF 50") == "10% * 50"
    assert substitute_word_operators("10 km as m") == "10 km to m"
    assert substitute_word_operators("official basis") == "official basis"
    assert substitute_word_operators("as_of") == "as_of"


def test_variable_substitution_longest_first():
    names = {"Income": "Income", "Total Income": "Total_Income"}
    assert substitute_variables("Total Income * 2", names) == "Total_Income * 2"
    assert substitute_variables("Income + Total Income", names) == "Income + Total_Income"


def test_variable_substitution_whole_word():
    names = {"Net Income": "Net_Income"}
    assert substitute_variables("Net Incomes", names) == "Net Incomes"
    assert substitute_variables("Net Income2", names) == "Net Income2"
    assert substitute_variables("(Net Income)/2", names) == "(Net_Income)/2"


def test_normalize_order():
    """Variables first, then currency glyphs, then word operators"""
    names = {"Cost of Living": "Cost_of_Living"}
    assert normalize_expression("Cost of Living as $", names) == "Cost_of_Living to USD"
    assert normalize_expression("half of $10") == "half * 10 USD"


def test_currency_round_trip(engine):
    """$50, 50$ and 50 USD all evaluate to the same amount"""
    normalized = {normalize_expression(expr) for expr in ("$50", "50$", "50 USD")}
    assert normalized == {"50 USD"}

    values = [r.value for r in engine.evaluate(["$50", "50$", "50 USD"])]
    assert values[0] == values[1] == values[2]
    assert values[0].unit == "USD"


# =============================================================================
# VARIABLE REGISTRY
# =============================================================================

def test_canonical_name():
    assert canonical_name("Total Income") == "Total_Income"
    assert canonical_name("  Total \t  Income ") == "Total_Income"
    assert canonical_name("x") == "x"


def test_match_assignment():
    registry = VariableRegistry()

    assignment = registry.match_assignment("Total Income = 5000")
    assert assignment.display == "Total Income"
    assert assignment.canonical == "Total_Income"
    assert assignment.expression == "5000"

    assert registry.match_assignment("Rate: 3%").display == "Rate"
    assert registry.match_assignment("x =").expression == ""
    assert registry.match_assignment("5 + 3") is None
    assert registry.match_assignment("prev * 2") is None
    # Nothing is registered until register() is called
    assert registry.snapshot() == {}


def test_register_collision_warns(caplog):
    registry = VariableRegistry()
    registry.register(registry.match_assignment("Net Income = 5"), Value.number(5))

    with caplog.at_level(logging.WARNING, logger="sheet_engine"):
        registry.register(registry.match_assignment("Net_Income = 7"), Value.number(7))

    assert "Net_Income" in caplog.text
    assert registry.bindings == {"Net_Income": Value.number(7)}
    assert registry.snapshot() == {"Net Income": "Net_Income", "Net_Income": "Net_Income"}


# =============================================================================
# SCOPE
# =============================================================================

def test_build_scope_layers():
    prior = [LineResult(value=Value.number(1)), LineResult(), LineResult(value=Value.number(3))]
    scope = build_scope(prior, {"rate": Value.number(2)}, Value.number(3))

    assert scope["line1"] == Value.number(1)
    assert "line2" not in scope
    assert scope["line3"] == Value.number(3)
    assert scope["rate"] == Value.number(2)
    assert scope["prev"] == scope["previous"] == Value.number(3)


def test_build_scope_named_variable_wins():
    prior = [LineResult(value=Value.number(1))]
    scope = build_scope(prior, {"line1": Value.number(99)})
    assert scope["line1"] == Value.number(99)
    assert "prev" not in scope


# =============================================================================
# FORMATTING
# =============================================================================

def test_format_number():
    test_cases = [
        (6000, "6,000"),
        (1234.56789, "1,234.5679"),
        (0.5, "0.5"),
        (2.0, "2"),
        (-1234.5, "-1,234.5"),
        (1 / 3, "0.3333"),
        (1234567, "1,234,567"),
    ]

    for value, expected in test_cases:
        assert format_number(value) == expected, value


def test_format_value(evaluator):
    assert format_value(None) == ""
    assert format_value(Value.number(5000)) == "5,000"
    assert format_value(Value.quantity(evaluator.quantity(5.5, "km"))) == "5.5 km"
    assert format_value(Value.other("hello")) == "hello"
    assert format_value(Value.number(float("inf"))) == "inf"


# =============================================================================
# SHEET EVALUATION
# =============================================================================

def test_named_results(engine):
    """Salary/Bonus/Total sheet"""
    results = engine.evaluate(["Salary = 5000", "Bonus = 1000", "Total = Salary + Bonus"])

    assert [r.value.raw for r in results] == [5000, 1000, 6000]
    assert [r.variable for r in results] == ["Salary", "Bonus", "Total"]
    assert [r.formatted for r in results] == ["5,000", "1,000", "6,000"]
    assert all(r.is_assignment for r in results)


def test_prev_with_units(engine):
    results = engine.evaluate(["Walk = 5 km + 500 m", "prev * 2"])

    assert results[0].value.kind is ValueKind.QUANTITY
    assert results[1].value.raw.to("km").magnitude == pytest.approx(11)
    assert results[1].formatted == "11 km"
    assert results[1].variable is None
    assert not results[1].is_assignment


def test_currency_sheet(engine, evaluator):
    results = engine.evaluate(["Hotel = $200", "Food = €50", "Total = Hotel + Food in USD"])

    assert results[0].expression == "200 USD"
    assert results[1].expression == "50 EUR"
    assert results[2].expression == "Hotel + Food in USD"
    total = results[2].value
    assert total.unit == "USD"
    assert total.magnitude == pytest.approx(200 + 50 * evaluator.rates["EUR"])
    assert results[2].formatted == "258 USD"


def test_failures_are_isolated(engine):
    results = engine.evaluate(["x = ", "y = x + 1", "2 + 2"])

    assert results[0].error == "Invalid expression"
    assert results[0].error_kind == "syntax"
    assert results[0].value is None
    assert results[0].formatted == ""
    assert not results[0].is_assignment

    assert results[1].error is not None
    assert results[1].error_kind == "unknown_identifier"
    assert results[1].value is None

    assert results[2].value.raw == 4


def test_percent_of(engine):
    (result,) = engine.evaluate(["5 of 20%"])
    assert result.value.raw == pytest.approx(1)
    assert result.formatted == "1"


def test_one_result_per_line(engine):
    lines = ["1 + 1", "", "bad +", "   ", "a = 3", "a * line1"]
    results = engine.evaluate(lines)
    assert len(results) == len(lines)
    assert results[5].value.raw == 6


def test_blank_lines(engine):
    results = engine.evaluate(["", "   ", "\t"])
    for result in results:
        assert result.value is None
        assert result.error is None
        assert not result.is_assignment
        assert result.formatted == ""
        assert result.is_blank


def test_blank_and_failed_lines_do_not_move_prev(engine):
    results = engine.evaluate(["10", "", "bogus_name_here", "prev + 1"])
    assert results[2].error is not None
    assert results[3].value.raw == 11


def test_line_references(engine):
    results = engine.evaluate(["10", "20", "line1 + line2", "previous * 2"])
    assert results[2].value.raw == 30
    assert results[3].value.raw == 60


def test_forward_only_visibility(engine):
    results = engine.evaluate(["y = later + 1", "later = 5", "later + 1"])

    assert results[0].error_kind == "unknown_identifier"
    assert results[1].value.raw == 5
    assert results[2].value.raw == 6
    assert "line1" not in results[2].scope
    assert "line3" not in results[2].scope


def test_multi_word_variables(engine):
    results = engine.evaluate([
        "Total Income = 5000",
        "Tax = Total Income * 20%",
        "Total Income - Tax",
    ])
    assert results[0].variable == "Total Income"
    assert results[1].value.raw == pytest.approx(1000)
    assert results[2].formatted == "4,000"


def test_reassignment(engine):
    results = engine.evaluate(["a = 1", "a = a + 1", "a"])
    assert results[2].value.raw == 2


def test_failed_assignment_keeps_old_binding(engine):
    results = engine.evaluate(["a = 1", "a = 5 km + 2 kg", "a"])
    assert results[1].error_kind == "unit_incompatibility"
    assert results[2].value.raw == 1


def test_scope_snapshot(engine):
    results = engine.evaluate(["a = 2", "a * 3"])

    assert results[0].scope == {"a": Value.number(2)}
    assert results[1].scope["a"] == Value.number(2)
    assert results[1].scope["line1"] == Value.number(2)
    assert results[1].scope["prev"] == Value.number(2)


def test_canonical_collision_last_write_wins(engine, caplog):
    with caplog.at_level(logging.WARNING, logger="sheet_engine"):
        results = engine.evaluate(["Net Income = 5", "Net_Income = 7", "Net Income"])
    assert results[2].value.raw == 7
    assert "Net_Income" in caplog.text


def test_evaluation_is_idempotent(engine):
    lines = ["Walk = 5 km + 500 m", "prev * 2", "Hotel = $200", "x =", "Hotel * 2"]
    assert engine.evaluate(lines) == engine.evaluate(lines)


def test_passes_do_not_share_names(engine):
    engine.evaluate(["secret = 42"])
    (result,) = engine.evaluate(["secret"])
    assert result.error is not None


def test_evaluate_text_and_helpers(evaluator):
    assert split_lines("a = 1\r\na * 2\n") == ["a = 1", "a * 2", ""]

    results = SheetEvaluator(evaluator).evaluate_text("a = 1\na * 2")
    assert [r.formatted for r in results] == ["1", "2"]

    results = evaluate_sheet(["1 + 1"], evaluator)
    assert results[0].to_dict() == {
        "value": 2,
        "formatted": "2",
        "error": None,
        "variable": None,
        "isAssignment": False,
    }


def test_quantity_to_dict(engine):
    (result,) = engine.evaluate(["5 km to m"])
    data = result.to_dict()
    assert data["value"]["unit"] == "m"
    assert data["value"]["magnitude"] == pytest.approx(5000)
    assert data["formatted"] == "5000 m"


def test_speed_sheet(engine):
    results = engine.evaluate(["Speed = 100 km / 2 h", "Pace = 60 km / 1 h", "Speed + Pace"])

    assert results[0].formatted == "50 km/h"
    assert results[0].variable == "Speed"
    assert results[1].formatted == "60 km/h"
    assert results[2].value.magnitude == pytest.approx(110)
    assert results[2].value.unit == "km/h"


def test_overly_deep_line_does_not_stop_the_pass(engine):
    results = engine.evaluate([
        "+".join(["1"] * 3000),
        "-" * 5000 + "1",
        "2 + 2",
    ])

    assert results[0].error == "Invalid expression"
    assert results[0].error_kind in ("syntax", "domain")
    assert results[1].error == "Invalid expression"
    assert results[2].value.raw == 4
