"""Tests for formula parsing and evaluation."""

from decimal import Decimal, localcontext

import pytest

from paystructure_engine.calculators.formula import (
    evaluate,
    evaluate_logged,
    extract_variables,
    from_dict,
    parse_formula,
    to_dict,
)
from paystructure_engine.calculators.types import ResolvedFormula
from paystructure_engine.exceptions import DivisionByZero, FormulaSyntaxError, UnboundVariable

BONUS = "IF(gross_pay > 5000, gross_pay * 0.15, gross_pay * 0.10)"


def calc(expression, **variables):
    return evaluate(parse_formula(expression), {k: Decimal(str(v)) for k, v in variables.items()})


class TestArithmetic:
    """Operators, precedence and functions."""

    def test_conditional_bonus(self):
        """IF picks the branch by the condition."""
        assert calc(BONUS, gross_pay=6000) == Decimal("900")
        assert calc(BONUS, gross_pay=4000) == Decimal("400")

    def test_precedence(self):
        assert calc("2 + 3 * 4") == Decimal("14")
        assert calc("(2 + 3) * 4") == Decimal("20")
        assert calc("10 - 4 - 3") == Decimal("3")
        assert calc("-2 * 3") == Decimal("-6")

    def test_unicode_operators(self):
        """× and ÷ behave like * and /."""
        assert calc("base_salary × 1.5 ÷ 12", base_salary=1200) == Decimal("150")

    def test_braced_variables(self):
        assert calc("{gross_pay} * 0.1", gross_pay=2500) == Decimal("250.0")

    def test_comparisons_and_boolean_operators(self):
        formula = "hours_worked > 160 AND NOT on_leave"
        assert calc(formula, hours_worked=170, on_leave=0) == Decimal("1")
        assert calc(formula, hours_worked=170, on_leave=1) == Decimal("0")
        assert calc("a == 1 || b <> 2", a=0, b=2) == Decimal("0")
        assert calc("a >= 1 && b <= 2", a=1, b=2) == Decimal("1")

    def test_functions(self):
        assert calc("ROUND(10.555, 2)") == Decimal("10.56")
        assert calc("ROUND(2.5)") == Decimal("3")
        assert calc("MIN(a, b, 100)", a=250, b=75) == Decimal("75")
        assert calc("MAX(a, 0)", a=-5) == Decimal("0")

    def test_keywords_are_case_insensitive(self):
        assert calc("true and not false") == Decimal("1")


class TestErrors:
    """Errors raised by parsing and evaluation."""

    def test_unbound_variable(self):
        with pytest.raises(UnboundVariable) as exc_info:
            calc("base_salary * bonus_rate", base_salary=1000)
        assert exc_info.value.variable == "bonus_rate"
        assert exc_info.value.kind == "unbound_variable"

    def test_division_by_zero(self):
        with pytest.raises(DivisionByZero):
            calc("a / b", a=1, b=0)

    def test_division_by_near_zero(self):
        """Divisors below epsilon count as zero."""
        with pytest.raises(DivisionByZero):
            calc("a / b", a=1, b="0.0000001")

    @pytest.mark.parametrize(
        "expression",
        [
            "gross_pay *",
            "",
            "FOO(1)",
            "1 < 2 < 3",
            "{unterminated",
            "IF(1, 2)",
            "(1 + 2",
            "2 $ 3",
        ],
    )
    def test_syntax_errors(self, expression):
        with pytest.raises(FormulaSyntaxError):
            parse_formula(expression)

    def test_syntax_error_reports_position(self):
        with pytest.raises(FormulaSyntaxError) as exc_info:
            parse_formula("1 + + * 2")
        assert exc_info.value.position == 6

    def test_branches_not_taken_are_not_evaluated(self):
        """IF, AND and OR skip operands they do not need."""
        assert calc("IF(b != 0, a / b, 0)", a=1, b=0) == Decimal("0")
        assert calc("FALSE AND missing") == Decimal("0")
        assert calc("TRUE OR missing") == Decimal("1")


class TestDeterminism:
    """Parsed trees evaluate the same way every time."""

    def test_same_inputs_same_result(self):
        tree = parse_formula("base_salary / 3 * 2")
        variables = {"base_salary": Decimal("1000")}
        first = evaluate(tree, variables)
        assert all(evaluate(tree, variables) == first for _ in range(5))

    def test_result_independent_of_caller_decimal_context(self):
        tree = parse_formula("base_salary / 3")
        variables = {"base_salary": Decimal("1000")}
        expected = evaluate(tree, variables)
        with localcontext() as ctx:
            ctx.prec = 3
            assert evaluate(tree, variables) == expected

    def test_stored_tree_evaluates_like_parsed_tree(self):
        """The JSON form stored at publish time rebuilds the same tree."""
        tree = parse_formula(BONUS)
        rebuilt = from_dict(to_dict(tree))
        assert rebuilt == tree
        assert evaluate(rebuilt, {"gross_pay": Decimal("6000")}) == Decimal("900")

    def test_extract_variables_in_first_use_order(self):
        tree = parse_formula("IF(b > a, b, a) + c * a")
        assert extract_variables(tree) == ["b", "a", "c"]

    def test_evaluate_logged_records_inputs(self):
        formula = ResolvedFormula(None, BONUS, parse_formula(BONUS))
        value, execution = evaluate_logged(
            formula, {"gross_pay": Decimal("6000"), "unused": Decimal("1")}, "BONUS"
        )
        assert value == Decimal("900")
        assert execution.component_code == "BONUS"
        assert execution.input_variables == {"gross_pay": "6000"}
        assert execution.result == value
