"""Unit tests for TaxCalculator.

Tests the bracket and calculation mode logic without a database.
"""

from decimal import Decimal

import pytest

from paystructure_engine.calculators.tax_calculator import TaxCalculator
from paystructure_engine.calculators.types import (
    TaxBracketSpec,
    TaxCalculationMethod,
    TaxCalculationMode,
    TaxRuleSetSpec,
)
from paystructure_engine.exceptions import InvalidCalculationMode


def rule_set(brackets, mode=TaxCalculationMode.AGGREGATED, annual_cap=None):
    return TaxRuleSetSpec(
        rule_set_id=None,
        tax_type="wage_tax",
        jurisdiction="SR",
        calculation_method=TaxCalculationMethod.BRACKET,
        calculation_mode=mode,
        brackets=tuple(
            TaxBracketSpec(Decimal(lo), Decimal(hi) if hi is not None else None, Decimal(rate), Decimal(fixed))
            for lo, hi, rate, fixed in brackets
        ),
        annual_cap=Decimal(annual_cap) if annual_cap is not None else None,
    )


PROGRESSIVE = [("0", "3500", "8", "0"), ("3500", "7000", "18", "0"), ("7000", None, "28", "0")]
FLAT_10 = [("0", None, "10", "0")]


class TestProgressiveTaxCalculation:
    """Test progressive tax bracket calculations."""

    def test_spanning_two_brackets(self):
        """3500 x 8% + 1500 x 18% = 550."""
        assert TaxCalculator.compute_tax(Decimal("5000"), rule_set(PROGRESSIVE)) == Decimal("550.00")

    def test_bracket_boundaries(self):
        rules = rule_set(PROGRESSIVE)
        assert TaxCalculator.compute_tax(Decimal("3500"), rules) == Decimal("280.00")
        assert TaxCalculator.compute_tax(Decimal("7000"), rules) == Decimal("910.00")
        assert TaxCalculator.compute_tax(Decimal("10000"), rules) == Decimal("1750.00")

    def test_zero_and_negative_income(self):
        rules = rule_set(PROGRESSIVE)
        assert TaxCalculator.compute_tax(Decimal("0"), rules) == Decimal("0.00")
        assert TaxCalculator.compute_tax(Decimal("-100"), rules) == Decimal("0.00")

    def test_fixed_amount_added_once_bracket_is_entered(self):
        rules = rule_set([("0", "1000", "0", "0"), ("1000", None, "10", "50")])
        assert TaxCalculator.compute_tax(Decimal("1000"), rules) == Decimal("0.00")
        assert TaxCalculator.compute_tax(Decimal("1500"), rules) == Decimal("100.00")

    def test_monotonic_and_continuous_across_boundaries(self):
        """Tax never decreases with income and never jumps at a boundary."""
        rules = rule_set(PROGRESSIVE)
        cent = Decimal("0.01")
        for boundary in (Decimal("3500"), Decimal("7000")):
            below = TaxCalculator.compute_tax(boundary - cent, rules)
            at = TaxCalculator.compute_tax(boundary, rules)
            above = TaxCalculator.compute_tax(boundary + cent, rules)
            assert below <= at <= above
            assert above - below <= cent

    def test_monotonic_over_a_range(self):
        rules = rule_set(PROGRESSIVE)
        previous = Decimal("0")
        for income in range(0, 12000, 250):
            tax = TaxCalculator.compute_tax(Decimal(income), rules)
            assert tax >= previous
            previous = tax


class TestCalculationModes:
    """How a tax is attributed to contributing components."""

    def test_aggregated_has_no_shares(self):
        outcome = TaxCalculator.calculate(
            rule_set(PROGRESSIVE), [("BASE", Decimal("4000")), ("BONUS", Decimal("1000"))]
        )
        assert outcome.total_tax == Decimal("550.00")
        assert outcome.taxable_total == Decimal("5000")
        assert outcome.shares == ()

    def test_proportional_shares_sum_exactly(self):
        outcome = TaxCalculator.calculate(
            rule_set(PROGRESSIVE, TaxCalculationMode.PROPORTIONAL_DISTRIBUTION),
            [("BASE", Decimal("6000")), ("BONUS", Decimal("900"))],
        )
        assert outcome.total_tax == Decimal("892.00")
        assert [s.tax_amount for s in outcome.shares] == [Decimal("775.65"), Decimal("116.35")]
        assert sum(s.tax_amount for s in outcome.shares) == outcome.total_tax

    def test_rounding_residue_goes_to_largest_contributor(self):
        shares = TaxCalculator.distribute_proportionally(
            Decimal("100.00"),
            [("A", Decimal("1")), ("B", Decimal("1")), ("C", Decimal("1"))],
        )
        assert [s.tax_amount for s in shares] == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]

    def test_non_positive_contributions_get_no_share(self):
        shares = TaxCalculator.distribute_proportionally(
            Decimal("10.00"), [("A", Decimal("100")), ("B", Decimal("0"))]
        )
        assert [(s.component_code, s.tax_amount) for s in shares] == [("A", Decimal("10.00"))]

    def test_component_based_flat_rate(self):
        outcome = TaxCalculator.calculate(
            rule_set(FLAT_10, TaxCalculationMode.COMPONENT_BASED),
            [("BASE", Decimal("4000")), ("BONUS", Decimal("333.33"))],
        )
        assert [s.tax_amount for s in outcome.shares] == [Decimal("400.00"), Decimal("33.33")]
        assert outcome.total_tax == Decimal("433.33")

    def test_component_based_rejected_for_progressive_brackets(self):
        """Per-component progressive tax would undercharge."""
        with pytest.raises(InvalidCalculationMode) as exc_info:
            TaxCalculator.calculate(
                rule_set(PROGRESSIVE, TaxCalculationMode.COMPONENT_BASED),
                [("BASE", Decimal("5000"))],
                component_code="WAGE_TAX",
            )
        assert exc_info.value.component_code == "WAGE_TAX"
        assert exc_info.value.kind == "invalid_calculation_mode"

    def test_flat_rule_set_with_fixed_amount_is_not_flat(self):
        with pytest.raises(InvalidCalculationMode):
            TaxCalculator.validate_mode(rule_set([("0", None, "10", "5")], TaxCalculationMode.COMPONENT_BASED))


class TestAnnualCap:
    """Annual cap against tax already withheld this year."""

    def test_cap_limits_remaining_tax(self):
        outcome = TaxCalculator.calculate(
            rule_set(PROGRESSIVE, annual_cap="1000"),
            [("BASE", Decimal("5000"))],
            ytd_tax=Decimal("900"),
        )
        assert outcome.total_tax == Decimal("100.00")
        assert outcome.capped is True

    def test_cap_already_reached(self):
        outcome = TaxCalculator.calculate(
            rule_set(PROGRESSIVE, annual_cap="1000"),
            [("BASE", Decimal("5000"))],
            ytd_tax=Decimal("1200"),
        )
        assert outcome.total_tax == Decimal("0.00")

    def test_under_cap_is_not_capped(self):
        outcome = TaxCalculator.calculate(
            rule_set(PROGRESSIVE, annual_cap="10000"),
            [("BASE", Decimal("5000"))],
        )
        assert outcome.total_tax == Decimal("550.00")
        assert outcome.capped is False

    def test_capped_proportional_shares_follow_capped_total(self):
        outcome = TaxCalculator.calculate(
            rule_set(PROGRESSIVE, TaxCalculationMode.PROPORTIONAL_DISTRIBUTION, annual_cap="1000"),
            [("BASE", Decimal("3000")), ("BONUS", Decimal("1000"))],
            ytd_tax=Decimal("900"),
        )
        assert outcome.total_tax == Decimal("100.00")
        assert sum(s.tax_amount for s in outcome.shares) == Decimal("100.00")
