"""Tests for line item builder."""

from decimal import Decimal
from uuid import uuid4

from paystructure_engine.calculators.config_schemas import ForfaitRule, parse_component_config
from paystructure_engine.calculators.line_builder import LineItemBuilder
from paystructure_engine.calculators.types import (
    ComponentCategory,
    LineRole,
    LineType,
    ResolvedComponent,
    TaxShare,
)


def component(code="BASE", category="earning", **kwargs):
    return ResolvedComponent(
        component_id=kwargs.pop("component_id", uuid4()),
        component_code=code,
        component_name=code.title(),
        category=ComponentCategory(category),
        configuration=parse_component_config("fixed", {"amount": "100"}),
        sequence_order=10,
        **kwargs,
    )


class TestLineItemBuilder:
    """Test line item builder functionality."""

    def test_round_to_cents(self):
        """Half-up rounding to 2 decimal places."""
        assert LineItemBuilder.round_to_cents(Decimal("10.125")) == Decimal("10.13")
        assert LineItemBuilder.round_to_cents(Decimal("10.124")) == Decimal("10.12")
        assert LineItemBuilder.round_to_cents(Decimal("10.135")) == Decimal("10.14")

    def test_earning_line_is_positive(self):
        line = LineItemBuilder.create_component_line(component(), Decimal("1000"))

        assert line.line_type == LineType.EARNING
        assert line.amount == Decimal("1000.00")
        assert line.is_taxable is True
        assert line.affects_gross_pay is True
        assert line.affects_net_pay is True

    def test_deduction_line_is_negative(self):
        line = LineItemBuilder.create_component_line(component("PENSION", "deduction"), Decimal("240"))

        assert line.line_type == LineType.DEDUCTION
        assert line.amount == Decimal("-240.00")
        # Deductions never feed gross or the tax base
        assert line.affects_gross_pay is False
        assert line.is_taxable is False

    def test_tax_line_is_negative(self):
        line = LineItemBuilder.create_component_line(
            component("WAGE_TAX", "tax", tax_type="wage_tax"), Decimal("892")
        )

        assert line.line_type == LineType.TAX
        assert line.amount == Decimal("-892.00")
        assert line.tax_category == "wage_tax"

    def test_employer_cost_never_affects_net(self):
        line = LineItemBuilder.create_component_line(
            component("ER_PENSION", "employer_cost"), Decimal("300")
        )

        assert line.line_type == LineType.EMPLOYER_COST
        assert line.amount == Decimal("300.00")
        assert line.affects_net_pay is False

    def test_zero_deduction_is_not_signed(self):
        """A zero deduction stays 0.00 rather than -0.00."""
        line = LineItemBuilder.create_component_line(component("PENSION", "deduction"), Decimal("0"))
        assert str(line.amount) == "0.00"

    def test_allowance_excess_line_is_taxable(self):
        transport = component("TRANSPORT", is_taxable=False, allowance_type="transport")
        line = LineItemBuilder.create_allowance_excess_line(transport, Decimal("484"), "transport")

        assert line.line_role == LineRole.ALLOWANCE_EXCESS
        assert line.amount == Decimal("484.00")
        assert line.is_taxable is True
        assert line.metadata["allowance_type"] == "transport"

    def test_forfait_line_has_no_cash_effect(self):
        rule = ForfaitRule(
            forfait_code="CAR_BIK",
            forfait_name="Company car",
            basis_variable="car_catalog_value",
            annual_rate=Decimal("0.2"),
        )
        line = LineItemBuilder.create_forfait_line(component("CAR"), rule, Decimal("500"), Decimal("30000"))

        assert line.component_code == "CAR_BIK"
        assert line.line_type == LineType.BENEFIT_IN_KIND
        assert line.attributed_to == "CAR"
        assert line.is_taxable is True
        assert line.affects_gross_pay is False
        assert line.affects_net_pay is False

    def test_tax_share_line(self):
        wage_tax = component("WAGE_TAX", "tax", tax_type="wage_tax")
        share = TaxShare("BONUS", Decimal("900"), Decimal("116.35"))
        line = LineItemBuilder.create_tax_share_line(wage_tax, share, "proportional_distribution")

        assert line.line_role == LineRole.TAX_SHARE
        assert line.attributed_to == "BONUS"
        assert line.amount == Decimal("-116.35")
        assert line.affects_net_pay is True
        assert line.affects_gross_pay is False

    def test_line_hash_deterministic(self):
        """Same inputs produce the same hash."""
        base = component()
        line1 = LineItemBuilder.create_component_line(base, Decimal("1000"))
        line2 = LineItemBuilder.create_component_line(base, Decimal("1000"))

        assert LineItemBuilder.compute_line_hash(line1) == LineItemBuilder.compute_line_hash(line2)

    def test_line_hash_changes_with_amount(self):
        base = component()
        line1 = LineItemBuilder.create_component_line(base, Decimal("1000"))
        line2 = LineItemBuilder.create_component_line(base, Decimal("1000.01"))

        assert LineItemBuilder.compute_line_hash(line1) != LineItemBuilder.compute_line_hash(line2)

    def test_line_id_deterministic(self):
        paycheck_id = uuid4()
        assert LineItemBuilder.line_id(paycheck_id, 1) == LineItemBuilder.line_id(paycheck_id, 1)
        assert LineItemBuilder.line_id(paycheck_id, 1) != LineItemBuilder.line_id(paycheck_id, 2)

    def test_totals(self):
        lines = [
            LineItemBuilder.create_component_line(component("BASE"), Decimal("6000")),
            LineItemBuilder.create_component_line(component("TRANSPORT", is_taxable=False), Decimal("1000")),
            LineItemBuilder.create_component_line(component("WAGE_TAX", "tax"), Decimal("892")),
            LineItemBuilder.create_component_line(component("PENSION", "deduction"), Decimal("240")),
            LineItemBuilder.create_component_line(component("ER_PENSION", "employer_cost"), Decimal("300")),
        ]

        assert LineItemBuilder.calculate_gross(lines) == Decimal("7000.00")
        assert LineItemBuilder.calculate_net(lines) == Decimal("5868.00")
        assert LineItemBuilder.calculate_taxable(lines) == Decimal("6000.00")
        assert LineItemBuilder.sum_by_type(lines)[LineType.TAX] == Decimal("-892.00")

    def test_validate_line_signs(self):
        """Sign validation flags lines that break the conventions."""
        good = LineItemBuilder.create_component_line(component(), Decimal("100"))
        bad = LineItemBuilder.create_component_line(component("PENSION", "deduction"), Decimal("50"))
        bad.amount = Decimal("50.00")

        assert LineItemBuilder.validate_line_signs([good]) == []
        errors = LineItemBuilder.validate_line_signs([good, bad])
        assert len(errors) == 1
        assert "expected negative" in errors[0]
