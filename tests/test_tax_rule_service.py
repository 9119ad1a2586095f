"""Tests for tax rule set maintenance and lookup."""

from datetime import date
from decimal import Decimal

import pytest
from conftest import WAGE_TAX_BRACKETS

from paystructure_engine.calculators.tax_calculator import TaxCalculator
from paystructure_engine.calculators.types import TaxCalculationMode
from paystructure_engine.exceptions import (
    ConfigValidationError,
    InvalidCalculationMode,
    OverlappingEffectiveRange,
    TaxRuleNotFoundError,
)
from paystructure_engine.services.tax_rule_service import BracketInput, TaxRuleService


def bracket(lo, hi, rate, fixed="0"):
    return BracketInput(Decimal(lo), Decimal(hi) if hi is not None else None, Decimal(rate), Decimal(fixed))


@pytest.fixture
def service(session):
    return TaxRuleService(session)


class TestBracketValidation:
    """Brackets must be contiguous from zero to an unbounded top."""

    def test_valid_brackets(self):
        TaxRuleService.validate_brackets(WAGE_TAX_BRACKETS)

    @pytest.mark.parametrize(
        "brackets",
        [
            [],
            [bracket("100", None, "10")],
            [bracket("0", "1000", "10"), bracket("1500", None, "20")],
            [bracket("0", "1000", "10")],
            [bracket("0", None, "10"), bracket("1000", None, "20")],
            [bracket("0", "0", "10"), bracket("0", None, "20")],
            [bracket("0", None, "120")],
            [bracket("0", None, "10", "-5")],
        ],
        ids=["empty", "not-from-zero", "gap", "bounded-top", "unbounded-middle", "empty-band", "rate", "fixed"],
    )
    def test_invalid_brackets(self, brackets):
        with pytest.raises(ConfigValidationError):
            TaxRuleService.validate_brackets(brackets)


class TestCreateRuleSet:
    async def test_create_and_load(self, service, session, organization_id):
        created = await service.create_rule_set(
            organization_id, "SR", "wage_tax", "Wage tax", WAGE_TAX_BRACKETS, date(2026, 1, 1)
        )

        spec = await TaxCalculator(session).get_rule_set(organization_id, "wage_tax", date(2026, 1, 31))
        assert spec.rule_set_id == created.id
        assert spec.calculation_mode == TaxCalculationMode.AGGREGATED
        assert [b.rate_percentage for b in spec.brackets] == [Decimal("8"), Decimal("18"), Decimal("28")]
        assert spec.brackets[-1].income_max is None

    async def test_component_based_progressive_rejected(self, service, organization_id):
        with pytest.raises(InvalidCalculationMode):
            await service.create_rule_set(
                organization_id,
                "SR",
                "wage_tax",
                "Wage tax",
                WAGE_TAX_BRACKETS,
                date(2026, 1, 1),
                calculation_mode="component_based",
            )

    async def test_component_based_flat_rate_accepted(self, service, organization_id):
        rule_set = await service.create_rule_set(
            organization_id,
            "SR",
            "aov",
            "Old age pension",
            [bracket("0", None, "4")],
            date(2026, 1, 1),
            calculation_method="flat_rate",
            calculation_mode="component_based",
        )
        assert rule_set.calculation_mode == "component_based"

    async def test_flat_rate_needs_single_bracket(self, service, organization_id):
        with pytest.raises(ConfigValidationError):
            await service.create_rule_set(
                organization_id, "SR", "aov", "AOV", WAGE_TAX_BRACKETS, date(2026, 1, 1),
                calculation_method="flat_rate",
            )

    async def test_overlapping_ranges_rejected(self, service, organization_id):
        await service.create_rule_set(
            organization_id, "SR", "wage_tax", "Wage tax 2025", WAGE_TAX_BRACKETS,
            date(2025, 1, 1), effective_to=date(2025, 12, 31),
        )
        await service.create_rule_set(
            organization_id, "SR", "wage_tax", "Wage tax 2026", WAGE_TAX_BRACKETS, date(2026, 1, 1)
        )

        with pytest.raises(OverlappingEffectiveRange):
            await service.create_rule_set(
                organization_id, "SR", "wage_tax", "Wage tax mid-2025", WAGE_TAX_BRACKETS, date(2025, 7, 1)
            )

    async def test_missing_rule_set(self, session, organization_id):
        with pytest.raises(TaxRuleNotFoundError) as exc_info:
            await TaxCalculator(session).get_rule_set(organization_id, "wage_tax", date(2026, 1, 31))
        assert exc_info.value.tax_type == "wage_tax"


class TestCreateAllowance:
    async def test_create_allowance(self, service, organization_id):
        allowance = await service.create_allowance(
            organization_id, "transport", "Transport", Decimal("10016"), date(2026, 1, 1)
        )
        assert allowance.is_tax_free is True
        assert allowance.amount_type == "fixed"

    async def test_invalid_allowance(self, service, organization_id):
        with pytest.raises(ConfigValidationError):
            await service.create_allowance(
                organization_id, "transport", "Transport", Decimal("-1"), date(2026, 1, 1)
            )
        with pytest.raises(ConfigValidationError):
            await service.create_allowance(
                organization_id, "transport", "Transport", Decimal("1"), date(2026, 1, 1), amount_type="monthly"
            )
