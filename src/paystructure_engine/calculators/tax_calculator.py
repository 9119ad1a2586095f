"""Tax calculation from bracket rule sets."""

from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from paystructure_engine.calculators.types import (
    TaxBracketSpec,
    TaxCalculationMethod,
    TaxCalculationMode,
    TaxOutcome,
    TaxRuleSetSpec,
    TaxShare,
)
from paystructure_engine.exceptions import InvalidCalculationMode, TaxRuleNotFoundError
from paystructure_engine.models import TaxRuleSet

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")


def _round_to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


class TaxCalculator:
    """Calculates taxes from bracket rule sets.

    A rule set is an ordered list of contiguous brackets; each bracket
    taxes the part of income inside [income_min, income_max) at
    rate_percentage and adds its fixed_amount once the income reaches it.
    The top bracket has no upper bound.

    How the tax relates to the individual taxable components of a paycheck
    is governed by the rule set's calculation mode:
    - aggregated: one tax on the total, one line
    - component_based: tax per component (flat-rate rule sets only)
    - proportional_distribution: tax on the total, attributed back to the
      components by their share of the taxable total
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._rule_cache: dict[tuple[UUID, str, date], TaxRuleSetSpec] = {}

    async def get_rule_set(
        self,
        organization_id: UUID,
        tax_type: str,
        as_of_date: date,
    ) -> TaxRuleSetSpec:
        """Load the rule set for a tax type effective on a date."""
        cache_key = (organization_id, tax_type, as_of_date)
        if cache_key in self._rule_cache:
            return self._rule_cache[cache_key]

        result = await self.session.execute(
            select(TaxRuleSet)
            .where(
                TaxRuleSet.organization_id == organization_id,
                TaxRuleSet.tax_type == tax_type,
                TaxRuleSet.effective_from <= as_of_date,
                or_(TaxRuleSet.effective_to.is_(None), TaxRuleSet.effective_to >= as_of_date),
            )
            .options(selectinload(TaxRuleSet.brackets))
            .order_by(TaxRuleSet.effective_from.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise TaxRuleNotFoundError(tax_type, as_of_date)

        spec = self.to_spec(row)
        self._rule_cache[cache_key] = spec
        return spec

    @staticmethod
    def to_spec(row: TaxRuleSet) -> TaxRuleSetSpec:
        return TaxRuleSetSpec(
            rule_set_id=row.id,
            tax_type=row.tax_type,
            jurisdiction=row.jurisdiction,
            calculation_method=TaxCalculationMethod(row.calculation_method),
            calculation_mode=TaxCalculationMode(row.calculation_mode),
            brackets=tuple(
                TaxBracketSpec(
                    income_min=Decimal(b.income_min),
                    income_max=Decimal(b.income_max) if b.income_max is not None else None,
                    rate_percentage=Decimal(b.rate_percentage),
                    fixed_amount=Decimal(b.fixed_amount or 0),
                )
                for b in sorted(row.brackets, key=lambda b: b.bracket_order)
            ),
            annual_cap=Decimal(row.annual_cap) if row.annual_cap is not None else None,
        )

    @staticmethod
    def compute_tax(taxable_amount: Decimal, rule_set: TaxRuleSetSpec) -> Decimal:
        """Tax on one taxable amount, rounded to cents.

        Example: brackets [0-3500 @8, 3500-7000 @18, ...] on 5000 gives
        3500 x 0.08 + 1500 x 0.18 = 550.00.
        """
        if taxable_amount <= 0:
            return Decimal("0.00")

        tax = Decimal("0")
        for bracket in rule_set.brackets:
            if taxable_amount <= bracket.income_min:
                break
            upper = taxable_amount
            if bracket.income_max is not None and bracket.income_max < upper:
                upper = bracket.income_max
            portion = upper - bracket.income_min
            tax += portion * bracket.rate_percentage / HUNDRED + bracket.fixed_amount

        return _round_to_cents(tax)

    @staticmethod
    def validate_mode(rule_set: TaxRuleSetSpec, component_code: str | None = None) -> None:
        """Reject component_based mode on progressive rule sets."""
        if rule_set.calculation_mode != TaxCalculationMode.COMPONENT_BASED:
            return
        if rule_set.is_flat_rate:
            return
        raise InvalidCalculationMode(
            rule_set.calculation_mode.value,
            f"tax '{rule_set.tax_type}' uses progressive brackets; "
            "per-component calculation is only valid for flat-rate taxes",
            component_code=component_code,
        )

    @staticmethod
    def distribute_proportionally(
        total_tax: Decimal,
        contributions: list[tuple[str, Decimal]],
    ) -> list[TaxShare]:
        """Split a tax amount across components by their taxable share.

        Shares are rounded to cents; the rounding residue goes to the
        largest contributor so the shares sum exactly to ``total_tax``.
        """
        positive = [(code, amount) for code, amount in contributions if amount > 0]
        if not positive:
            return []

        base = sum((amount for _, amount in positive), Decimal("0"))
        shares = [_round_to_cents(total_tax * amount / base) for _, amount in positive]

        residue = total_tax - sum(shares, Decimal("0"))
        if residue:
            largest = max(range(len(positive)), key=lambda i: positive[i][1])
            shares[largest] += residue

        return [
            TaxShare(component_code=code, taxable_amount=amount, tax_amount=share)
            for (code, amount), share in zip(positive, shares)
        ]

    @classmethod
    def calculate(
        cls,
        rule_set: TaxRuleSetSpec,
        contributions: list[tuple[str, Decimal]],
        ytd_tax: Decimal = Decimal("0"),
        component_code: str | None = None,
    ) -> TaxOutcome:
        """Apply a rule set to a paycheck's taxable components.

        ``contributions`` are (component_code, taxable_amount) pairs in
        execution order. ``ytd_tax`` is tax already withheld this year,
        used against the rule set's annual cap.
        """
        cls.validate_mode(rule_set, component_code)

        positive = [(code, amount) for code, amount in contributions if amount > 0]
        taxable_total = sum((amount for _, amount in positive), Decimal("0"))
        mode = rule_set.calculation_mode

        if mode == TaxCalculationMode.COMPONENT_BASED:
            shares = [
                TaxShare(code, amount, cls.compute_tax(amount, rule_set))
                for code, amount in positive
            ]
            total_tax = sum((s.tax_amount for s in shares), Decimal("0"))
        else:
            total_tax = cls.compute_tax(taxable_total, rule_set)
            shares = []

        capped = False
        if rule_set.annual_cap is not None:
            remaining = max(rule_set.annual_cap - ytd_tax, Decimal("0"))
            if total_tax > remaining:
                total_tax = _round_to_cents(remaining)
                capped = True

        if mode == TaxCalculationMode.PROPORTIONAL_DISTRIBUTION or (
            mode == TaxCalculationMode.COMPONENT_BASED and capped
        ):
            shares = cls.distribute_proportionally(total_tax, positive)

        return TaxOutcome(
            tax_type=rule_set.tax_type,
            calculation_mode=mode,
            taxable_total=taxable_total,
            total_tax=total_tax,
            shares=tuple(shares),
            capped=capped,
        )
