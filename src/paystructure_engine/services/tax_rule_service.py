"""Tax rule set and allowance maintenance."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from paystructure_engine.calculators.tax_calculator import TaxCalculator
from paystructure_engine.calculators.types import (
    TaxBracketSpec,
    TaxCalculationMethod,
    TaxCalculationMode,
    TaxRuleSetSpec,
)
from paystructure_engine.exceptions import ConfigValidationError, OverlappingEffectiveRange
from paystructure_engine.models import Allowance, TaxBracket, TaxRuleSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BracketInput:
    income_min: Decimal
    income_max: Decimal | None
    rate_percentage: Decimal
    fixed_amount: Decimal = Decimal("0")


class TaxRuleService:
    """Writes tax rule sets and allowances, rejecting malformed ones.

    Bracket invariants checked on write:
    - the first bracket starts at 0
    - each bracket starts where the previous one ends
    - only the last bracket is unbounded, and it must be
    - rates are percentages between 0 and 100
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def validate_brackets(brackets: Sequence[BracketInput]) -> None:
        if not brackets:
            raise ConfigValidationError("A tax rule set needs at least one bracket")
        if brackets[0].income_min != 0:
            raise ConfigValidationError("The first bracket must start at 0")

        for i, bracket in enumerate(brackets):
            if not Decimal("0") <= bracket.rate_percentage <= Decimal("100"):
                raise ConfigValidationError(f"Bracket {i} rate {bracket.rate_percentage} is not a percentage")
            if bracket.fixed_amount < 0:
                raise ConfigValidationError(f"Bracket {i} has a negative fixed amount")
            last = i == len(brackets) - 1
            if bracket.income_max is None:
                if not last:
                    raise ConfigValidationError(f"Only the top bracket may be unbounded (bracket {i})")
                continue
            if last:
                raise ConfigValidationError("The top bracket must be unbounded")
            if bracket.income_max <= bracket.income_min:
                raise ConfigValidationError(f"Bracket {i} is empty or inverted")
            if brackets[i + 1].income_min != bracket.income_max:
                raise ConfigValidationError(
                    f"Brackets {i} and {i + 1} are not contiguous "
                    f"({bracket.income_max} != {brackets[i + 1].income_min})"
                )

    async def create_rule_set(
        self,
        organization_id: UUID,
        jurisdiction: str,
        tax_type: str,
        tax_name: str,
        brackets: Sequence[BracketInput],
        effective_from: date,
        effective_to: date | None = None,
        calculation_method: str = TaxCalculationMethod.BRACKET.value,
        calculation_mode: str = TaxCalculationMode.AGGREGATED.value,
        annual_cap: Decimal | None = None,
        description: str | None = None,
    ) -> TaxRuleSet:
        method = TaxCalculationMethod(calculation_method)
        mode = TaxCalculationMode(calculation_mode)
        self.validate_brackets(brackets)
        if method == TaxCalculationMethod.FLAT_RATE and len(brackets) != 1:
            raise ConfigValidationError("A flat_rate rule set has exactly one bracket")

        # Per-component calculation of a progressive tax would undercharge
        TaxCalculator.validate_mode(
            TaxRuleSetSpec(
                rule_set_id=None,
                tax_type=tax_type,
                jurisdiction=jurisdiction,
                calculation_method=method,
                calculation_mode=mode,
                brackets=tuple(
                    TaxBracketSpec(b.income_min, b.income_max, b.rate_percentage, b.fixed_amount)
                    for b in brackets
                ),
            )
        )

        await self._check_overlap(organization_id, tax_type, effective_from, effective_to)

        rule_set = TaxRuleSet(
            organization_id=organization_id,
            jurisdiction=jurisdiction,
            tax_type=tax_type,
            tax_name=tax_name,
            calculation_method=method.value,
            calculation_mode=mode.value,
            annual_cap=annual_cap,
            effective_from=effective_from,
            effective_to=effective_to,
            description=description,
            brackets=[
                TaxBracket(
                    bracket_order=i,
                    income_min=b.income_min,
                    income_max=b.income_max,
                    rate_percentage=b.rate_percentage,
                    fixed_amount=b.fixed_amount,
                )
                for i, b in enumerate(brackets)
            ],
        )
        self.session.add(rule_set)
        await self.session.flush()
        logger.info(
            "Created %s rule set %s (%s, %d brackets) from %s",
            tax_type, rule_set.id, mode.value, len(brackets), effective_from,
        )
        return rule_set

    async def create_allowance(
        self,
        organization_id: UUID,
        allowance_type: str,
        allowance_name: str,
        amount: Decimal,
        effective_from: date,
        amount_type: str = "fixed",
        is_tax_free: bool = True,
        effective_to: date | None = None,
    ) -> Allowance:
        if amount_type not in ("fixed", "percentage"):
            raise ConfigValidationError(f"Unknown allowance amount type '{amount_type}'")
        if amount < 0:
            raise ConfigValidationError("Allowance amount must not be negative")

        allowance = Allowance(
            organization_id=organization_id,
            allowance_type=allowance_type,
            allowance_name=allowance_name,
            amount_type=amount_type,
            amount=amount,
            is_tax_free=is_tax_free,
            effective_from=effective_from,
            effective_to=effective_to,
        )
        self.session.add(allowance)
        await self.session.flush()
        return allowance

    async def _check_overlap(
        self,
        organization_id: UUID,
        tax_type: str,
        effective_from: date,
        effective_to: date | None,
    ) -> None:
        query = select(TaxRuleSet.id).where(
            TaxRuleSet.organization_id == organization_id,
            TaxRuleSet.tax_type == tax_type,
            or_(TaxRuleSet.effective_to.is_(None), TaxRuleSet.effective_to >= effective_from),
        )
        if effective_to is not None:
            query = query.where(TaxRuleSet.effective_from <= effective_to)
        conflicting = (await self.session.execute(query.limit(1))).scalar_one_or_none()
        if conflicting is not None:
            raise OverlappingEffectiveRange("tax_rule_set", conflicting)
