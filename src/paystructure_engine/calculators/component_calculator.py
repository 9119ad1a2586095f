"""Amount calculation for a single resolved component."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping

from paystructure_engine.calculators.config_schemas import (
    ExternalConfig,
    FixedConfig,
    ForfaitRule,
    FormulaConfig,
    HourlyRateConfig,
    PercentageConfig,
    Tier,
    TieredConfig,
)
from paystructure_engine.calculators.formula import DEFAULT_EPSILON, evaluate_logged
from paystructure_engine.calculators.types import FormulaExecution, ResolvedComponent
from paystructure_engine.exceptions import (
    ConfigValidationError,
    PayrollCalculationError,
    UnboundVariable,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class ComponentAmount:
    """Unsigned amount for a component plus how it was derived."""

    amount: Decimal
    units: Decimal | None = None
    rate: Decimal | None = None
    execution: FormulaExecution | None = None
    clamped_by: str | None = None


class ComponentCalculator:
    """Computes the magnitude of a component's amount.

    Signs are applied later by LineItemBuilder from the component category.
    Negative results are floored at zero.
    """

    def __init__(self, epsilon: Decimal = DEFAULT_EPSILON):
        self.epsilon = epsilon

    def calculate(
        self,
        component: ResolvedComponent,
        variables: Mapping[str, Decimal],
    ) -> ComponentAmount:
        try:
            result = self._dispatch(component, variables)
        except PayrollCalculationError as e:
            if e.component_code is None:
                e.with_component(component.component_code)
            raise

        if result.amount < 0:
            logger.debug(
                "Component %s produced negative amount %s, floored at zero",
                component.component_code,
                result.amount,
            )
            result = ComponentAmount(ZERO, result.units, result.rate, result.execution)
        return result

    def _dispatch(self, component: ResolvedComponent, variables: Mapping[str, Decimal]) -> ComponentAmount:
        config = component.configuration

        if isinstance(config, FixedConfig):
            return ComponentAmount(config.amount)

        if isinstance(config, PercentageConfig):
            basis = _lookup(variables, config.percentage_of)
            return ComponentAmount(basis * config.percentage, units=basis, rate=config.percentage)

        if isinstance(config, FormulaConfig):
            if component.formula is None:
                raise ConfigValidationError(
                    "Formula component has no parsed formula",
                    component_code=component.component_code,
                )
            value, execution = evaluate_logged(
                component.formula, variables, component.component_code, self.epsilon
            )
            return ComponentAmount(value, execution=execution)

        if isinstance(config, HourlyRateConfig):
            hours = _lookup(variables, config.hours_variable)
            base_rate = config.rate if config.rate is not None else variables.get("hourly_rate")
            if base_rate is None:
                raise ConfigValidationError(
                    "No hourly rate configured and none in compensation",
                    component_code=component.component_code,
                )
            rate = Decimal(base_rate) * config.rate_multiplier
            return ComponentAmount(hours * rate, units=hours, rate=rate)

        if isinstance(config, TieredConfig):
            basis = _lookup(variables, config.tier_basis)
            return ComponentAmount(self.tiered_amount(basis, config.tiers), units=basis)

        if isinstance(config, ExternalConfig):
            name = config.variable or component.component_code.lower()
            return ComponentAmount(_lookup(variables, name))

        raise ConfigValidationError(
            f"Unsupported configuration {type(config).__name__}",
            component_code=component.component_code,
        )

    @staticmethod
    def tiered_amount(basis: Decimal, tiers: list[Tier]) -> Decimal:
        """Progressive amount: each tier's rate on the slice above its threshold.

        Example: tiers [0 @ 0.01, 1000 @ 0.02] on 1500 gives
        1000 x 0.01 + 500 x 0.02 = 20.
        """
        total = ZERO
        for i, tier in enumerate(tiers):
            if basis <= tier.threshold:
                break
            upper = basis
            if i + 1 < len(tiers) and tiers[i + 1].threshold < upper:
                upper = tiers[i + 1].threshold
            total += (upper - tier.threshold) * tier.rate
        return total

    @staticmethod
    def clamp(
        component: ResolvedComponent,
        amount: Decimal,
        ytd_amount: Decimal = ZERO,
    ) -> tuple[Decimal, str | None]:
        """Apply min/max, per-period and yearly limits, in that order."""
        clamped_by = None
        if component.min_amount is not None and amount < component.min_amount:
            amount, clamped_by = component.min_amount, "min_amount"
        if component.max_amount is not None and amount > component.max_amount:
            amount, clamped_by = component.max_amount, "max_amount"
        if component.max_per_period is not None and amount > component.max_per_period:
            amount, clamped_by = component.max_per_period, "max_per_period"
        if component.max_annual is not None:
            remaining = max(component.max_annual - ytd_amount, ZERO)
            if amount > remaining:
                amount, clamped_by = remaining, "max_annual"
        return amount, clamped_by

    @staticmethod
    def forfait_amount(
        rule: ForfaitRule,
        variables: Mapping[str, Decimal],
        periods_per_year: int,
    ) -> tuple[Decimal, Decimal]:
        """Per-period taxable value of a benefit in kind, and its basis."""
        basis = _lookup(variables, rule.basis_variable)
        annual = basis * rule.annual_rate
        if rule.annual_cap is not None and annual > rule.annual_cap:
            annual = rule.annual_cap
        return annual / Decimal(periods_per_year), basis


def _lookup(variables: Mapping[str, Decimal], name: str) -> Decimal:
    try:
        return Decimal(variables[name])
    except KeyError:
        raise UnboundVariable(name) from None
