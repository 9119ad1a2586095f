"""Per-employee paycheck calculation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paystructure_engine.calculators.allowance_tracker import AllowanceTracker, KeyedLocks
from paystructure_engine.calculators.component_calculator import ComponentCalculator
from paystructure_engine.calculators.currency import CurrencyConverter
from paystructure_engine.calculators.line_builder import LineItemBuilder
from paystructure_engine.calculators.tax_calculator import TaxCalculator
from paystructure_engine.calculators.template_resolver import TemplateResolver
from paystructure_engine.calculators.types import (
    CompensationSnapshot,
    ComponentLine,
    ConversionResult,
    EmployeeSnapshot,
    FormulaExecution,
    LineRole,
    LineType,
    PaycheckResult,
    ResolvedComponent,
    ResolvedStructure,
    TaxCalculationMode,
    TimeSummary,
)
from paystructure_engine.config import Settings, get_settings
from paystructure_engine.exceptions import AllowanceCapExceeded, ConfigValidationError, PayrollCalculationError
from paystructure_engine.models import Paycheck, PayrollRun, PayrollRunComponent

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Runs whose paychecks count toward year-to-date limits
YTD_RUN_STATUSES = ("calculated", "approved", "processing", "processed")


@dataclass(frozen=True)
class PaycheckContext:
    """Everything one employee's calculation reads besides the database."""

    organization_id: UUID
    payroll_run_id: UUID
    paycheck_id: UUID
    period_start: date
    period_end: date
    employee: EmployeeSnapshot
    time_summary: TimeSummary = field(default_factory=TimeSummary)
    compensation: CompensationSnapshot = field(default_factory=CompensationSnapshot)

    @property
    def employee_id(self) -> UUID:
        return self.employee.employee_id

    @property
    def rate_as_of(self) -> datetime:
        """Exchange rates are taken as of the end of the period."""
        return datetime.combine(self.period_end, time(23, 59, 59), tzinfo=timezone.utc)

    def reference_key(self, suffix: str) -> str:
        return f"payroll:{self.payroll_run_id}:{self.employee_id}:{suffix}"


@dataclass
class YearToDate:
    """Amounts already paid this calendar year in earlier periods."""

    components: dict[str, Decimal] = field(default_factory=dict)
    taxes: dict[str, Decimal] = field(default_factory=dict)


class PaycheckCalculator:
    """Calculates one employee's paycheck inside the caller's transaction.

    Components execute in resolved dependency order. Each component's
    amount is bound as a variable under its component code, and the running
    ``gross_pay``, ``taxable_income`` and ``net_pay`` are rebound after
    every line, so later formulas and tax components see everything
    computed before them.

    Database writes made here (allowance usage, conversion audit rows) are
    part of the caller's transaction; an exception leaves it to the caller
    to roll back.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        allowance_locks: KeyedLocks | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.resolver = TemplateResolver(session)
        self.tax_calculator = TaxCalculator(session)
        self.allowance_tracker = AllowanceTracker(session, allowance_locks)
        self.converter = CurrencyConverter(session, self.settings)
        self.component_calculator = ComponentCalculator(self.settings.division_epsilon)

    async def calculate(self, context: PaycheckContext) -> PaycheckResult:
        structure = await self.resolver.resolve(
            context.organization_id, context.employee_id, context.period_end
        )
        ytd = await self.load_year_to_date(context)
        variables = self.build_variables(context, structure)

        lines: list[ComponentLine] = []
        executions: list[FormulaExecution] = []
        notices: list[PayrollCalculationError] = []
        tax_free_allowance = ZERO

        for component in structure.components:
            try:
                if component.is_tax_rule_component:
                    new_lines = await self._tax_lines(context, component, lines, ytd)
                else:
                    new_lines, execution, tax_free = await self._component_lines(
                        context, structure, component, variables, ytd, notices
                    )
                    tax_free_allowance += tax_free
                    if execution is not None:
                        executions.append(execution)
            except PayrollCalculationError as e:
                e.with_component(component.component_code)
                raise

            lines.extend(new_lines)
            variables[component.component_code] = sum(
                (abs(line.amount) for line in new_lines if line.line_role != LineRole.FORFAIT),
                ZERO,
            )
            self._rebind_totals(variables, lines)

            logger.debug(
                "Employee %s component %s produced %d line(s)",
                context.employee_id,
                component.component_code,
                len(new_lines),
            )

        sign_errors = LineItemBuilder.validate_line_signs(lines)
        if sign_errors:
            raise PayrollCalculationError("; ".join(sign_errors))

        totals = LineItemBuilder.sum_by_type(lines)
        result = PaycheckResult(
            employee_id=context.employee_id,
            template_id=structure.template_id,
            template_version=structure.template_version,
            base_currency=structure.currency,
            lines=lines,
            gross_pay=LineItemBuilder.calculate_gross(lines),
            net_pay=LineItemBuilder.calculate_net(lines),
            taxable_income=LineItemBuilder.calculate_taxable(lines),
            tax_free_allowance=LineItemBuilder.round_to_cents(tax_free_allowance),
            total_taxes=-totals[LineType.TAX],
            total_deductions=-(totals[LineType.DEDUCTION] + totals[LineType.BENEFIT]),
            formula_executions=executions,
            notices=notices,
        )

        await self._convert_net_pay(context, result)
        return result

    # ===== Inputs =====

    @staticmethod
    def build_variables(context: PaycheckContext, structure: ResolvedStructure) -> dict[str, Decimal]:
        """Bindings visible to formulas and percentage components."""
        periods = structure.pay_frequency.periods_per_year
        base_salary = structure.base_salary
        if base_salary is None:
            base_salary = context.compensation.base_salary or ZERO

        variables: dict[str, Decimal] = {}
        variables.update({k: Decimal(v) for k, v in context.employee.attributes.items()})
        variables.update(context.time_summary.as_variables())
        variables["base_salary"] = Decimal(base_salary)
        variables["annual_salary"] = Decimal(base_salary) * periods
        variables["periods_per_year"] = Decimal(periods)
        if context.compensation.hourly_rate is not None:
            variables["hourly_rate"] = Decimal(context.compensation.hourly_rate)
        for code in structure.disabled_components:
            variables[code] = ZERO
        PaycheckCalculator._rebind_totals(variables, [])
        return variables

    @staticmethod
    def _rebind_totals(variables: dict[str, Decimal], lines: list[ComponentLine]) -> None:
        gross = LineItemBuilder.calculate_gross(lines)
        variables["gross_pay"] = gross
        variables["gross_earnings"] = gross
        variables["taxable_income"] = LineItemBuilder.calculate_taxable(lines)
        variables["net_pay"] = LineItemBuilder.calculate_net(lines)

    async def load_year_to_date(self, context: PaycheckContext) -> YearToDate:
        """Sum this year's earlier paychecks for annual caps."""
        year_start = date(context.period_start.year, 1, 1)
        base = (
            select(
                PayrollRunComponent.component_code,
                PayrollRunComponent.tax_category,
                PayrollRunComponent.line_type,
                PayrollRunComponent.line_role,
                func.sum(PayrollRunComponent.amount).label("total"),
            )
            .join(Paycheck, Paycheck.id == PayrollRunComponent.paycheck_id)
            .join(PayrollRun, PayrollRun.id == Paycheck.payroll_run_id)
            .where(
                PayrollRun.organization_id == context.organization_id,
                PayrollRun.id != context.payroll_run_id,
                PayrollRun.status.in_(YTD_RUN_STATUSES),
                PayrollRun.period_end >= year_start,
                PayrollRun.period_end < context.period_start,
                Paycheck.employee_id == context.employee_id,
                Paycheck.calculation_status == "calculated",
            )
            .group_by(
                PayrollRunComponent.component_code,
                PayrollRunComponent.tax_category,
                PayrollRunComponent.line_type,
                PayrollRunComponent.line_role,
            )
        )
        ytd = YearToDate()
        for row in (await self.session.execute(base)).all():
            total = abs(Decimal(row.total))
            if row.line_type == LineType.TAX.value:
                if row.tax_category:
                    ytd.taxes[row.tax_category] = ytd.taxes.get(row.tax_category, ZERO) + total
                if row.line_role == LineRole.TAX_SHARE.value:
                    continue
            if row.line_role in (LineRole.PRIMARY.value, LineRole.ALLOWANCE_EXCESS.value):
                ytd.components[row.component_code] = ytd.components.get(row.component_code, ZERO) + total
        return ytd

    # ===== Components =====

    async def _component_lines(
        self,
        context: PaycheckContext,
        structure: ResolvedStructure,
        component: ResolvedComponent,
        variables: dict[str, Decimal],
        ytd: YearToDate,
        notices: list[PayrollCalculationError],
    ) -> tuple[list[ComponentLine], FormulaExecution | None, Decimal]:
        calc = self.component_calculator.calculate(component, variables)

        amount = calc.amount
        conversion: ConversionResult | None = None
        if component.currency and component.currency != structure.currency and amount > 0:
            original = LineItemBuilder.round_to_cents(amount)
            conversion = await self.converter.convert(
                original,
                component.currency,
                structure.currency,
                context.organization_id,
                context.rate_as_of,
                reference_key=context.reference_key(f"{component.component_code}:{original}"),
                reference_type="paycheck",
                reference_id=context.paycheck_id,
            )
            amount = conversion.converted_amount

        amount, clamped_by = self.component_calculator.clamp(
            component, amount, ytd.components.get(component.component_code, ZERO)
        )

        metadata: dict = {"calculation_type": component.calculation_type.value}
        if clamped_by:
            metadata["clamped_by"] = clamped_by
            metadata["unclamped_amount"] = str(calc.amount)

        lines: list[ComponentLine] = []
        tax_free = ZERO
        is_taxable = None

        if component.allowance_type is not None and amount > 0:
            allowance = await self.allowance_tracker.get_allowance(
                context.organization_id, component.allowance_type, context.period_end
            )
            if allowance is None:
                raise ConfigValidationError(
                    f"No allowance '{component.allowance_type}' effective on {context.period_end}",
                    component_code=component.component_code,
                )
            spec = AllowanceTracker.to_spec(allowance, variables.get("annual_salary"))
            application = await self.allowance_tracker.apply_allowance(
                context.organization_id,
                context.employee_id,
                spec.allowance_type,
                context.period_end.year,
                LineItemBuilder.round_to_cents(amount),
                spec.cap,
            )
            metadata.update(
                allowance_type=spec.allowance_type,
                calendar_year=context.period_end.year,
                allowance_applied=str(application.applied_amount),
                allowance_cap=str(spec.cap),
                allowance_remaining=str(application.remaining_cap),
            )
            if spec.is_tax_free:
                is_taxable = False
                tax_free = application.applied_amount
            if application.cap_exceeded:
                notice = AllowanceCapExceeded(
                    spec.allowance_type,
                    application.applied_amount + application.excess_amount,
                    application.applied_amount,
                ).with_component(component.component_code)
                notices.append(notice)
                metadata["allowance_cap_exceeded"] = str(application.excess_amount)
                metadata["notice"] = notice.kind
            amount = application.applied_amount
            excess = application.excess_amount
        else:
            excess = ZERO

        line = LineItemBuilder.create_component_line(
            component,
            amount,
            units=calc.units,
            rate=calc.rate,
            is_taxable=is_taxable,
            metadata=metadata,
        )
        lines.append(line)
        if excess > 0:
            lines.append(
                LineItemBuilder.create_allowance_excess_line(component, excess, component.allowance_type)
            )

        if conversion is not None:
            for converted_line in lines:
                converted_line.component_currency = component.currency
                converted_line.conversion_id = conversion.conversion_id
                converted_line.exchange_rate_used = conversion.rate_used
            line.original_amount = original

        if component.forfait_rule is not None and amount + excess > 0:
            forfait_value, basis = self.component_calculator.forfait_amount(
                component.forfait_rule, variables, structure.pay_frequency.periods_per_year
            )
            if forfait_value > 0:
                lines.append(
                    LineItemBuilder.create_forfait_line(component, component.forfait_rule, forfait_value, basis)
                )

        return lines, calc.execution, tax_free

    async def _tax_lines(
        self,
        context: PaycheckContext,
        component: ResolvedComponent,
        lines: list[ComponentLine],
        ytd: YearToDate,
    ) -> list[ComponentLine]:
        rule_set = await self.tax_calculator.get_rule_set(
            context.organization_id, component.tax_type, context.period_end
        )

        contributions: dict[str, Decimal] = {}
        for line in lines:
            if line.is_taxable and line.amount > 0:
                code = line.component_code
                contributions[code] = contributions.get(code, ZERO) + line.amount

        outcome = TaxCalculator.calculate(
            rule_set,
            list(contributions.items()),
            ytd.taxes.get(rule_set.tax_type, ZERO),
            component.component_code,
        )

        if outcome.shares and outcome.calculation_mode != TaxCalculationMode.AGGREGATED:
            return [
                LineItemBuilder.create_tax_share_line(component, share, outcome.calculation_mode.value)
                for share in outcome.shares
            ]

        metadata = {
            "calculation_mode": outcome.calculation_mode.value,
            "rule_set_id": str(rule_set.rule_set_id) if rule_set.rule_set_id else None,
        }
        if outcome.capped:
            metadata["annual_cap_reached"] = True
        return [
            LineItemBuilder.create_component_line(
                component, outcome.total_tax, units=outcome.taxable_total, metadata=metadata
            )
        ]

    # ===== Payment currency =====

    async def _convert_net_pay(self, context: PaycheckContext, result: PaycheckResult) -> None:
        payment_currency = context.employee.payment_currency
        if not payment_currency or payment_currency == result.base_currency:
            return

        result.payment_currency = payment_currency
        if result.net_pay <= 0:
            result.net_pay_payment_currency = ZERO
            return

        conversion = await self.converter.convert(
            result.net_pay,
            result.base_currency,
            payment_currency,
            context.organization_id,
            context.rate_as_of,
            reference_key=context.reference_key(f"net:{result.net_pay}"),
            reference_type="paycheck",
            reference_id=context.paycheck_id,
        )
        result.net_pay_payment_currency = conversion.converted_amount
        result.exchange_rate_used = conversion.rate_used
        result.conversion_id = conversion.conversion_id
