"""Resolve an employee's effective pay structure for a date."""

from __future__ import annotations

import heapq
from datetime import date
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from paystructure_engine.calculators.config_schemas import (
    FormulaConfig,
    parse_component_config,
    parse_forfait_rule,
)
from paystructure_engine.calculators.formula import from_dict
from paystructure_engine.calculators.types import (
    AppliedOverride,
    CalculationType,
    ComponentCategory,
    PayFrequency,
    ResolvedComponent,
    ResolvedFormula,
    ResolvedStructure,
)
from paystructure_engine.exceptions import (
    ConfigValidationError,
    DependencyCycle,
    NoApplicableStructure,
)
from paystructure_engine.models import (
    ComponentFormula,
    PayStructureComponent,
    PayStructureTemplate,
    WorkerPayStructure,
    WorkerPayStructureComponentOverride,
)

RESOLVABLE_TEMPLATE_STATUSES = ("active", "deprecated")


class TemplateResolver:
    """Resolves template version, worker overrides and execution order.

    Resolution order:
    1) the worker's assignment covering the date
    2) otherwise the organization's active default template
    3) otherwise NoApplicableStructure
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def resolve(
        self,
        organization_id: UUID,
        employee_id: UUID,
        as_of_date: date,
    ) -> ResolvedStructure:
        worker_structure = await self._find_worker_structure(organization_id, employee_id, as_of_date)

        if worker_structure is not None:
            template = await self._load_template(worker_structure.template_id)
            if template is None or template.status not in RESOLVABLE_TEMPLATE_STATUSES:
                raise NoApplicableStructure(organization_id, employee_id, as_of_date)
            overrides = await self._load_overrides(worker_structure.id, as_of_date)
        else:
            template = await self._find_default_template(organization_id, as_of_date)
            if template is None:
                raise NoApplicableStructure(organization_id, employee_id, as_of_date)
            overrides = []

        formula_ids = [c.formula_id for c in template.components if c.formula_id is not None]
        formula_ids.extend(o.override_formula_id for o in overrides if o.override_formula_id is not None)
        formulas = await self._load_formulas(formula_ids)

        components = [self.build_component(row, formulas) for row in template.components]
        merged, disabled = self.apply_overrides(components, overrides, formulas)
        ordered = self.order_components(merged)

        return ResolvedStructure(
            organization_id=organization_id,
            employee_id=employee_id,
            as_of_date=as_of_date,
            template_id=template.id,
            template_code=template.template_code,
            template_version=template.version,
            currency=(worker_structure.currency if worker_structure and worker_structure.currency else template.currency),
            pay_frequency=PayFrequency(
                worker_structure.pay_frequency
                if worker_structure and worker_structure.pay_frequency
                else template.pay_frequency
            ),
            components=tuple(ordered),
            worker_structure_id=worker_structure.id if worker_structure else None,
            base_salary=(
                Decimal(worker_structure.base_salary)
                if worker_structure and worker_structure.base_salary is not None
                else None
            ),
            disabled_components=tuple(sorted(disabled)),
        )

    # ===== Loading =====

    async def _find_worker_structure(
        self,
        organization_id: UUID,
        employee_id: UUID,
        as_of_date: date,
    ) -> WorkerPayStructure | None:
        result = await self.session.execute(
            select(WorkerPayStructure)
            .where(
                WorkerPayStructure.organization_id == organization_id,
                WorkerPayStructure.employee_id == employee_id,
                WorkerPayStructure.effective_from <= as_of_date,
                or_(
                    WorkerPayStructure.effective_to.is_(None),
                    WorkerPayStructure.effective_to >= as_of_date,
                ),
            )
            .order_by(WorkerPayStructure.effective_from.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _find_default_template(
        self,
        organization_id: UUID,
        as_of_date: date,
    ) -> PayStructureTemplate | None:
        result = await self.session.execute(
            select(PayStructureTemplate)
            .where(
                PayStructureTemplate.organization_id == organization_id,
                PayStructureTemplate.is_organization_default.is_(True),
                PayStructureTemplate.status == "active",
                PayStructureTemplate.effective_from <= as_of_date,
                or_(
                    PayStructureTemplate.effective_to.is_(None),
                    PayStructureTemplate.effective_to >= as_of_date,
                ),
            )
            .options(selectinload(PayStructureTemplate.components))
            .order_by(PayStructureTemplate.effective_from.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _load_template(self, template_id: UUID) -> PayStructureTemplate | None:
        result = await self.session.execute(
            select(PayStructureTemplate)
            .where(PayStructureTemplate.id == template_id)
            .options(selectinload(PayStructureTemplate.components))
        )
        return result.scalar_one_or_none()

    async def _load_overrides(
        self,
        worker_structure_id: UUID,
        as_of_date: date,
    ) -> list[WorkerPayStructureComponentOverride]:
        """Approved overrides whose optional range covers the date."""
        result = await self.session.execute(
            select(WorkerPayStructureComponentOverride).where(
                WorkerPayStructureComponentOverride.worker_structure_id == worker_structure_id,
                WorkerPayStructureComponentOverride.approval_status == "approved",
                or_(
                    WorkerPayStructureComponentOverride.effective_from.is_(None),
                    WorkerPayStructureComponentOverride.effective_from <= as_of_date,
                ),
                or_(
                    WorkerPayStructureComponentOverride.effective_to.is_(None),
                    WorkerPayStructureComponentOverride.effective_to >= as_of_date,
                ),
            )
        )
        return list(result.scalars().all())

    async def _load_formulas(self, formula_ids: list[UUID]) -> dict[UUID, ComponentFormula]:
        if not formula_ids:
            return {}
        result = await self.session.execute(
            select(ComponentFormula).where(ComponentFormula.id.in_(formula_ids))
        )
        return {f.id: f for f in result.scalars().all()}

    # ===== Building =====

    @staticmethod
    def build_component(
        row: PayStructureComponent,
        formulas: dict[UUID, ComponentFormula],
    ) -> ResolvedComponent:
        """Turn a stored component into its validated, typed form."""
        config = parse_component_config(row.calculation_type, row.configuration, row.component_code)

        formula = None
        if config.calculation_type == CalculationType.FORMULA.value:
            stored = formulas.get(row.formula_id) if row.formula_id else None
            if stored is None:
                raise ConfigValidationError(
                    "Formula component has no linked formula",
                    component_code=row.component_code,
                )
            formula = ResolvedFormula(stored.id, stored.expression, from_dict(stored.ast))

        return ResolvedComponent(
            component_id=row.id,
            component_code=row.component_code,
            component_name=row.component_name,
            category=ComponentCategory(row.category),
            configuration=config,
            sequence_order=row.sequence_order,
            depends_on=tuple(row.depends_on_components or ()),
            is_taxable=row.is_taxable,
            affects_gross_pay=row.affects_gross_pay,
            affects_net_pay=row.affects_net_pay,
            tax_type=row.tax_type,
            allowance_type=row.allowance_type,
            forfait_rule=parse_forfait_rule(row.forfait_rule, row.component_code),
            min_amount=_dec(row.min_amount),
            max_amount=_dec(row.max_amount),
            min_percentage=_dec(row.min_percentage),
            max_percentage=_dec(row.max_percentage),
            max_annual=_dec(row.max_annual),
            max_per_period=_dec(row.max_per_period),
            currency=row.default_currency,
            formula=formula,
        )

    @classmethod
    def apply_overrides(
        cls,
        components: list[ResolvedComponent],
        overrides: Iterable[WorkerPayStructureComponentOverride],
        formulas: dict[UUID, ComponentFormula],
    ) -> tuple[list[ResolvedComponent], set[str]]:
        """Merge overrides by component_code; returns kept components and disabled codes."""
        by_code = {o.component_code: o for o in overrides}
        merged: list[ResolvedComponent] = []
        disabled: set[str] = set()

        for component in components:
            override = by_code.get(component.component_code)
            if override is None:
                merged.append(component)
                continue
            if override.override_type == "disabled":
                disabled.add(component.component_code)
                continue
            merged.append(cls.apply_override(component, override, formulas))

        return merged, disabled

    @staticmethod
    def apply_override(
        component: ResolvedComponent,
        override: WorkerPayStructureComponentOverride,
        formulas: dict[UUID, ComponentFormula],
    ) -> ResolvedComponent:
        """Replace one component's parameters, enforcing its declared bounds."""
        code = component.component_code
        config = component.configuration
        formula = component.formula
        kind = override.override_type

        if kind == "amount":
            amount = _require(override.override_amount, "override_amount", code)
            check_bounds(amount, component.min_amount, component.max_amount, "Override amount", code)
            config = parse_component_config("fixed", {"amount": str(amount)}, code)
            formula = None
        elif kind == "percentage":
            if config.calculation_type != CalculationType.PERCENTAGE.value:
                raise ConfigValidationError(
                    f"Percentage override on a {config.calculation_type} component",
                    component_code=code,
                )
            percentage = _require(override.override_percentage, "override_percentage", code)
            check_bounds(percentage, component.min_percentage, component.max_percentage, "Override percentage", code)
            config = parse_component_config(
                "percentage",
                {**config.model_dump(mode="json"), "percentage": str(percentage)},
                code,
            )
        elif kind == "rate":
            if config.calculation_type != CalculationType.HOURLY_RATE.value:
                raise ConfigValidationError(
                    f"Rate override on a {config.calculation_type} component",
                    component_code=code,
                )
            rate = _require(override.override_rate, "override_rate", code)
            config = parse_component_config(
                "hourly_rate",
                {**config.model_dump(mode="json"), "rate": str(rate)},
                code,
            )
        elif kind == "formula":
            stored = formulas.get(override.override_formula_id) if override.override_formula_id else None
            if stored is None:
                raise ConfigValidationError("Formula override has no linked formula", component_code=code)
            config = FormulaConfig(expression=stored.expression)
            formula = ResolvedFormula(stored.id, stored.expression, from_dict(stored.ast))
        else:
            raise ConfigValidationError(f"Unknown override type '{kind}'", component_code=code)

        return ResolvedComponent(
            component_id=component.component_id,
            component_code=code,
            component_name=component.component_name,
            category=component.category,
            configuration=config,
            sequence_order=component.sequence_order,
            depends_on=component.depends_on,
            is_taxable=component.is_taxable,
            affects_gross_pay=component.affects_gross_pay,
            affects_net_pay=component.affects_net_pay,
            tax_type=component.tax_type,
            allowance_type=component.allowance_type,
            forfait_rule=component.forfait_rule,
            min_amount=component.min_amount,
            max_amount=component.max_amount,
            min_percentage=component.min_percentage,
            max_percentage=component.max_percentage,
            max_annual=component.max_annual,
            max_per_period=component.max_per_period,
            currency=override.component_currency or component.currency,
            formula=formula,
            override=AppliedOverride(
                override_id=override.id,
                override_type=kind,
                reason=override.override_reason,
                component_currency=override.component_currency,
            ),
        )

    # ===== Ordering =====

    @staticmethod
    def order_components(components: list[ResolvedComponent]) -> list[ResolvedComponent]:
        """Topological order with sequence_order as the tie-breaker.

        A component never precedes a component it depends on. Dependencies
        on codes absent from the set (e.g. disabled) are ignored. Among
        components whose dependencies are satisfied, the lowest
        (sequence_order, component_code) goes first.
        """
        by_code = {c.component_code: c for c in components}
        deps = {
            c.component_code: {d for d in c.depends_on if d in by_code and d != c.component_code}
            for c in components
        }
        self_dependent = [c.component_code for c in components if c.component_code in c.depends_on]
        if self_dependent:
            raise DependencyCycle([self_dependent[0], self_dependent[0]])

        dependents: dict[str, list[str]] = {code: [] for code in by_code}
        for code, required in deps.items():
            for dep in required:
                dependents[dep].append(code)

        indegree = {code: len(required) for code, required in deps.items()}
        ready = [(by_code[code].sequence_order, code) for code, n in indegree.items() if n == 0]
        heapq.heapify(ready)

        ordered: list[ResolvedComponent] = []
        while ready:
            _, code = heapq.heappop(ready)
            ordered.append(by_code[code])
            for dependent in dependents[code]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, (by_code[dependent].sequence_order, dependent))

        if len(ordered) != len(components):
            remaining = {code for code, n in indegree.items() if n > 0}
            raise DependencyCycle(_find_cycle(remaining, deps))

        return ordered


def _find_cycle(remaining: set[str], deps: dict[str, set[str]]) -> list[str]:
    """Walk unresolved dependencies until a code repeats."""
    start = min(remaining)
    path: list[str] = []
    position: dict[str, int] = {}
    current = start
    while current not in position:
        position[current] = len(path)
        path.append(current)
        current = min(d for d in deps[current] if d in remaining)
    return path[position[current]:] + [current]


def _dec(value: Decimal | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _require(value: Decimal | None, field: str, component_code: str) -> Decimal:
    if value is None:
        raise ConfigValidationError(f"Override is missing {field}", component_code=component_code)
    return Decimal(value)


def check_bounds(
    value: Decimal,
    minimum: Decimal | None,
    maximum: Decimal | None,
    label: str,
    component_code: str,
) -> None:
    if minimum is not None and value < minimum:
        raise ConfigValidationError(
            f"{label} {value} is below the minimum {minimum}",
            component_code=component_code,
        )
    if maximum is not None and value > maximum:
        raise ConfigValidationError(
            f"{label} {value} is above the maximum {maximum}",
            component_code=component_code,
        )
