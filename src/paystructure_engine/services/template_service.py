"""Pay structure template authoring, publishing and worker assignment."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from paystructure_engine.calculators.config_schemas import (
    FixedConfig,
    PercentageConfig,
    parse_component_config,
    parse_forfait_rule,
)
from paystructure_engine.calculators.formula import extract_variables, parse_formula, to_dict
from paystructure_engine.calculators.template_resolver import TemplateResolver, check_bounds
from paystructure_engine.calculators.types import CalculationType, ComponentCategory, PayFrequency
from paystructure_engine.exceptions import (
    ConfigValidationError,
    FormulaSyntaxError,
    OverlappingEffectiveRange,
    TemplateImmutableError,
)
from paystructure_engine.models import (
    ComponentFormula,
    PayStructureComponent,
    PayStructureTemplate,
    WorkerPayStructure,
    WorkerPayStructureComponentOverride,
    utc_now,
)
from paystructure_engine.services.state_machine import (
    TemplateStateMachine,
    TemplateStatus,
)

logger = logging.getLogger(__name__)

OVERRIDE_TYPES = ("amount", "percentage", "formula", "rate", "disabled")


def _ranges_overlap(
    start_a: date,
    end_a: date | None,
    start_b: date,
    end_b: date | None,
) -> bool:
    """Inclusive date ranges; None means open-ended."""
    return (end_b is None or start_a <= end_b) and (end_a is None or start_b <= end_a)


class TemplateService:
    """Authoring and lifecycle of pay structure templates.

    Templates are edited only while draft. Publishing is two-phase:
    components are validated as shells first, then formulas are parsed,
    stored and linked to their components by id. Published versions are
    immutable; changes go into a new version.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_template(self, template_id: UUID) -> PayStructureTemplate:
        result = await self.session.execute(
            select(PayStructureTemplate)
            .where(PayStructureTemplate.id == template_id)
            .options(selectinload(PayStructureTemplate.components))
        )
        template = result.scalar_one_or_none()
        if template is None:
            raise ValueError(f"Template {template_id} not found")
        return template

    async def create_template(
        self,
        organization_id: UUID,
        template_code: str,
        template_name: str,
        currency: str,
        effective_from: date,
        pay_frequency: str = PayFrequency.MONTHLY.value,
        effective_to: date | None = None,
        is_organization_default: bool = False,
        version: tuple[int, int, int] = (1, 0, 0),
        change_summary: str | None = None,
    ) -> PayStructureTemplate:
        PayFrequency(pay_frequency)
        if effective_to is not None and effective_to < effective_from:
            raise ConfigValidationError("effective_to precedes effective_from")

        major, minor, patch = version
        template = PayStructureTemplate(
            organization_id=organization_id,
            template_code=template_code,
            template_name=template_name,
            version_major=major,
            version_minor=minor,
            version_patch=patch,
            status=TemplateStatus.DRAFT.value,
            currency=currency.upper(),
            pay_frequency=pay_frequency,
            is_organization_default=is_organization_default,
            effective_from=effective_from,
            effective_to=effective_to,
            change_summary=change_summary,
            components=[],
        )
        self.session.add(template)
        await self.session.flush()
        logger.info("Created template %s v%s (%s)", template_code, template.version, template.id)
        return template

    async def add_component(
        self,
        template_id: UUID,
        component_code: str,
        component_name: str,
        category: str,
        calculation_type: str,
        configuration: dict[str, Any] | None = None,
        sequence_order: int = 0,
        depends_on: Iterable[str] = (),
        **options: Any,
    ) -> PayStructureComponent:
        """Add a component shell to a draft template.

        ``options`` carries the remaining component columns (flags, bounds,
        tax_type, allowance_type, forfait_rule, default_currency, override
        permissions). Configuration is validated now; formulas are parsed
        at publish.
        """
        template = await self.get_template(template_id)
        self._require_draft(template)

        try:
            ComponentCategory(category)
        except ValueError:
            raise ConfigValidationError(f"Unknown category '{category}'", component_code=component_code) from None
        parse_component_config(calculation_type, configuration, component_code)
        parse_forfait_rule(options.get("forfait_rule"), component_code)
        if category == ComponentCategory.TAX.value and options.get("tax_type"):
            if calculation_type != CalculationType.EXTERNAL.value:
                raise ConfigValidationError(
                    "Tax components with a tax_type take their amount from the rule set "
                    "and must use the external calculation type",
                    component_code=component_code,
                )
        if any(c.component_code == component_code for c in template.components):
            raise ConfigValidationError("Duplicate component code", component_code=component_code)

        component = PayStructureComponent(
            template_id=template.id,
            component_code=component_code,
            component_name=component_name,
            category=category,
            calculation_type=calculation_type,
            configuration=dict(configuration or {}),
            sequence_order=sequence_order,
            depends_on_components=list(depends_on),
            **options,
        )
        self.session.add(component)
        await self.session.flush()
        template.components.append(component)
        return component

    async def publish_template(
        self,
        template_id: UUID,
        published_by: UUID | None = None,
        supersede: bool = True,
    ) -> PayStructureTemplate:
        """Validate, link formulas and activate a draft template.

        With ``supersede``, other active versions of the same template code
        are deprecated in the same transaction.
        """
        template = await self.get_template(template_id)
        TemplateStateMachine.validate_transition(template.status, TemplateStatus.ACTIVE.value)

        # Phase 1: shells
        codes = {c.component_code for c in template.components}
        for row in template.components:
            config = parse_component_config(row.calculation_type, row.configuration, row.component_code)
            self._check_configured_bounds(row, config)
            missing = [d for d in row.depends_on_components or () if d not in codes]
            if missing:
                raise ConfigValidationError(
                    f"Depends on unknown component(s): {', '.join(missing)}",
                    component_code=row.component_code,
                )

        # Phase 2: formulas, linked by id
        formulas: dict[UUID, ComponentFormula] = {}
        for row in template.components:
            if row.calculation_type != CalculationType.FORMULA.value:
                continue
            formula = await self._store_formula(
                template.organization_id, row.id, row.configuration["expression"], row.component_code
            )
            row.formula_id = formula.id
            formulas[formula.id] = formula

        built = [TemplateResolver.build_component(row, formulas) for row in template.components]
        TemplateResolver.order_components(built)

        if supersede:
            await self._deprecate_previous(template)
        if template.is_organization_default:
            await self._check_default_overlap(template)

        template.status = TemplateStatus.ACTIVE.value
        template.published_at = utc_now()
        template.published_by = published_by
        await self.session.flush()

        logger.info(
            "Published template %s v%s with %d component(s)",
            template.template_code,
            template.version,
            len(template.components),
        )
        return template

    async def create_new_version(
        self,
        template_id: UUID,
        bump: str = "minor",
        effective_from: date | None = None,
        change_summary: str | None = None,
    ) -> PayStructureTemplate:
        """Copy a published template into a new draft version."""
        source = await self.get_template(template_id)
        major, minor, patch = source.version_major, source.version_minor, source.version_patch
        if bump == "major":
            version = (major + 1, 0, 0)
        elif bump == "minor":
            version = (major, minor + 1, 0)
        elif bump == "patch":
            version = (major, minor, patch + 1)
        else:
            raise ValueError(f"Unknown version bump '{bump}'")

        draft = await self.create_template(
            source.organization_id,
            source.template_code,
            source.template_name,
            source.currency,
            effective_from or source.effective_from,
            pay_frequency=source.pay_frequency,
            effective_to=source.effective_to,
            is_organization_default=source.is_organization_default,
            version=version,
            change_summary=change_summary,
        )
        for row in source.components:
            copy = PayStructureComponent(
                template_id=draft.id,
                component_code=row.component_code,
                component_name=row.component_name,
                category=row.category,
                calculation_type=row.calculation_type,
                configuration=dict(row.configuration),
                default_currency=row.default_currency,
                sequence_order=row.sequence_order,
                depends_on_components=list(row.depends_on_components or ()),
                is_taxable=row.is_taxable,
                affects_gross_pay=row.affects_gross_pay,
                affects_net_pay=row.affects_net_pay,
                tax_type=row.tax_type,
                allowance_type=row.allowance_type,
                forfait_rule=dict(row.forfait_rule) if row.forfait_rule else None,
                min_amount=row.min_amount,
                max_amount=row.max_amount,
                min_percentage=row.min_percentage,
                max_percentage=row.max_percentage,
                max_annual=row.max_annual,
                max_per_period=row.max_per_period,
                allow_worker_override=row.allow_worker_override,
                override_allowed_fields=list(row.override_allowed_fields or ()),
            )
            self.session.add(copy)
            draft.components.append(copy)
        await self.session.flush()
        return draft

    async def deprecate_template(self, template_id: UUID) -> PayStructureTemplate:
        template = await self.get_template(template_id)
        TemplateStateMachine.validate_transition(template.status, TemplateStatus.DEPRECATED.value)
        template.status = TemplateStatus.DEPRECATED.value
        await self.session.flush()
        return template

    async def archive_template(self, template_id: UUID) -> PayStructureTemplate:
        template = await self.get_template(template_id)
        TemplateStateMachine.validate_transition(template.status, TemplateStatus.ARCHIVED.value)
        template.status = TemplateStatus.ARCHIVED.value
        await self.session.flush()
        return template

    # ===== Worker assignment =====

    async def assign_worker(
        self,
        organization_id: UUID,
        employee_id: UUID,
        template_id: UUID,
        effective_from: date,
        effective_to: date | None = None,
        base_salary: Decimal | None = None,
        pay_frequency: str | None = None,
        currency: str | None = None,
        assigned_by: UUID | None = None,
        close_previous: bool = True,
    ) -> WorkerPayStructure:
        """Assign a template version to an employee for a date range.

        Ranges of one employee never overlap. With ``close_previous``, an
        open-ended assignment that started earlier is ended the day before
        the new one starts; any other overlap is rejected.
        """
        template = await self.get_template(template_id)
        if template.organization_id != organization_id:
            raise ValueError(f"Template {template_id} not found")
        if template.status != TemplateStatus.ACTIVE.value:
            raise ConfigValidationError(f"Template {template_id} is {template.status}, not active")
        if pay_frequency is not None:
            PayFrequency(pay_frequency)

        result = await self.session.execute(
            select(WorkerPayStructure).where(
                WorkerPayStructure.organization_id == organization_id,
                WorkerPayStructure.employee_id == employee_id,
            )
        )
        for existing in result.scalars().all():
            if not _ranges_overlap(existing.effective_from, existing.effective_to, effective_from, effective_to):
                continue
            if close_previous and existing.effective_to is None and existing.effective_from < effective_from:
                existing.effective_to = effective_from - timedelta(days=1)
                continue
            raise OverlappingEffectiveRange("worker_pay_structure", existing.id)

        assignment = WorkerPayStructure(
            organization_id=organization_id,
            employee_id=employee_id,
            template_id=template_id,
            base_salary=base_salary,
            pay_frequency=pay_frequency,
            currency=currency.upper() if currency else None,
            effective_from=effective_from,
            effective_to=effective_to,
            assigned_by=assigned_by,
        )
        self.session.add(assignment)
        await self.session.flush()
        logger.info("Assigned template %s to employee %s from %s", template_id, employee_id, effective_from)
        return assignment

    async def add_override(
        self,
        worker_structure_id: UUID,
        component_code: str,
        override_type: str,
        reason: str,
        amount: Decimal | None = None,
        percentage: Decimal | None = None,
        rate: Decimal | None = None,
        formula_expression: str | None = None,
        component_currency: str | None = None,
        requires_approval: bool = False,
        effective_from: date | None = None,
        effective_to: date | None = None,
        created_by: UUID | None = None,
    ) -> WorkerPayStructureComponentOverride:
        """Record a worker-specific override; replaces an existing one for the code."""
        if not reason or not reason.strip():
            raise ConfigValidationError("Override reason is required", component_code=component_code)
        if override_type not in OVERRIDE_TYPES:
            raise ConfigValidationError(f"Unknown override type '{override_type}'", component_code=component_code)

        assignment = await self.session.get(WorkerPayStructure, worker_structure_id)
        if assignment is None:
            raise ValueError(f"Worker pay structure {worker_structure_id} not found")
        template = await self.get_template(assignment.template_id)
        row = next((c for c in template.components if c.component_code == component_code), None)
        if row is None:
            raise ConfigValidationError("Component not in assigned template", component_code=component_code)
        if not row.allow_worker_override:
            raise ConfigValidationError("Component does not allow worker overrides", component_code=component_code)
        allowed = row.override_allowed_fields or []
        if allowed and override_type not in allowed:
            raise ConfigValidationError(
                f"Override type '{override_type}' not allowed (allowed: {', '.join(allowed)})",
                component_code=component_code,
            )

        formulas: dict[UUID, ComponentFormula] = {}
        if row.formula_id is not None:
            stored = await self.session.get(ComponentFormula, row.formula_id)
            if stored is not None:
                formulas[stored.id] = stored

        formula_id = None
        if override_type == "formula":
            if not formula_expression:
                raise ConfigValidationError("Formula override needs an expression", component_code=component_code)
            formula = await self._store_formula(template.organization_id, row.id, formula_expression, component_code)
            formula_id = formula.id
            formulas[formula.id] = formula

        await self.session.execute(
            delete(WorkerPayStructureComponentOverride).where(
                WorkerPayStructureComponentOverride.worker_structure_id == worker_structure_id,
                WorkerPayStructureComponentOverride.component_code == component_code,
            )
        )
        override = WorkerPayStructureComponentOverride(
            worker_structure_id=worker_structure_id,
            component_code=component_code,
            override_type=override_type,
            override_amount=amount,
            override_percentage=percentage,
            override_rate=rate,
            override_formula_id=formula_id,
            component_currency=component_currency.upper() if component_currency else None,
            override_reason=reason.strip(),
            requires_approval=requires_approval,
            approval_status="pending" if requires_approval else "approved",
            effective_from=effective_from,
            effective_to=effective_to,
            created_by=created_by,
        )

        if override_type != "disabled":
            # Bounds and type compatibility, exactly as resolution will apply them
            TemplateResolver.apply_override(TemplateResolver.build_component(row, formulas), override, formulas)

        self.session.add(override)
        await self.session.flush()
        return override

    async def approve_override(self, override_id: UUID, approved_by: UUID) -> WorkerPayStructureComponentOverride:
        return await self._decide_override(override_id, approved_by, "approved")

    async def reject_override(self, override_id: UUID, approved_by: UUID) -> WorkerPayStructureComponentOverride:
        return await self._decide_override(override_id, approved_by, "rejected")

    # ===== Internals =====

    async def _decide_override(
        self,
        override_id: UUID,
        actor: UUID,
        status: str,
    ) -> WorkerPayStructureComponentOverride:
        override = await self.session.get(WorkerPayStructureComponentOverride, override_id)
        if override is None:
            raise ValueError(f"Override {override_id} not found")
        if override.approval_status != "pending":
            raise ConfigValidationError(
                f"Override is already {override.approval_status}",
                component_code=override.component_code,
            )
        if override.created_by is not None and override.created_by == actor:
            raise ConfigValidationError(
                "Override author cannot decide their own override",
                component_code=override.component_code,
            )
        override.approval_status = status
        override.approved_by = actor
        await self.session.flush()
        return override

    async def _store_formula(
        self,
        organization_id: UUID,
        component_id: UUID,
        expression: str,
        component_code: str,
    ) -> ComponentFormula:
        try:
            ast = parse_formula(expression)
        except FormulaSyntaxError as e:
            e.with_component(component_code)
            raise
        formula = ComponentFormula(
            organization_id=organization_id,
            component_id=component_id,
            expression=expression,
            ast=to_dict(ast),
            variables=extract_variables(ast),
        )
        self.session.add(formula)
        await self.session.flush()
        return formula

    @staticmethod
    def _check_configured_bounds(row: PayStructureComponent, config: Any) -> None:
        if isinstance(config, FixedConfig):
            check_bounds(config.amount, row.min_amount, row.max_amount, "Configured amount", row.component_code)
        elif isinstance(config, PercentageConfig):
            check_bounds(
                config.percentage,
                row.min_percentage,
                row.max_percentage,
                "Configured percentage",
                row.component_code,
            )

    def _require_draft(self, template: PayStructureTemplate) -> None:
        if not TemplateStateMachine.is_editable(template.status):
            raise TemplateImmutableError(template.id, template.status)

    async def _deprecate_previous(self, template: PayStructureTemplate) -> None:
        result = await self.session.execute(
            select(PayStructureTemplate).where(
                PayStructureTemplate.organization_id == template.organization_id,
                PayStructureTemplate.template_code == template.template_code,
                PayStructureTemplate.status == TemplateStatus.ACTIVE.value,
                PayStructureTemplate.id != template.id,
            )
        )
        for previous in result.scalars().all():
            previous.status = TemplateStatus.DEPRECATED.value
            logger.info("Deprecated template %s v%s", previous.template_code, previous.version)
        await self.session.flush()

    async def _check_default_overlap(self, template: PayStructureTemplate) -> None:
        result = await self.session.execute(
            select(PayStructureTemplate).where(
                PayStructureTemplate.organization_id == template.organization_id,
                PayStructureTemplate.is_organization_default.is_(True),
                PayStructureTemplate.status == TemplateStatus.ACTIVE.value,
                PayStructureTemplate.id != template.id,
                or_(
                    PayStructureTemplate.effective_to.is_(None),
                    PayStructureTemplate.effective_to >= template.effective_from,
                ),
            )
        )
        for other in result.scalars().all():
            if _ranges_overlap(other.effective_from, other.effective_to, template.effective_from, template.effective_to):
                raise OverlappingEffectiveRange("organization_default_template", other.id)
