"""Pay structure templates, components, formulas and worker assignments."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paystructure_engine.models.base import Base, JSONType, TimestampMixin


class PayStructureTemplate(Base, TimestampMixin):
    """Versioned blueprint of pay components for an organization.

    Rows are append-only once published: a change produces a new version.
    """

    __tablename__ = "pay_structure_template"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    template_code: Mapped[str] = mapped_column(String(50), nullable=False)
    template_name: Mapped[str] = mapped_column(String(200), nullable=False)
    version_major: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    version_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version_patch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    pay_frequency: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")
    is_organization_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    published_at: Mapped[datetime | None]
    published_by: Mapped[UUID | None]
    change_summary: Mapped[str | None] = mapped_column(Text)

    components: Mapped[list[PayStructureComponent]] = relationship(
        back_populates="template",
        order_by="PayStructureComponent.sequence_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "template_code",
            "version_major",
            "version_minor",
            "version_patch",
            name="pay_structure_template_version_unique",
        ),
        CheckConstraint(
            "status IN ('draft', 'active', 'deprecated', 'archived')",
            name="pay_structure_template_status_check",
        ),
        CheckConstraint(
            "pay_frequency IN ('weekly', 'biweekly', 'semimonthly', 'monthly')",
            name="pay_structure_template_frequency_check",
        ),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="pay_structure_template_range_check",
        ),
    )

    @property
    def version(self) -> str:
        return f"{self.version_major}.{self.version_minor}.{self.version_patch}"


class PayStructureComponent(Base, TimestampMixin):
    """One pay component within a template version."""

    __tablename__ = "pay_structure_component"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_structure_template.id", ondelete="CASCADE"),
        nullable=False,
    )
    component_code: Mapped[str] = mapped_column(String(50), nullable=False)
    component_name: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    calculation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Discriminated by calculation_type, validated on publish
    configuration: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    default_currency: Mapped[str | None] = mapped_column(String(3))
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False)
    depends_on_components: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)

    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    affects_gross_pay: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    affects_net_pay: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    tax_type: Mapped[str | None] = mapped_column(String(50))
    allowance_type: Mapped[str | None] = mapped_column(String(50))
    forfait_rule: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    min_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    max_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    min_percentage: Mapped[Decimal | None] = mapped_column(Numeric(8, 6))
    max_percentage: Mapped[Decimal | None] = mapped_column(Numeric(8, 6))
    max_annual: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    max_per_period: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))

    allow_worker_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    override_allowed_fields: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)

    # Linked to component_formula by id after the formula is created
    formula_id: Mapped[UUID | None]

    template: Mapped[PayStructureTemplate] = relationship(back_populates="components")

    __table_args__ = (
        UniqueConstraint("template_id", "component_code", name="pay_structure_component_code_unique"),
        CheckConstraint(
            "category IN ('earning', 'deduction', 'tax', 'benefit', 'employer_cost', 'reimbursement')",
            name="pay_structure_component_category_check",
        ),
        CheckConstraint(
            "calculation_type IN ('fixed', 'percentage', 'formula', 'hourly_rate', 'tiered', 'external')",
            name="pay_structure_component_calculation_type_check",
        ),
    )


class ComponentFormula(Base, TimestampMixin):
    """Parsed formula backing a formula component or override."""

    __tablename__ = "component_formula"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    component_id: Mapped[UUID | None]
    expression: Mapped[str] = mapped_column(Text, nullable=False)
    ast: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    variables: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)


class WorkerPayStructure(Base, TimestampMixin):
    """Assignment of an employee to a template version for a date range."""

    __tablename__ = "worker_pay_structure"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_structure_template.id"),
        nullable=False,
    )
    base_salary: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    pay_frequency: Mapped[str | None] = mapped_column(String(20))
    currency: Mapped[str | None] = mapped_column(String(3))
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    assigned_by: Mapped[UUID | None]

    overrides: Mapped[list[WorkerPayStructureComponentOverride]] = relationship(
        back_populates="worker_structure",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="worker_pay_structure_range_check",
        ),
    )


class WorkerPayStructureComponentOverride(Base, TimestampMixin):
    """Worker-specific change to one component's calculation parameters."""

    __tablename__ = "worker_pay_structure_component_override"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    worker_structure_id: Mapped[UUID] = mapped_column(
        ForeignKey("worker_pay_structure.id", ondelete="CASCADE"),
        nullable=False,
    )
    component_code: Mapped[str] = mapped_column(String(50), nullable=False)
    override_type: Mapped[str] = mapped_column(String(20), nullable=False)
    override_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    override_percentage: Mapped[Decimal | None] = mapped_column(Numeric(8, 6))
    override_rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    override_formula_id: Mapped[UUID | None]
    component_currency: Mapped[str | None] = mapped_column(String(3))
    override_reason: Mapped[str] = mapped_column(Text, nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approval_status: Mapped[str] = mapped_column(String(20), nullable=False, default="approved")
    approved_by: Mapped[UUID | None]
    effective_from: Mapped[date | None] = mapped_column(Date)
    effective_to: Mapped[date | None] = mapped_column(Date)
    created_by: Mapped[UUID | None]

    worker_structure: Mapped[WorkerPayStructure] = relationship(back_populates="overrides")

    __table_args__ = (
        UniqueConstraint(
            "worker_structure_id",
            "component_code",
            name="worker_override_component_unique",
        ),
        CheckConstraint(
            "override_type IN ('amount', 'percentage', 'formula', 'rate', 'disabled')",
            name="worker_override_type_check",
        ),
        CheckConstraint(
            "approval_status IN ('pending', 'approved', 'rejected')",
            name="worker_override_approval_status_check",
        ),
    )
