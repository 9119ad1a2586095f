"""Payroll run, paycheck, run component and formula log models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
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


class PayrollRun(Base, TimestampMixin):
    """A batch of paychecks for one pay period."""

    __tablename__ = "payroll_run"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    run_name: Mapped[str] = mapped_column(String(200), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    pay_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    # None = every employee the directory reports for the period
    employee_scope: Mapped[list[Any] | None] = mapped_column(JSONType)
    total_gross: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    total_net: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    total_taxes: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    calculation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    calculated_at: Mapped[datetime | None]
    approved_at: Mapped[datetime | None]
    approved_by: Mapped[UUID | None]
    processed_at: Mapped[datetime | None]
    cancelled_at: Mapped[datetime | None]
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    paychecks: Mapped[list[Paycheck]] = relationship(
        back_populates="payroll_run",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'calculating', 'calculated', 'approved', "
            "'processing', 'processed', 'cancelled')",
            name="payroll_run_status_check",
        ),
        CheckConstraint("period_end >= period_start", name="payroll_run_period_check"),
    )


class Paycheck(Base, TimestampMixin):
    """One employee's result within a payroll run."""

    __tablename__ = "paycheck"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.id", ondelete="CASCADE"),
        nullable=False,
    )
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    calculation_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    gross_pay: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    net_pay: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    taxable_income: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    tax_free_allowance: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    total_taxes: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    total_deductions: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    base_currency: Mapped[str | None] = mapped_column(String(3))
    payment_currency: Mapped[str | None] = mapped_column(String(3))
    net_pay_payment_currency: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    exchange_rate_used: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    conversion_id: Mapped[UUID | None]
    template_id: Mapped[UUID | None]
    structure_template_version: Mapped[str | None] = mapped_column(String(20))
    error_kind: Mapped[str | None] = mapped_column(String(50))
    error_component: Mapped[str | None] = mapped_column(String(50))
    error_message: Mapped[str | None] = mapped_column(Text)
    approval_request_id: Mapped[UUID | None]
    calculated_at: Mapped[datetime | None]

    payroll_run: Mapped[PayrollRun] = relationship(back_populates="paychecks")

    __table_args__ = (
        UniqueConstraint("payroll_run_id", "employee_id", name="paycheck_run_employee_unique"),
        CheckConstraint(
            "calculation_status IN ('pending', 'calculated', 'failed', 'suspended')",
            name="paycheck_calculation_status_check",
        ),
    )


class PayrollRunComponent(Base, TimestampMixin):
    """One line item of a paycheck with the configuration that produced it."""

    __tablename__ = "payroll_run_component"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    payroll_run_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    paycheck_id: Mapped[UUID] = mapped_column(
        ForeignKey("paycheck.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    component_code: Mapped[str] = mapped_column(String(50), nullable=False)
    component_name: Mapped[str] = mapped_column(String(100), nullable=False)
    component_category: Mapped[str] = mapped_column(String(20), nullable=False)
    line_type: Mapped[str] = mapped_column(String(20), nullable=False)
    line_role: Mapped[str] = mapped_column(String(30), nullable=False, default="primary")
    attributed_to: Mapped[str | None] = mapped_column(String(50))
    units: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 6))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    component_currency: Mapped[str | None] = mapped_column(String(3))
    original_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    converted_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    conversion_id: Mapped[UUID | None]
    exchange_rate_used: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    is_taxable: Mapped[bool] = mapped_column(nullable=False, default=False)
    tax_category: Mapped[str | None] = mapped_column(String(50))
    template_id: Mapped[UUID] = mapped_column(nullable=False)
    structure_template_version: Mapped[str] = mapped_column(String(20), nullable=False)
    component_config_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    calculation_metadata: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    line_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("paycheck_id", "line_number", name="payroll_run_component_line_unique"),
    )


class FormulaExecutionLog(Base, TimestampMixin):
    """Audit entry for a formula evaluation backing a persisted component."""

    __tablename__ = "formula_execution_log"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    payroll_run_id: Mapped[UUID] = mapped_column(nullable=False)
    paycheck_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    component_code: Mapped[str] = mapped_column(String(50), nullable=False)
    formula_id: Mapped[UUID | None]
    expression: Mapped[str] = mapped_column(Text, nullable=False)
    input_variables: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    calculated_result: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    execution_time_ms: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
