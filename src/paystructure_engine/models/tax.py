"""Tax rule sets, brackets, allowances and allowance usage."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
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

from paystructure_engine.models.base import Base, TimestampMixin


class TaxRuleSet(Base, TimestampMixin):
    """Tax rule set for one tax type in one jurisdiction."""

    __tablename__ = "tax_rule_set"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    jurisdiction: Mapped[str] = mapped_column(String(50), nullable=False)
    tax_type: Mapped[str] = mapped_column(String(50), nullable=False)
    tax_name: Mapped[str] = mapped_column(String(200), nullable=False)
    calculation_method: Mapped[str] = mapped_column(String(20), nullable=False, default="bracket")
    calculation_mode: Mapped[str] = mapped_column(
        String(30), nullable=False, default="proportional_distribution"
    )
    annual_cap: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    description: Mapped[str | None] = mapped_column(Text)

    brackets: Mapped[list[TaxBracket]] = relationship(
        back_populates="rule_set",
        order_by="TaxBracket.bracket_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "calculation_method IN ('bracket', 'flat_rate')",
            name="tax_rule_set_method_check",
        ),
        CheckConstraint(
            "calculation_mode IN ('aggregated', 'component_based', 'proportional_distribution')",
            name="tax_rule_set_mode_check",
        ),
    )


class TaxBracket(Base):
    """One income band of a tax rule set."""

    __tablename__ = "tax_bracket"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    rule_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("tax_rule_set.id", ondelete="CASCADE"),
        nullable=False,
    )
    bracket_order: Mapped[int] = mapped_column(Integer, nullable=False)
    income_min: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    income_max: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))  # None = top bracket
    rate_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    fixed_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))

    rule_set: Mapped[TaxRuleSet] = relationship(back_populates="brackets")

    __table_args__ = (
        UniqueConstraint("rule_set_id", "bracket_order", name="tax_bracket_order_unique"),
        CheckConstraint(
            "rate_percentage >= 0 AND rate_percentage <= 100",
            name="tax_bracket_rate_check",
        ),
    )


class Allowance(Base, TimestampMixin):
    """Capped, possibly tax-free allowance category."""

    __tablename__ = "allowance"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    allowance_type: Mapped[str] = mapped_column(String(50), nullable=False)
    allowance_name: Mapped[str] = mapped_column(String(200), nullable=False)
    # fixed: amount is the yearly cap; percentage: cap is amount x annual salary
    amount_type: Mapped[str] = mapped_column(String(20), nullable=False, default="fixed")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    is_tax_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)

    __table_args__ = (
        CheckConstraint(
            "amount_type IN ('fixed', 'percentage')",
            name="allowance_amount_type_check",
        ),
    )


class EmployeeAllowanceUsage(Base, TimestampMixin):
    """Cumulative allowance usage per employee, type and calendar year."""

    __tablename__ = "employee_allowance_usage"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    allowance_type: Mapped[str] = mapped_column(String(50), nullable=False)
    calendar_year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_used: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    amount_remaining: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "employee_id",
            "allowance_type",
            "calendar_year",
            name="employee_allowance_usage_key",
        ),
        CheckConstraint("amount_used >= 0", name="employee_allowance_usage_nonnegative"),
    )
