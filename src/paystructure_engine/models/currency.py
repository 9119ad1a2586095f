"""Exchange rates, conversion audit and currency approval workflow."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paystructure_engine.models.base import Base, JSONType, TimestampMixin


class OrganizationCurrencyConfig(Base, TimestampMixin):
    """Per-organization currency settings."""

    __tablename__ = "organization_currency_config"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, unique=True)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rounding_method: Mapped[str] = mapped_column(String(20), nullable=False, default="half_up")
    decimal_places: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    __table_args__ = (
        CheckConstraint(
            "rounding_method IN ('half_up', 'half_down', 'half_even', 'up', 'down')",
            name="organization_currency_rounding_check",
        ),
    )


class ExchangeRate(Base, TimestampMixin):
    """Rate from one currency to another for a time range.

    At most one open-ended (effective_to IS NULL) rate per pair.
    """

    __tablename__ = "exchange_rate"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    effective_from: Mapped[datetime] = mapped_column(nullable=False)
    effective_to: Mapped[datetime | None]
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")
    created_by: Mapped[UUID | None]

    __table_args__ = (
        CheckConstraint("rate > 0", name="exchange_rate_positive"),
        CheckConstraint("from_currency <> to_currency", name="exchange_rate_distinct_pair"),
    )


class CurrencyConversion(Base, TimestampMixin):
    """Immutable audit record of a conversion that was executed."""

    __tablename__ = "currency_conversion"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    from_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    to_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    rate_used: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    rate_source: Mapped[str] = mapped_column(String(20), nullable=False)
    exchange_rate_ids: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    approval_request_id: Mapped[UUID | None]
    reference_type: Mapped[str | None] = mapped_column(String(50))
    reference_id: Mapped[UUID | None]
    idempotency_key: Mapped[str | None] = mapped_column(String(200), unique=True)
    converted_at: Mapped[datetime] = mapped_column(nullable=False)


class CurrencyApprovalRule(Base, TimestampMixin):
    """Rule deciding which currency operations need approval."""

    __tablename__ = "currency_approval_rule"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    rule_name: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    threshold_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    variance_percentage: Mapped[Decimal | None] = mapped_column(Numeric(7, 4))
    currencies: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    approver_role: Mapped[str | None] = mapped_column(String(50))
    approver_user_ids: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    expiration_hours: Mapped[int | None] = mapped_column(Integer)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "rule_type IN ('conversion_threshold', 'rate_variance')",
            name="currency_approval_rule_type_check",
        ),
        CheckConstraint("required_approvals >= 1", name="currency_approval_rule_count_check"),
    )


class CurrencyApprovalRequest(Base, TimestampMixin):
    """Gated currency operation waiting for N approvals."""

    __tablename__ = "currency_approval_request"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    request_type: Mapped[str] = mapped_column(String(30), nullable=False)
    rule_id: Mapped[UUID | None] = mapped_column(ForeignKey("currency_approval_rule.id"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    reference_key: Mapped[str] = mapped_column(String(200), nullable=False)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    proposed_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    current_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    request_payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    approver_user_ids: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    requested_by: Mapped[UUID | None]
    expires_at: Mapped[datetime | None]
    resolved_at: Mapped[datetime | None]

    actions: Mapped[list[CurrencyApprovalAction]] = relationship(
        back_populates="request",
        order_by="CurrencyApprovalAction.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "reference_key", name="currency_approval_request_reference"),
        CheckConstraint(
            "request_type IN ('conversion', 'rate_change')",
            name="currency_approval_request_type_check",
        ),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled', 'expired')",
            name="currency_approval_request_status_check",
        ),
    )


class CurrencyApprovalAction(Base, TimestampMixin):
    """One approve / reject / cancel decision on a request."""

    __tablename__ = "currency_approval_action"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    request_id: Mapped[UUID] = mapped_column(
        ForeignKey("currency_approval_request.id", ondelete="CASCADE"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_user_id: Mapped[UUID | None]
    comments: Mapped[str | None] = mapped_column(Text)

    request: Mapped[CurrencyApprovalRequest] = relationship(back_populates="actions")

    __table_args__ = (
        CheckConstraint(
            "action IN ('approve', 'reject', 'cancel', 'expire')",
            name="currency_approval_action_check",
        ),
    )
