"""Domain event types for approvals and payroll calculation.

All events are immutable, typed with explicit payloads and traceable via
metadata. They feed audit trails and approver notifications.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    APPROVAL = "approval"
    PAYROLL = "payroll"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    organization_id: UUID
    correlation_id: UUID  # Links related events, e.g. a payroll run
    actor_id: UUID | None
    actor_type: str  # 'user', 'system', 'scheduler'
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        organization_id: UUID,
        correlation_id: UUID | None = None,
        actor_id: UUID | None = None,
        actor_type: str = "system",
        source_service: str = "paystructure",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            organization_id=organization_id,
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type if actor_id is None else "user",
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        return _serialize_dict(asdict(self))

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Approval Events
# =============================================================================


@dataclass(frozen=True)
class ApprovalRequested(DomainEvent):
    """A gated currency operation opened an approval request."""

    request_id: UUID
    request_type: str
    reference_key: str
    from_currency: str
    to_currency: str
    amount: Decimal | None
    required_approvals: int
    approver_user_ids: tuple[UUID, ...]
    expires_at: datetime | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApprovalGranted(DomainEvent):
    """An approver approved a request; ``resolved`` once fully approved."""

    request_id: UUID
    approver_user_id: UUID
    current_approvals: int
    required_approvals: int
    resolved: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApprovalRejected(DomainEvent):
    request_id: UUID
    actor_user_id: UUID
    action: str  # reject or cancel
    comments: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApprovalExpired(DomainEvent):
    request_id: UUID
    reference_key: str
    expired_at: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


# =============================================================================
# Payroll Events
# =============================================================================


@dataclass(frozen=True)
class PaycheckCalculated(DomainEvent):
    payroll_run_id: UUID
    paycheck_id: UUID
    employee_id: UUID
    gross_pay: Decimal
    net_pay: Decimal
    total_taxes: Decimal
    line_count: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL


@dataclass(frozen=True)
class PaycheckFailed(DomainEvent):
    """One employee's calculation failed or was suspended."""

    payroll_run_id: UUID
    paycheck_id: UUID
    employee_id: UUID
    calculation_status: str  # failed or suspended
    error_kind: str
    component_code: str | None
    message: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL


@dataclass(frozen=True)
class PayrollRunCalculated(DomainEvent):
    payroll_run_id: UUID
    status: str
    succeeded: int
    failed: int
    suspended: int
    total_gross: Decimal
    total_net: Decimal
    total_taxes: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL
