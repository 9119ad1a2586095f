"""Domain events for approvals and payroll calculation."""

from paystructure_engine.events.emitter import EventBatch, EventEmitter, HandlerRegistration
from paystructure_engine.events.types import (
    ApprovalExpired,
    ApprovalGranted,
    ApprovalRejected,
    ApprovalRequested,
    DomainEvent,
    EventCategory,
    EventMetadata,
    PaycheckCalculated,
    PaycheckFailed,
    PayrollRunCalculated,
)

__all__ = [
    "ApprovalExpired",
    "ApprovalGranted",
    "ApprovalRejected",
    "ApprovalRequested",
    "DomainEvent",
    "EventBatch",
    "EventCategory",
    "EventEmitter",
    "EventMetadata",
    "HandlerRegistration",
    "PaycheckCalculated",
    "PaycheckFailed",
    "PayrollRunCalculated",
]
