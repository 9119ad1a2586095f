"""Payroll run and template state machines with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from paystructure_engine.models import PayrollRun


class PayrollRunStatus(str, Enum):
    """Payroll run status values."""

    DRAFT = "draft"
    CALCULATING = "calculating"
    CALCULATED = "calculated"
    APPROVED = "approved"
    PROCESSING = "processing"
    PROCESSED = "processed"
    CANCELLED = "cancelled"


class TemplateStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PayrollRunStateMachine:
    """State machine for payroll run status transitions.

    Allowed transitions:
    - draft → calculating
    - calculating → calculated
    - calculated → calculating (recalculate or resume)
    - calculated → approved
    - approved → processing
    - processing → processed
    - any non-terminal status before processing → cancelled

    A run that still has suspended or pending paychecks after a
    calculation pass stays in calculating until it is resumed.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayrollRunStatus.DRAFT: [PayrollRunStatus.CALCULATING, PayrollRunStatus.CANCELLED],
        PayrollRunStatus.CALCULATING: [PayrollRunStatus.CALCULATED, PayrollRunStatus.CANCELLED],
        PayrollRunStatus.CALCULATED: [
            PayrollRunStatus.CALCULATING,
            PayrollRunStatus.APPROVED,
            PayrollRunStatus.CANCELLED,
        ],
        PayrollRunStatus.APPROVED: [PayrollRunStatus.PROCESSING, PayrollRunStatus.CANCELLED],
        PayrollRunStatus.PROCESSING: [PayrollRunStatus.PROCESSED],
        PayrollRunStatus.PROCESSED: [],  # Terminal state
        PayrollRunStatus.CANCELLED: [],  # Terminal state
    }

    # Statuses from which a calculation pass may start
    CALCULATION_ALLOWED = {
        PayrollRunStatus.DRAFT,
        PayrollRunStatus.CALCULATED,
    }

    # Statuses where paychecks and line items are immutable
    RESULTS_IMMUTABLE = {
        PayrollRunStatus.APPROVED,
        PayrollRunStatus.PROCESSING,
        PayrollRunStatus.PROCESSED,
        PayrollRunStatus.CANCELLED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_calculate(cls, status: str) -> bool:
        return status in cls.CALCULATION_ALLOWED

    @classmethod
    def are_results_immutable(cls, status: str) -> bool:
        return status in cls.RESULTS_IMMUTABLE

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def validate_run_for_transition(
        cls,
        run: PayrollRun,
        to_status: str,
        paycheck_statuses: list[str],
    ) -> list[str]:
        """Validate a run for a specific transition, returning any errors."""
        errors: list[str] = []
        if not cls.can_transition(run.status, to_status):
            errors.append(f"Cannot transition from '{run.status}' to '{to_status}'")
            return errors

        if to_status == PayrollRunStatus.APPROVED:
            if not paycheck_statuses:
                errors.append("Payroll run has no paychecks")
            failed = sum(1 for s in paycheck_statuses if s == "failed")
            if failed:
                errors.append(f"{failed} paycheck(s) failed calculation")
            unresolved = sum(1 for s in paycheck_statuses if s in ("pending", "suspended"))
            if unresolved:
                errors.append(f"{unresolved} paycheck(s) are not calculated yet")

        return errors


class TemplateStateMachine:
    """State machine for pay structure template versions.

    Allowed transitions:
    - draft → active (publish)
    - draft → archived (abandon)
    - active → deprecated (superseded, still resolvable for past dates)
    - deprecated → archived
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        TemplateStatus.DRAFT: [TemplateStatus.ACTIVE, TemplateStatus.ARCHIVED],
        TemplateStatus.ACTIVE: [TemplateStatus.DEPRECATED],
        TemplateStatus.DEPRECATED: [TemplateStatus.ARCHIVED],
        TemplateStatus.ARCHIVED: [],
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def is_editable(cls, status: str) -> bool:
        return status == TemplateStatus.DRAFT
