"""Calculation error taxonomy.

Every error carries a stable ``kind`` string that is persisted on the
paycheck and reported in run summaries, plus the component code that
triggered it when one is known.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from paystructure_engine.calculators.types import PendingApproval


class PayrollCalculationError(Exception):
    """Base class for errors scoped to one employee's calculation."""

    kind = "calculation_error"

    def __init__(self, message: str, component_code: str | None = None):
        self.component_code = component_code
        super().__init__(message)

    def with_component(self, component_code: str) -> PayrollCalculationError:
        """Attach the triggering component if none was recorded yet."""
        if self.component_code is None:
            self.component_code = component_code
        return self


class NoApplicableStructure(PayrollCalculationError):
    """No worker assignment and no organization default template."""

    kind = "no_applicable_structure"

    def __init__(self, organization_id: UUID, employee_id: UUID, as_of_date: date):
        self.organization_id = organization_id
        self.employee_id = employee_id
        self.as_of_date = as_of_date
        super().__init__(
            f"No pay structure applies to employee {employee_id} "
            f"in organization {organization_id} on {as_of_date}"
        )


class DependencyCycle(PayrollCalculationError):
    """Components depend on each other in a cycle."""

    kind = "dependency_cycle"

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(
            f"Dependency cycle between components: {' -> '.join(cycle)}",
            component_code=cycle[0] if cycle else None,
        )


class FormulaSyntaxError(PayrollCalculationError):
    """Formula text could not be parsed."""

    kind = "formula_syntax"

    def __init__(self, expression: str, position: int, reason: str):
        self.expression = expression
        self.position = position
        self.reason = reason
        super().__init__(f"Invalid formula at position {position}: {reason} in {expression!r}")


class UnboundVariable(PayrollCalculationError):
    """Formula references a variable with no binding."""

    kind = "unbound_variable"

    def __init__(self, variable: str):
        self.variable = variable
        super().__init__(f"Unbound variable '{variable}'")


class DivisionByZero(PayrollCalculationError):
    """Formula divided by a zero or near-zero value."""

    kind = "division_by_zero"

    def __init__(self, divisor: Decimal):
        self.divisor = divisor
        super().__init__(f"Division by zero or near-zero divisor ({divisor})")


class InvalidCalculationMode(PayrollCalculationError):
    """Tax calculation mode is incompatible with the rule set."""

    kind = "invalid_calculation_mode"

    def __init__(self, calculation_mode: str, reason: str, component_code: str | None = None):
        self.calculation_mode = calculation_mode
        self.reason = reason
        super().__init__(
            f"Calculation mode '{calculation_mode}' is not allowed: {reason}",
            component_code=component_code,
        )


class TaxRuleNotFoundError(PayrollCalculationError):
    """Raised when required tax rule set is not found."""

    kind = "tax_rule_not_found"

    def __init__(self, tax_type: str, as_of_date: date):
        self.tax_type = tax_type
        self.as_of_date = as_of_date
        super().__init__(f"Tax rule set '{tax_type}' not found effective {as_of_date}")


class NoExchangeRate(PayrollCalculationError):
    """No exchange rate covers the currency pair at the requested time."""

    kind = "no_exchange_rate"

    def __init__(self, from_currency: str, to_currency: str, as_of: datetime):
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.as_of = as_of
        super().__init__(f"No exchange rate {from_currency}->{to_currency} as of {as_of.isoformat()}")


class ExchangeRateTimeout(PayrollCalculationError):
    """Exchange rate lookup exceeded its timeout."""

    kind = "exchange_rate_timeout"

    def __init__(self, from_currency: str, to_currency: str, timeout_seconds: float):
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Exchange rate lookup {from_currency}->{to_currency} "
            f"timed out after {timeout_seconds}s"
        )


class ApprovalRequired(PayrollCalculationError):
    """Suspension signal: the operation waits on a currency approval request.

    Either ``request_id`` names an existing pending request, or ``pending``
    describes the request the caller must open.
    """

    kind = "approval_required"

    def __init__(
        self,
        reason: str,
        request_id: UUID | None = None,
        pending: PendingApproval | None = None,
    ):
        self.request_id = request_id
        self.pending = pending
        super().__init__(f"Approval required: {reason}")


class ConversionNotApproved(PayrollCalculationError):
    """The approval request gating a conversion ended without approval."""

    kind = "conversion_not_approved"

    def __init__(self, request_id: UUID, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Approval request {request_id} is {status}")


class AllowanceCapExceeded(PayrollCalculationError):
    """Informational: the requested allowance exceeded the remaining cap.

    Never raised by the tracker; attached to results so the excess can be
    reported and reclassified.
    """

    kind = "allowance_cap_exceeded"

    def __init__(self, allowance_type: str, requested: Decimal, applied: Decimal):
        self.allowance_type = allowance_type
        self.requested = requested
        self.applied = applied
        self.excess = requested - applied
        super().__init__(
            f"Allowance '{allowance_type}' capped: requested {requested}, applied {applied}"
        )


class ConfigValidationError(PayrollCalculationError):
    """Component parameters are invalid or outside declared bounds."""

    kind = "config_validation"

    def __init__(self, message: str, component_code: str | None = None, details: Any = None):
        self.details = details
        super().__init__(message, component_code=component_code)


class TemplateImmutableError(Exception):
    """Raised when a published template version is modified."""

    def __init__(self, template_id: UUID, status: str):
        self.template_id = template_id
        self.status = status
        super().__init__(f"Template {template_id} is {status} and cannot be modified")


class OverlappingEffectiveRange(Exception):
    """Raised when a write would create overlapping effective ranges."""

    def __init__(self, entity: str, conflicting_id: UUID):
        self.entity = entity
        self.conflicting_id = conflicting_id
        super().__init__(f"Effective range overlaps existing {entity} {conflicting_id}")


class ApprovalStateError(Exception):
    """Raised when an approval action is not allowed in the request's state."""

    def __init__(self, request_id: UUID, reason: str):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Approval request {request_id}: {reason}")
