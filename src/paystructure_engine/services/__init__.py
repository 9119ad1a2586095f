"""Pay structure engine services."""

from paystructure_engine.services.approval_service import ApprovalService
from paystructure_engine.services.exchange_rate_service import ExchangeRateService, RateChangeResult
from paystructure_engine.services.payroll_run_service import (
    EmployeeOutcome,
    EmployeeOutcomeStatus,
    PayrollRunService,
    RunSummary,
)
from paystructure_engine.services.state_machine import (
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
    TemplateStateMachine,
    TemplateStatus,
)
from paystructure_engine.services.tax_rule_service import BracketInput, TaxRuleService
from paystructure_engine.services.template_service import TemplateService

__all__ = [
    "ApprovalService",
    "BracketInput",
    "EmployeeOutcome",
    "EmployeeOutcomeStatus",
    "ExchangeRateService",
    "InvalidTransitionError",
    "PayrollRunService",
    "PayrollRunStateMachine",
    "PayrollRunStatus",
    "RateChangeResult",
    "RunSummary",
    "TaxRuleService",
    "TemplateService",
    "TemplateStateMachine",
    "TemplateStatus",
]
