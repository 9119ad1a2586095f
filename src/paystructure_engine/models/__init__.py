"""ORM models."""

from paystructure_engine.models.base import Base, TimestampMixin, as_utc, utc_now
from paystructure_engine.models.currency import (
    CurrencyApprovalAction,
    CurrencyApprovalRequest,
    CurrencyApprovalRule,
    CurrencyConversion,
    ExchangeRate,
    OrganizationCurrencyConfig,
)
from paystructure_engine.models.pay_structure import (
    ComponentFormula,
    PayStructureComponent,
    PayStructureTemplate,
    WorkerPayStructure,
    WorkerPayStructureComponentOverride,
)
from paystructure_engine.models.payroll import (
    FormulaExecutionLog,
    Paycheck,
    PayrollRun,
    PayrollRunComponent,
)
from paystructure_engine.models.tax import (
    Allowance,
    EmployeeAllowanceUsage,
    TaxBracket,
    TaxRuleSet,
)

__all__ = [
    "Allowance",
    "Base",
    "ComponentFormula",
    "CurrencyApprovalAction",
    "CurrencyApprovalRequest",
    "CurrencyApprovalRule",
    "CurrencyConversion",
    "EmployeeAllowanceUsage",
    "ExchangeRate",
    "FormulaExecutionLog",
    "OrganizationCurrencyConfig",
    "PayStructureComponent",
    "PayStructureTemplate",
    "Paycheck",
    "PayrollRun",
    "PayrollRunComponent",
    "TaxBracket",
    "TaxRuleSet",
    "TimestampMixin",
    "WorkerPayStructure",
    "WorkerPayStructureComponentOverride",
    "as_utc",
    "utc_now",
]
