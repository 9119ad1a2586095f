"""Type definitions for the calculation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from paystructure_engine.calculators.config_schemas import ComponentConfig, ForfaitRule
    from paystructure_engine.calculators.formula import Node
    from paystructure_engine.exceptions import PayrollCalculationError


class ComponentCategory(str, Enum):
    """Pay component categories."""

    EARNING = "earning"
    DEDUCTION = "deduction"
    TAX = "tax"
    BENEFIT = "benefit"
    EMPLOYER_COST = "employer_cost"
    REIMBURSEMENT = "reimbursement"


class CalculationType(str, Enum):
    """How a component's amount is produced."""

    FIXED = "fixed"
    PERCENTAGE = "percentage"
    FORMULA = "formula"
    HOURLY_RATE = "hourly_rate"
    TIERED = "tiered"
    EXTERNAL = "external"


class LineType(str, Enum):
    """Paycheck line item types."""

    EARNING = "EARNING"
    DEDUCTION = "DEDUCTION"
    TAX = "TAX"
    BENEFIT = "BENEFIT"
    BENEFIT_IN_KIND = "BENEFIT_IN_KIND"
    EMPLOYER_COST = "EMPLOYER_COST"
    REIMBURSEMENT = "REIMBURSEMENT"


class LineRole(str, Enum):
    """Why a line exists for its component."""

    PRIMARY = "primary"
    ALLOWANCE_EXCESS = "allowance_excess"
    FORFAIT = "forfait"
    TAX_SHARE = "tax_share"


class TaxCalculationMethod(str, Enum):
    BRACKET = "bracket"
    FLAT_RATE = "flat_rate"


class TaxCalculationMode(str, Enum):
    AGGREGATED = "aggregated"
    COMPONENT_BASED = "component_based"
    PROPORTIONAL_DISTRIBUTION = "proportional_distribution"


class PayFrequency(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    SEMIMONTHLY = "semimonthly"
    MONTHLY = "monthly"

    @property
    def periods_per_year(self) -> int:
        return _PERIODS_PER_YEAR[self]


_PERIODS_PER_YEAR = {
    PayFrequency.WEEKLY: 52,
    PayFrequency.BIWEEKLY: 26,
    PayFrequency.SEMIMONTHLY: 24,
    PayFrequency.MONTHLY: 12,
}


# ===== Collaborator snapshots =====


@dataclass(frozen=True)
class EmployeeSnapshot:
    """Read-only employee data from the HRIS collaborator."""

    employee_id: UUID
    organization_id: UUID
    employment_status: str = "active"
    hire_date: date | None = None
    termination_date: date | None = None
    payment_currency: str | None = None
    # Extra numeric facts usable as formula variables (e.g. car_catalog_value)
    attributes: dict[str, Decimal] = field(default_factory=dict)

    def is_employed_during(self, period_start: date, period_end: date) -> bool:
        if self.employment_status not in ("active", "on_leave"):
            return False
        if self.hire_date is not None and self.hire_date > period_end:
            return False
        if self.termination_date is not None and self.termination_date < period_start:
            return False
        return True


@dataclass(frozen=True)
class TimeSummary:
    """Approved time totals for one employee and pay period."""

    hours_worked: Decimal = Decimal("0")
    overtime_hours: Decimal = Decimal("0")
    double_time_hours: Decimal = Decimal("0")
    pto_hours: Decimal = Decimal("0")
    variables: dict[str, Decimal] = field(default_factory=dict)

    def as_variables(self) -> dict[str, Decimal]:
        result = dict(self.variables)
        result.update(
            hours_worked=self.hours_worked,
            overtime_hours=self.overtime_hours,
            double_time_hours=self.double_time_hours,
            pto_hours=self.pto_hours,
        )
        return result


@dataclass(frozen=True)
class CompensationSnapshot:
    """Current compensation from the HRIS compensation records."""

    base_salary: Decimal | None = None  # per pay period
    hourly_rate: Decimal | None = None
    pay_frequency: str | None = None
    currency: str | None = None


# ===== Resolved structure =====


@dataclass(frozen=True)
class ResolvedFormula:
    """Formula linked to a component, parsed at publish time."""

    formula_id: UUID | None
    expression: str
    ast: Node


@dataclass(frozen=True)
class AppliedOverride:
    """Worker override merged into a component."""

    override_id: UUID
    override_type: str
    reason: str
    component_currency: str | None = None


@dataclass(frozen=True)
class ResolvedComponent:
    """A template component after worker overrides were applied."""

    component_id: UUID
    component_code: str
    component_name: str
    category: ComponentCategory
    configuration: ComponentConfig
    sequence_order: int
    depends_on: tuple[str, ...] = ()
    is_taxable: bool = True
    affects_gross_pay: bool = True
    affects_net_pay: bool = True
    tax_type: str | None = None
    allowance_type: str | None = None
    forfait_rule: ForfaitRule | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    min_percentage: Decimal | None = None
    max_percentage: Decimal | None = None
    max_annual: Decimal | None = None
    max_per_period: Decimal | None = None
    currency: str | None = None
    formula: ResolvedFormula | None = None
    override: AppliedOverride | None = None

    @property
    def calculation_type(self) -> CalculationType:
        return CalculationType(self.configuration.calculation_type)

    @property
    def is_tax_rule_component(self) -> bool:
        return self.category == ComponentCategory.TAX and self.tax_type is not None

    def to_snapshot(self) -> dict[str, Any]:
        """Frozen configuration recorded on every line this component produces."""
        return {
            "component_id": str(self.component_id),
            "component_code": self.component_code,
            "category": self.category.value,
            "configuration": self.configuration.model_dump(mode="json"),
            "sequence_order": self.sequence_order,
            "depends_on": list(self.depends_on),
            "is_taxable": self.is_taxable,
            "affects_gross_pay": self.affects_gross_pay,
            "affects_net_pay": self.affects_net_pay,
            "tax_type": self.tax_type,
            "allowance_type": self.allowance_type,
            "forfait_rule": self.forfait_rule.model_dump(mode="json") if self.forfait_rule else None,
            "bounds": {
                "min_amount": _str_or_none(self.min_amount),
                "max_amount": _str_or_none(self.max_amount),
                "min_percentage": _str_or_none(self.min_percentage),
                "max_percentage": _str_or_none(self.max_percentage),
                "max_annual": _str_or_none(self.max_annual),
                "max_per_period": _str_or_none(self.max_per_period),
            },
            "currency": self.currency,
            "formula": (
                {
                    "formula_id": str(self.formula.formula_id) if self.formula.formula_id else None,
                    "expression": self.formula.expression,
                }
                if self.formula
                else None
            ),
            "override": (
                {
                    "override_id": str(self.override.override_id),
                    "override_type": self.override.override_type,
                    "reason": self.override.reason,
                }
                if self.override
                else None
            ),
        }


@dataclass(frozen=True)
class ResolvedStructure:
    """Effective pay structure for one employee on one date."""

    organization_id: UUID
    employee_id: UUID
    as_of_date: date
    template_id: UUID
    template_code: str
    template_version: str
    currency: str
    pay_frequency: PayFrequency
    components: tuple[ResolvedComponent, ...]
    worker_structure_id: UUID | None = None
    base_salary: Decimal | None = None
    disabled_components: tuple[str, ...] = ()

    @property
    def component_codes(self) -> list[str]:
        return [c.component_code for c in self.components]


# ===== Tax =====


@dataclass(frozen=True)
class TaxBracketSpec:
    """Tax bracket for progressive taxation."""

    income_min: Decimal
    income_max: Decimal | None  # None = no upper limit
    rate_percentage: Decimal  # 18 means 18%
    fixed_amount: Decimal = Decimal("0")


@dataclass(frozen=True)
class TaxRuleSetSpec:
    """Tax rule set configuration."""

    rule_set_id: UUID | None
    tax_type: str
    jurisdiction: str
    calculation_method: TaxCalculationMethod
    calculation_mode: TaxCalculationMode
    brackets: tuple[TaxBracketSpec, ...]
    annual_cap: Decimal | None = None

    @property
    def is_flat_rate(self) -> bool:
        """True when tax is a single proportional rate over the whole base."""
        if len(self.brackets) != 1:
            return False
        only = self.brackets[0]
        return only.income_min == 0 and only.income_max is None and only.fixed_amount == 0


@dataclass(frozen=True)
class TaxShare:
    """Portion of a tax attributed to one contributing component."""

    component_code: str
    taxable_amount: Decimal
    tax_amount: Decimal


@dataclass(frozen=True)
class TaxOutcome:
    """Tax for one tax component, with optional per-component attribution."""

    tax_type: str
    calculation_mode: TaxCalculationMode
    taxable_total: Decimal
    total_tax: Decimal
    shares: tuple[TaxShare, ...] = ()
    capped: bool = False


# ===== Allowances =====


@dataclass(frozen=True)
class AllowanceSpec:
    """Allowance category with its yearly cap already computed."""

    allowance_type: str
    cap: Decimal
    is_tax_free: bool = True


@dataclass(frozen=True)
class AllowanceApplication:
    """Result of applying a requested amount against an allowance cap."""

    applied_amount: Decimal
    remaining_cap: Decimal
    excess_amount: Decimal

    @property
    def cap_exceeded(self) -> bool:
        return self.excess_amount > 0


# ===== Currency =====


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of a currency conversion."""

    converted_amount: Decimal
    rate_used: Decimal
    conversion_id: UUID | None
    rate_source: str = "direct"


@dataclass(frozen=True)
class PendingApproval:
    """Approval request a gated currency operation needs opened."""

    organization_id: UUID
    request_type: str
    reference_key: str
    rule_id: UUID | None
    required_approvals: int
    from_currency: str
    to_currency: str
    expires_at: datetime | None = None
    amount: Decimal | None = None
    proposed_rate: Decimal | None = None
    current_rate: Decimal | None = None
    approver_user_ids: tuple[UUID, ...] = ()
    requested_by: UUID | None = None
    payload: dict[str, Any] = field(default_factory=dict)


# ===== Lines and results =====


@dataclass
class ComponentLine:
    """A paycheck line item before persistence."""

    component_code: str
    component_name: str
    category: ComponentCategory
    line_type: LineType
    amount: Decimal  # signed per LineItemBuilder conventions
    line_role: LineRole = LineRole.PRIMARY
    attributed_to: str | None = None
    units: Decimal | None = None
    rate: Decimal | None = None
    is_taxable: bool = False
    affects_gross_pay: bool = False
    affects_net_pay: bool = True
    tax_category: str | None = None
    component_currency: str | None = None
    original_amount: Decimal | None = None
    conversion_id: UUID | None = None
    exchange_rate_used: Decimal | None = None
    config_snapshot: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for hashing (deterministic ordering)."""
        return {
            "component_code": self.component_code,
            "category": self.category.value,
            "line_type": self.line_type.value,
            "line_role": self.line_role.value,
            "attributed_to": self.attributed_to,
            "units": str(self.units) if self.units is not None else None,
            "rate": str(self.rate) if self.rate is not None else None,
            "amount": str(self.amount),
            "is_taxable": self.is_taxable,
            "component_currency": self.component_currency,
            "original_amount": str(self.original_amount) if self.original_amount is not None else None,
            "exchange_rate_used": (
                str(self.exchange_rate_used) if self.exchange_rate_used is not None else None
            ),
            "config_snapshot": self.config_snapshot,
        }


@dataclass(frozen=True)
class FormulaExecution:
    """Audit record of one formula evaluation."""

    component_code: str
    formula_id: UUID | None
    expression: str
    input_variables: dict[str, str]
    result: Decimal
    execution_time_ms: Decimal


@dataclass
class PaycheckResult:
    """Result of calculating one employee's paycheck."""

    employee_id: UUID
    template_id: UUID
    template_version: str
    base_currency: str
    lines: list[ComponentLine]
    gross_pay: Decimal
    net_pay: Decimal
    taxable_income: Decimal
    tax_free_allowance: Decimal
    total_taxes: Decimal
    total_deductions: Decimal
    formula_executions: list[FormulaExecution] = field(default_factory=list)
    # Informational errors, e.g. AllowanceCapExceeded; the paycheck still succeeds
    notices: list[PayrollCalculationError] = field(default_factory=list)
    payment_currency: str | None = None
    net_pay_payment_currency: Decimal | None = None
    exchange_rate_used: Decimal | None = None
    conversion_id: UUID | None = None


def _str_or_none(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None
