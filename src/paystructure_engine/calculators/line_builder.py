"""Line item builder with idempotent hashing."""

from __future__ import annotations

import hashlib
import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from paystructure_engine.calculators.config_schemas import ForfaitRule
from paystructure_engine.calculators.types import (
    ComponentCategory,
    ComponentLine,
    LineRole,
    LineType,
    ResolvedComponent,
    TaxShare,
)

_LINE_TYPES = {
    ComponentCategory.EARNING: LineType.EARNING,
    ComponentCategory.REIMBURSEMENT: LineType.REIMBURSEMENT,
    ComponentCategory.DEDUCTION: LineType.DEDUCTION,
    ComponentCategory.BENEFIT: LineType.BENEFIT,
    ComponentCategory.TAX: LineType.TAX,
    ComponentCategory.EMPLOYER_COST: LineType.EMPLOYER_COST,
}

_NEGATIVE_TYPES = {LineType.DEDUCTION, LineType.BENEFIT, LineType.TAX}
_INCOME_TYPES = {LineType.EARNING, LineType.REIMBURSEMENT}


class LineItemBuilder:
    """Builds paycheck lines with deterministic hashing for idempotency.

    Sign conventions:
    - EARNING, REIMBURSEMENT: positive
    - DEDUCTION, BENEFIT (employee contribution), TAX: negative
    - EMPLOYER_COST: positive, never affects net
    - BENEFIT_IN_KIND (forfait): positive, taxable, non-cash

    Component amounts are computed as magnitudes; the category decides the
    sign. Amounts are persisted at 2 decimals.
    """

    OUTPUT_PRECISION = Decimal("0.01")

    @staticmethod
    def round_to_cents(amount: Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return amount.quantize(LineItemBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def compute_line_hash(line: ComponentLine) -> str:
        """Compute deterministic hash for a line item.

        The hash covers the line's canonical representation including the
        frozen component configuration, so identical inputs produce
        identical hashes.
        """
        canonical = line.to_canonical_dict()
        json_str = json.dumps(canonical, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]

    @staticmethod
    def line_id(paycheck_id: UUID, line_number: int) -> UUID:
        """Deterministic row id so recalculation rewrites the same rows."""
        data = json.dumps({"paycheck_id": str(paycheck_id), "line_number": line_number}, sort_keys=True)
        return UUID(bytes=hashlib.sha256(data.encode()).digest()[:16])

    @staticmethod
    def line_type_for(category: ComponentCategory) -> LineType:
        return _LINE_TYPES[category]

    @classmethod
    def signed(cls, line_type: LineType, amount: Decimal) -> Decimal:
        magnitude = cls.round_to_cents(abs(amount))
        if magnitude and line_type in _NEGATIVE_TYPES:
            return -magnitude
        return magnitude

    @classmethod
    def create_component_line(
        cls,
        component: ResolvedComponent,
        amount: Decimal,
        units: Decimal | None = None,
        rate: Decimal | None = None,
        is_taxable: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ComponentLine:
        """Create the primary line for a component."""
        line_type = cls.line_type_for(component.category)
        if is_taxable is None:
            is_taxable = component.is_taxable
        return ComponentLine(
            component_code=component.component_code,
            component_name=component.component_name,
            category=component.category,
            line_type=line_type,
            amount=cls.signed(line_type, amount),
            units=units,
            rate=rate,
            # Only income lines feed the tax base
            is_taxable=is_taxable and line_type in _INCOME_TYPES,
            affects_gross_pay=component.affects_gross_pay and line_type in _INCOME_TYPES,
            affects_net_pay=component.affects_net_pay and line_type != LineType.EMPLOYER_COST,
            tax_category=component.tax_type,
            component_currency=component.currency,
            config_snapshot=component.to_snapshot(),
            metadata=metadata or {},
        )

    @classmethod
    def create_allowance_excess_line(
        cls,
        component: ResolvedComponent,
        excess: Decimal,
        allowance_type: str,
    ) -> ComponentLine:
        """Amount over the allowance cap, paid as taxable regular income."""
        line_type = cls.line_type_for(component.category)
        return ComponentLine(
            component_code=component.component_code,
            component_name=f"{component.component_name} (over allowance cap)",
            category=component.category,
            line_type=line_type,
            amount=cls.signed(line_type, excess),
            line_role=LineRole.ALLOWANCE_EXCESS,
            is_taxable=True,
            affects_gross_pay=component.affects_gross_pay and line_type in _INCOME_TYPES,
            affects_net_pay=component.affects_net_pay,
            component_currency=component.currency,
            config_snapshot=component.to_snapshot(),
            metadata={"allowance_type": allowance_type, "reclassified_as": "taxable_income"},
        )

    @classmethod
    def create_forfait_line(
        cls,
        component: ResolvedComponent,
        rule: ForfaitRule,
        amount: Decimal,
        basis: Decimal,
    ) -> ComponentLine:
        """Taxable benefit-in-kind triggered by a component; no cash effect."""
        return ComponentLine(
            component_code=rule.forfait_code,
            component_name=rule.forfait_name,
            category=ComponentCategory.BENEFIT,
            line_type=LineType.BENEFIT_IN_KIND,
            amount=cls.round_to_cents(abs(amount)),
            line_role=LineRole.FORFAIT,
            attributed_to=component.component_code,
            units=basis,
            rate=rule.annual_rate,
            is_taxable=True,
            affects_gross_pay=False,
            affects_net_pay=False,
            tax_category="benefit_in_kind",
            component_currency=component.currency,
            config_snapshot=component.to_snapshot(),
            metadata={"forfait_basis_variable": rule.basis_variable},
        )

    @classmethod
    def create_tax_share_line(
        cls,
        component: ResolvedComponent,
        share: TaxShare,
        calculation_mode: str,
    ) -> ComponentLine:
        """Tax attributed to one contributing component."""
        return ComponentLine(
            component_code=component.component_code,
            component_name=component.component_name,
            category=ComponentCategory.TAX,
            line_type=LineType.TAX,
            amount=cls.signed(LineType.TAX, share.tax_amount),
            line_role=LineRole.TAX_SHARE,
            attributed_to=share.component_code,
            units=share.taxable_amount,
            is_taxable=False,
            affects_gross_pay=False,
            affects_net_pay=component.affects_net_pay,
            tax_category=component.tax_type,
            component_currency=component.currency,
            config_snapshot=component.to_snapshot(),
            metadata={"calculation_mode": calculation_mode},
        )

    # ===== Totals =====

    @staticmethod
    def calculate_gross(lines: list[ComponentLine]) -> Decimal:
        """GROSS = sum of gross-affecting lines."""
        gross = sum((line.amount for line in lines if line.affects_gross_pay), Decimal("0"))
        return LineItemBuilder.round_to_cents(gross)

    @staticmethod
    def calculate_net(lines: list[ComponentLine]) -> Decimal:
        """NET = sum of net-affecting signed lines (employer costs excluded)."""
        net = sum((line.amount for line in lines if line.affects_net_pay), Decimal("0"))
        return LineItemBuilder.round_to_cents(net)

    @staticmethod
    def calculate_taxable(lines: list[ComponentLine]) -> Decimal:
        """Taxable income: taxable earnings, reclassified excess and forfaits."""
        taxable = sum(
            (line.amount for line in lines if line.is_taxable and line.amount > 0),
            Decimal("0"),
        )
        return LineItemBuilder.round_to_cents(taxable)

    @staticmethod
    def sum_by_type(lines: list[ComponentLine]) -> dict[LineType, Decimal]:
        """Sum line amounts by type."""
        totals: dict[LineType, Decimal] = {lt: Decimal("0") for lt in LineType}
        for line in lines:
            totals[line.line_type] += line.amount
        return totals

    @staticmethod
    def validate_line_signs(lines: list[ComponentLine]) -> list[str]:
        """Validate that all line items have correct signs.

        Returns list of error messages (empty if all valid).
        """
        errors: list[str] = []
        for i, line in enumerate(lines):
            if line.line_type in _NEGATIVE_TYPES:
                if line.amount > 0:
                    errors.append(
                        f"Line {i} ({line.line_type.value}) has positive amount {line.amount}, expected negative"
                    )
            elif line.amount < 0:
                errors.append(
                    f"Line {i} ({line.line_type.value}) has negative amount {line.amount}, expected positive"
                )
        return errors
