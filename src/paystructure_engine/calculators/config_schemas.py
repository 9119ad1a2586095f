"""Component configuration schemas, one variant per calculation type.

Configurations are stored as JSON on the component row and validated into
these models when a template is published or an override is written, so
the calculation path only ever sees well-formed parameters.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from paystructure_engine.exceptions import ConfigValidationError

HOURS_VARIABLES = {
    "regular": "hours_worked",
    "overtime": "overtime_hours",
    "double_time": "double_time_hours",
    "pto": "pto_hours",
}


class _ConfigBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class FixedConfig(_ConfigBase):
    """Fixed amount per pay period."""

    calculation_type: Literal["fixed"] = "fixed"
    amount: Decimal = Field(..., ge=0)


class PercentageConfig(_ConfigBase):
    """Fraction of another variable, e.g. 0.05 of base_salary."""

    calculation_type: Literal["percentage"] = "percentage"
    percentage: Decimal = Field(..., ge=0)
    percentage_of: str = Field(..., min_length=1)


class FormulaConfig(_ConfigBase):
    calculation_type: Literal["formula"] = "formula"
    expression: str = Field(..., min_length=1)


class HourlyRateConfig(_ConfigBase):
    """Hours of one type times a rate and multiplier.

    Without a rate the employee's compensation hourly rate applies.
    """

    calculation_type: Literal["hourly_rate"] = "hourly_rate"
    hours_type: Literal["regular", "overtime", "double_time", "pto"] = "regular"
    rate: Decimal | None = Field(default=None, ge=0)
    rate_multiplier: Decimal = Field(default=Decimal("1"), gt=0)

    @property
    def hours_variable(self) -> str:
        return HOURS_VARIABLES[self.hours_type]


class Tier(_ConfigBase):
    threshold: Decimal = Field(..., ge=0)
    rate: Decimal = Field(..., ge=0)


class TieredConfig(_ConfigBase):
    """Progressive rates over a basis variable.

    Each tier's rate applies to the part of the basis between its
    threshold and the next tier's threshold.
    """

    calculation_type: Literal["tiered"] = "tiered"
    tier_basis: str = Field(..., min_length=1)
    tiers: list[Tier] = Field(..., min_length=1)

    @field_validator("tiers")
    @classmethod
    def validate_thresholds(cls, v: list[Tier]) -> list[Tier]:
        """Thresholds start at zero and strictly increase."""
        if v[0].threshold != 0:
            raise ValueError("first tier must start at threshold 0")
        for previous, current in zip(v, v[1:]):
            if current.threshold <= previous.threshold:
                raise ValueError("tier thresholds must strictly increase")
        return v


class ExternalConfig(_ConfigBase):
    """Amount supplied by a collaborator as a named variable.

    Tax components with a tax_type also use this variant; their amount
    comes from the tax rule set instead.
    """

    calculation_type: Literal["external"] = "external"
    variable: str | None = None


ComponentConfig = Annotated[
    Union[
        FixedConfig,
        PercentageConfig,
        FormulaConfig,
        HourlyRateConfig,
        TieredConfig,
        ExternalConfig,
    ],
    Field(discriminator="calculation_type"),
]

_COMPONENT_CONFIG_ADAPTER: TypeAdapter[ComponentConfig] = TypeAdapter(ComponentConfig)


class ForfaitRule(_ConfigBase):
    """Benefit-in-kind valuation triggered by a component.

    The yearly taxable value is ``basis_variable x annual_rate`` (capped by
    ``annual_cap``), spread evenly over the pay periods of a year.
    """

    forfait_code: str = Field(..., min_length=1, max_length=50)
    forfait_name: str = Field(..., min_length=1, max_length=100)
    basis_variable: str = Field(..., min_length=1)
    annual_rate: Decimal = Field(..., ge=0, le=1)
    annual_cap: Decimal | None = Field(default=None, ge=0)


def parse_component_config(
    calculation_type: str,
    configuration: dict[str, Any] | None,
    component_code: str | None = None,
) -> ComponentConfig:
    """Validate a stored configuration against its calculation type."""
    data = dict(configuration or {})
    data["calculation_type"] = calculation_type
    try:
        return _COMPONENT_CONFIG_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Invalid {calculation_type} configuration: {e.error_count()} error(s)",
            component_code=component_code,
            details=e.errors(include_url=False),
        ) from e


def parse_forfait_rule(
    data: dict[str, Any] | None,
    component_code: str | None = None,
) -> ForfaitRule | None:
    """Validate a stored forfait rule, if any."""
    if not data:
        return None
    try:
        return ForfaitRule.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(
            "Invalid forfait rule",
            component_code=component_code,
            details=e.errors(include_url=False),
        ) from e
