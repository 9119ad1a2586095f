"""Payroll calculation engine."""

from paystructure_engine.calculators.allowance_tracker import AllowanceTracker, KeyedLocks
from paystructure_engine.calculators.component_calculator import ComponentCalculator
from paystructure_engine.calculators.currency import CurrencyConverter
from paystructure_engine.calculators.engine import PaycheckCalculator, PaycheckContext
from paystructure_engine.calculators.line_builder import LineItemBuilder
from paystructure_engine.calculators.tax_calculator import TaxCalculator
from paystructure_engine.calculators.template_resolver import TemplateResolver

__all__ = [
    "AllowanceTracker",
    "ComponentCalculator",
    "CurrencyConverter",
    "KeyedLocks",
    "LineItemBuilder",
    "PaycheckCalculator",
    "PaycheckContext",
    "TaxCalculator",
    "TemplateResolver",
]
