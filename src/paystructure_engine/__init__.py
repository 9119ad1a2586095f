"""Pay structure resolution and payroll calculation engine."""

__version__ = "0.1.0"
