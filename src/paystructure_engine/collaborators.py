"""Interfaces of the systems the engine reads from.

Employee master data, time and attendance, and compensation records live
elsewhere; the engine only sees read-only snapshots through these
protocols.
"""

from __future__ import annotations

from datetime import date
from typing import Protocol
from uuid import UUID

from paystructure_engine.calculators.types import (
    CompensationSnapshot,
    EmployeeSnapshot,
    TimeSummary,
)


class EmployeeDirectory(Protocol):
    async def list_employees(
        self,
        organization_id: UUID,
        period_start: date,
        period_end: date,
    ) -> list[EmployeeSnapshot]:
        """Employees of the organization relevant to a pay period."""
        ...

    async def get_employee(self, organization_id: UUID, employee_id: UUID) -> EmployeeSnapshot | None:
        ...


class TimeDataProvider(Protocol):
    async def get_time_summary(
        self,
        organization_id: UUID,
        employee_id: UUID,
        period_start: date,
        period_end: date,
    ) -> TimeSummary:
        """Approved hours and other time variables for the period."""
        ...


class CompensationProvider(Protocol):
    async def get_compensation(
        self,
        organization_id: UUID,
        employee_id: UUID,
        as_of_date: date,
    ) -> CompensationSnapshot:
        ...
