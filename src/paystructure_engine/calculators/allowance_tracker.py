"""Per-employee yearly allowance cap enforcement."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import AsyncIterator, Hashable
from uuid import UUID, uuid4

from sqlalchemy import insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from paystructure_engine.calculators.types import AllowanceApplication, AllowanceSpec
from paystructure_engine.exceptions import PayrollCalculationError
from paystructure_engine.models import Allowance, EmployeeAllowanceUsage

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENTS = Decimal("0.01")


class AllowanceConflictError(PayrollCalculationError):
    """Usage row kept changing underneath the optimistic update."""

    kind = "allowance_conflict"

    def __init__(self, employee_id: UUID, allowance_type: str, calendar_year: int, attempts: int):
        self.employee_id = employee_id
        self.allowance_type = allowance_type
        self.calendar_year = calendar_year
        super().__init__(
            f"Allowance usage for employee {employee_id} ({allowance_type}, {calendar_year}) "
            f"changed concurrently {attempts} times"
        )


class KeyedLocks:
    """One asyncio.Lock per key, shared by every task of a payroll run.

    A key's lock exists only while some task holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]


class AllowanceTracker:
    """Tracks cumulative allowance usage and enforces the yearly cap.

    Usage for an (employee, allowance_type, calendar_year) key is read and
    written with a version check, so a concurrent writer forces a re-read
    instead of a lost update. Within a process, callers sharing a
    KeyedLocks instance are additionally serialized per key.

    The tracker never drops the excess over the cap: it reports it and the
    caller decides how to treat it.
    """

    MAX_ATTEMPTS = 5

    def __init__(self, session: AsyncSession, locks: KeyedLocks | None = None):
        self.session = session
        self.locks = locks if locks is not None else KeyedLocks()

    @staticmethod
    def compute_application(
        cap: Decimal,
        amount_used: Decimal,
        requested_amount: Decimal,
    ) -> AllowanceApplication:
        """Split a request into the part within the cap and the excess.

        Example: cap 10016, used 9500, requested 1000 gives applied 516,
        remaining 0 and excess 484.
        """
        requested = max(requested_amount, ZERO)
        available = max(cap - amount_used, ZERO)
        applied = min(requested, available)
        return AllowanceApplication(
            applied_amount=applied,
            remaining_cap=available - applied,
            excess_amount=requested - applied,
        )

    async def get_allowance(
        self,
        organization_id: UUID,
        allowance_type: str,
        as_of_date: date,
    ) -> Allowance | None:
        result = await self.session.execute(
            select(Allowance)
            .where(
                Allowance.organization_id == organization_id,
                Allowance.allowance_type == allowance_type,
                Allowance.effective_from <= as_of_date,
                or_(Allowance.effective_to.is_(None), Allowance.effective_to >= as_of_date),
            )
            .order_by(Allowance.effective_from.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def to_spec(allowance: Allowance, annual_salary: Decimal | None) -> AllowanceSpec:
        """Yearly cap: fixed amount, or a fraction of annual salary."""
        if allowance.amount_type == "percentage":
            base = annual_salary or ZERO
            cap = (base * Decimal(allowance.amount)).quantize(CENTS, rounding=ROUND_HALF_UP)
        else:
            cap = Decimal(allowance.amount)
        return AllowanceSpec(
            allowance_type=allowance.allowance_type,
            cap=cap,
            is_tax_free=allowance.is_tax_free,
        )

    async def apply_allowance(
        self,
        organization_id: UUID,
        employee_id: UUID,
        allowance_type: str,
        calendar_year: int,
        requested_amount: Decimal,
        cap: Decimal,
    ) -> AllowanceApplication:
        """Consume up to ``requested_amount`` of the remaining yearly cap."""
        key = (employee_id, allowance_type, calendar_year)
        async with self.locks.hold(key):
            for _ in range(self.MAX_ATTEMPTS):
                usage_id, used, version = await self._get_or_create_usage(
                    organization_id, employee_id, allowance_type, calendar_year
                )
                application = self.compute_application(cap, used, requested_amount)

                result = await self.session.execute(
                    update(EmployeeAllowanceUsage)
                    .where(
                        EmployeeAllowanceUsage.id == usage_id,
                        EmployeeAllowanceUsage.version == version,
                    )
                    .values(
                        amount_used=used + application.applied_amount,
                        amount_remaining=application.remaining_cap,
                        version=version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    if application.cap_exceeded:
                        logger.warning(
                            "Allowance %s cap reached for employee %s in %s: "
                            "requested %s, applied %s, excess %s",
                            allowance_type,
                            employee_id,
                            calendar_year,
                            requested_amount,
                            application.applied_amount,
                            application.excess_amount,
                        )
                    return application

                logger.debug(
                    "Allowance usage %s changed concurrently, retrying", usage_id
                )

        raise AllowanceConflictError(employee_id, allowance_type, calendar_year, self.MAX_ATTEMPTS)

    async def release_allowance(
        self,
        employee_id: UUID,
        allowance_type: str,
        calendar_year: int,
        amount: Decimal,
    ) -> None:
        """Give back usage recorded by a paycheck that is being recalculated."""
        if amount <= 0:
            return
        key = (employee_id, allowance_type, calendar_year)
        async with self.locks.hold(key):
            for _ in range(self.MAX_ATTEMPTS):
                row = (
                    await self.session.execute(
                        select(
                            EmployeeAllowanceUsage.id,
                            EmployeeAllowanceUsage.amount_used,
                            EmployeeAllowanceUsage.amount_remaining,
                            EmployeeAllowanceUsage.version,
                        ).where(
                            EmployeeAllowanceUsage.employee_id == employee_id,
                            EmployeeAllowanceUsage.allowance_type == allowance_type,
                            EmployeeAllowanceUsage.calendar_year == calendar_year,
                        )
                    )
                ).one_or_none()
                if row is None:
                    return

                released = min(amount, Decimal(row.amount_used))
                remaining = row.amount_remaining
                if remaining is not None:
                    remaining = Decimal(remaining) + released

                result = await self.session.execute(
                    update(EmployeeAllowanceUsage)
                    .where(
                        EmployeeAllowanceUsage.id == row.id,
                        EmployeeAllowanceUsage.version == row.version,
                    )
                    .values(
                        amount_used=Decimal(row.amount_used) - released,
                        amount_remaining=remaining,
                        version=row.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return

        raise AllowanceConflictError(employee_id, allowance_type, calendar_year, self.MAX_ATTEMPTS)

    async def _get_or_create_usage(
        self,
        organization_id: UUID,
        employee_id: UUID,
        allowance_type: str,
        calendar_year: int,
    ) -> tuple[UUID, Decimal, int]:
        """Read the usage row, inserting a zero row first if absent."""
        query = select(
            EmployeeAllowanceUsage.id,
            EmployeeAllowanceUsage.amount_used,
            EmployeeAllowanceUsage.version,
        ).where(
            EmployeeAllowanceUsage.employee_id == employee_id,
            EmployeeAllowanceUsage.allowance_type == allowance_type,
            EmployeeAllowanceUsage.calendar_year == calendar_year,
        )
        row = (await self.session.execute(query)).one_or_none()
        if row is None:
            await self.session.execute(
                self._insert_if_absent(
                    {
                        "id": uuid4(),
                        "organization_id": organization_id,
                        "employee_id": employee_id,
                        "allowance_type": allowance_type,
                        "calendar_year": calendar_year,
                        "amount_used": ZERO,
                        "version": 0,
                    }
                )
            )
            row = (await self.session.execute(query)).one()
        return row.id, Decimal(row.amount_used), row.version

    def _insert_if_absent(self, values: dict):
        """INSERT that tolerates a concurrent insert of the same key."""
        dialect = self.session.get_bind().dialect.name
        key_columns = ["employee_id", "allowance_type", "calendar_year"]
        if dialect == "postgresql":
            return (
                postgresql.insert(EmployeeAllowanceUsage)
                .values(**values)
                .on_conflict_do_nothing(index_elements=key_columns)
            )
        if dialect == "sqlite":
            return (
                sqlite.insert(EmployeeAllowanceUsage)
                .values(**values)
                .on_conflict_do_nothing(index_elements=key_columns)
            )
        return insert(EmployeeAllowanceUsage).values(**values)
