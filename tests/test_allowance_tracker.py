"""Tests for yearly allowance cap enforcement."""

import asyncio
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy import select

from paystructure_engine.calculators.allowance_tracker import AllowanceTracker, KeyedLocks
from paystructure_engine.models import Allowance, EmployeeAllowanceUsage

CAP = Decimal("10016")


@pytest.fixture
def tracker(session):
    return AllowanceTracker(session, KeyedLocks())


async def usage_row(session, employee_id, allowance_type="transport", calendar_year=2026):
    result = await session.execute(
        select(EmployeeAllowanceUsage.amount_used, EmployeeAllowanceUsage.amount_remaining).where(
            EmployeeAllowanceUsage.employee_id == employee_id,
            EmployeeAllowanceUsage.allowance_type == allowance_type,
            EmployeeAllowanceUsage.calendar_year == calendar_year,
        )
    )
    return result.one()


class TestComputeApplication:
    """Splitting a request into applied and excess."""

    def test_partial_application_at_cap(self):
        application = AllowanceTracker.compute_application(CAP, Decimal("9500"), Decimal("1000"))

        assert application.applied_amount == Decimal("516")
        assert application.remaining_cap == Decimal("0")
        assert application.excess_amount == Decimal("484")
        assert application.cap_exceeded is True

    def test_within_cap(self):
        application = AllowanceTracker.compute_application(CAP, Decimal("0"), Decimal("1000"))

        assert application.applied_amount == Decimal("1000")
        assert application.remaining_cap == Decimal("9016")
        assert application.cap_exceeded is False

    def test_cap_already_used(self):
        application = AllowanceTracker.compute_application(CAP, CAP, Decimal("1000"))

        assert application.applied_amount == Decimal("0")
        assert application.excess_amount == Decimal("1000")

    def test_negative_request_applies_nothing(self):
        application = AllowanceTracker.compute_application(CAP, Decimal("0"), Decimal("-50"))
        assert application.applied_amount == Decimal("0")
        assert application.excess_amount == Decimal("0")


class TestApplyAllowance:
    """Usage accumulates per employee, type and year."""

    async def test_usage_never_exceeds_cap(self, session, tracker, organization_id):
        employee_id = uuid4()

        first = await tracker.apply_allowance(organization_id, employee_id, "transport", 2026, Decimal("9500"), CAP)
        second = await tracker.apply_allowance(organization_id, employee_id, "transport", 2026, Decimal("1000"), CAP)
        third = await tracker.apply_allowance(organization_id, employee_id, "transport", 2026, Decimal("1000"), CAP)

        assert first.applied_amount == Decimal("9500")
        assert second.applied_amount == Decimal("516")
        assert second.excess_amount == Decimal("484")
        assert third.applied_amount == Decimal("0")

        used, remaining = await usage_row(session, employee_id)
        assert used == CAP
        assert remaining == Decimal("0")

    async def test_years_and_employees_are_separate(self, session, tracker, organization_id):
        employee_id = uuid4()
        other_id = uuid4()

        await tracker.apply_allowance(organization_id, employee_id, "transport", 2026, CAP, CAP)
        next_year = await tracker.apply_allowance(organization_id, employee_id, "transport", 2027, Decimal("1000"), CAP)
        other = await tracker.apply_allowance(organization_id, other_id, "transport", 2026, Decimal("1000"), CAP)

        assert next_year.applied_amount == Decimal("1000")
        assert other.applied_amount == Decimal("1000")

    async def test_release_gives_usage_back(self, session, tracker, organization_id):
        employee_id = uuid4()
        await tracker.apply_allowance(organization_id, employee_id, "transport", 2026, Decimal("3000"), CAP)

        await tracker.release_allowance(employee_id, "transport", 2026, Decimal("1000"))

        used, remaining = await usage_row(session, employee_id)
        assert used == Decimal("2000")
        assert remaining == Decimal("8016")

    async def test_concurrent_sessions_never_exceed_cap(self, session_factory, organization_id):
        employee_id = uuid4()
        locks = KeyedLocks()

        async def apply(requested):
            async with session_factory() as session, session.begin():
                return await AllowanceTracker(session, locks).apply_allowance(
                    organization_id, employee_id, "transport", 2026, requested, CAP
                )

        applications = await asyncio.gather(apply(Decimal("6000")), apply(Decimal("6000")))

        assert sorted(a.applied_amount for a in applications) == [Decimal("4016"), Decimal("6000")]
        assert sorted(a.excess_amount for a in applications) == [Decimal("0"), Decimal("1984")]
        async with session_factory() as session:
            used, remaining = await usage_row(session, employee_id)
        assert used == CAP
        assert remaining == Decimal("0")
        assert len(locks) == 0

    async def test_release_without_usage_is_a_no_op(self, tracker):
        await tracker.release_allowance(uuid4(), "transport", 2026, Decimal("1000"))


class TestAllowanceLookup:
    async def test_effective_allowance(self, session, tracker, organization_id):
        session.add_all(
            [
                Allowance(
                    organization_id=organization_id,
                    allowance_type="transport",
                    allowance_name="Transport 2025",
                    amount=Decimal("9000"),
                    effective_from=date(2025, 1, 1),
                    effective_to=date(2025, 12, 31),
                ),
                Allowance(
                    organization_id=organization_id,
                    allowance_type="transport",
                    allowance_name="Transport 2026",
                    amount=CAP,
                    effective_from=date(2026, 1, 1),
                ),
            ]
        )
        await session.flush()

        allowance = await tracker.get_allowance(organization_id, "transport", date(2026, 1, 31))
        assert allowance.allowance_name == "Transport 2026"
        assert await tracker.get_allowance(organization_id, "meal", date(2026, 1, 31)) is None

    def test_fixed_cap(self):
        allowance = SimpleNamespace(allowance_type="transport", amount_type="fixed", amount=CAP, is_tax_free=True)
        assert AllowanceTracker.to_spec(allowance, Decimal("72000")).cap == CAP

    def test_percentage_cap_uses_annual_salary(self):
        allowance = SimpleNamespace(
            allowance_type="vacation", amount_type="percentage", amount=Decimal("0.05"), is_tax_free=False
        )
        spec = AllowanceTracker.to_spec(allowance, Decimal("72000"))

        assert spec.cap == Decimal("3600.00")
        assert spec.is_tax_free is False


class TestKeyedLocks:
    """Per-key serialization without keeping idle locks."""

    async def test_lock_released_key_is_dropped(self):
        locks = KeyedLocks()

        async with locks.hold(("emp", "transport", 2026)):
            assert len(locks) == 1

        assert len(locks) == 0

    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        order = []
        entered = asyncio.Event()

        async def first():
            async with locks.hold("key"):
                entered.set()
                await asyncio.sleep(0.01)
                order.append("first")

        async def second():
            await entered.wait()
            async with locks.hold("key"):
                order.append("second")

        await asyncio.gather(first(), second())

        assert order == ["first", "second"]
        assert len(locks) == 0

    async def test_lock_dropped_after_error(self):
        locks = KeyedLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("key"):
                raise RuntimeError("boom")

        assert len(locks) == 0
