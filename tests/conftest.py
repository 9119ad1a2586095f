"""Pytest fixtures for pay structure engine tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from paystructure_engine.calculators.types import (
    CompensationSnapshot,
    EmployeeSnapshot,
    TimeSummary,
)
from paystructure_engine.config import Settings
from paystructure_engine.database import build_session_factory
from paystructure_engine.events import EventEmitter
from paystructure_engine.models import (
    Allowance,
    Base,
    CurrencyApprovalRule,
    ExchangeRate,
    OrganizationCurrencyConfig,
)
from paystructure_engine.services.tax_rule_service import BracketInput, TaxRuleService
from paystructure_engine.services.template_service import TemplateService

PERIOD_START = date(2026, 1, 1)
PERIOD_END = date(2026, 1, 31)
PAY_DATE = date(2026, 2, 1)

WAGE_TAX_BRACKETS = [
    BracketInput(Decimal("0"), Decimal("3500"), Decimal("8")),
    BracketInput(Decimal("3500"), Decimal("7000"), Decimal("18")),
    BracketInput(Decimal("7000"), None, Decimal("28")),
]


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paystructure.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        engine_version="test",
        worker_pool_size=1,
        exchange_rate_timeout_seconds=5.0,
        approval_expiration_hours=72,
        division_epsilon=Decimal("0.000001"),
        default_base_currency="SRD",
    )


@pytest.fixture
def organization_id() -> UUID:
    return uuid4()


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def captured_events(emitter):
    events = []
    emitter.on_all(events.append)
    return events


# ===== Collaborator fakes =====


class FakeDirectory:
    def __init__(self, employees=()):
        self.employees: dict[UUID, EmployeeSnapshot] = {e.employee_id: e for e in employees}

    def add(self, employee: EmployeeSnapshot) -> EmployeeSnapshot:
        self.employees[employee.employee_id] = employee
        return employee

    async def list_employees(self, organization_id, period_start, period_end):
        return [e for e in self.employees.values() if e.organization_id == organization_id]

    async def get_employee(self, organization_id, employee_id):
        employee = self.employees.get(employee_id)
        if employee is None or employee.organization_id != organization_id:
            return None
        return employee


class FakeTimeProvider:
    def __init__(self):
        self.summaries: dict[UUID, TimeSummary] = {}
        self.unavailable_for: set[UUID] = set()

    async def get_time_summary(self, organization_id, employee_id, period_start, period_end):
        if employee_id in self.unavailable_for:
            raise RuntimeError("time service unavailable")
        return self.summaries.get(employee_id, TimeSummary())


class FakeCompensationProvider:
    def __init__(self):
        self.records: dict[UUID, CompensationSnapshot] = {}

    def set_salary(self, employee_id: UUID, base_salary: str) -> None:
        self.records[employee_id] = CompensationSnapshot(base_salary=Decimal(base_salary))

    async def get_compensation(self, organization_id, employee_id, as_of_date):
        return self.records.get(employee_id, CompensationSnapshot())


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def time_provider() -> FakeTimeProvider:
    return FakeTimeProvider()


@pytest.fixture
def compensation_provider() -> FakeCompensationProvider:
    return FakeCompensationProvider()


# ===== Seed data =====


@dataclass
class StandardSetup:
    """Organization with a published default template and wage tax."""

    organization_id: UUID
    template_id: UUID
    tax_rule_set_id: UUID
    component_ids: dict[str, UUID] = field(default_factory=dict)


async def seed_standard_structure(
    session: AsyncSession,
    organization_id: UUID,
    calculation_mode: str = "proportional_distribution",
) -> StandardSetup:
    """Default monthly template in SRD.

    BASE      earning, the employee's base salary
    BONUS     earning, IF(base_salary > 5000, 15%, 10%)
    TRANSPORT earning, 1000 per period against a tax-free allowance
    WAGE_TAX  tax on BASE + BONUS, brackets 8/18/28
    PENSION   deduction, 4% of base salary
    """
    session.add(OrganizationCurrencyConfig(organization_id=organization_id, base_currency="SRD"))
    session.add(
        Allowance(
            organization_id=organization_id,
            allowance_type="transport",
            allowance_name="Transport allowance",
            amount_type="fixed",
            amount=Decimal("10016"),
            is_tax_free=True,
            effective_from=date(2026, 1, 1),
        )
    )
    rule_set = await TaxRuleService(session).create_rule_set(
        organization_id,
        jurisdiction="SR",
        tax_type="wage_tax",
        tax_name="Wage tax",
        brackets=WAGE_TAX_BRACKETS,
        effective_from=date(2026, 1, 1),
        calculation_mode=calculation_mode,
    )

    service = TemplateService(session)
    template = await service.create_template(
        organization_id,
        "STD",
        "Standard monthly",
        "SRD",
        effective_from=date(2026, 1, 1),
        is_organization_default=True,
    )
    components = {}
    components["BASE"] = await service.add_component(
        template.id, "BASE", "Base salary", "earning", "external",
        {"variable": "base_salary"}, sequence_order=10,
    )
    components["BONUS"] = await service.add_component(
        template.id, "BONUS", "Performance bonus", "earning", "formula",
        {"expression": "IF(base_salary > 5000, base_salary * 0.15, base_salary * 0.10)"},
        sequence_order=20, depends_on=["BASE"],
    )
    components["TRANSPORT"] = await service.add_component(
        template.id, "TRANSPORT", "Transport", "earning", "fixed",
        {"amount": "1000"}, sequence_order=30, allowance_type="transport",
    )
    components["WAGE_TAX"] = await service.add_component(
        template.id, "WAGE_TAX", "Wage tax", "tax", "external",
        {}, sequence_order=100, depends_on=["BASE", "BONUS", "TRANSPORT"], tax_type="wage_tax",
    )
    components["PENSION"] = await service.add_component(
        template.id, "PENSION", "Pension", "deduction", "percentage",
        {"percentage": "0.04", "percentage_of": "base_salary"}, sequence_order=110,
    )
    await service.publish_template(template.id)

    return StandardSetup(
        organization_id=organization_id,
        template_id=template.id,
        tax_rule_set_id=rule_set.id,
        component_ids={code: c.id for code, c in components.items()},
    )


@pytest_asyncio.fixture
async def standard_setup(session_factory, organization_id) -> StandardSetup:
    async with session_factory() as session, session.begin():
        return await seed_standard_structure(session, organization_id)


def utc(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def add_rate(session: AsyncSession, organization_id: UUID, pair: str, rate: str, effective_from=None, effective_to=None):
    from_currency, to_currency = pair.split("->")
    row = ExchangeRate(
        organization_id=organization_id,
        from_currency=from_currency,
        to_currency=to_currency,
        rate=Decimal(rate),
        effective_from=effective_from or utc(2026, 1, 1),
        effective_to=effective_to,
    )
    session.add(row)
    return row


def add_threshold_rule(
    session: AsyncSession,
    organization_id: UUID,
    threshold: str,
    currencies=(),
    required_approvals: int = 1,
    priority: int = 0,
    approver_user_ids=(),
    rule_name: str = "large conversions",
):
    rule = CurrencyApprovalRule(
        organization_id=organization_id,
        rule_name=rule_name,
        rule_type="conversion_threshold",
        threshold_amount=Decimal(threshold),
        currencies=list(currencies),
        required_approvals=required_approvals,
        approver_user_ids=[str(u) for u in approver_user_ids],
        priority=priority,
    )
    session.add(rule)
    return rule


def employee(organization_id: UUID, **kwargs) -> EmployeeSnapshot:
    return EmployeeSnapshot(employee_id=kwargs.pop("employee_id", uuid4()), organization_id=organization_id, **kwargs)
