"""Payroll run orchestration: fan-out, per-employee isolation and lifecycle."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paystructure_engine.calculators.allowance_tracker import AllowanceTracker, KeyedLocks
from paystructure_engine.calculators.engine import PaycheckCalculator, PaycheckContext
from paystructure_engine.calculators.line_builder import LineItemBuilder
from paystructure_engine.calculators.types import EmployeeSnapshot, PaycheckResult
from paystructure_engine.collaborators import (
    CompensationProvider,
    EmployeeDirectory,
    TimeDataProvider,
)
from paystructure_engine.config import Settings, get_settings
from paystructure_engine.events import (
    EventEmitter,
    EventMetadata,
    PaycheckCalculated,
    PaycheckFailed,
    PayrollRunCalculated,
)
from paystructure_engine.exceptions import (
    ApprovalRequired,
    NoExchangeRate,
    PayrollCalculationError,
)
from paystructure_engine.models import (
    FormulaExecutionLog,
    Paycheck,
    PayrollRun,
    PayrollRunComponent,
    utc_now,
)
from paystructure_engine.services.approval_service import ApprovalService
from paystructure_engine.services.state_machine import (
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
UNFINISHED_STATUSES = ("pending", "failed", "suspended")


class EmployeeOutcomeStatus:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING_APPROVAL = "pending_approval"
    PENDING_RATE = "pending_rate"


@dataclass(frozen=True)
class EmployeeOutcome:
    """Result of one employee's calculation within a pass."""

    employee_id: UUID
    paycheck_id: UUID
    status: str
    error_kind: str | None = None
    component_code: str | None = None
    message: str | None = None
    approval_request_id: UUID | None = None
    notices: tuple[str, ...] = ()


@dataclass
class RunSummary:
    """What a calculation pass did, per employee and in total."""

    payroll_run_id: UUID
    status: str
    outcomes: list[EmployeeOutcome] = field(default_factory=list)
    total_gross: Decimal = ZERO
    total_net: Decimal = ZERO
    total_taxes: Decimal = ZERO
    cancelled: bool = False

    def with_status(self, status: str) -> list[EmployeeOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> int:
        return len(self.with_status(EmployeeOutcomeStatus.SUCCEEDED))

    @property
    def failed(self) -> int:
        return len(self.with_status(EmployeeOutcomeStatus.FAILED))

    @property
    def suspended(self) -> int:
        return len(self.outcomes) - self.succeeded - self.failed


class RunTotals:
    """Run totals, accumulated by concurrent employee tasks.

    A pass starts from the paychecks it does not recalculate and adds each
    paycheck it calculates.
    """

    def __init__(self, gross: Decimal = ZERO, net: Decimal = ZERO, taxes: Decimal = ZERO) -> None:
        self._lock = asyncio.Lock()
        self.gross = gross
        self.net = net
        self.taxes = taxes

    async def add(self, result: PaycheckResult) -> None:
        async with self._lock:
            self.gross += result.gross_pay
            self.net += result.net_pay
            self.taxes += result.total_taxes


@dataclass(frozen=True)
class _PassInfo:
    organization_id: UUID
    payroll_run_id: UUID
    period_start: date
    period_end: date


class PayrollRunService:
    """Lifecycle and calculation of payroll runs.

    Operations:
    - create_run: new draft run for a pay period
    - calculate_run: calculate every employee (draft or calculated run)
    - recalculate_run: recalculate all, or only unfinished paychecks
    - resume_run: continue a run left calculating by suspended paychecks
    - approve_run / start_processing / mark_processed / cancel_run

    Each employee is calculated in its own task, session and transaction,
    with at most WORKER_POOL_SIZE running at once. One employee's failure
    is recorded on its paycheck and never affects the others. Paycheck and
    line ids are derived from their natural keys, so recalculating with
    the same inputs rewrites identical rows.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        directory: EmployeeDirectory,
        time_provider: TimeDataProvider,
        compensation_provider: CompensationProvider,
        emitter: EventEmitter | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.directory = directory
        self.time_provider = time_provider
        self.compensation_provider = compensation_provider
        self.emitter = emitter or EventEmitter()
        self.settings = settings or get_settings()
        self.allowance_locks = KeyedLocks()
        self._active: dict[UUID, asyncio.Event] = {}
        self._cancel_reasons: dict[UUID, str] = {}

    @staticmethod
    def paycheck_id(payroll_run_id: UUID, employee_id: UUID) -> UUID:
        """Deterministic paycheck id for (run, employee)."""
        data = json.dumps(
            {"payroll_run_id": str(payroll_run_id), "employee_id": str(employee_id)},
            sort_keys=True,
        )
        return UUID(bytes=hashlib.sha256(data.encode()).digest()[:16])

    # ===== Queries =====

    async def get_run(self, organization_id: UUID, payroll_run_id: UUID) -> PayrollRun:
        async with self.session_factory() as session:
            return await self._load_run(session, organization_id, payroll_run_id)

    async def list_paychecks(self, organization_id: UUID, payroll_run_id: UUID) -> list[Paycheck]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Paycheck)
                .where(
                    Paycheck.organization_id == organization_id,
                    Paycheck.payroll_run_id == payroll_run_id,
                )
                .order_by(Paycheck.employee_id)
            )
            return list(result.scalars().all())

    async def get_paycheck_lines(self, organization_id: UUID, paycheck_id: UUID) -> list[PayrollRunComponent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PayrollRunComponent)
                .where(
                    PayrollRunComponent.organization_id == organization_id,
                    PayrollRunComponent.paycheck_id == paycheck_id,
                )
                .order_by(PayrollRunComponent.line_number)
            )
            return list(result.scalars().all())

    # ===== Lifecycle =====

    async def create_run(
        self,
        organization_id: UUID,
        run_name: str,
        period_start: date,
        period_end: date,
        pay_date: date,
        employee_scope: Iterable[UUID] | None = None,
    ) -> PayrollRun:
        if period_end < period_start:
            raise ValueError("period_end precedes period_start")
        async with self.session_factory() as session, session.begin():
            run = PayrollRun(
                organization_id=organization_id,
                run_name=run_name,
                period_start=period_start,
                period_end=period_end,
                pay_date=pay_date,
                status=PayrollRunStatus.DRAFT.value,
                employee_scope=[str(e) for e in employee_scope] if employee_scope is not None else None,
            )
            session.add(run)
            await session.flush()
        logger.info("Created payroll run %s for %s..%s", run.id, period_start, period_end)
        return run

    async def calculate_run(self, organization_id: UUID, payroll_run_id: UUID) -> RunSummary:
        """Calculate every employee in scope."""
        return await self._calculate(organization_id, payroll_run_id, resume=False, only_unfinished=False)

    async def recalculate_run(
        self,
        organization_id: UUID,
        payroll_run_id: UUID,
        only_failed: bool = False,
    ) -> RunSummary:
        """Recalculate a calculated run; optionally only failed or suspended paychecks."""
        return await self._calculate(organization_id, payroll_run_id, resume=False, only_unfinished=only_failed)

    async def resume_run(self, organization_id: UUID, payroll_run_id: UUID) -> RunSummary:
        """Recalculate pending, suspended and failed paychecks of a calculating run."""
        return await self._calculate(organization_id, payroll_run_id, resume=True, only_unfinished=True)

    async def approve_run(
        self,
        organization_id: UUID,
        payroll_run_id: UUID,
        approved_by: UUID | None = None,
    ) -> PayrollRun:
        async with self.session_factory() as session, session.begin():
            run = await self._load_run(session, organization_id, payroll_run_id)
            statuses = (
                await session.execute(
                    select(Paycheck.calculation_status).where(Paycheck.payroll_run_id == run.id)
                )
            ).scalars().all()
            errors = PayrollRunStateMachine.validate_run_for_transition(
                run, PayrollRunStatus.APPROVED.value, list(statuses)
            )
            if errors:
                raise InvalidTransitionError(run.status, PayrollRunStatus.APPROVED.value, "; ".join(errors))
            run.status = PayrollRunStatus.APPROVED.value
            run.approved_at = utc_now()
            run.approved_by = approved_by
        logger.info("Approved payroll run %s", payroll_run_id)
        return run

    async def start_processing(self, organization_id: UUID, payroll_run_id: UUID) -> PayrollRun:
        return await self._transition(organization_id, payroll_run_id, PayrollRunStatus.PROCESSING.value)

    async def mark_processed(self, organization_id: UUID, payroll_run_id: UUID) -> PayrollRun:
        return await self._transition(organization_id, payroll_run_id, PayrollRunStatus.PROCESSED.value)

    async def cancel_run(
        self,
        organization_id: UUID,
        payroll_run_id: UUID,
        reason: str,
    ) -> PayrollRun | None:
        """Cancel a run.

        A run calculating in this process stops spawning employee tasks and
        is cancelled when in-flight tasks finish; None is returned then.
        """
        if not reason:
            raise InvalidTransitionError("*", PayrollRunStatus.CANCELLED.value, "Cancel requires a reason")

        active = self._active.get(payroll_run_id)
        if active is not None:
            self._cancel_reasons[payroll_run_id] = reason
            active.set()
            logger.info("Cancellation requested for calculating run %s", payroll_run_id)
            return None

        return await self._transition(
            organization_id, payroll_run_id, PayrollRunStatus.CANCELLED.value, cancel_reason=reason
        )

    # ===== Calculation =====

    async def _calculate(
        self,
        organization_id: UUID,
        payroll_run_id: UUID,
        resume: bool,
        only_unfinished: bool,
    ) -> RunSummary:
        if payroll_run_id in self._active:
            raise InvalidTransitionError(
                PayrollRunStatus.CALCULATING.value,
                PayrollRunStatus.CALCULATING.value,
                "a calculation pass is already running",
            )
        cancel = asyncio.Event()
        self._active[payroll_run_id] = cancel
        try:
            info, targets, totals = await self._start_pass(organization_id, payroll_run_id, resume, only_unfinished)
            logger.info(
                "Calculating run %s: %d employee(s), pool size %d",
                payroll_run_id,
                len(targets),
                self.settings.worker_pool_size,
            )

            semaphore = asyncio.Semaphore(self.settings.worker_pool_size)
            tasks: list[asyncio.Task[EmployeeOutcome]] = []
            for employee in targets:
                await semaphore.acquire()
                if cancel.is_set():
                    semaphore.release()
                    break
                tasks.append(asyncio.create_task(self._run_employee(info, employee, semaphore, totals)))
            outcomes = list(await asyncio.gather(*tasks))

            return await self._finish_pass(info, outcomes, totals, cancel.is_set())
        finally:
            self._active.pop(payroll_run_id, None)
            self._cancel_reasons.pop(payroll_run_id, None)

    async def _start_pass(
        self,
        organization_id: UUID,
        payroll_run_id: UUID,
        resume: bool,
        only_unfinished: bool,
    ) -> tuple[_PassInfo, list[EmployeeSnapshot], RunTotals]:
        async with self.session_factory() as session, session.begin():
            run = await self._load_run(session, organization_id, payroll_run_id)
            if resume:
                if run.status != PayrollRunStatus.CALCULATING.value:
                    raise InvalidTransitionError(run.status, PayrollRunStatus.CALCULATING.value, "run is not resumable")
            else:
                PayrollRunStateMachine.validate_transition(run.status, PayrollRunStatus.CALCULATING.value)
                run.status = PayrollRunStatus.CALCULATING.value
            run.calculation_count += 1

            info = _PassInfo(organization_id, run.id, run.period_start, run.period_end)
            employees = await self._employees_in_scope(run)

            existing = dict(
                (
                    await session.execute(
                        select(Paycheck.employee_id, Paycheck.calculation_status).where(
                            Paycheck.payroll_run_id == run.id
                        )
                    )
                ).all()
            )
            for employee in employees:
                if employee.employee_id not in existing:
                    session.add(
                        Paycheck(
                            id=self.paycheck_id(run.id, employee.employee_id),
                            payroll_run_id=run.id,
                            organization_id=organization_id,
                            employee_id=employee.employee_id,
                            calculation_status="pending",
                        )
                    )
                    existing[employee.employee_id] = "pending"

            if only_unfinished:
                employees = [e for e in employees if existing[e.employee_id] in UNFINISHED_STATUSES]

            carried = select(
                func.coalesce(func.sum(Paycheck.gross_pay), 0),
                func.coalesce(func.sum(Paycheck.net_pay), 0),
                func.coalesce(func.sum(Paycheck.total_taxes), 0),
            ).where(
                Paycheck.payroll_run_id == run.id,
                Paycheck.calculation_status == "calculated",
            )
            if employees:
                carried = carried.where(Paycheck.employee_id.not_in([e.employee_id for e in employees]))
            gross, net, taxes = (Decimal(str(v)) for v in (await session.execute(carried)).one())

        return info, employees, RunTotals(gross, net, taxes)

    async def _employees_in_scope(self, run: PayrollRun) -> list[EmployeeSnapshot]:
        employees = await self.directory.list_employees(run.organization_id, run.period_start, run.period_end)
        scope = {UUID(str(e)) for e in run.employee_scope} if run.employee_scope is not None else None
        selected = [
            e
            for e in employees
            if e.organization_id == run.organization_id
            and (scope is None or e.employee_id in scope)
            and e.is_employed_during(run.period_start, run.period_end)
        ]
        return sorted(selected, key=lambda e: str(e.employee_id))

    async def _run_employee(
        self,
        info: _PassInfo,
        employee: EmployeeSnapshot,
        semaphore: asyncio.Semaphore,
        totals: RunTotals,
    ) -> EmployeeOutcome:
        paycheck_id = self.paycheck_id(info.payroll_run_id, employee.employee_id)
        try:
            time_summary = await self.time_provider.get_time_summary(
                info.organization_id, employee.employee_id, info.period_start, info.period_end
            )
            compensation = await self.compensation_provider.get_compensation(
                info.organization_id, employee.employee_id, info.period_end
            )
            context = PaycheckContext(
                organization_id=info.organization_id,
                payroll_run_id=info.payroll_run_id,
                paycheck_id=paycheck_id,
                period_start=info.period_start,
                period_end=info.period_end,
                employee=employee,
                time_summary=time_summary,
                compensation=compensation,
            )
            async with self.session_factory() as session:
                async with session.begin():
                    result = await self._calculate_paycheck(session, context)

            await totals.add(result)
            logger.info(
                "Paycheck %s calculated: gross %s net %s", paycheck_id, result.gross_pay, result.net_pay
            )
            self.emitter.emit(
                PaycheckCalculated(
                    metadata=EventMetadata.create(info.organization_id, correlation_id=info.payroll_run_id),
                    payroll_run_id=info.payroll_run_id,
                    paycheck_id=paycheck_id,
                    employee_id=employee.employee_id,
                    gross_pay=result.gross_pay,
                    net_pay=result.net_pay,
                    total_taxes=result.total_taxes,
                    line_count=len(result.lines),
                )
            )
            return EmployeeOutcome(
                employee.employee_id,
                paycheck_id,
                EmployeeOutcomeStatus.SUCCEEDED,
                notices=tuple(n.kind for n in result.notices),
            )

        except ApprovalRequired as e:
            request_id = e.request_id
            if request_id is None and e.pending is not None:
                request_id = await self._open_approval(e.pending)
            logger.warning("Paycheck %s suspended pending approval %s", paycheck_id, request_id)
            return await self._record_unfinished(
                info, employee, paycheck_id, "suspended", EmployeeOutcomeStatus.PENDING_APPROVAL, e, request_id
            )
        except NoExchangeRate as e:
            logger.warning("Paycheck %s suspended: %s", paycheck_id, e)
            return await self._record_unfinished(
                info, employee, paycheck_id, "suspended", EmployeeOutcomeStatus.PENDING_RATE, e
            )
        except PayrollCalculationError as e:
            logger.warning("Paycheck %s failed (%s): %s", paycheck_id, e.kind, e)
            return await self._record_unfinished(
                info, employee, paycheck_id, "failed", EmployeeOutcomeStatus.FAILED, e
            )
        except Exception as e:
            logger.exception("Unexpected error calculating paycheck %s", paycheck_id)
            return await self._record_unfinished(
                info, employee, paycheck_id, "failed", EmployeeOutcomeStatus.FAILED, e
            )
        finally:
            semaphore.release()

    async def _calculate_paycheck(self, session: AsyncSession, context: PaycheckContext) -> PaycheckResult:
        """Replace a paycheck's lines with a fresh calculation, in one transaction."""
        await self._clear_paycheck(session, context.paycheck_id, context.organization_id, context.employee_id)

        calculator = PaycheckCalculator(session, self.settings, self.allowance_locks)
        result = await calculator.calculate(context)

        rows = []
        for number, line in enumerate(result.lines, start=1):
            rows.append(
                PayrollRunComponent(
                    id=LineItemBuilder.line_id(context.paycheck_id, number),
                    payroll_run_id=context.payroll_run_id,
                    paycheck_id=context.paycheck_id,
                    organization_id=context.organization_id,
                    employee_id=context.employee_id,
                    line_number=number,
                    component_code=line.component_code,
                    component_name=line.component_name[:100],
                    component_category=line.category.value,
                    line_type=line.line_type.value,
                    line_role=line.line_role.value,
                    attributed_to=line.attributed_to,
                    units=line.units,
                    rate=line.rate,
                    amount=line.amount,
                    component_currency=line.component_currency,
                    original_amount=line.original_amount,
                    converted_amount=abs(line.amount) if line.conversion_id else None,
                    conversion_id=line.conversion_id,
                    exchange_rate_used=line.exchange_rate_used,
                    is_taxable=line.is_taxable,
                    tax_category=line.tax_category,
                    template_id=result.template_id,
                    structure_template_version=result.template_version,
                    component_config_snapshot=line.config_snapshot,
                    calculation_metadata=line.metadata,
                    line_hash=LineItemBuilder.compute_line_hash(line),
                )
            )
        session.add_all(rows)

        session.add_all(
            FormulaExecutionLog(
                organization_id=context.organization_id,
                payroll_run_id=context.payroll_run_id,
                paycheck_id=context.paycheck_id,
                employee_id=context.employee_id,
                component_code=execution.component_code,
                formula_id=execution.formula_id,
                expression=execution.expression,
                input_variables=execution.input_variables,
                calculated_result=execution.result,
                execution_time_ms=execution.execution_time_ms,
            )
            for execution in result.formula_executions
        )

        await session.execute(
            update(Paycheck)
            .where(Paycheck.id == context.paycheck_id)
            .values(
                calculation_status="calculated",
                gross_pay=result.gross_pay,
                net_pay=result.net_pay,
                taxable_income=result.taxable_income,
                tax_free_allowance=result.tax_free_allowance,
                total_taxes=result.total_taxes,
                total_deductions=result.total_deductions,
                base_currency=result.base_currency,
                payment_currency=result.payment_currency,
                net_pay_payment_currency=result.net_pay_payment_currency,
                exchange_rate_used=result.exchange_rate_used,
                conversion_id=result.conversion_id,
                template_id=result.template_id,
                structure_template_version=result.template_version,
                error_kind=None,
                error_component=None,
                error_message=None,
                approval_request_id=None,
                calculated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.flush()
        return result

    async def _clear_paycheck(
        self,
        session: AsyncSession,
        paycheck_id: UUID,
        organization_id: UUID,
        employee_id: UUID,
    ) -> None:
        """Drop previous lines and give back the allowance usage they consumed."""
        previous = await session.execute(
            select(PayrollRunComponent.calculation_metadata).where(
                PayrollRunComponent.paycheck_id == paycheck_id,
                PayrollRunComponent.line_role == "primary",
            )
        )
        tracker = AllowanceTracker(session, self.allowance_locks)
        for (metadata,) in previous.all():
            if metadata and metadata.get("allowance_type") and metadata.get("allowance_applied"):
                await tracker.release_allowance(
                    employee_id,
                    metadata["allowance_type"],
                    int(metadata["calendar_year"]),
                    Decimal(metadata["allowance_applied"]),
                )

        await session.execute(delete(PayrollRunComponent).where(PayrollRunComponent.paycheck_id == paycheck_id))
        await session.execute(delete(FormulaExecutionLog).where(FormulaExecutionLog.paycheck_id == paycheck_id))

    async def _open_approval(self, pending) -> UUID:
        async with self.session_factory() as session, session.begin():
            request = await ApprovalService(session, self.emitter).open_request(pending)
            return request.id

    async def _record_unfinished(
        self,
        info: _PassInfo,
        employee: EmployeeSnapshot,
        paycheck_id: UUID,
        calculation_status: str,
        outcome_status: str,
        error: Exception,
        approval_request_id: UUID | None = None,
    ) -> EmployeeOutcome:
        kind = error.kind if isinstance(error, PayrollCalculationError) else "internal_error"
        component_code = error.component_code if isinstance(error, PayrollCalculationError) else None
        message = str(error)

        async with self.session_factory() as session, session.begin():
            await self._clear_paycheck(session, paycheck_id, info.organization_id, employee.employee_id)
            await session.execute(
                update(Paycheck)
                .where(Paycheck.id == paycheck_id)
                .values(
                    calculation_status=calculation_status,
                    gross_pay=ZERO,
                    net_pay=ZERO,
                    taxable_income=ZERO,
                    tax_free_allowance=ZERO,
                    total_taxes=ZERO,
                    total_deductions=ZERO,
                    net_pay_payment_currency=None,
                    conversion_id=None,
                    error_kind=kind,
                    error_component=component_code,
                    error_message=message,
                    approval_request_id=approval_request_id,
                    calculated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )

        self.emitter.emit(
            PaycheckFailed(
                metadata=EventMetadata.create(info.organization_id, correlation_id=info.payroll_run_id),
                payroll_run_id=info.payroll_run_id,
                paycheck_id=paycheck_id,
                employee_id=employee.employee_id,
                calculation_status=calculation_status,
                error_kind=kind,
                component_code=component_code,
                message=message,
            )
        )
        return EmployeeOutcome(
            employee_id=employee.employee_id,
            paycheck_id=paycheck_id,
            status=outcome_status,
            error_kind=kind,
            component_code=component_code,
            message=message,
            approval_request_id=approval_request_id,
        )

    async def _finish_pass(
        self,
        info: _PassInfo,
        outcomes: list[EmployeeOutcome],
        totals: RunTotals,
        cancelled: bool,
    ) -> RunSummary:
        """Persist run totals and leave calculating when nothing is unresolved."""
        async with self.session_factory() as session, session.begin():
            counts = dict(
                (
                    await session.execute(
                        select(Paycheck.calculation_status, func.count())
                        .where(Paycheck.payroll_run_id == info.payroll_run_id)
                        .group_by(Paycheck.calculation_status)
                    )
                ).all()
            )
            total_gross, total_net, total_taxes = (
                LineItemBuilder.round_to_cents(v) for v in (totals.gross, totals.net, totals.taxes)
            )

            values: dict = {
                "total_gross": total_gross,
                "total_net": total_net,
                "total_taxes": total_taxes,
            }
            unresolved = counts.get("pending", 0) + counts.get("suspended", 0)
            if cancelled:
                new_status = PayrollRunStatus.CANCELLED.value
                values.update(
                    cancelled_at=utc_now(),
                    cancel_reason=self._cancel_reasons.pop(info.payroll_run_id, "cancelled during calculation"),
                )
            elif unresolved:
                new_status = PayrollRunStatus.CALCULATING.value
            else:
                new_status = PayrollRunStatus.CALCULATED.value
                values["calculated_at"] = utc_now()

            result = await session.execute(
                update(PayrollRun)
                .where(
                    PayrollRun.id == info.payroll_run_id,
                    PayrollRun.status == PayrollRunStatus.CALCULATING.value,
                )
                .values(status=new_status, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidTransitionError(
                    PayrollRunStatus.CALCULATING.value, new_status, "run changed during calculation"
                )

        summary = RunSummary(
            payroll_run_id=info.payroll_run_id,
            status=new_status,
            outcomes=outcomes,
            total_gross=total_gross,
            total_net=total_net,
            total_taxes=total_taxes,
            cancelled=cancelled,
        )
        logger.info(
            "Run %s pass finished: %s (%d ok, %d failed, %d suspended)",
            info.payroll_run_id,
            new_status,
            summary.succeeded,
            summary.failed,
            summary.suspended,
        )
        self.emitter.emit(
            PayrollRunCalculated(
                metadata=EventMetadata.create(info.organization_id, correlation_id=info.payroll_run_id),
                payroll_run_id=info.payroll_run_id,
                status=new_status,
                succeeded=summary.succeeded,
                failed=summary.failed,
                suspended=summary.suspended,
                total_gross=total_gross,
                total_net=total_net,
                total_taxes=total_taxes,
            )
        )
        return summary

    # ===== Helpers =====

    async def _load_run(self, session: AsyncSession, organization_id: UUID, payroll_run_id: UUID) -> PayrollRun:
        result = await session.execute(
            select(PayrollRun).where(
                PayrollRun.id == payroll_run_id,
                PayrollRun.organization_id == organization_id,
            )
        )
        run = result.scalar_one_or_none()
        if run is None:
            raise ValueError(f"Payroll run {payroll_run_id} not found")
        return run

    async def _transition(
        self,
        organization_id: UUID,
        payroll_run_id: UUID,
        to_status: str,
        cancel_reason: str | None = None,
    ) -> PayrollRun:
        async with self.session_factory() as session, session.begin():
            run = await self._load_run(session, organization_id, payroll_run_id)
            PayrollRunStateMachine.validate_transition(run.status, to_status)
            run.status = to_status
            if to_status == PayrollRunStatus.PROCESSED.value:
                run.processed_at = utc_now()
            elif to_status == PayrollRunStatus.CANCELLED.value:
                run.cancelled_at = utc_now()
                run.cancel_reason = cancel_reason
        logger.info("Payroll run %s -> %s", payroll_run_id, to_status)
        return run
