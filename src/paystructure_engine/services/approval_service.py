"""Currency approval request workflow."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paystructure_engine.calculators.types import PendingApproval
from paystructure_engine.events import (
    ApprovalExpired,
    ApprovalGranted,
    ApprovalRejected,
    ApprovalRequested,
    EventEmitter,
    EventMetadata,
)
from paystructure_engine.exceptions import ApprovalStateError
from paystructure_engine.models import (
    CurrencyApprovalAction,
    CurrencyApprovalRequest,
    as_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("approved", "rejected", "cancelled", "expired")


class ApprovalService:
    """Opens and resolves currency approval requests.

    Request lifecycle: pending → approved | rejected | cancelled | expired.
    Every status except pending is terminal. A request becomes approved
    when ``current_approvals`` reaches ``required_approvals``; approvals
    are counted with a conditional UPDATE so concurrent approvers cannot
    over-count.

    Rules:
    - the requester cannot approve their own request
    - an approver counts once per request
    - a non-empty approver list restricts who may approve
    """

    def __init__(self, session: AsyncSession, emitter: EventEmitter | None = None):
        self.session = session
        self.emitter = emitter or EventEmitter()

    async def get_request(self, request_id: UUID) -> CurrencyApprovalRequest:
        request = await self.session.get(CurrencyApprovalRequest, request_id)
        if request is None:
            raise ApprovalStateError(request_id, "not found")
        return request

    async def find_by_reference(
        self,
        organization_id: UUID,
        reference_key: str,
    ) -> CurrencyApprovalRequest | None:
        result = await self.session.execute(
            select(CurrencyApprovalRequest).where(
                CurrencyApprovalRequest.organization_id == organization_id,
                CurrencyApprovalRequest.reference_key == reference_key,
            )
        )
        return result.scalar_one_or_none()

    async def open_request(self, pending: PendingApproval) -> CurrencyApprovalRequest:
        """Persist a pending request; returns the existing one for a known reference."""
        existing = await self.find_by_reference(pending.organization_id, pending.reference_key)
        if existing is not None:
            return existing

        request = CurrencyApprovalRequest(
            organization_id=pending.organization_id,
            request_type=pending.request_type,
            rule_id=pending.rule_id,
            status="pending",
            reference_key=pending.reference_key,
            from_currency=pending.from_currency,
            to_currency=pending.to_currency,
            amount=pending.amount,
            proposed_rate=pending.proposed_rate,
            current_rate=pending.current_rate,
            request_payload=dict(pending.payload),
            required_approvals=pending.required_approvals,
            current_approvals=0,
            approver_user_ids=[str(u) for u in pending.approver_user_ids],
            requested_by=pending.requested_by,
            expires_at=pending.expires_at,
        )
        self.session.add(request)
        await self.session.flush()

        logger.info(
            "Opened %s approval request %s (%s) needing %d approval(s)",
            request.request_type,
            request.id,
            request.reference_key,
            request.required_approvals,
        )
        self.emitter.emit(
            ApprovalRequested(
                metadata=EventMetadata.create(pending.organization_id, actor_id=pending.requested_by),
                request_id=request.id,
                request_type=request.request_type,
                reference_key=request.reference_key,
                from_currency=request.from_currency,
                to_currency=request.to_currency,
                amount=request.amount,
                required_approvals=request.required_approvals,
                approver_user_ids=tuple(pending.approver_user_ids),
                expires_at=request.expires_at,
            )
        )
        return request

    async def approve(
        self,
        request_id: UUID,
        approver_user_id: UUID,
        comments: str | None = None,
    ) -> CurrencyApprovalRequest:
        request = await self._pending_request(request_id)

        if request.requested_by is not None and request.requested_by == approver_user_id:
            raise ApprovalStateError(request_id, "requester cannot approve their own request")
        if request.approver_user_ids and str(approver_user_id) not in request.approver_user_ids:
            raise ApprovalStateError(request_id, f"user {approver_user_id} is not an approver")

        already = await self.session.execute(
            select(CurrencyApprovalAction.id).where(
                CurrencyApprovalAction.request_id == request_id,
                CurrencyApprovalAction.action == "approve",
                CurrencyApprovalAction.actor_user_id == approver_user_id,
            )
        )
        if already.first() is not None:
            raise ApprovalStateError(request_id, f"user {approver_user_id} already approved")

        seen = request.current_approvals
        result = await self.session.execute(
            update(CurrencyApprovalRequest)
            .where(
                CurrencyApprovalRequest.id == request_id,
                CurrencyApprovalRequest.status == "pending",
                CurrencyApprovalRequest.current_approvals == seen,
            )
            .values(current_approvals=seen + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ApprovalStateError(request_id, "request changed concurrently, retry")

        self.session.add(
            CurrencyApprovalAction(
                request_id=request_id,
                action="approve",
                actor_user_id=approver_user_id,
                comments=comments,
            )
        )

        approvals = seen + 1
        resolved = approvals >= request.required_approvals
        if resolved:
            await self.session.execute(
                update(CurrencyApprovalRequest)
                .where(CurrencyApprovalRequest.id == request_id)
                .values(status="approved", resolved_at=utc_now())
                .execution_options(synchronize_session=False)
            )
        await self.session.flush()
        await self.session.refresh(request)

        logger.info(
            "Request %s approved by %s (%d/%d)",
            request_id,
            approver_user_id,
            approvals,
            request.required_approvals,
        )
        self.emitter.emit(
            ApprovalGranted(
                metadata=EventMetadata.create(request.organization_id, actor_id=approver_user_id),
                request_id=request_id,
                approver_user_id=approver_user_id,
                current_approvals=approvals,
                required_approvals=request.required_approvals,
                resolved=resolved,
            )
        )
        return request

    async def reject(
        self,
        request_id: UUID,
        actor_user_id: UUID,
        comments: str | None = None,
    ) -> CurrencyApprovalRequest:
        return await self._close(request_id, actor_user_id, "reject", "rejected", comments)

    async def cancel(
        self,
        request_id: UUID,
        actor_user_id: UUID,
        comments: str | None = None,
    ) -> CurrencyApprovalRequest:
        return await self._close(request_id, actor_user_id, "cancel", "cancelled", comments)

    async def expire_stale(self, now: datetime | None = None) -> list[UUID]:
        """Periodic sweep: expire pending requests past their deadline."""
        now = now or utc_now()
        result = await self.session.execute(
            select(CurrencyApprovalRequest).where(
                CurrencyApprovalRequest.status == "pending",
                CurrencyApprovalRequest.expires_at.is_not(None),
                CurrencyApprovalRequest.expires_at <= now,
            )
        )
        expired: list[UUID] = []
        for request in result.scalars().all():
            await self._expire(request, now)
            expired.append(request.id)

        if expired:
            await self.session.flush()
            logger.info("Expired %d stale approval request(s)", len(expired))
        return expired

    async def _pending_request(self, request_id: UUID) -> CurrencyApprovalRequest:
        request = await self.get_request(request_id)
        if request.status != "pending":
            raise ApprovalStateError(request_id, f"request is {request.status}")
        # Expiry itself is written by expire_stale.
        if request.expires_at is not None and as_utc(request.expires_at) <= utc_now():
            raise ApprovalStateError(request_id, "request has expired")
        return request

    async def _close(
        self,
        request_id: UUID,
        actor_user_id: UUID,
        action: str,
        status: str,
        comments: str | None,
    ) -> CurrencyApprovalRequest:
        request = await self._pending_request(request_id)
        request.status = status
        request.resolved_at = utc_now()
        self.session.add(
            CurrencyApprovalAction(
                request_id=request_id,
                action=action,
                actor_user_id=actor_user_id,
                comments=comments,
            )
        )
        await self.session.flush()

        logger.info("Request %s %s by %s", request_id, status, actor_user_id)
        self.emitter.emit(
            ApprovalRejected(
                metadata=EventMetadata.create(request.organization_id, actor_id=actor_user_id),
                request_id=request_id,
                actor_user_id=actor_user_id,
                action=action,
                comments=comments,
            )
        )
        return request

    async def _expire(self, request: CurrencyApprovalRequest, now: datetime) -> None:
        request.status = "expired"
        request.resolved_at = now
        self.session.add(
            CurrencyApprovalAction(request_id=request.id, action="expire", actor_user_id=None)
        )
        self.emitter.emit(
            ApprovalExpired(
                metadata=EventMetadata.create(request.organization_id, actor_type="scheduler"),
                request_id=request.id,
                reference_key=request.reference_key,
                expired_at=now,
            )
        )
