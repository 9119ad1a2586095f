"""Tests for the currency approval request workflow."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from paystructure_engine.calculators.types import PendingApproval
from paystructure_engine.events import ApprovalExpired, ApprovalGranted, ApprovalRejected, ApprovalRequested
from paystructure_engine.exceptions import ApprovalStateError
from paystructure_engine.models import CurrencyApprovalAction, utc_now
from paystructure_engine.services.approval_service import ApprovalService


def pending(organization_id, reference_key="payroll:run:emp:net:6768.00", **kwargs):
    return PendingApproval(
        organization_id=organization_id,
        request_type="conversion",
        reference_key=reference_key,
        rule_id=None,
        required_approvals=kwargs.pop("required_approvals", 1),
        from_currency="SRD",
        to_currency="USD",
        expires_at=kwargs.pop("expires_at", utc_now() + timedelta(hours=72)),
        amount=Decimal("6768.00"),
        **kwargs,
    )


@pytest.fixture
def service(session, emitter):
    return ApprovalService(session, emitter)


class TestOpenRequest:
    """Opening requests is idempotent per reference key."""

    async def test_open_request(self, service, organization_id, captured_events):
        request = await service.open_request(pending(organization_id))

        assert request.status == "pending"
        assert request.current_approvals == 0
        assert request.required_approvals == 1
        assert [type(e) for e in captured_events] == [ApprovalRequested]
        assert captured_events[0].request_id == request.id

    async def test_same_reference_returns_existing(self, service, organization_id, captured_events):
        first = await service.open_request(pending(organization_id))
        second = await service.open_request(pending(organization_id))

        assert first.id == second.id
        assert len(captured_events) == 1

    async def test_find_by_reference(self, service, organization_id):
        request = await service.open_request(pending(organization_id, "ref-1"))

        assert (await service.find_by_reference(organization_id, "ref-1")).id == request.id
        assert await service.find_by_reference(organization_id, "ref-2") is None
        assert await service.find_by_reference(uuid4(), "ref-1") is None

    async def test_unknown_request(self, service):
        with pytest.raises(ApprovalStateError):
            await service.get_request(uuid4())


class TestApprove:
    """Approvals count toward required_approvals."""

    async def test_single_approval_resolves(self, service, organization_id, captured_events):
        request = await service.open_request(pending(organization_id))
        approved = await service.approve(request.id, uuid4(), "ok")

        assert approved.status == "approved"
        assert approved.current_approvals == 1
        assert approved.resolved_at is not None
        granted = captured_events[-1]
        assert isinstance(granted, ApprovalGranted)
        assert granted.resolved is True

    async def test_two_approvals_required(self, service, organization_id):
        request = await service.open_request(pending(organization_id, required_approvals=2))

        after_first = await service.approve(request.id, uuid4())
        assert after_first.status == "pending"
        assert after_first.current_approvals == 1

        after_second = await service.approve(request.id, uuid4())
        assert after_second.status == "approved"
        assert after_second.current_approvals == 2

    async def test_same_approver_counts_once(self, service, organization_id):
        request = await service.open_request(pending(organization_id, required_approvals=2))
        approver = uuid4()
        await service.approve(request.id, approver)

        with pytest.raises(ApprovalStateError, match="already approved"):
            await service.approve(request.id, approver)

    async def test_requester_cannot_self_approve(self, service, organization_id):
        requester = uuid4()
        request = await service.open_request(pending(organization_id, requested_by=requester))

        with pytest.raises(ApprovalStateError, match="own request"):
            await service.approve(request.id, requester)

    async def test_approver_list_is_enforced(self, service, organization_id):
        allowed = uuid4()
        request = await service.open_request(pending(organization_id, approver_user_ids=(allowed,)))

        with pytest.raises(ApprovalStateError, match="not an approver"):
            await service.approve(request.id, uuid4())

        approved = await service.approve(request.id, allowed)
        assert approved.status == "approved"

    async def test_resolved_request_cannot_be_approved_again(self, service, organization_id):
        request = await service.open_request(pending(organization_id))
        await service.approve(request.id, uuid4())

        with pytest.raises(ApprovalStateError, match="approved"):
            await service.approve(request.id, uuid4())


class TestRejectAndExpire:
    async def test_reject(self, service, session, organization_id, captured_events):
        request = await service.open_request(pending(organization_id))
        actor = uuid4()
        rejected = await service.reject(request.id, actor, "rate too old")

        assert rejected.status == "rejected"
        event = captured_events[-1]
        assert isinstance(event, ApprovalRejected)
        assert event.action == "reject"
        assert event.comments == "rate too old"

        await session.refresh(rejected, ["actions"])
        assert [a.action for a in rejected.actions] == ["reject"]

    async def test_cancel(self, service, organization_id):
        request = await service.open_request(pending(organization_id))
        cancelled = await service.cancel(request.id, uuid4())
        assert cancelled.status == "cancelled"

    async def test_rejected_request_cannot_be_approved(self, service, organization_id):
        request = await service.open_request(pending(organization_id))
        await service.reject(request.id, uuid4())

        with pytest.raises(ApprovalStateError):
            await service.approve(request.id, uuid4())

    async def test_expire_stale(self, service, organization_id, captured_events):
        stale = await service.open_request(
            pending(organization_id, "stale", expires_at=utc_now() - timedelta(hours=1))
        )
        fresh = await service.open_request(pending(organization_id, "fresh"))

        expired = await service.expire_stale()

        assert expired == [stale.id]
        assert stale.status == "expired"
        assert fresh.status == "pending"
        assert isinstance(captured_events[-1], ApprovalExpired)
        assert captured_events[-1].reference_key == "stale"

    async def test_expired_request_cannot_be_approved(self, session_factory, emitter, organization_id, captured_events):
        async with session_factory() as session:
            async with session.begin():
                request = await ApprovalService(session, emitter).open_request(
                    pending(organization_id, expires_at=utc_now() - timedelta(minutes=5))
                )

        async with session_factory() as session:
            with pytest.raises(ApprovalStateError, match="expired"):
                async with session.begin():
                    await ApprovalService(session, emitter).approve(request.id, uuid4())

        assert not any(isinstance(e, ApprovalExpired) for e in captured_events)

        async with session_factory() as session:
            async with session.begin():
                service = ApprovalService(session, emitter)
                assert (await service.get_request(request.id)).status == "pending"
                assert await service.expire_stale() == [request.id]

        async with session_factory() as session:
            actions = await session.scalars(
                select(CurrencyApprovalAction.action).where(CurrencyApprovalAction.request_id == request.id)
            )
            assert list(actions) == ["expire"]
        assert len([e for e in captured_events if isinstance(e, ApprovalExpired)]) == 1
