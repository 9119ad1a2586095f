"""Tests for domain events and the event emitter."""

import json
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from paystructure_engine.events import (
    ApprovalExpired,
    ApprovalGranted,
    EventCategory,
    EventEmitter,
    EventMetadata,
    PaycheckCalculated,
)


def granted(organization_id=None):
    return ApprovalGranted(
        metadata=EventMetadata.create(organization_id or uuid4(), actor_id=uuid4()),
        request_id=uuid4(),
        approver_user_id=uuid4(),
        current_approvals=1,
        required_approvals=2,
        resolved=False,
    )


def calculated():
    return PaycheckCalculated(
        metadata=EventMetadata.create(uuid4()),
        payroll_run_id=uuid4(),
        paycheck_id=uuid4(),
        employee_id=uuid4(),
        gross_pay=Decimal("7900.00"),
        net_pay=Decimal("6768.00"),
        total_taxes=Decimal("892.00"),
        line_count=6,
    )


class TestDomainEvents:
    """Event metadata and serialization."""

    def test_event_type_and_category(self):
        event = granted()
        assert event.event_type == "ApprovalGranted"
        assert event.category == EventCategory.APPROVAL
        assert calculated().category == EventCategory.PAYROLL

    def test_actor_makes_metadata_user_typed(self):
        assert granted().metadata.actor_type == "user"
        assert EventMetadata.create(uuid4(), actor_type="scheduler").actor_type == "scheduler"

    def test_to_dict_serializes_values(self):
        event = calculated()
        data = event.to_dict()

        assert data["net_pay"] == "6768.00"
        assert data["paycheck_id"] == str(event.paycheck_id)
        assert data["metadata"]["organization_id"] == str(event.metadata.organization_id)
        assert json.loads(event.to_json())["line_count"] == 6

    def test_datetimes_serialized_as_iso(self):
        expired_at = datetime(2026, 2, 3, 12, tzinfo=timezone.utc)
        event = ApprovalExpired(
            metadata=EventMetadata.create(uuid4(), actor_type="scheduler"),
            request_id=uuid4(),
            reference_key="payroll:run:emp:net",
            expired_at=expired_at,
        )
        assert event.to_dict()["expired_at"] == expired_at.isoformat()


class TestEventEmitter:
    """Routing, handler isolation and batching."""

    def test_on_filters_by_type(self):
        emitter = EventEmitter()
        received = []
        emitter.on(ApprovalGranted, received.append)

        emitter.emit(granted())
        emitter.emit(calculated())

        assert [e.event_type for e in received] == ["ApprovalGranted"]

    def test_on_category(self):
        emitter = EventEmitter()
        received = []
        emitter.on_category(EventCategory.PAYROLL, received.append)

        emitter.emit(granted())
        emitter.emit(calculated())

        assert [e.event_type for e in received] == ["PaycheckCalculated"]

    def test_failing_handler_does_not_stop_others(self):
        emitter = EventEmitter()
        received = []

        def broken(event):
            raise RuntimeError("notification service down")

        emitter.on_all(broken)
        emitter.on_all(received.append)

        errors = emitter.emit(granted())

        assert len(received) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)

    def test_off(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)
        emitter.off(received.append)

        emitter.emit(granted())
        assert received == []

    def test_batch_emits_on_clean_exit(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)

        with emitter.batch() as batch:
            batch.add(granted())
            emitter.emit(calculated())
            assert received == []

        assert len(received) == 2
        assert batch.errors == []

    def test_batch_discarded_on_error(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)

        try:
            with emitter.batch():
                emitter.emit(granted())
                raise ValueError("calculation aborted")
        except ValueError:
            pass

        assert received == []
        emitter.emit(calculated())
        assert len(received) == 1
