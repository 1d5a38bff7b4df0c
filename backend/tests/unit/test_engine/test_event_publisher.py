"""Tests for the event publisher and its outbox"""
from approval_engine.domain.models import ApproveRequest
from approval_engine.domain.enums import EventType
from approval_engine.engine.event_publisher import EventPublisher
from approval_engine.engine.workflow_engine import WorkflowEngine
from approval_engine.repositories.memory import InMemoryEventOutboxRepository
from approval_engine.utils.logger import set_correlation_id

from tests.helpers import actor, build_step


def test_events_are_written_and_marked_dispatched(start_instance, outbox, events):
    instance = start_instance([build_step(1)])

    stored = outbox.list_for_instance(instance.instance_id)

    assert [e.event_id for e in stored] == [e.event_id for e in events]
    assert all(e.dispatched_at is not None for e in stored)
    assert outbox.list_undispatched() == []


def test_failing_subscriber_leaves_event_undispatched(start_instance):
    instance = start_instance([build_step(1)])
    outbox = InMemoryEventOutboxRepository()
    publisher = EventPublisher(outbox)
    received = []

    def broken(event):
        raise RuntimeError("mail server down")

    publisher.subscribe(broken)
    publisher.subscribe(received.append)

    event = publisher.publish(EventType.ESCALATED, instance, {"step": 1})

    assert received == [event]
    assert [e.event_id for e in outbox.list_undispatched()] == [event.event_id]


def test_subscription_by_event_type(start_instance):
    instance = start_instance([build_step(1)])
    publisher = EventPublisher()
    completed = []
    publisher.subscribe(completed.append, EventType.INSTANCE_COMPLETED)

    publisher.publish(EventType.STEP_ADVANCED, instance)
    publisher.publish(EventType.INSTANCE_COMPLETED, instance, {"final_action": "approve"})

    assert [e.event_type for e in completed] == [EventType.INSTANCE_COMPLETED]


def test_event_carries_instance_reference_and_correlation_id(start_instance):
    instance = start_instance([build_step(1)])
    set_correlation_id("COR-TEST")
    try:
        event = EventPublisher().publish(EventType.DEADLINE_APPROACHING, instance, {"sla_status": "warning"})
    finally:
        set_correlation_id(None)

    assert event.reference_type == "leave_request"
    assert event.reference_id == "LR-1"
    assert event.step_order == 1
    assert event.correlation_id == "COR-TEST"


def test_events_use_the_engine_clock(start_instance, engine, clock, events):
    instance = start_instance([build_step(1), build_step(2)])
    clock.advance(hours=3)

    engine.apply_action(instance.instance_id, actor("mgr-1"), ApproveRequest())

    created, advanced = events
    assert created.occurred_at == instance.initiated_at
    assert advanced.occurred_at == clock()
    assert advanced.occurred_at == engine.get_history(instance.instance_id)[0].acted_at


def test_default_publisher_follows_engine_clock(instance_repo, action_repo, resolver, clock):
    engine = WorkflowEngine(instance_repo, action_repo, resolver, clock=clock)

    assert engine.publisher.clock is clock
