"""Event Publisher - Outbox plus in-process subscribers"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..domain.models import WorkflowEvent, WorkflowInstance
from ..domain.enums import EventType
from ..repositories.base import EventOutboxRepository
from ..utils.idgen import generate_event_id
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)

EventHandler = Callable[[WorkflowEvent], None]


class EventPublisher:
    """
    Publish outbound workflow events

    Every event is written to the outbox first, then handed to in-process
    subscribers. A failing subscriber is logged and never blocks the
    transition that produced the event; the event then stays
    undispatched in the outbox for relays to pick up.
    """

    def __init__(
        self,
        outbox: Optional[EventOutboxRepository] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.outbox = outbox
        self.clock = clock
        self._subscribers: Dict[Optional[EventType], List[EventHandler]] = {}

    def subscribe(self, handler: EventHandler, event_type: Optional[EventType] = None) -> None:
        """Register handler for one event type, or for all when event_type is None"""
        self._subscribers.setdefault(event_type, []).append(handler)

    def publish(
        self,
        event_type: EventType,
        instance: WorkflowInstance,
        payload: Optional[Dict[str, Any]] = None,
        step_order: Optional[int] = None
    ) -> WorkflowEvent:
        event = WorkflowEvent(
            event_id=generate_event_id(),
            event_type=event_type,
            instance_id=instance.instance_id,
            template_id=instance.template_id,
            reference_type=instance.reference_type,
            reference_id=instance.reference_id,
            step_order=step_order if step_order is not None else instance.current_step_order,
            payload=payload or {},
            occurred_at=self.clock(),
            correlation_id=get_correlation_id(),
        )

        if self.outbox is not None:
            self.outbox.append(event)

        logger.info(
            f"Published {event_type.value} for instance {instance.instance_id}",
            extra={
                "instance_id": instance.instance_id,
                "event_type": event_type.value,
                "step_order": event.step_order,
            }
        )

        if self._dispatch(event) and self.outbox is not None:
            self.outbox.mark_dispatched(event.event_id)
        return event

    def _dispatch(self, event: WorkflowEvent) -> bool:
        handlers = self._subscribers.get(event.event_type, []) + self._subscribers.get(None, [])
        delivered = True
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                delivered = False
                logger.error(
                    f"Event subscriber failed for {event.event_type.value}: {e}",
                    extra={"instance_id": event.instance_id, "event_type": event.event_type.value},
                    exc_info=True
                )
        return delivered
