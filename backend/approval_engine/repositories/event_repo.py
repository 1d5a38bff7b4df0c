"""Event Outbox Repository - Outbound workflow events awaiting relay"""
from typing import List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING

from .base import EventOutboxRepository
from .mongo_client import get_collection, EVENT_OUTBOX
from ..domain.models import WorkflowEvent
from ..utils.time import utc_now, format_iso
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoEventOutboxRepository(EventOutboxRepository):
    """Event outbox in MongoDB"""

    def __init__(self, collection: Optional[Collection] = None):
        self._events: Collection = collection if collection is not None else get_collection(EVENT_OUTBOX)

    def append(self, event: WorkflowEvent) -> WorkflowEvent:
        doc = event.model_dump(mode="json")
        doc["_id"] = event.event_id
        self._events.insert_one(doc)
        return event

    def mark_dispatched(self, event_id: str) -> None:
        result = self._events.update_one(
            {"event_id": event_id},
            {"$set": {"dispatched_at": format_iso(utc_now())}}
        )
        if result.matched_count == 0:
            logger.warning(f"Cannot mark unknown event {event_id} as dispatched")

    def list_undispatched(self, limit: int = 100) -> List[WorkflowEvent]:
        cursor = self._events.find({"dispatched_at": None}).sort("occurred_at", ASCENDING).limit(limit)
        return [self._to_model(doc) for doc in cursor]

    def list_for_instance(self, instance_id: str) -> List[WorkflowEvent]:
        cursor = self._events.find({"instance_id": instance_id}).sort("occurred_at", ASCENDING)
        return [self._to_model(doc) for doc in cursor]

    def _to_model(self, doc) -> WorkflowEvent:
        doc.pop("_id", None)
        return WorkflowEvent.model_validate(doc)
