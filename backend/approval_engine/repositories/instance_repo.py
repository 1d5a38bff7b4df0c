"""Instance Repository - Data access for workflow instances and their action log"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .base import InstanceRepository, ActionRepository, ActiveCursor
from .mongo_client import get_collection, WORKFLOW_INSTANCES, STEP_ACTIONS
from ..domain.models import WorkflowInstance, WorkflowStepAction
from ..domain.enums import TERMINAL_STATUSES
from ..domain.errors import ConflictError, StaleInstanceStateError, InstanceNotFoundError
from ..utils.logger import get_logger
from ..utils.time import format_iso

logger = get_logger(__name__)


class MongoInstanceRepository(InstanceRepository):
    """Workflow instances in MongoDB"""

    def __init__(self, collection: Optional[Collection] = None):
        self._instances: Collection = collection if collection is not None else get_collection(WORKFLOW_INSTANCES)

    def create(self, instance: WorkflowInstance) -> WorkflowInstance:
        doc = instance.model_dump(mode="json")
        doc["_id"] = instance.instance_id
        try:
            self._instances.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Workflow instance {instance.instance_id} already exists")
        logger.info(
            f"Created workflow instance: {instance.instance_id}",
            extra={"instance_id": instance.instance_id, "template_id": instance.template_id}
        )
        return instance

    def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        doc = self._instances.find_one({"instance_id": instance_id})
        return self._to_model(doc) if doc else None

    def replace(self, instance: WorkflowInstance, expected_version: int) -> WorkflowInstance:
        """Compare-and-set on version"""
        doc = instance.model_dump(mode="json")
        doc["_id"] = instance.instance_id
        doc["version"] = expected_version + 1

        result = self._instances.find_one_and_replace(
            {"instance_id": instance.instance_id, "version": expected_version},
            doc,
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            if self._instances.find_one({"instance_id": instance.instance_id}):
                raise StaleInstanceStateError(
                    f"Workflow instance {instance.instance_id} was modified by another request",
                    details={"instance_id": instance.instance_id, "expected_version": expected_version}
                )
            raise InstanceNotFoundError(f"Workflow instance {instance.instance_id} not found")
        return self._to_model(result)

    def list_active(
        self,
        limit: Optional[int] = None,
        after: Optional[ActiveCursor] = None
    ) -> List[WorkflowInstance]:
        query: Dict[str, Any] = {"status": {"$nin": [s.value for s in TERMINAL_STATUSES]}}
        if after is not None:
            initiated_at = format_iso(after[0])
            query["$or"] = [
                {"initiated_at": {"$gt": initiated_at}},
                {"initiated_at": initiated_at, "instance_id": {"$gt": after[1]}},
            ]
        cursor = self._instances.find(query).sort([("initiated_at", ASCENDING), ("instance_id", ASCENDING)])
        if limit is not None:
            cursor = cursor.limit(limit)
        return [self._to_model(doc) for doc in cursor]

    def list_by_reference(self, reference_type: str, reference_id: str) -> List[WorkflowInstance]:
        cursor = self._instances.find(
            {"reference_type": reference_type, "reference_id": reference_id}
        ).sort("initiated_at", ASCENDING)
        return [self._to_model(doc) for doc in cursor]

    def _to_model(self, doc: Dict[str, Any]) -> WorkflowInstance:
        doc.pop("_id", None)
        return WorkflowInstance.model_validate(doc)


class MongoActionRepository(ActionRepository):
    """Append-only step actions in MongoDB"""

    def __init__(self, collection: Optional[Collection] = None):
        self._actions: Collection = collection if collection is not None else get_collection(STEP_ACTIONS)

    def append(self, action: WorkflowStepAction) -> WorkflowStepAction:
        # Default ObjectId keeps insertion order for actions sharing a timestamp
        self._actions.insert_one(action.model_dump(mode="json"))
        return action

    def list_for_instance(self, instance_id: str) -> List[WorkflowStepAction]:
        cursor = self._actions.find({"instance_id": instance_id}).sort(
            [("acted_at", ASCENDING), ("_id", ASCENDING)]
        )
        actions = []
        for doc in cursor:
            doc.pop("_id", None)
            actions.append(WorkflowStepAction.model_validate(doc))
        return actions
