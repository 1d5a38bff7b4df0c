"""In-Memory Repositories - Dictionary-backed storage for tests and embedding

Stored models are deep copies so callers never share state with the store.
"""
import threading
from typing import Dict, List, Optional

from ..domain.models import (
    WorkflowTemplate, AppraisalPhaseTemplate, WorkflowInstance,
    WorkflowStepAction, WorkflowEvent
)
from ..domain.enums import WorkflowCategory
from ..domain.errors import (
    ConflictError, StaleInstanceStateError, InstanceNotFoundError, TemplateNotFoundError
)
from ..utils.time import utc_now
from ..utils.logger import get_logger
from .base import (
    TemplateRepository, PhaseTemplateRepository, InstanceRepository,
    ActionRepository, EventOutboxRepository, ActiveCursor
)

logger = get_logger(__name__)


class InMemoryTemplateRepository(TemplateRepository):

    def __init__(self):
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._lock = threading.Lock()

    def create(self, template: WorkflowTemplate) -> WorkflowTemplate:
        with self._lock:
            if template.template_id in self._templates:
                raise ConflictError(f"Workflow template {template.template_id} already exists")
            self._templates[template.template_id] = template.model_copy(deep=True)
        return template

    def get(self, template_id: str) -> Optional[WorkflowTemplate]:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    def replace(self, template: WorkflowTemplate, expected_version: int) -> WorkflowTemplate:
        with self._lock:
            stored = self._templates.get(template.template_id)
            if stored is None:
                raise TemplateNotFoundError(f"Workflow template {template.template_id} not found")
            if stored.version != expected_version:
                raise ConflictError(
                    f"Workflow template {template.template_id} was modified concurrently",
                    details={"expected_version": expected_version, "actual_version": stored.version}
                )
            saved = template.model_copy(update={"version": expected_version + 1}, deep=True)
            self._templates[template.template_id] = saved
        return saved.model_copy(deep=True)

    def list_by_code(self, code: str) -> List[WorkflowTemplate]:
        matches = [t for t in self._templates.values() if t.code == code]
        return [t.model_copy(deep=True) for t in sorted(matches, key=lambda t: t.created_at)]

    def list_active(self, category: Optional[WorkflowCategory] = None) -> List[WorkflowTemplate]:
        return [
            t.model_copy(deep=True) for t in self._templates.values()
            if t.is_active and (category is None or t.category == category)
        ]


class InMemoryPhaseTemplateRepository(PhaseTemplateRepository):

    def __init__(self):
        self._templates: Dict[str, AppraisalPhaseTemplate] = {}
        self._lock = threading.Lock()

    def create(self, template: AppraisalPhaseTemplate) -> AppraisalPhaseTemplate:
        with self._lock:
            if template.template_id in self._templates:
                raise ConflictError(f"Appraisal phase template {template.template_id} already exists")
            self._templates[template.template_id] = template.model_copy(deep=True)
        return template

    def get(self, template_id: str) -> Optional[AppraisalPhaseTemplate]:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    def replace(self, template: AppraisalPhaseTemplate, expected_version: int) -> AppraisalPhaseTemplate:
        with self._lock:
            stored = self._templates.get(template.template_id)
            if stored is None:
                raise TemplateNotFoundError(f"Appraisal phase template {template.template_id} not found")
            if stored.version != expected_version:
                raise ConflictError(
                    f"Appraisal phase template {template.template_id} was modified concurrently",
                    details={"expected_version": expected_version, "actual_version": stored.version}
                )
            saved = template.model_copy(update={"version": expected_version + 1}, deep=True)
            self._templates[template.template_id] = saved
        return saved.model_copy(deep=True)


class InMemoryInstanceRepository(InstanceRepository):

    def __init__(self):
        self._instances: Dict[str, WorkflowInstance] = {}
        self._lock = threading.Lock()

    def create(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            if instance.instance_id in self._instances:
                raise ConflictError(f"Workflow instance {instance.instance_id} already exists")
            self._instances[instance.instance_id] = instance.model_copy(deep=True)
        return instance

    def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    def replace(self, instance: WorkflowInstance, expected_version: int) -> WorkflowInstance:
        with self._lock:
            stored = self._instances.get(instance.instance_id)
            if stored is None:
                raise InstanceNotFoundError(f"Workflow instance {instance.instance_id} not found")
            if stored.version != expected_version:
                raise StaleInstanceStateError(
                    f"Workflow instance {instance.instance_id} was modified by another request",
                    details={
                        "instance_id": instance.instance_id,
                        "expected_version": expected_version,
                        "actual_version": stored.version,
                    }
                )
            saved = instance.model_copy(update={"version": expected_version + 1}, deep=True)
            self._instances[instance.instance_id] = saved
        return saved.model_copy(deep=True)

    def list_active(
        self,
        limit: Optional[int] = None,
        after: Optional[ActiveCursor] = None
    ) -> List[WorkflowInstance]:
        active = sorted(
            (i for i in self._instances.values() if not i.is_terminal),
            key=lambda i: (i.initiated_at, i.instance_id)
        )
        if after is not None:
            active = [i for i in active if (i.initiated_at, i.instance_id) > after]
        if limit is not None:
            active = active[:limit]
        return [i.model_copy(deep=True) for i in active]

    def list_by_reference(self, reference_type: str, reference_id: str) -> List[WorkflowInstance]:
        return [
            i.model_copy(deep=True) for i in self._instances.values()
            if i.reference_type == reference_type and i.reference_id == reference_id
        ]


class InMemoryActionRepository(ActionRepository):

    def __init__(self):
        self._actions: List[WorkflowStepAction] = []
        self._lock = threading.Lock()

    def append(self, action: WorkflowStepAction) -> WorkflowStepAction:
        with self._lock:
            self._actions.append(action.model_copy(deep=True))
        return action

    def list_for_instance(self, instance_id: str) -> List[WorkflowStepAction]:
        return [a.model_copy(deep=True) for a in self._actions if a.instance_id == instance_id]


class InMemoryEventOutboxRepository(EventOutboxRepository):

    def __init__(self):
        self._events: List[WorkflowEvent] = []
        self._lock = threading.Lock()

    def append(self, event: WorkflowEvent) -> WorkflowEvent:
        with self._lock:
            self._events.append(event.model_copy(deep=True))
        return event

    def mark_dispatched(self, event_id: str) -> None:
        with self._lock:
            for index, event in enumerate(self._events):
                if event.event_id == event_id:
                    self._events[index] = event.model_copy(update={"dispatched_at": utc_now()})
                    return
        logger.warning(f"Cannot mark unknown event {event_id} as dispatched")

    def list_undispatched(self, limit: int = 100) -> List[WorkflowEvent]:
        pending = [e for e in self._events if e.dispatched_at is None]
        return [e.model_copy(deep=True) for e in pending[:limit]]

    def list_for_instance(self, instance_id: str) -> List[WorkflowEvent]:
        return [e.model_copy(deep=True) for e in self._events if e.instance_id == instance_id]
