"""Repository Interfaces - One per aggregate, MongoDB and in-memory backed"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from ..domain.models import (
    WorkflowTemplate, AppraisalPhaseTemplate, WorkflowInstance,
    WorkflowStepAction, WorkflowEvent
)
from ..domain.enums import WorkflowCategory
from ..domain.errors import TemplateNotFoundError, InstanceNotFoundError

# (initiated_at, instance_id) of the last instance on a page
ActiveCursor = Tuple[datetime, str]


class TemplateRepository(ABC):
    """Workflow templates"""

    @abstractmethod
    def create(self, template: WorkflowTemplate) -> WorkflowTemplate:
        pass

    @abstractmethod
    def get(self, template_id: str) -> Optional[WorkflowTemplate]:
        pass

    @abstractmethod
    def replace(self, template: WorkflowTemplate, expected_version: int) -> WorkflowTemplate:
        """Store template if the stored version still equals expected_version"""
        pass

    @abstractmethod
    def list_by_code(self, code: str) -> List[WorkflowTemplate]:
        """All versions of a template code, oldest first"""
        pass

    @abstractmethod
    def list_active(self, category: Optional[WorkflowCategory] = None) -> List[WorkflowTemplate]:
        pass

    def get_or_raise(self, template_id: str) -> WorkflowTemplate:
        template = self.get(template_id)
        if not template:
            raise TemplateNotFoundError(
                f"Workflow template {template_id} not found",
                details={"template_id": template_id}
            )
        return template


class PhaseTemplateRepository(ABC):
    """Appraisal phase templates"""

    @abstractmethod
    def create(self, template: AppraisalPhaseTemplate) -> AppraisalPhaseTemplate:
        pass

    @abstractmethod
    def get(self, template_id: str) -> Optional[AppraisalPhaseTemplate]:
        pass

    @abstractmethod
    def replace(self, template: AppraisalPhaseTemplate, expected_version: int) -> AppraisalPhaseTemplate:
        pass

    def get_or_raise(self, template_id: str) -> AppraisalPhaseTemplate:
        template = self.get(template_id)
        if not template:
            raise TemplateNotFoundError(
                f"Appraisal phase template {template_id} not found",
                details={"template_id": template_id}
            )
        return template


class InstanceRepository(ABC):
    """
    Workflow instances

    replace() is the only write after create(): a compare-and-set on
    version that raises StaleInstanceStateError when another writer got
    there first.
    """

    @abstractmethod
    def create(self, instance: WorkflowInstance) -> WorkflowInstance:
        pass

    @abstractmethod
    def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        pass

    @abstractmethod
    def replace(self, instance: WorkflowInstance, expected_version: int) -> WorkflowInstance:
        pass

    @abstractmethod
    def list_active(
        self,
        limit: Optional[int] = None,
        after: Optional[ActiveCursor] = None
    ) -> List[WorkflowInstance]:
        """
        Non-terminal instances ordered by (initiated_at, instance_id)

        Args:
            limit: Page size
            after: Key of the last instance of the previous page
        """
        pass

    @abstractmethod
    def list_by_reference(self, reference_type: str, reference_id: str) -> List[WorkflowInstance]:
        pass

    def get_or_raise(self, instance_id: str) -> WorkflowInstance:
        instance = self.get(instance_id)
        if not instance:
            raise InstanceNotFoundError(
                f"Workflow instance {instance_id} not found",
                details={"instance_id": instance_id}
            )
        return instance


class ActionRepository(ABC):
    """Append-only step action log"""

    @abstractmethod
    def append(self, action: WorkflowStepAction) -> WorkflowStepAction:
        pass

    @abstractmethod
    def list_for_instance(self, instance_id: str) -> List[WorkflowStepAction]:
        """Actions in the order they were recorded"""
        pass


class EventOutboxRepository(ABC):
    """Outbound events kept for relays to external collaborators"""

    @abstractmethod
    def append(self, event: WorkflowEvent) -> WorkflowEvent:
        pass

    @abstractmethod
    def mark_dispatched(self, event_id: str) -> None:
        pass

    @abstractmethod
    def list_undispatched(self, limit: int = 100) -> List[WorkflowEvent]:
        pass

    @abstractmethod
    def list_for_instance(self, instance_id: str) -> List[WorkflowEvent]:
        pass
