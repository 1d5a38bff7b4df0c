"""Workflow Service - Instance lifecycle API for business-object and UI layers"""
from typing import Any, ContextManager, Dict, FrozenSet, List, Optional, Union
from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from ..domain.models import (
    ActionRequest, ActorContext, InstanceContext, WorkflowInstance, WorkflowStepAction
)
from ..domain.errors import ValidationError
from ..engine.workflow_engine import WorkflowEngine
from ..repositories.base import TemplateRepository
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger, get_correlation_id, correlation_scope

logger = get_logger(__name__)

_action_adapter: TypeAdapter = TypeAdapter(ActionRequest)


class WorkflowService:
    """Service for workflow instance operations"""

    def __init__(self, engine: WorkflowEngine, template_repo: TemplateRepository):
        self.engine = engine
        self.template_repo = template_repo

    def create_instance(
        self,
        template_id: str,
        reference_type: str,
        reference_id: str,
        context_payload: Union[InstanceContext, Dict[str, Any]],
        initiated_by: ActorContext
    ) -> str:
        """
        Start approval of a business object

        Returns:
            The new instance id
        """
        with self._call_scope():
            template = self.template_repo.get_or_raise(template_id)

            if isinstance(context_payload, InstanceContext):
                context = context_payload
            else:
                payload = {"initiator_id": initiated_by.actor_id, **context_payload}
                try:
                    context = InstanceContext.model_validate(payload)
                except PydanticValidationError as e:
                    raise ValidationError(
                        "Invalid instance context",
                        details={"errors": e.errors(include_url=False, include_context=False)}
                    )

            instance = self.engine.create_instance(template, reference_type, reference_id, context, initiated_by)
            return instance.instance_id

    def act(
        self,
        instance_id: str,
        actor: ActorContext,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None
    ) -> WorkflowInstance:
        """
        Apply a user action

        Args:
            instance_id: Instance to act on
            actor: Acting user
            action: approve | reject | return | delegate | escalate | comment | cancel
            payload: Fields of the action (comment, delegated_to, return_to_step, ...)
            expected_version: Version the caller last saw

        Raises:
            ValidationError: Unknown action or malformed payload
        """
        with self._call_scope():
            request = self.parse_action(action, payload)
            return self.engine.apply_action(instance_id, actor, request, expected_version=expected_version)

    @staticmethod
    def parse_action(action: str, payload: Optional[Dict[str, Any]] = None) -> ActionRequest:
        """Build the tagged action request from an action name and its payload"""
        try:
            return _action_adapter.validate_python({**(payload or {}), "action": action})
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid {action!r} request",
                details={"action": action, "errors": e.errors(include_url=False, include_context=False)}
            )

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.engine.get_instance(instance_id)

    def get_history(self, instance_id: str) -> List[WorkflowStepAction]:
        return self.engine.get_history(instance_id)

    def list_pending_for_actor(self, actor: ActorContext) -> List[WorkflowInstance]:
        return self.engine.list_pending_for_actor(actor)

    def eligible_approvers(self, instance_id: str) -> FrozenSet[str]:
        return self.engine.eligible_approvers(instance_id)

    def get_available_actions(self, instance_id: str, actor: ActorContext) -> List[str]:
        return self.engine.get_available_actions(instance_id, actor)

    def list_instances_for_reference(self, reference_type: str, reference_id: str) -> List[WorkflowInstance]:
        return self.engine.instance_repo.list_by_reference(reference_type, reference_id)

    def _call_scope(self) -> ContextManager[str]:
        """Correlation id of the caller if one is set, else a fresh one for this call only"""
        return correlation_scope(get_correlation_id() or generate_correlation_id())
