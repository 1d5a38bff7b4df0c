"""Permission Guard - Authorization enforcement for instance actions"""
from typing import Dict, FrozenSet, List, Optional

from ..domain.models import WorkflowInstance, ActorContext
from ..domain.enums import StepActionType
from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PermissionGuard:
    """
    Permission enforcement for workflow instances

    Rules:
    - Only eligible approvers of the current step can approve, reject,
      return, delegate or escalate it
    - A delegate replaces the delegator for the current step only
    - The initiator, or an actor holding a cancel role, can cancel
    - Eligible approvers, the initiator and cancel-role holders can comment
    - Nobody acts on a terminal instance
    """

    def __init__(self, cancel_roles: Optional[List[str]] = None):
        self.cancel_roles = set(cancel_roles if cancel_roles is not None else settings.cancel_roles_list)

    @staticmethod
    def apply_delegations(approvers: FrozenSet[str], delegations: Dict[str, str]) -> FrozenSet[str]:
        """
        Replace each delegating approver with the end of its delegation chain

        Chains (a -> b -> c) are followed; a cycle stops at the last actor
        not yet visited.
        """
        eligible = set()
        for approver in approvers:
            current = approver
            visited = {current}
            while current in delegations and delegations[current] not in visited:
                current = delegations[current]
                visited.add(current)
            eligible.add(current)
        return frozenset(eligible)

    def is_initiator(self, actor: ActorContext, instance: WorkflowInstance) -> bool:
        return actor.actor_id in {instance.initiated_by, instance.context.initiator_id}

    def has_cancel_role(self, actor: ActorContext) -> bool:
        return bool(self.cancel_roles.intersection(actor.roles))

    def can_act_on_step(self, actor: ActorContext, instance: WorkflowInstance, eligible: FrozenSet[str]) -> bool:
        """Check if actor can decide the current step"""
        if instance.is_terminal:
            return False
        return actor.is_system or actor.actor_id in eligible

    def can_cancel(self, actor: ActorContext, instance: WorkflowInstance) -> bool:
        if instance.is_terminal:
            return False
        return actor.is_system or self.is_initiator(actor, instance) or self.has_cancel_role(actor)

    def can_comment(self, actor: ActorContext, instance: WorkflowInstance, eligible: FrozenSet[str]) -> bool:
        if instance.is_terminal:
            return False
        return (
            actor.actor_id in eligible
            or self.is_initiator(actor, instance)
            or self.has_cancel_role(actor)
        )

    def can_escalate(self, actor: ActorContext, instance: WorkflowInstance, eligible: FrozenSet[str]) -> bool:
        """Manual escalation: current approvers or administrators"""
        if instance.is_terminal:
            return False
        return actor.is_system or actor.actor_id in eligible or self.has_cancel_role(actor)

    def get_available_actions(
        self,
        actor: ActorContext,
        instance: WorkflowInstance,
        eligible: FrozenSet[str]
    ) -> List[str]:
        """Actions the actor may take on the instance right now"""
        if instance.is_terminal:
            return []

        actions: List[str] = []
        step = instance.current_step

        if actor.actor_id in eligible:
            actions.extend([StepActionType.APPROVE.value, StepActionType.REJECT.value])
            if instance.allow_return_to_previous and instance.current_step_order > 1:
                actions.append(StepActionType.RETURN.value)
            if step.can_delegate:
                actions.append(StepActionType.DELEGATE.value)

        if step.escalation_action and self.can_escalate(actor, instance, eligible):
            actions.append(StepActionType.ESCALATE.value)
        if self.can_comment(actor, instance, eligible):
            actions.append(StepActionType.COMMENT.value)
        if self.can_cancel(actor, instance):
            actions.append(StepActionType.CANCEL.value)

        return actions
