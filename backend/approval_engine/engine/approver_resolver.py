"""Approver Resolver - Turn a step's approver type into a set of actors"""
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Set

from ..domain.models import WorkflowStep, InstanceContext
from ..domain.enums import ApproverType, TARGETED_APPROVER_TYPES
from ..domain.errors import UnresolvableApproverError
from ..repositories.org_directory import OrgDirectory, ACTING, PRIMARY
from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

ResolutionStrategy = Callable[[WorkflowStep, InstanceContext], Set[str]]


class ApproverResolver:
    """
    Resolve the approvers of a workflow step

    One strategy per ApproverType; the mapping is checked for
    exhaustiveness when the resolver is built. Resolution is read-only and
    may be repeated: the directory can change between calls.

    Escalation:
    - manager: level n climbs n further levels up the reporting line
    - every other type: level n takes the managers of the base approvers,
      n times
    """

    def __init__(self, directory: OrgDirectory, hr_capability: Optional[str] = None):
        self.directory = directory
        self.hr_capability = hr_capability or settings.hr_manager_capability
        self._strategies: Dict[ApproverType, ResolutionStrategy] = {
            ApproverType.MANAGER: self._resolve_manager,
            ApproverType.HR: self._resolve_hr,
            ApproverType.POSITION: self._resolve_position,
            ApproverType.SPECIFIC_USER: self._resolve_specific_user,
            ApproverType.WORKFLOW_ROLE: self._resolve_workflow_role,
            ApproverType.ROLE: self._resolve_role,
            ApproverType.GOVERNANCE_BODY: self._resolve_governance_body,
        }
        missing = set(ApproverType) - set(self._strategies)
        if missing:
            raise RuntimeError(
                f"No resolution strategy for approver types: {sorted(m.value for m in missing)}"
            )

    def resolve(
        self,
        step: WorkflowStep,
        context: InstanceContext,
        escalation_level: int = 0
    ) -> FrozenSet[str]:
        """
        Resolve approvers for a step

        Args:
            step: Step being resolved
            context: Business object facts
            escalation_level: Organizational levels to climb (0 = not escalated)

        Returns:
            Non-empty set of active actor ids

        Raises:
            UnresolvableApproverError: Missing target, unknown or inactive
                target, or nobody left to approve
        """
        if step.approver_type in TARGETED_APPROVER_TYPES and not step.approver_target:
            raise self._unresolvable(step, "approver target is not configured")

        if step.approver_type == ApproverType.MANAGER:
            approvers = self._climb(context.subject_id, 1 + escalation_level, step)
        else:
            approvers = self._strategies[step.approver_type](step, context)
            for _ in range(escalation_level):
                approvers = self._managers_of(approvers)

        if not approvers:
            raise self._unresolvable(step, "no eligible approver found", escalation_level)

        logger.debug(
            f"Resolved {len(approvers)} approver(s) for step '{step.name}'",
            extra={"step_order": step.order}
        )
        return frozenset(approvers)

    def resolve_alternate(self, step: WorkflowStep) -> Optional[str]:
        """Alternate approver notified on notify_alternate, if set and active"""
        alternate = step.alternate_approver_id
        if alternate and self.directory.is_active(alternate):
            return alternate
        return None

    # =========================================================================
    # Strategies
    # =========================================================================

    def _resolve_manager(self, step: WorkflowStep, context: InstanceContext) -> Set[str]:
        return self._climb(context.subject_id, 1, step)

    def _resolve_hr(self, step: WorkflowStep, context: InstanceContext) -> Set[str]:
        holders = self.directory.get_capability_holders(self.hr_capability, context.org_unit_id)
        return self._active(holders)

    def _resolve_position(self, step: WorkflowStep, context: InstanceContext) -> Set[str]:
        holders = self.directory.get_position_holders(step.approver_target)
        if holders is None:
            raise self._unresolvable(step, f"position {step.approver_target} does not exist or is inactive")
        return self._position_holders(step.approver_target)

    def _resolve_specific_user(self, step: WorkflowStep, context: InstanceContext) -> Set[str]:
        if not self.directory.is_active(step.approver_target):
            raise self._unresolvable(step, f"user {step.approver_target} does not exist or is inactive")
        return {step.approver_target}

    def _resolve_workflow_role(self, step: WorkflowStep, context: InstanceContext) -> Set[str]:
        positions = self.directory.get_workflow_role_positions(step.approver_target)
        if positions is None:
            raise self._unresolvable(step, f"workflow role {step.approver_target} does not exist")
        # Primary positions first, then by priority; first staffed position wins
        for role_position in sorted(positions, key=lambda p: (not p.is_primary, p.priority_order)):
            holders = self._position_holders(role_position.position_id)
            if holders:
                return holders
        return set()

    def _resolve_role(self, step: WorkflowStep, context: InstanceContext) -> Set[str]:
        members = self.directory.get_role_members(step.approver_target)
        if members is None:
            raise self._unresolvable(step, f"role {step.approver_target} does not exist")
        return self._active(members)

    def _resolve_governance_body(self, step: WorkflowStep, context: InstanceContext) -> Set[str]:
        members = self.directory.get_governance_members(step.approver_target)
        if members is None:
            raise self._unresolvable(step, f"governance body {step.approver_target} does not exist")
        return self._active(members)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _position_holders(self, position_id: str) -> Set[str]:
        """Acting holders take precedence, then primary, then any active holder"""
        holders = self.directory.get_position_holders(position_id) or []
        active = [h for h in holders if self.directory.is_active(h.actor_id)]
        for assignment_type in (ACTING, PRIMARY):
            matched = {h.actor_id for h in active if h.assignment_type == assignment_type}
            if matched:
                return matched
        return {h.actor_id for h in active}

    def _climb(self, actor_id: str, levels: int, step: WorkflowStep) -> Set[str]:
        current = actor_id
        for level in range(levels):
            manager = self.directory.get_manager(current)
            if not manager:
                raise self._unresolvable(
                    step, f"reporting line of {actor_id} ends {level} level(s) up", levels - 1
                )
            current = manager
        return self._active([current])

    def _managers_of(self, actors: Iterable[str]) -> Set[str]:
        managers = {self.directory.get_manager(a) for a in actors}
        return self._active(m for m in managers if m)

    def _active(self, actors: Iterable[str]) -> Set[str]:
        return {a for a in actors if self.directory.is_active(a)}

    def _unresolvable(
        self,
        step: WorkflowStep,
        reason: str,
        escalation_level: int = 0
    ) -> UnresolvableApproverError:
        return UnresolvableApproverError(
            f"Cannot resolve approvers for step '{step.name}': {reason}",
            details={
                "step_id": step.step_id,
                "step_order": step.order,
                "approver_type": step.approver_type.value,
                "approver_target": step.approver_target,
                "escalation_level": escalation_level,
            }
        )
