"""
Workflow Engine - Single authoritative state machine for workflow instances

=============================================================================
MODULE STRUCTURE
=============================================================================

1. INSTANCE CREATION
   - create_instance: Start an instance of an active, valid template

2. ACTION DISPATCH
   - apply_action: Route a tagged action request to its handler

3. ACTION HANDLERS
   - _approve, _reject, _return, _delegate, _escalate, _comment, _cancel

4. CLOCK-DRIVEN TRANSITIONS
   - enforce_auto_terminate: Hard ceiling from the template
   - update_sla_status: Derived SLA severity, DeadlineApproaching events
   - escalate_if_due: One escalation per deadline crossing

5. QUERIES
   - get_instance, get_history, eligible_approvers, list_pending_for_actor,
     get_available_actions

6. TRANSITION HELPERS
   - _advance_or_complete, _complete, _start_step_updates, _save, _record

=============================================================================
CONCURRENCY
=============================================================================

Every state change is a compare-and-set of the instance version in the
repository. Comments change no state but still bump the version. A lost race raises StaleInstanceStateError and leaves no trace:
the action log and outbound events are written only after the instance
write succeeded. Nothing here retries.
=============================================================================
"""
import hashlib
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

from ..domain.models import (
    WorkflowTemplate, WorkflowInstance, WorkflowStep, WorkflowStepAction,
    ActorContext, InstanceContext, ActionRequest, ApproveRequest, RejectRequest,
    ReturnRequest, DelegateRequest, EscalateRequest, CommentRequest, CancelRequest
)
from ..domain.enums import (
    ApproverType, EscalationAction, InstanceStatus, SlaStatus, StepActionType,
    FinalAction, EventType
)
from ..domain.errors import (
    IllegalTransitionError, PermissionDeniedError, PolicyNotConfiguredError,
    StaleInstanceStateError, TemplateValidationError, UnresolvableApproverError,
    ValidationError
)
from ..repositories.base import InstanceRepository, ActionRepository
from .approver_resolver import ApproverResolver
from .dependency_validator import DependencyValidator
from .event_publisher import EventPublisher
from .governance import GovernancePolicy
from .permission_guard import PermissionGuard
from .sla_policy import compute_sla_status, is_worse
from ..utils.idgen import generate_instance_id, generate_action_id
from ..utils.time import utc_now, calculate_deadline, format_iso
from ..utils.logger import get_logger

logger = get_logger(__name__)


class WorkflowEngine:
    """
    The Workflow Engine - Central orchestrator for instance transitions

    Responsibilities:
    - Create instances from active, validated templates
    - Apply approve / reject / return / delegate / escalate / comment /
      cancel with permission checks
    - Drive clock-based escalation and auto-termination
    - Append to the step action log and publish outbound events
    """

    def __init__(
        self,
        instance_repo: InstanceRepository,
        action_repo: ActionRepository,
        resolver: ApproverResolver,
        publisher: Optional[EventPublisher] = None,
        permission_guard: Optional[PermissionGuard] = None,
        validator: Optional[DependencyValidator] = None,
        governance_policies: Optional[Dict[str, GovernancePolicy]] = None,
        default_governance_policy: Optional[GovernancePolicy] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.instance_repo = instance_repo
        self.action_repo = action_repo
        self.resolver = resolver
        self.publisher = publisher or EventPublisher(clock=clock)
        self.permission_guard = permission_guard or PermissionGuard()
        self.validator = validator or DependencyValidator()
        self.governance_policies = dict(governance_policies or {})
        self.default_governance_policy = default_governance_policy
        self.clock = clock

        self._handlers = {
            "approve": self._approve,
            "reject": self._reject,
            "return": self._return,
            "delegate": self._delegate,
            "escalate": self._escalate,
            "comment": self._comment,
            "cancel": self._cancel,
        }

    # =========================================================================
    # Instance Creation
    # =========================================================================

    def create_instance(
        self,
        template: WorkflowTemplate,
        reference_type: str,
        reference_id: str,
        context: InstanceContext,
        initiated_by: ActorContext
    ) -> WorkflowInstance:
        """
        Create an instance at step 1 and start its clock

        Raises:
            IllegalTransitionError: Template is not active
            TemplateValidationError: Template steps do not validate
            UnresolvableApproverError: Nobody can act on step 1
            PolicyNotConfiguredError: Step 1 is a governance step without a policy
        """
        if not template.is_active:
            raise IllegalTransitionError(
                f"Workflow template {template.template_id} is not active",
                details={"template_id": template.template_id}
            )

        result = self.validator.validate_steps(template.steps)
        if not result.valid:
            raise TemplateValidationError(
                f"Workflow template {template.template_id} is not valid",
                details={"template_id": template.template_id, "issues": result.issues}
            )

        steps = [s.model_copy(deep=True) for s in template.ordered_steps]
        first_approvers = self._resolve_for_step(steps[0], context)

        now = self.clock()
        instance = WorkflowInstance(
            instance_id=generate_instance_id(),
            template_id=template.template_id,
            template_code=template.code,
            category=template.category,
            reference_type=reference_type,
            reference_id=reference_id,
            context=context,
            steps=steps,
            allow_return_to_previous=template.allow_return_to_previous,
            requires_signature=template.requires_signature,
            requires_letter=template.requires_letter,
            status=InstanceStatus.PENDING,
            current_step_order=steps[0].order,
            initiated_by=initiated_by.actor_id,
            initiated_at=now,
            auto_terminate_at=calculate_deadline(now, template.auto_terminate_hours),
            updated_at=now,
        )
        self.instance_repo.create(instance)

        # pending -> in_progress
        instance = self._save(instance, self._start_step_updates(instance, steps[0].order, now), now)

        logger.info(
            f"Created workflow instance {instance.instance_id} for {reference_type} {reference_id}",
            extra={
                "instance_id": instance.instance_id,
                "template_id": template.template_id,
                "actor_id": initiated_by.actor_id,
                "status": instance.status.value,
            }
        )
        self.publisher.publish(
            EventType.STEP_ADVANCED,
            instance,
            {"from_step": None, "to_step": instance.current_step_order, "approvers": sorted(first_approvers)}
        )
        return instance

    # =========================================================================
    # Action Dispatch
    # =========================================================================

    def apply_action(
        self,
        instance_id: str,
        actor: ActorContext,
        request: ActionRequest,
        expected_version: Optional[int] = None
    ) -> WorkflowInstance:
        """
        Apply one user action to an instance

        Args:
            instance_id: Instance to act on
            actor: Who is acting
            request: Tagged action request
            expected_version: Version the caller last read; a mismatch is
                reported as StaleInstanceStateError before anything changes

        Returns:
            The instance after the action
        """
        instance = self.instance_repo.get_or_raise(instance_id)

        if expected_version is not None and instance.version != expected_version:
            raise StaleInstanceStateError(
                f"Workflow instance {instance_id} is at version {instance.version}, not {expected_version}",
                details={
                    "instance_id": instance_id,
                    "expected_version": expected_version,
                    "actual_version": instance.version,
                }
            )

        now = self.clock()
        if self.enforce_auto_terminate(instance, now) is not None:
            raise IllegalTransitionError(
                f"Workflow instance {instance_id} exceeded its time limit and was terminated",
                details={"instance_id": instance_id}
            )

        if instance.is_terminal:
            raise IllegalTransitionError(
                f"Workflow instance {instance_id} is {instance.status.value}; no further action is possible",
                details={"instance_id": instance_id, "status": instance.status.value}
            )

        handler = self._handlers[request.action]
        updated = handler(instance, actor, request, now)

        logger.info(
            f"Applied {request.action} to instance {instance_id}",
            extra={
                "instance_id": instance_id,
                "action": request.action,
                "actor_id": actor.actor_id,
                "status": updated.status.value,
                "step_order": updated.current_step_order,
            }
        )
        return updated

    # =========================================================================
    # Action Handlers
    # =========================================================================

    def _approve(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        request: ApproveRequest,
        now: datetime
    ) -> WorkflowInstance:
        step = instance.current_step
        base = self._current_approvers(instance)
        eligible = self.permission_guard.apply_delegations(base, instance.delegations)
        if not self.permission_guard.can_act_on_step(actor, instance, eligible):
            raise PermissionDeniedError(
                "You cannot approve this step",
                details={"instance_id": instance.instance_id, "step_order": step.order}
            )

        signature_hash = None
        if self._signature_required(instance, step) and not actor.is_system:
            if not request.signature_text or not request.signature_text.strip():
                raise IllegalTransitionError(
                    f"Step '{step.name}' requires a signature",
                    details={"instance_id": instance.instance_id, "step_order": step.order}
                )
        if request.signature_text:
            signature_hash = self._signature_hash(request.signature_text, actor, instance, now)

        if self._uses_governance_policy(instance, step) and not actor.is_system:
            members = base
            represented = self._represented_members(actor.actor_id, members, instance.delegations)
            if represented.issubset(instance.step_approvals):
                raise IllegalTransitionError(
                    "You have already approved this step",
                    details={"instance_id": instance.instance_id, "step_order": step.order}
                )
            approvals = instance.step_approvals + sorted(represented - set(instance.step_approvals))
            policy = self._policy_for(step)
            if not policy.is_satisfied(members, approvals):
                updated = self._save(instance, {"step_approvals": approvals}, now)
                self._record(
                    updated, actor, StepActionType.APPROVE, now,
                    step=step, comment=request.comment, signature_hash=signature_hash,
                    details={"policy": policy.name, "approvals": len(approvals), "carried": False}
                )
                return updated

        return self._advance_or_complete(
            instance, actor, now, comment=request.comment, signature_hash=signature_hash
        )

    def _reject(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        request: RejectRequest,
        now: datetime
    ) -> WorkflowInstance:
        step = instance.current_step
        self._require_step_actor(instance, actor, "reject")

        if step.requires_comment and not (request.comment and request.comment.strip()):
            raise IllegalTransitionError(
                f"A comment is required to reject step '{step.name}'",
                details={"instance_id": instance.instance_id, "step_order": step.order}
            )

        updated = self._complete(instance, InstanceStatus.REJECTED, FinalAction.REJECT, actor, now)
        self._record(updated, actor, StepActionType.REJECT, now, step=step, comment=request.comment)
        self._publish_completed(updated, step.order)
        return updated

    def _return(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        request: ReturnRequest,
        now: datetime
    ) -> WorkflowInstance:
        step = instance.current_step
        self._require_step_actor(instance, actor, "return")

        if not instance.allow_return_to_previous:
            raise IllegalTransitionError(
                "This workflow does not allow returning to a previous step",
                details={"instance_id": instance.instance_id}
            )
        target = request.return_to_step
        if not 1 <= target < instance.current_step_order or instance.get_step(target) is None:
            raise IllegalTransitionError(
                f"Cannot return to step {target} from step {instance.current_step_order}",
                details={"instance_id": instance.instance_id, "return_to_step": target}
            )

        approvers = self._resolve_for_step(instance.get_step(target), instance.context)
        updated = self._save(instance, self._start_step_updates(instance, target, now), now)
        self._record(
            updated, actor, StepActionType.RETURN, now,
            step=step, comment=request.reason, return_to_step=target
        )
        self.publisher.publish(
            EventType.STEP_ADVANCED,
            updated,
            {
                "from_step": step.order,
                "to_step": target,
                "returned": True,
                "reason": request.reason,
                "approvers": sorted(approvers),
            }
        )
        return updated

    def _delegate(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        request: DelegateRequest,
        now: datetime
    ) -> WorkflowInstance:
        step = instance.current_step
        self._require_step_actor(instance, actor, "delegate")

        if not step.can_delegate:
            raise IllegalTransitionError(
                f"Step '{step.name}' cannot be delegated",
                details={"instance_id": instance.instance_id, "step_order": step.order}
            )
        delegate = request.delegated_to
        if delegate == actor.actor_id:
            raise IllegalTransitionError("You cannot delegate a step to yourself")
        if not self.resolver.directory.is_active(delegate):
            raise ValidationError(
                f"Delegate {delegate} does not exist or is inactive",
                details={"delegated_to": delegate}
            )

        delegations = dict(instance.delegations)
        delegations[actor.actor_id] = delegate
        if self._delegation_cycles(delegations, actor.actor_id):
            raise IllegalTransitionError(
                f"Delegating to {delegate} would create a delegation cycle",
                details={"delegated_to": delegate}
            )

        updated = self._save(instance, {"delegations": delegations}, now)
        self._record(
            updated, actor, StepActionType.DELEGATE, now,
            step=step, comment=request.reason, delegated_to=delegate
        )
        return updated

    def _escalate(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        request: EscalateRequest,
        now: datetime
    ) -> WorkflowInstance:
        step = instance.current_step
        eligible = self.permission_guard.apply_delegations(
            self._current_approvers_or_empty(instance), instance.delegations
        )
        if not self.permission_guard.can_escalate(actor, instance, eligible):
            raise PermissionDeniedError("You cannot escalate this step")
        if step.escalation_action is None:
            raise IllegalTransitionError(
                f"Step '{step.name}' has no escalation configured",
                details={"instance_id": instance.instance_id, "step_order": step.order}
            )
        return self._run_escalation(instance, actor, now, comment=request.comment)

    def _comment(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        request: CommentRequest,
        now: datetime
    ) -> WorkflowInstance:
        eligible = self.permission_guard.apply_delegations(
            self._current_approvers_or_empty(instance), instance.delegations
        )
        if not self.permission_guard.can_comment(actor, instance, eligible):
            raise PermissionDeniedError("You cannot comment on this workflow")

        # Version-only write
        updated = self._save(instance, {}, now)
        self._record(updated, actor, StepActionType.COMMENT, now, step=updated.current_step, comment=request.comment)
        return updated

    def _cancel(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        request: CancelRequest,
        now: datetime
    ) -> WorkflowInstance:
        if not self.permission_guard.can_cancel(actor, instance):
            raise PermissionDeniedError("You cannot cancel this workflow")

        step = instance.current_step
        updated = self._complete(instance, InstanceStatus.CANCELLED, FinalAction.CANCEL, actor, now)
        self._record(updated, actor, StepActionType.CANCEL, now, step=step, comment=request.reason)
        self._publish_completed(updated, step.order)
        return updated

    # =========================================================================
    # Clock-Driven Transitions
    # =========================================================================

    def enforce_auto_terminate(
        self,
        instance: WorkflowInstance,
        now: Optional[datetime] = None
    ) -> Optional[WorkflowInstance]:
        """
        Terminate the instance if it outlived the template's auto_terminate_hours

        Returns:
            The terminated instance, or None if nothing happened
        """
        now = now or self.clock()
        if instance.is_terminal or instance.auto_terminate_at is None or now <= instance.auto_terminate_at:
            return None

        system = ActorContext.system()
        step = instance.current_step
        updated = self._complete(instance, InstanceStatus.CANCELLED, FinalAction.TERMINATE, system, now)
        self._record(
            updated, system, StepActionType.CANCEL, now,
            step=step,
            comment="Auto-terminated: workflow time limit exceeded",
            details={"auto_terminated": True, "auto_terminate_at": format_iso(instance.auto_terminate_at)}
        )
        logger.warning(
            f"Auto-terminated workflow instance {instance.instance_id}",
            extra={"instance_id": instance.instance_id, "status": updated.status.value}
        )
        self._publish_completed(updated, step.order)
        return updated

    def update_sla_status(self, instance: WorkflowInstance, now: Optional[datetime] = None) -> WorkflowInstance:
        """Store the derived SLA status; announce upward moves to warning or critical"""
        now = now or self.clock()
        if instance.is_terminal or instance.current_step_started_at is None:
            return instance

        new_status = compute_sla_status(instance.current_step, instance.current_step_started_at, now)
        if new_status == instance.sla_status:
            return instance

        updated = self._save(instance, {"sla_status": new_status}, now)
        logger.info(
            f"SLA status of instance {instance.instance_id} is now {new_status.value}",
            extra={"instance_id": instance.instance_id, "sla_status": new_status.value}
        )
        if new_status in (SlaStatus.WARNING, SlaStatus.CRITICAL) and is_worse(new_status, instance.sla_status):
            self.publisher.publish(
                EventType.DEADLINE_APPROACHING,
                updated,
                {
                    "sla_status": new_status.value,
                    "deadline_at": format_iso(updated.current_step_deadline_at)
                    if updated.current_step_deadline_at else None,
                }
            )
        return updated

    def escalate_if_due(self, instance: WorkflowInstance, now: Optional[datetime] = None) -> bool:
        """
        Escalate once per deadline crossing

        Returns:
            True if an escalation was applied
        """
        now = now or self.clock()
        deadline = instance.current_step_deadline_at
        if instance.is_terminal or deadline is None or now <= deadline:
            return False
        if instance.escalated_deadline_at == deadline:
            return False
        if instance.current_step.escalation_action is None:
            return False

        self._run_escalation(instance, ActorContext.system(), now, crossed_deadline=deadline)
        return True

    def _run_escalation(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        now: datetime,
        comment: Optional[str] = None,
        crossed_deadline: Optional[datetime] = None
    ) -> WorkflowInstance:
        step = instance.current_step
        escalation_action = step.escalation_action
        marker: Dict[str, Any] = {"escalated_at": now}
        if crossed_deadline is not None:
            marker["escalated_deadline_at"] = crossed_deadline
        details: Dict[str, Any] = {
            "escalation_action": escalation_action.value,
            "escalation_level": instance.escalation_level,
            "clock_driven": crossed_deadline is not None,
        }
        system = ActorContext.system()

        if escalation_action == EscalationAction.NOTIFY_ALTERNATE:
            alternate = self.resolver.resolve_alternate(step)
            if alternate is None:
                logger.warning(
                    f"No active alternate approver for step '{step.name}'",
                    extra={"instance_id": instance.instance_id, "step_order": step.order}
                )
            updated = self._save(instance, marker, now)
            details["alternate_approver_id"] = alternate
            self._record(updated, actor, StepActionType.ESCALATE, now, step=step, comment=comment, details=details)

        elif escalation_action == EscalationAction.ESCALATE_UP:
            new_level = instance.escalation_level + 1
            approvers = self.resolver.resolve(step, instance.context, escalation_level=new_level)
            updated = self._save(instance, {
                **marker,
                "status": InstanceStatus.ESCALATED,
                "escalation_level": new_level,
                "current_step_started_at": now,
                "current_step_deadline_at": calculate_deadline(now, step.escalation_hours),
                "sla_status": SlaStatus.ON_TRACK,
                "step_approvals": [],
                "delegations": {},
            }, now)
            details["escalation_level"] = new_level
            details["approvers"] = sorted(approvers)
            self._record(updated, actor, StepActionType.ESCALATE, now, step=step, comment=comment, details=details)

        elif escalation_action == EscalationAction.AUTO_APPROVE:
            updated = self._advance_or_complete(
                instance, system, now,
                comment="Auto-approved on escalation",
                extra_updates={"escalated_at": now},
                before_record=lambda saved: self._record(
                    saved, actor, StepActionType.ESCALATE, now, step=step, comment=comment, details=details
                ),
                announce=False
            )

        elif escalation_action == EscalationAction.AUTO_REJECT:
            updated = self._complete(instance, InstanceStatus.REJECTED, FinalAction.REJECT, system, now, marker)
            self._record(updated, actor, StepActionType.ESCALATE, now, step=step, comment=comment, details=details)
            self._record(updated, system, StepActionType.REJECT, now, step=step, comment="Auto-rejected on escalation")

        elif escalation_action == EscalationAction.TERMINATE:
            updated = self._complete(instance, InstanceStatus.CANCELLED, FinalAction.TERMINATE, system, now, marker)
            self._record(updated, actor, StepActionType.ESCALATE, now, step=step, comment=comment, details=details)

        else:
            raise IllegalTransitionError(f"Unknown escalation action {escalation_action}")

        logger.info(
            f"Escalated step {step.order} of instance {instance.instance_id} ({escalation_action.value})",
            extra={
                "instance_id": instance.instance_id,
                "step_order": step.order,
                "action": escalation_action.value,
                "actor_id": actor.actor_id,
            }
        )
        self.publisher.publish(
            EventType.ESCALATED,
            updated,
            {
                "step": step.order,
                "step_name": step.name,
                "action": escalation_action.value,
                "escalation_level": updated.escalation_level,
                **({"alternate_approver_id": details.get("alternate_approver_id")}
                   if escalation_action == EscalationAction.NOTIFY_ALTERNATE else {}),
            },
            step_order=step.order
        )
        self._announce_transition(instance, updated)
        return updated

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.instance_repo.get_or_raise(instance_id)

    def get_history(self, instance_id: str) -> List[WorkflowStepAction]:
        self.instance_repo.get_or_raise(instance_id)
        return self.action_repo.list_for_instance(instance_id)

    def eligible_approvers(self, instance_id: str) -> FrozenSet[str]:
        """Actors who can decide the current step right now, delegations applied"""
        instance = self.instance_repo.get_or_raise(instance_id)
        if instance.is_terminal:
            return frozenset()
        return self._eligible_pending(instance)

    def list_pending_for_actor(self, actor: ActorContext) -> List[WorkflowInstance]:
        """Non-terminal instances waiting on this actor"""
        pending = []
        for instance in self.instance_repo.list_active():
            try:
                eligible = self._eligible_pending(instance)
            except (UnresolvableApproverError, PolicyNotConfiguredError) as e:
                logger.debug(
                    f"Skipping instance {instance.instance_id} in pending list: {e}",
                    extra={"instance_id": instance.instance_id}
                )
                continue
            if actor.actor_id in eligible:
                pending.append(instance)
        return pending

    def get_available_actions(self, instance_id: str, actor: ActorContext) -> List[str]:
        instance = self.instance_repo.get_or_raise(instance_id)
        if instance.is_terminal:
            return []
        eligible = self.permission_guard.apply_delegations(
            self._current_approvers_or_empty(instance), instance.delegations
        )
        return self.permission_guard.get_available_actions(actor, instance, eligible)

    def _eligible_pending(self, instance: WorkflowInstance) -> FrozenSet[str]:
        """Eligible actors, minus governance members whose approval is already counted"""
        base = self._current_approvers(instance)
        if self._uses_governance_policy(instance, instance.current_step):
            base = frozenset(base - set(instance.step_approvals))
        return self.permission_guard.apply_delegations(base, instance.delegations)

    # =========================================================================
    # Transition Helpers
    # =========================================================================

    def _advance_or_complete(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        now: datetime,
        comment: Optional[str] = None,
        signature_hash: Optional[str] = None,
        extra_updates: Optional[Dict[str, Any]] = None,
        before_record: Optional[Callable[[WorkflowInstance], None]] = None,
        announce: bool = True
    ) -> WorkflowInstance:
        """Approve the current step: complete on the last step, otherwise advance"""
        step = instance.current_step

        if instance.is_last_step:
            updated = self._complete(
                instance, InstanceStatus.APPROVED, FinalAction.APPROVE, actor, now, extra_updates
            )
        else:
            next_order = self._next_order(instance)
            # Resolve before writing: an unresolvable next step blocks the advance
            self._resolve_for_step(instance.get_step(next_order), instance.context)
            updates = self._start_step_updates(instance, next_order, now)
            updates.update(extra_updates or {})
            updated = self._save(instance, updates, now)

        if before_record is not None:
            before_record(updated)
        self._record(
            updated, actor, StepActionType.APPROVE, now,
            step=step, comment=comment, signature_hash=signature_hash
        )
        if announce:
            self._announce_transition(instance, updated)
        return updated

    def _announce_transition(self, before: WorkflowInstance, after: WorkflowInstance) -> None:
        """StepAdvanced or InstanceCompleted for a step change caused by approval"""
        if after.is_terminal:
            if not before.is_terminal:
                self._publish_completed(after, before.current_step_order)
        elif after.current_step_order > before.current_step_order:
            self.publisher.publish(
                EventType.STEP_ADVANCED,
                after,
                {
                    "from_step": before.current_step_order,
                    "to_step": after.current_step_order,
                    "approvers": sorted(self._current_approvers_or_empty(after)),
                }
            )

    def _complete(
        self,
        instance: WorkflowInstance,
        status: InstanceStatus,
        final_action: FinalAction,
        actor: ActorContext,
        now: datetime,
        extra_updates: Optional[Dict[str, Any]] = None
    ) -> WorkflowInstance:
        updates = {
            "status": status,
            "final_action": final_action,
            "completed_at": now,
            "completed_by": actor.actor_id,
            "current_step_deadline_at": None,
        }
        updates.update(extra_updates or {})
        return self._save(instance, updates, now)

    def _publish_completed(self, instance: WorkflowInstance, step_order: int) -> None:
        self.publisher.publish(
            EventType.INSTANCE_COMPLETED,
            instance,
            {
                "final_action": instance.final_action.value,
                "status": instance.status.value,
                "completed_by": instance.completed_by,
                "requires_letter": instance.requires_letter,
            },
            step_order=step_order
        )

    def _start_step_updates(self, instance: WorkflowInstance, order: int, now: datetime) -> Dict[str, Any]:
        """Fresh clock and approver state for the step at order"""
        step = instance.get_step(order)
        return {
            "status": InstanceStatus.IN_PROGRESS,
            "current_step_order": order,
            "current_step_started_at": now,
            "current_step_deadline_at": calculate_deadline(now, step.escalation_hours),
            "sla_status": SlaStatus.ON_TRACK,
            "escalation_level": 0,
            "escalated_deadline_at": None,
            "step_approvals": [],
            "delegations": {},
        }

    def _save(self, instance: WorkflowInstance, updates: Dict[str, Any], now: datetime) -> WorkflowInstance:
        """Compare-and-set against the version that was read"""
        updated = instance.model_copy(update={**updates, "updated_at": now})
        return self.instance_repo.replace(updated, expected_version=instance.version)

    def _record(
        self,
        instance: WorkflowInstance,
        actor: ActorContext,
        action: StepActionType,
        now: datetime,
        step: Optional[WorkflowStep] = None,
        comment: Optional[str] = None,
        delegated_to: Optional[str] = None,
        return_to_step: Optional[int] = None,
        signature_hash: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> WorkflowStepAction:
        step = step or instance.current_step
        return self.action_repo.append(
            WorkflowStepAction(
                action_id=generate_action_id(),
                instance_id=instance.instance_id,
                step_id=step.step_id,
                step_order=step.order,
                action=action,
                actor_id=actor.actor_id,
                is_system=actor.is_system,
                acted_at=now,
                comment=comment,
                delegated_to=delegated_to,
                return_to_step=return_to_step,
                signature_hash=signature_hash,
                details=details or {},
            )
        )

    def _next_order(self, instance: WorkflowInstance) -> int:
        return min(s.order for s in instance.steps if s.order > instance.current_step_order)

    def _require_step_actor(self, instance: WorkflowInstance, actor: ActorContext, action: str) -> FrozenSet[str]:
        eligible = self.permission_guard.apply_delegations(
            self._current_approvers(instance), instance.delegations
        )
        if not self.permission_guard.can_act_on_step(actor, instance, eligible):
            raise PermissionDeniedError(
                f"You cannot {action} this step",
                details={"instance_id": instance.instance_id, "step_order": instance.current_step_order}
            )
        return eligible

    def _current_approvers(self, instance: WorkflowInstance) -> FrozenSet[str]:
        return self.resolver.resolve(
            instance.current_step, instance.context, escalation_level=instance.escalation_level
        )

    def _current_approvers_or_empty(self, instance: WorkflowInstance) -> FrozenSet[str]:
        try:
            return self._current_approvers(instance)
        except UnresolvableApproverError:
            return frozenset()

    def _resolve_for_step(self, step: WorkflowStep, context: InstanceContext) -> FrozenSet[str]:
        """Approvers of a step about to become current; governance steps also need a policy"""
        approvers = self.resolver.resolve(step, context)
        if step.approver_type == ApproverType.GOVERNANCE_BODY:
            self._policy_for(step)
        return approvers

    def _uses_governance_policy(self, instance: WorkflowInstance, step: WorkflowStep) -> bool:
        # Once escalated up, the escalated approvers decide alone
        return step.approver_type == ApproverType.GOVERNANCE_BODY and instance.escalation_level == 0

    def _policy_for(self, step: WorkflowStep) -> GovernancePolicy:
        policy = self.governance_policies.get(step.approver_target) or self.default_governance_policy
        if policy is None:
            raise PolicyNotConfiguredError(
                f"No governance policy configured for body {step.approver_target}",
                details={"step_id": step.step_id, "approver_target": step.approver_target}
            )
        return policy

    def _signature_required(self, instance: WorkflowInstance, step: WorkflowStep) -> bool:
        return step.requires_signature or (instance.requires_signature and instance.is_last_step)

    def _signature_hash(
        self,
        signature_text: str,
        actor: ActorContext,
        instance: WorkflowInstance,
        now: datetime
    ) -> str:
        material = f"{signature_text}|{actor.actor_id}|{format_iso(now)}|{instance.instance_id}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    @staticmethod
    def _represented_members(actor_id: str, members: FrozenSet[str], delegations: Dict[str, str]) -> Set[str]:
        """Members whose delegation chain ends at actor_id"""
        represented = set()
        for member in members:
            if PermissionGuard.apply_delegations(frozenset({member}), delegations) == {actor_id}:
                represented.add(member)
        return represented

    @staticmethod
    def _delegation_cycles(delegations: Dict[str, str], start: str) -> bool:
        current = delegations.get(start)
        seen = {start}
        while current is not None:
            if current in seen:
                return True
            seen.add(current)
            current = delegations.get(current)
        return False
