"""Domain Models - Pydantic schemas for all entities"""
from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from .enums import (
    WorkflowCategory, ApproverType, EscalationAction, InstanceStatus, SlaStatus,
    StepActionType, FinalAction, EventType, PhaseType, AdvanceCondition,
    TERMINAL_STATUSES
)
from ..config.settings import settings
from ..utils.time import ensure_utc


# MongoDB hands datetimes back naive; every stored timestamp is UTC
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


# ============================================================================
# Actor & Instance Context
# ============================================================================

class ActorContext(BaseModel):
    """The actor performing an engine call - always passed explicitly"""
    model_config = ConfigDict(extra="forbid")

    actor_id: str = Field(..., min_length=1, description="Directory identifier of the actor")
    display_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list, description="System roles held by the actor")
    is_system: bool = Field(default=False, description="True for clock-driven engine actions")

    @classmethod
    def system(cls) -> "ActorContext":
        """The engine's own actor for automatic transitions"""
        return cls(actor_id=settings.system_actor_id, display_name="System", is_system=True)


class InstanceContext(BaseModel):
    """Facts about the business object that approver resolution needs"""
    model_config = ConfigDict(extra="forbid")

    subject_id: str = Field(..., description="Employee the business object is about")
    initiator_id: Optional[str] = Field(None, description="Actor who submitted the business object")
    org_unit_id: Optional[str] = Field(None, description="Organizational unit scoping HR approvers")
    company_id: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Workflow Templates
# ============================================================================

class WorkflowStep(BaseModel):
    """One approval stage of a workflow template"""
    model_config = ConfigDict(extra="forbid")

    step_id: str = Field(..., description="Unique step ID")
    template_id: str
    order: int = Field(..., ge=1, description="1-based position in the template")
    name: str
    description: Optional[str] = None
    approver_type: ApproverType
    approver_target: Optional[str] = Field(
        None, description="Position, role, governance body or user id, per approver_type"
    )
    alternate_approver_id: Optional[str] = Field(None, description="Notified on notify_alternate")
    escalation_hours: Optional[float] = Field(None, gt=0)
    escalation_action: Optional[EscalationAction] = None
    sla_warning_hours: Optional[float] = Field(None, gt=0)
    sla_critical_hours: Optional[float] = Field(None, gt=0)
    requires_signature: bool = False
    requires_comment: bool = Field(default=False, description="Comment mandatory on reject/return")
    can_delegate: bool = True

    @model_validator(mode="after")
    def _escalation_action_required(self) -> "WorkflowStep":
        if self.escalation_hours is not None and self.escalation_action is None:
            raise ValueError("escalation_action is required when escalation_hours is set")
        return self


class WorkflowTemplate(BaseModel):
    """Workflow template - structurally immutable once activated"""
    model_config = ConfigDict(extra="ignore")

    template_id: str = Field(..., description="Unique template ID")
    name: str
    code: str
    category: WorkflowCategory
    description: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    requires_signature: bool = Field(default=False, description="Final approval must be signed")
    requires_letter: bool = Field(default=False, description="A letter is generated on approval")
    allow_return_to_previous: bool = False
    auto_terminate_hours: Optional[float] = Field(None, gt=0)
    is_active: bool = False
    supersedes_template_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    activated_at: Optional[UtcDatetime] = None
    version: int = Field(default=1, description="Optimistic concurrency version")

    @property
    def ordered_steps(self) -> List[WorkflowStep]:
        return sorted(self.steps, key=lambda s: s.order)


# ============================================================================
# Workflow Instances
# ============================================================================

class WorkflowInstance(BaseModel):
    """One running execution of a workflow template against a business object"""
    model_config = ConfigDict(extra="ignore")

    instance_id: str = Field(..., description="Unique instance ID")
    template_id: str
    template_code: str
    category: WorkflowCategory
    reference_type: str
    reference_id: str
    context: InstanceContext
    # Snapshot of the template at creation time
    steps: List[WorkflowStep]
    allow_return_to_previous: bool = False
    requires_signature: bool = False
    requires_letter: bool = False

    status: InstanceStatus = Field(default=InstanceStatus.PENDING)
    current_step_order: int = 1
    current_step_started_at: Optional[UtcDatetime] = None
    current_step_deadline_at: Optional[UtcDatetime] = None
    sla_status: SlaStatus = Field(default=SlaStatus.ON_TRACK)
    escalation_level: int = Field(default=0, description="Levels climbed on the current step")
    escalated_at: Optional[UtcDatetime] = None
    escalated_deadline_at: Optional[UtcDatetime] = Field(
        None, description="Deadline whose crossing was already escalated"
    )
    step_approvals: List[str] = Field(default_factory=list, description="Governance approvals on the current step")
    delegations: Dict[str, str] = Field(default_factory=dict, description="Delegator -> delegate for the current step")

    initiated_by: str
    initiated_at: UtcDatetime
    auto_terminate_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    completed_by: Optional[str] = None
    final_action: Optional[FinalAction] = None
    updated_at: UtcDatetime
    version: int = Field(default=1, description="Optimistic concurrency version")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def is_last_step(self) -> bool:
        return self.current_step_order >= self.total_steps

    def get_step(self, order: int) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.order == order), None)

    @property
    def current_step(self) -> WorkflowStep:
        step = self.get_step(self.current_step_order)
        if step is None:
            raise LookupError(
                f"Instance {self.instance_id} has no step {self.current_step_order}"
            )
        return step


class WorkflowStepAction(BaseModel):
    """Step action (append-only audit log)"""
    model_config = ConfigDict(extra="forbid")

    action_id: str
    instance_id: str
    step_id: Optional[str] = None
    step_order: int
    action: StepActionType
    actor_id: str
    is_system: bool = False
    acted_at: UtcDatetime
    comment: Optional[str] = None
    delegated_to: Optional[str] = None
    return_to_step: Optional[int] = None
    signature_hash: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class WorkflowEvent(BaseModel):
    """Outbound event for notification, payroll and leave collaborators"""
    model_config = ConfigDict(extra="ignore")

    event_id: str
    event_type: EventType
    instance_id: str
    template_id: str
    reference_type: str
    reference_id: str
    step_order: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: UtcDatetime
    correlation_id: Optional[str] = None
    dispatched_at: Optional[UtcDatetime] = Field(None, description="Set once in-process subscribers ran")


# ============================================================================
# Action Requests (tagged union dispatched by WorkflowEngine.apply_action)
# ============================================================================

class ApproveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["approve"] = "approve"
    comment: Optional[str] = None
    signature_text: Optional[str] = Field(None, description="Typed signature when the step requires one")


class RejectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["reject"] = "reject"
    comment: Optional[str] = None


class ReturnRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["return"] = "return"
    return_to_step: int = Field(..., ge=1)
    reason: str = Field(..., min_length=1)


class DelegateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["delegate"] = "delegate"
    delegated_to: str = Field(..., min_length=1)
    reason: Optional[str] = None


class EscalateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["escalate"] = "escalate"
    comment: Optional[str] = None


class CommentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["comment"] = "comment"
    comment: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["cancel"] = "cancel"
    reason: Optional[str] = None


ActionRequest = Annotated[
    Union[
        ApproveRequest, RejectRequest, ReturnRequest, DelegateRequest,
        EscalateRequest, CommentRequest, CancelRequest
    ],
    Field(discriminator="action")
]


# ============================================================================
# Appraisal Phase Templates
# ============================================================================

class PhasePreset(BaseModel):
    """Display label and default length of a phase type"""
    model_config = ConfigDict(frozen=True)

    label: str
    default_duration_days: int


PHASE_TYPE_PRESETS: Dict[PhaseType, PhasePreset] = {
    PhaseType.GOAL_SETTING: PhasePreset(label="Goal Setting", default_duration_days=14),
    PhaseType.SELF_ASSESSMENT: PhasePreset(label="Self Assessment", default_duration_days=14),
    PhaseType.FEEDBACK_360: PhasePreset(label="360 Feedback Collection", default_duration_days=21),
    PhaseType.MANAGER_REVIEW: PhasePreset(label="Manager Review", default_duration_days=14),
    PhaseType.CALIBRATION: PhasePreset(label="Calibration", default_duration_days=7),
    PhaseType.HR_REVIEW: PhasePreset(label="HR Review", default_duration_days=7),
    PhaseType.RATING_RELEASE: PhasePreset(label="Rating Release", default_duration_days=3),
    PhaseType.FINALIZATION: PhasePreset(label="Finalization", default_duration_days=7),
    PhaseType.EMPLOYEE_ACKNOWLEDGMENT: PhasePreset(label="Employee Acknowledgment", default_duration_days=7),
}


def phase_label(phase_type: PhaseType) -> str:
    """Human-readable label of a phase type"""
    return PHASE_TYPE_PRESETS[phase_type].label


class AppraisalTemplatePhase(BaseModel):
    """One scheduled stage of an appraisal cycle template"""
    model_config = ConfigDict(extra="forbid")

    phase_id: str = Field(..., description="Unique phase ID")
    template_id: str
    phase_type: PhaseType
    phase_name: Optional[str] = Field(None, description="Defaults to the phase type label")
    display_order: int = Field(..., ge=0)
    start_offset_days: int = Field(default=0, ge=0, description="Days from cycle start")
    duration_days: int = Field(..., ge=1)
    is_mandatory: bool = True
    allow_parallel: bool = False
    depends_on_phase_id: Optional[str] = None
    is_active: bool = True
    auto_advance: bool = False
    advance_condition: Optional[AdvanceCondition] = None
    notify_on_start: bool = True
    notify_on_deadline: bool = True

    @property
    def display_name(self) -> str:
        return self.phase_name or phase_label(self.phase_type)

    @property
    def end_offset_days(self) -> int:
        """Exclusive end of the phase, in days from cycle start"""
        return self.start_offset_days + self.duration_days


class AppraisalPhaseTemplate(BaseModel):
    """Appraisal cycle template made of phases"""
    model_config = ConfigDict(extra="ignore")

    template_id: str = Field(..., description="Unique template ID")
    name: str
    description: Optional[str] = None
    default_duration_days: int = Field(default=365, ge=1)
    phases: List[AppraisalTemplatePhase] = Field(default_factory=list)
    is_active: bool = False
    created_by: Optional[str] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    activated_at: Optional[UtcDatetime] = None
    version: int = Field(default=1, description="Optimistic concurrency version")

    def get_phase(self, phase_id: str) -> Optional[AppraisalTemplatePhase]:
        return next((p for p in self.phases if p.phase_id == phase_id), None)


# ============================================================================
# Validation & Scheduling Results
# ============================================================================

class ValidationResult(BaseModel):
    """Outcome of the dependency validator"""
    model_config = ConfigDict(frozen=True)

    valid: bool
    issues: List[str] = Field(default_factory=list)

    @classmethod
    def from_issues(cls, issues: List[str]) -> "ValidationResult":
        return cls(valid=not issues, issues=list(issues))


class ScheduledPhase(BaseModel):
    """A phase with concrete calendar dates (end date exclusive)"""
    model_config = ConfigDict(frozen=True)

    phase: AppraisalTemplatePhase
    calculated_start_date: date
    calculated_end_date: date
