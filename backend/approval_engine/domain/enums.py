"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class WorkflowCategory(str, Enum):
    """Business transaction a workflow template approves"""
    HIRE = "hire"
    REHIRE = "rehire"
    CONFIRMATION = "confirmation"
    PROBATION_CONFIRMATION = "probation_confirmation"
    PROBATION_EXTENSION = "probation_extension"
    PROMOTION = "promotion"
    TRANSFER = "transfer"
    ACTING = "acting"
    SECONDMENT = "secondment"
    TERMINATION = "termination"
    RESIGNATION = "resignation"
    SALARY_CHANGE = "salary_change"
    RATE_CHANGE = "rate_change"
    LEAVE_REQUEST = "leave_request"
    EXPENSE_CLAIM = "expense_claim"
    LETTER_REQUEST = "letter_request"
    HEADCOUNT_REQUEST = "headcount_request"
    TRAINING_REQUEST = "training_request"
    QUALIFICATION = "qualification"
    APPRAISAL = "appraisal"
    GENERAL = "general"


class ApproverType(str, Enum):
    """How the approvers of a step are resolved"""
    MANAGER = "manager"
    HR = "hr"
    POSITION = "position"
    WORKFLOW_ROLE = "workflow_role"
    ROLE = "role"
    GOVERNANCE_BODY = "governance_body"
    SPECIFIC_USER = "specific_user"


# Approver types whose approver_target must be set
TARGETED_APPROVER_TYPES = frozenset({
    ApproverType.POSITION,
    ApproverType.WORKFLOW_ROLE,
    ApproverType.ROLE,
    ApproverType.GOVERNANCE_BODY,
    ApproverType.SPECIFIC_USER,
})


class EscalationAction(str, Enum):
    """What happens when a step deadline passes with no action"""
    NOTIFY_ALTERNATE = "notify_alternate"  # Keep waiting, notify the alternate approver
    ESCALATE_UP = "escalate_up"
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    TERMINATE = "terminate"


class InstanceStatus(str, Enum):
    """Workflow instance status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"  # Transient - a return lands back in IN_PROGRESS
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    InstanceStatus.APPROVED,
    InstanceStatus.REJECTED,
    InstanceStatus.CANCELLED,
})


class SlaStatus(str, Enum):
    """Derived severity of elapsed time on the current step"""
    ON_TRACK = "on_track"
    WARNING = "warning"
    CRITICAL = "critical"
    BREACHED = "breached"


SLA_SEVERITY = {
    SlaStatus.ON_TRACK: 0,
    SlaStatus.WARNING: 1,
    SlaStatus.CRITICAL: 2,
    SlaStatus.BREACHED: 3,
}


class StepActionType(str, Enum):
    """Actions recorded in the append-only step action log"""
    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"
    DELEGATE = "delegate"
    ESCALATE = "escalate"
    COMMENT = "comment"
    CANCEL = "cancel"


class FinalAction(str, Enum):
    """How a terminal instance ended"""
    APPROVE = "approve"
    REJECT = "reject"
    TERMINATE = "terminate"
    CANCEL = "cancel"


class EventType(str, Enum):
    """Outbound events consumed by external collaborators"""
    STEP_ADVANCED = "StepAdvanced"
    INSTANCE_COMPLETED = "InstanceCompleted"
    DEADLINE_APPROACHING = "DeadlineApproaching"
    ESCALATED = "Escalated"
    ESCALATION_FAILED = "EscalationFailed"  # Operational alert


class PhaseType(str, Enum):
    """Appraisal cycle phase types"""
    GOAL_SETTING = "goal_setting"
    SELF_ASSESSMENT = "self_assessment"
    FEEDBACK_360 = "360_collection"
    MANAGER_REVIEW = "manager_review"
    CALIBRATION = "calibration"
    HR_REVIEW = "hr_review"
    RATING_RELEASE = "rating_release"
    FINALIZATION = "finalization"
    EMPLOYEE_ACKNOWLEDGMENT = "employee_acknowledgment"


class AdvanceCondition(str, Enum):
    """When an auto-advancing phase moves participants on"""
    ALL_COMPLETE = "all_complete"
    DEADLINE_PASSED = "deadline_passed"
    APPROVAL_RECEIVED = "approval_received"
