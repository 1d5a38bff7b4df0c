"""Workflow Engine - The brain of the system"""
from .workflow_engine import WorkflowEngine
from .permission_guard import PermissionGuard
from .approver_resolver import ApproverResolver
from .dependency_validator import DependencyValidator, PhaseOrderingRule, PHASE_ORDERING_RULES
from .event_publisher import EventPublisher
from .governance import GovernancePolicy, UnanimousPolicy, QuorumPolicy, SingleMemberPolicy
from .phase_scheduler import (
    calculate_dates, total_duration, schedule_template, phases_on, format_phase_duration
)
from .sla_policy import compute_sla_status

__all__ = [
    "WorkflowEngine",
    "PermissionGuard",
    "ApproverResolver",
    "DependencyValidator",
    "PhaseOrderingRule",
    "PHASE_ORDERING_RULES",
    "EventPublisher",
    "GovernancePolicy",
    "UnanimousPolicy",
    "QuorumPolicy",
    "SingleMemberPolicy",
    "calculate_dates",
    "total_duration",
    "schedule_template",
    "phases_on",
    "format_phase_duration",
    "compute_sla_status",
]
