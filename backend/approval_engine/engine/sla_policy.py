"""SLA Policy - Derive SLA status from elapsed time on a step"""
from datetime import datetime

from ..domain.models import WorkflowStep
from ..domain.enums import SlaStatus, SLA_SEVERITY
from ..utils.time import hours_between


def compute_sla_status(step: WorkflowStep, step_started_at: datetime, now: datetime) -> SlaStatus:
    """
    Compare hours elapsed on the step against its thresholds

    warning and critical apply once reached; breached only once the
    escalation threshold is strictly exceeded.
    """
    elapsed = hours_between(step_started_at, now)

    if step.escalation_hours is not None and elapsed > step.escalation_hours:
        return SlaStatus.BREACHED
    if step.sla_critical_hours is not None and elapsed >= step.sla_critical_hours:
        return SlaStatus.CRITICAL
    if step.sla_warning_hours is not None and elapsed >= step.sla_warning_hours:
        return SlaStatus.WARNING
    return SlaStatus.ON_TRACK


def is_worse(new: SlaStatus, old: SlaStatus) -> bool:
    """True when new is more severe than old"""
    return SLA_SEVERITY[new] > SLA_SEVERITY[old]
