"""Phase Scheduler - Calendar dates for appraisal cycle phases"""
from datetime import date, timedelta
from typing import List, Optional, Sequence

from ..domain.models import AppraisalPhaseTemplate, AppraisalTemplatePhase, ScheduledPhase
from ..domain.errors import TemplateValidationError
from ..utils.logger import get_logger
from .dependency_validator import DependencyValidator

logger = get_logger(__name__)


def calculate_dates(
    phases: Sequence[AppraisalTemplatePhase],
    cycle_start_date: date
) -> List[ScheduledPhase]:
    """
    Place phases on the calendar

    start = cycle start + start_offset_days
    end = start + duration_days (exclusive)

    Pure: the same inputs always give the same output, in input order.
    """
    scheduled = []
    for phase in phases:
        start = cycle_start_date + timedelta(days=phase.start_offset_days)
        scheduled.append(
            ScheduledPhase(
                phase=phase,
                calculated_start_date=start,
                calculated_end_date=start + timedelta(days=phase.duration_days),
            )
        )
    return scheduled


def total_duration(phases: Sequence[AppraisalTemplatePhase]) -> int:
    """Cycle length in days: the latest phase end offset (0 for no phases)"""
    return max((p.end_offset_days for p in phases), default=0)


def schedule_template(
    template: AppraisalPhaseTemplate,
    cycle_start_date: date,
    validator: Optional[DependencyValidator] = None
) -> List[ScheduledPhase]:
    """
    Schedule the active phases of a template, validating it first

    Raises:
        TemplateValidationError: If the phase set does not validate
    """
    result = (validator or DependencyValidator()).validate_phases(template.phases)
    if not result.valid:
        raise TemplateValidationError(
            f"Appraisal template {template.template_id} cannot be scheduled",
            details={"template_id": template.template_id, "issues": result.issues}
        )

    active = sorted((p for p in template.phases if p.is_active), key=lambda p: p.display_order)
    scheduled = calculate_dates(active, cycle_start_date)
    logger.info(
        f"Scheduled {len(scheduled)} phases from {cycle_start_date.isoformat()}",
        extra={"template_id": template.template_id}
    )
    return scheduled


def phases_on(scheduled: Sequence[ScheduledPhase], day: date) -> List[ScheduledPhase]:
    """Phases running on a given day"""
    return [s for s in scheduled if s.calculated_start_date <= day < s.calculated_end_date]


def format_phase_duration(days: int) -> str:
    """
    Human-readable phase length

    Examples:
        >>> format_phase_duration(1)
        '1 day'
        >>> format_phase_duration(14)
        '2 weeks'
        >>> format_phase_duration(10)
        '1 week 3 days'
    """
    if days < 7:
        return f"{days} day" if days == 1 else f"{days} days"

    weeks, rest = divmod(days, 7)
    week_part = "1 week" if weeks == 1 else f"{weeks} weeks"
    if rest == 0:
        return week_part
    day_part = "1 day" if rest == 1 else f"{rest} days"
    return f"{week_part} {day_part}"
