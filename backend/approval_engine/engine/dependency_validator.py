"""Dependency Validator - Author-time legality checks for steps and phases"""
from typing import Dict, List, NamedTuple, Optional, Sequence, Set, Union

from ..domain.models import (
    AppraisalTemplatePhase, WorkflowStep, ValidationResult, phase_label
)
from ..domain.enums import PhaseType, EscalationAction, TARGETED_APPROVER_TYPES
from ..utils.logger import get_logger

logger = get_logger(__name__)

FIRST = "first"
LAST = "last"
BEFORE = "before"
AFTER = "after"


class PhaseOrderingRule(NamedTuple):
    """phase_type must be FIRST/LAST, or BEFORE/AFTER other"""
    phase_type: PhaseType
    relation: str
    other: Optional[PhaseType] = None

    def message(self) -> str:
        label = phase_label(self.phase_type)
        if self.relation == FIRST:
            return f"{label} must be the first phase"
        if self.relation == LAST:
            return f"{label} must be the last phase"
        return f"{label} must come {self.relation} {phase_label(self.other)} in the workflow"


# Fixed appraisal precedence graph. Adding a rule is adding a row.
PHASE_ORDERING_RULES = (
    PhaseOrderingRule(PhaseType.GOAL_SETTING, FIRST),
    PhaseOrderingRule(PhaseType.SELF_ASSESSMENT, BEFORE, PhaseType.MANAGER_REVIEW),
    PhaseOrderingRule(PhaseType.FEEDBACK_360, BEFORE, PhaseType.CALIBRATION),
    PhaseOrderingRule(PhaseType.CALIBRATION, AFTER, PhaseType.MANAGER_REVIEW),
    PhaseOrderingRule(PhaseType.HR_REVIEW, AFTER, PhaseType.CALIBRATION),
    PhaseOrderingRule(PhaseType.HR_REVIEW, BEFORE, PhaseType.FINALIZATION),
    PhaseOrderingRule(PhaseType.FINALIZATION, AFTER, PhaseType.CALIBRATION),
    PhaseOrderingRule(PhaseType.EMPLOYEE_ACKNOWLEDGMENT, LAST),
)


class DependencyValidator:
    """
    Validate a candidate step list or phase list

    Pure and deterministic: the input is never mutated, every rule is
    checked, and all issues are collected in input order.
    """

    def __init__(self, rules: Sequence[PhaseOrderingRule] = PHASE_ORDERING_RULES):
        self.rules = tuple(rules)

    def validate(
        self,
        items: Sequence[Union[WorkflowStep, AppraisalTemplatePhase]]
    ) -> ValidationResult:
        """Validate steps or phases, whichever the sequence holds"""
        if items and all(isinstance(i, AppraisalTemplatePhase) for i in items):
            return self.validate_phases(items)  # type: ignore[arg-type]
        if all(isinstance(i, WorkflowStep) for i in items):
            return self.validate_steps(items)  # type: ignore[arg-type]
        raise TypeError("validate() expects only steps or only phases")

    # =========================================================================
    # Workflow steps
    # =========================================================================

    def validate_steps(self, steps: Sequence[WorkflowStep]) -> ValidationResult:
        issues: List[str] = []

        if not steps:
            issues.append("Workflow must have at least one step")
            return ValidationResult.from_issues(issues)

        orders = sorted(s.order for s in steps)
        seen: Set[int] = set()
        for order in orders:
            if order in seen:
                issues.append(f"Step order {order} is used more than once")
            seen.add(order)
        if sorted(seen) != list(range(1, len(seen) + 1)):
            found = ", ".join(str(o) for o in sorted(seen))
            issues.append(f"Step orders must be contiguous starting at 1 (found {found})")

        for step in sorted(steps, key=lambda s: s.order):
            if step.approver_type in TARGETED_APPROVER_TYPES and not step.approver_target:
                issues.append(
                    f"Step '{step.name}' ({step.approver_type.value}) requires an approver target"
                )
            if (
                step.escalation_action == EscalationAction.NOTIFY_ALTERNATE
                and not step.alternate_approver_id
            ):
                issues.append(
                    f"Step '{step.name}' escalates by notifying an alternate approver but none is configured"
                )
            issues.extend(self._check_sla_thresholds(step))

        return ValidationResult.from_issues(issues)

    def _check_sla_thresholds(self, step: WorkflowStep) -> List[str]:
        """Thresholds are elapsed hours: warning < critical < escalation"""
        thresholds = [
            ("SLA warning", step.sla_warning_hours),
            ("SLA critical", step.sla_critical_hours),
            ("escalation", step.escalation_hours),
        ]
        present = [(name, hours) for name, hours in thresholds if hours is not None]
        issues = []
        for (earlier, earlier_hours), (later, later_hours) in zip(present, present[1:]):
            if earlier_hours >= later_hours:
                issues.append(
                    f"Step '{step.name}': {earlier} ({earlier_hours:g}h) must be reached "
                    f"before {later} ({later_hours:g}h)"
                )
        return issues

    # =========================================================================
    # Appraisal phases
    # =========================================================================

    def validate_phases(self, phases: Sequence[AppraisalTemplatePhase]) -> ValidationResult:
        active = [p for p in phases if p.is_active]
        ordered = self._ordered(active)
        position = {p.phase_id: i for i, p in enumerate(ordered)}

        issues: List[str] = []
        cyclic = self._find_cycles(ordered)
        issues.extend(f"Circular dependency involving {p.display_name}" for p in cyclic)
        issues.extend(self._check_dependency_targets(ordered, position, {p.phase_id for p in cyclic}))
        issues.extend(self._check_precedence(ordered))
        issues.extend(self._check_overlaps(ordered))

        result = ValidationResult.from_issues(issues)
        if not result.valid:
            logger.debug(f"Phase validation found {len(issues)} issue(s)")
        return result

    def _ordered(self, phases: Sequence[AppraisalTemplatePhase]) -> List[AppraisalTemplatePhase]:
        """Phases by display order; ties keep input order"""
        return [p for _, p in sorted(enumerate(phases), key=lambda ip: (ip[1].display_order, ip[0]))]

    def _find_cycles(self, phases: List[AppraisalTemplatePhase]) -> List[AppraisalTemplatePhase]:
        """Depth-first search with a recursion stack over depends_on_phase_id"""
        by_id: Dict[str, AppraisalTemplatePhase] = {p.phase_id: p for p in phases}
        visited: Set[str] = set()
        on_stack: Set[str] = set()
        involved: List[str] = []

        def visit(phase_id: str) -> None:
            visited.add(phase_id)
            on_stack.add(phase_id)
            dependency = by_id[phase_id].depends_on_phase_id
            if dependency in by_id:
                if dependency in on_stack:
                    if dependency not in involved:
                        involved.append(dependency)
                elif dependency not in visited:
                    visit(dependency)
            on_stack.discard(phase_id)

        for phase in phases:
            if phase.phase_id not in visited:
                visit(phase.phase_id)

        return [by_id[phase_id] for phase_id in involved]

    def _check_dependency_targets(
        self,
        phases: List[AppraisalTemplatePhase],
        position: Dict[str, int],
        cyclic_ids: Set[str]
    ) -> List[str]:
        issues = []
        by_id = {p.phase_id: p for p in phases}
        for phase in phases:
            dependency_id = phase.depends_on_phase_id
            if dependency_id is None:
                continue
            dependency = by_id.get(dependency_id)
            if dependency is None:
                issues.append(f"{phase.display_name} depends on a missing or inactive phase")
            elif dependency_id in cyclic_ids or phase.phase_id in cyclic_ids:
                continue
            elif position[dependency_id] > position[phase.phase_id]:
                issues.append(
                    f"{phase.display_name} must come after {dependency.display_name}, which it depends on"
                )
        return issues

    def _check_precedence(self, phases: List[AppraisalTemplatePhase]) -> List[str]:
        """One generic routine over the declarative rule table"""
        positions: Dict[PhaseType, List[int]] = {}
        for index, phase in enumerate(phases):
            positions.setdefault(phase.phase_type, []).append(index)

        issues = []
        for rule in self.rules:
            mine = positions.get(rule.phase_type)
            if not mine:
                continue
            if rule.relation in (FIRST, LAST):
                others = [i for t, idx in positions.items() if t != rule.phase_type for i in idx]
                if not others:
                    continue
                ok = max(mine) < min(others) if rule.relation == FIRST else min(mine) > max(others)
            else:
                theirs = positions.get(rule.other)
                if not theirs:
                    continue
                ok = max(mine) < min(theirs) if rule.relation == BEFORE else min(mine) > max(theirs)
            if not ok:
                issues.append(rule.message())
        return issues

    def _check_overlaps(self, phases: List[AppraisalTemplatePhase]) -> List[str]:
        """Mandatory sequential phases may not share a day of [start, start + duration)"""
        sequential = [p for p in phases if p.is_mandatory and not p.allow_parallel]
        issues = []
        for i, first in enumerate(sequential):
            for second in sequential[i + 1:]:
                if (
                    first.start_offset_days < second.end_offset_days
                    and second.start_offset_days < first.end_offset_days
                ):
                    issues.append(
                        f"{first.display_name} overlaps with {second.display_name}; "
                        f"allow parallel execution or adjust the timeline"
                    )
        return issues
