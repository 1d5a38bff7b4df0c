"""Tests for step and phase validation"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from approval_engine.domain.models import AppraisalTemplatePhase, WorkflowStep
from approval_engine.domain.enums import PhaseType, ApproverType, EscalationAction
from approval_engine.engine.dependency_validator import DependencyValidator


def make_phase(phase_type, order, offset, duration, **fields):
    return AppraisalTemplatePhase(
        phase_id=fields.pop("phase_id", f"ph-{phase_type.value}"),
        template_id="apt-1",
        phase_type=phase_type,
        display_order=order,
        start_offset_days=offset,
        duration_days=duration,
        **fields
    )


def make_step(order, approver_type=ApproverType.MANAGER, **fields):
    return WorkflowStep(
        step_id=f"stp-{order}-{fields.get('name', 'x')}",
        template_id="wft-1",
        order=order,
        name=fields.pop("name", f"Step {order}"),
        approver_type=approver_type,
        **fields
    )


@pytest.fixture
def validator():
    return DependencyValidator()


@pytest.fixture
def full_cycle():
    return [
        make_phase(PhaseType.GOAL_SETTING, 0, 0, 14),
        make_phase(PhaseType.SELF_ASSESSMENT, 1, 14, 14),
        make_phase(PhaseType.FEEDBACK_360, 2, 14, 21, allow_parallel=True),
        make_phase(PhaseType.MANAGER_REVIEW, 3, 35, 14),
        make_phase(PhaseType.CALIBRATION, 4, 49, 7),
        make_phase(PhaseType.HR_REVIEW, 5, 56, 7),
        make_phase(PhaseType.RATING_RELEASE, 6, 63, 3),
        make_phase(PhaseType.FINALIZATION, 7, 66, 7),
        make_phase(PhaseType.EMPLOYEE_ACKNOWLEDGMENT, 8, 73, 7),
    ]


class TestPhaseOrdering:

    def test_complete_cycle_is_valid(self, validator, full_cycle):
        result = validator.validate_phases(full_cycle)

        assert result.valid is True
        assert result.issues == []

    def test_hr_review_before_calibration(self, validator):
        phases = [
            make_phase(PhaseType.GOAL_SETTING, 0, 0, 10),
            make_phase(PhaseType.MANAGER_REVIEW, 1, 10, 10),
            make_phase(PhaseType.HR_REVIEW, 2, 20, 5),
            make_phase(PhaseType.CALIBRATION, 3, 25, 5),
        ]

        result = validator.validate_phases(phases)

        assert result.valid is False
        assert "HR Review must come after Calibration in the workflow" in result.issues

    def test_goal_setting_not_first(self, validator):
        phases = [
            make_phase(PhaseType.SELF_ASSESSMENT, 0, 0, 10),
            make_phase(PhaseType.GOAL_SETTING, 1, 10, 10),
        ]

        result = validator.validate_phases(phases)

        assert result.issues == ["Goal Setting must be the first phase"]

    def test_acknowledgment_not_last(self, validator):
        phases = [
            make_phase(PhaseType.EMPLOYEE_ACKNOWLEDGMENT, 0, 0, 5),
            make_phase(PhaseType.FINALIZATION, 1, 5, 5),
        ]

        result = validator.validate_phases(phases)

        assert "Employee Acknowledgment must be the last phase" in result.issues

    def test_self_assessment_after_manager_review(self, validator):
        phases = [
            make_phase(PhaseType.MANAGER_REVIEW, 0, 0, 10),
            make_phase(PhaseType.SELF_ASSESSMENT, 1, 10, 10),
        ]

        result = validator.validate_phases(phases)

        assert result.issues == ["Self Assessment must come before Manager Review in the workflow"]

    def test_all_violations_are_collected(self, validator):
        phases = [
            make_phase(PhaseType.EMPLOYEE_ACKNOWLEDGMENT, 0, 0, 5),
            make_phase(PhaseType.FINALIZATION, 1, 5, 5),
            make_phase(PhaseType.CALIBRATION, 2, 10, 5),
            make_phase(PhaseType.MANAGER_REVIEW, 3, 15, 5),
            make_phase(PhaseType.GOAL_SETTING, 4, 20, 5),
        ]

        result = validator.validate_phases(phases)

        assert "Goal Setting must be the first phase" in result.issues
        assert "Calibration must come after Manager Review in the workflow" in result.issues
        assert "Finalization must come after Calibration in the workflow" in result.issues
        assert "Employee Acknowledgment must be the last phase" in result.issues

    def test_rules_for_absent_phase_types_do_not_apply(self, validator):
        phases = [
            make_phase(PhaseType.CALIBRATION, 0, 0, 5),
            make_phase(PhaseType.HR_REVIEW, 1, 5, 5),
        ]

        assert validator.validate_phases(phases).valid is True

    def test_inactive_phases_are_ignored(self, validator):
        phases = [
            make_phase(PhaseType.MANAGER_REVIEW, 0, 0, 10),
            make_phase(PhaseType.HR_REVIEW, 1, 10, 5, is_active=False),
            make_phase(PhaseType.CALIBRATION, 2, 15, 5),
        ]

        assert validator.validate_phases(phases).valid is True

    def test_custom_phase_name_does_not_change_rule_labels(self, validator):
        phases = [
            make_phase(PhaseType.HR_REVIEW, 0, 0, 5, phase_name="People Team Sign-off"),
            make_phase(PhaseType.CALIBRATION, 1, 5, 5),
        ]

        result = validator.validate_phases(phases)

        assert result.issues == ["HR Review must come after Calibration in the workflow"]


class TestCycleDetection:

    @pytest.mark.parametrize("reverse", [False, True])
    def test_two_phase_cycle_flagged_regardless_of_list_order(self, validator, reverse):
        phases = [
            make_phase(PhaseType.GOAL_SETTING, 0, 0, 5, phase_id="a", depends_on_phase_id="b"),
            make_phase(PhaseType.SELF_ASSESSMENT, 1, 5, 5, phase_id="b", depends_on_phase_id="a"),
        ]
        if reverse:
            phases.reverse()

        result = validator.validate_phases(phases)

        assert result.valid is False
        assert any(issue.startswith("Circular dependency involving") for issue in result.issues)

    def test_self_dependency(self, validator):
        phases = [make_phase(PhaseType.CALIBRATION, 0, 0, 5, phase_id="c", depends_on_phase_id="c")]

        result = validator.validate_phases(phases)

        assert result.issues == ["Circular dependency involving Calibration"]

    def test_three_phase_cycle(self, validator):
        phases = [
            make_phase(PhaseType.SELF_ASSESSMENT, 0, 0, 5, phase_id="a", depends_on_phase_id="c"),
            make_phase(PhaseType.MANAGER_REVIEW, 1, 5, 5, phase_id="b", depends_on_phase_id="a"),
            make_phase(PhaseType.CALIBRATION, 2, 10, 5, phase_id="c", depends_on_phase_id="b"),
        ]

        result = validator.validate_phases(phases)

        assert sum(1 for i in result.issues if i.startswith("Circular dependency")) == 1

    def test_acyclic_chain_is_valid(self, validator):
        phases = [
            make_phase(PhaseType.GOAL_SETTING, 0, 0, 5, phase_id="a"),
            make_phase(PhaseType.SELF_ASSESSMENT, 1, 5, 5, phase_id="b", depends_on_phase_id="a"),
            make_phase(PhaseType.MANAGER_REVIEW, 2, 10, 5, phase_id="c", depends_on_phase_id="b"),
        ]

        assert validator.validate_phases(phases).valid is True

    def test_dependency_on_unknown_phase(self, validator):
        phases = [make_phase(PhaseType.CALIBRATION, 0, 0, 5, depends_on_phase_id="missing")]

        result = validator.validate_phases(phases)

        assert result.issues == ["Calibration depends on a missing or inactive phase"]

    def test_phase_placed_before_its_dependency(self, validator):
        phases = [
            make_phase(PhaseType.RATING_RELEASE, 0, 0, 5, phase_id="r", depends_on_phase_id="f"),
            make_phase(PhaseType.FINALIZATION, 1, 5, 5, phase_id="f"),
        ]

        result = validator.validate_phases(phases)

        assert result.issues == ["Rating Release must come after Finalization, which it depends on"]


class TestOverlap:

    def test_overlapping_mandatory_phases(self, validator):
        phases = [
            make_phase(PhaseType.GOAL_SETTING, 0, 0, 10),
            make_phase(PhaseType.SELF_ASSESSMENT, 1, 5, 10),
        ]

        result = validator.validate_phases(phases)

        assert len(result.issues) == 1
        assert "Goal Setting overlaps with Self Assessment" in result.issues[0]

    def test_adjacent_phases_do_not_overlap(self, validator):
        phases = [
            make_phase(PhaseType.GOAL_SETTING, 0, 0, 5),
            make_phase(PhaseType.SELF_ASSESSMENT, 1, 5, 10),
        ]

        assert validator.validate_phases(phases).valid is True

    @pytest.mark.parametrize("fields", [{"allow_parallel": True}, {"is_mandatory": False}])
    def test_parallel_or_optional_phase_may_overlap(self, validator, fields):
        phases = [
            make_phase(PhaseType.SELF_ASSESSMENT, 0, 0, 14),
            make_phase(PhaseType.FEEDBACK_360, 1, 0, 21, **fields),
        ]

        assert validator.validate_phases(phases).valid is True


class TestPurity:

    def test_input_is_not_mutated(self, validator, full_cycle):
        snapshot = [p.model_dump() for p in full_cycle]
        order = [p.phase_id for p in full_cycle]

        validator.validate_phases(list(reversed(full_cycle)))

        assert [p.model_dump() for p in full_cycle] == snapshot
        assert [p.phase_id for p in full_cycle] == order

    def test_same_input_same_result(self, validator):
        phases = [
            make_phase(PhaseType.HR_REVIEW, 0, 0, 10),
            make_phase(PhaseType.CALIBRATION, 1, 5, 10),
        ]

        assert validator.validate_phases(phases) == validator.validate_phases(phases)


class TestStepValidation:

    def test_valid_steps(self, validator):
        steps = [
            make_step(1, sla_warning_hours=8, sla_critical_hours=16, escalation_hours=24,
                      escalation_action=EscalationAction.AUTO_APPROVE),
            make_step(2, ApproverType.HR),
        ]

        assert validator.validate_steps(steps).valid is True

    def test_empty_step_list(self, validator):
        assert validator.validate_steps([]).issues == ["Workflow must have at least one step"]

    def test_duplicate_and_gapped_orders(self, validator):
        steps = [make_step(1), make_step(1, name="dup"), make_step(3)]

        result = validator.validate_steps(steps)

        assert "Step order 1 is used more than once" in result.issues
        assert "Step orders must be contiguous starting at 1 (found 1, 3)" in result.issues

    def test_targeted_type_without_target(self, validator):
        steps = [make_step(1, ApproverType.POSITION, name="Finance")]

        result = validator.validate_steps(steps)

        assert result.issues == ["Step 'Finance' (position) requires an approver target"]

    def test_thresholds_out_of_order(self, validator):
        steps = [make_step(1, name="Review", sla_warning_hours=20, sla_critical_hours=10)]

        result = validator.validate_steps(steps)

        assert result.issues == [
            "Step 'Review': SLA warning (20h) must be reached before SLA critical (10h)"
        ]

    def test_notify_alternate_needs_alternate(self, validator):
        steps = [make_step(1, name="Review", escalation_hours=24,
                           escalation_action=EscalationAction.NOTIFY_ALTERNATE)]

        result = validator.validate_steps(steps)

        assert len(result.issues) == 1
        assert "notifying an alternate approver" in result.issues[0]

    def test_escalation_hours_require_action(self):
        with pytest.raises(PydanticValidationError):
            make_step(1, escalation_hours=24)


class TestDispatch:

    def test_validate_routes_phases(self, validator):
        phases = [make_phase(PhaseType.SELF_ASSESSMENT, 0, 0, 5), make_phase(PhaseType.GOAL_SETTING, 1, 5, 5)]

        assert validator.validate(phases).issues == ["Goal Setting must be the first phase"]

    def test_validate_routes_steps(self, validator):
        assert validator.validate([make_step(2)]).valid is False

    def test_mixed_input_rejected(self, validator):
        with pytest.raises(TypeError):
            validator.validate([make_step(1), make_phase(PhaseType.GOAL_SETTING, 0, 0, 5)])
