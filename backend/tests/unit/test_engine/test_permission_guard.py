"""Tests for PermissionGuard"""
import pytest

from approval_engine.domain.models import ActorContext
from approval_engine.domain.enums import ApproverType, EscalationAction, InstanceStatus
from approval_engine.engine.permission_guard import PermissionGuard

from tests.helpers import actor, build_step


@pytest.fixture
def guard():
    return PermissionGuard(cancel_roles=["workflow_admin"])


@pytest.fixture
def two_step_instance(start_instance):
    return start_instance(
        [build_step(1), build_step(2, ApproverType.HR)],
        allow_return_to_previous=True,
    )


class TestDelegations:

    def test_delegate_replaces_delegator(self):
        eligible = PermissionGuard.apply_delegations(frozenset({"a", "b"}), {"a": "x"})

        assert eligible == {"x", "b"}

    def test_chain_is_followed(self):
        eligible = PermissionGuard.apply_delegations(frozenset({"a"}), {"a": "b", "b": "c"})

        assert eligible == {"c"}

    def test_cycle_stops(self):
        eligible = PermissionGuard.apply_delegations(frozenset({"a"}), {"a": "b", "b": "a"})

        assert eligible == {"b"}


class TestStepActions:

    def test_eligible_approver_can_act(self, guard, two_step_instance):
        assert guard.can_act_on_step(actor("mgr-1"), two_step_instance, frozenset({"mgr-1"})) is True

    def test_other_actor_cannot_act(self, guard, two_step_instance):
        assert guard.can_act_on_step(actor("emp-1"), two_step_instance, frozenset({"mgr-1"})) is False

    def test_system_can_act(self, guard, two_step_instance):
        assert guard.can_act_on_step(ActorContext.system(), two_step_instance, frozenset()) is True

    def test_nobody_acts_on_terminal_instance(self, guard, two_step_instance):
        done = two_step_instance.model_copy(update={"status": InstanceStatus.APPROVED})

        assert guard.can_act_on_step(actor("mgr-1"), done, frozenset({"mgr-1"})) is False
        assert guard.can_cancel(actor("init-1"), done) is False
        assert guard.get_available_actions(actor("mgr-1"), done, frozenset({"mgr-1"})) == []


class TestCancelAndComment:

    def test_initiator_can_cancel(self, guard, two_step_instance):
        assert guard.can_cancel(actor("init-1"), two_step_instance) is True

    def test_cancel_role_can_cancel(self, guard, two_step_instance):
        assert guard.can_cancel(actor("admin-1", "workflow_admin"), two_step_instance) is True

    def test_approver_cannot_cancel(self, guard, two_step_instance):
        assert guard.can_cancel(actor("mgr-1"), two_step_instance) is False

    def test_comment_rights(self, guard, two_step_instance):
        eligible = frozenset({"mgr-1"})

        assert guard.can_comment(actor("mgr-1"), two_step_instance, eligible) is True
        assert guard.can_comment(actor("init-1"), two_step_instance, eligible) is True
        assert guard.can_comment(actor("emp-1"), two_step_instance, eligible) is False


class TestAvailableActions:

    def test_approver_on_first_step(self, guard, two_step_instance):
        actions = guard.get_available_actions(actor("mgr-1"), two_step_instance, frozenset({"mgr-1"}))

        assert actions == ["approve", "reject", "delegate", "comment"]

    def test_return_offered_after_first_step(self, guard, two_step_instance):
        on_step_2 = two_step_instance.model_copy(update={"current_step_order": 2})

        actions = guard.get_available_actions(actor("hr-1"), on_step_2, frozenset({"hr-1"}))

        assert "return" in actions

    def test_initiator(self, guard, two_step_instance):
        actions = guard.get_available_actions(actor("init-1"), two_step_instance, frozenset({"mgr-1"}))

        assert actions == ["comment", "cancel"]

    def test_escalate_needs_an_escalation_action(self, guard, start_instance):
        instance = start_instance([
            build_step(1, escalation_hours=24, escalation_action=EscalationAction.ESCALATE_UP, can_delegate=False)
        ])

        actions = guard.get_available_actions(actor("mgr-1"), instance, frozenset({"mgr-1"}))

        assert actions == ["approve", "reject", "escalate", "comment"]

    def test_outsider_gets_nothing(self, guard, two_step_instance):
        assert guard.get_available_actions(actor("emp-1"), two_step_instance, frozenset({"mgr-1"})) == []
