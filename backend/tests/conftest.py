"""
Pytest Configuration and Fixtures

Shared fixtures: a controllable clock, an in-memory org directory, in-memory
repositories, and an engine wired to capture published events.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from approval_engine.domain.models import (
    ActorContext, InstanceContext, WorkflowStep, WorkflowTemplate, WorkflowEvent
)
from approval_engine.domain.enums import WorkflowCategory
from approval_engine.engine.approver_resolver import ApproverResolver
from approval_engine.engine.event_publisher import EventPublisher
from approval_engine.engine.governance import UnanimousPolicy
from approval_engine.engine.workflow_engine import WorkflowEngine
from approval_engine.repositories.memory import (
    InMemoryTemplateRepository, InMemoryPhaseTemplateRepository, InMemoryInstanceRepository,
    InMemoryActionRepository, InMemoryEventOutboxRepository
)
from approval_engine.repositories.org_directory import (
    InMemoryOrgDirectory, PositionAssignment, WorkflowRolePosition
)
from approval_engine.services.template_service import TemplateService
from approval_engine.services.workflow_service import WorkflowService
from approval_engine.utils.idgen import generate_step_id, generate_template_id

from .helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def directory():
    """
    Reporting line: emp-1 -> mgr-1 -> dir-1 -> vp-1
    HR managers: hr-1 (ou-1), hr-2 (ou-2)
    """
    d = InMemoryOrgDirectory()
    d.add_actor("emp-1", manager_id="mgr-1", org_unit_id="ou-1")
    d.add_actor("mgr-1", manager_id="dir-1", org_unit_id="ou-1")
    d.add_actor("dir-1", manager_id="vp-1", org_unit_id="ou-1")
    d.add_actor("vp-1", org_unit_id="ou-1")
    d.add_actor("hr-1", manager_id="hr-head", org_unit_id="ou-1", capabilities=["hr_manager"])
    d.add_actor("hr-2", manager_id="hr-head", org_unit_id="ou-2", capabilities=["hr_manager"])
    d.add_actor("hr-head", org_unit_id="ou-1")
    d.add_actor("fin-1", manager_id="cfo", org_unit_id="ou-1")
    d.add_actor("fin-acting", manager_id="cfo", org_unit_id="ou-1")
    d.add_actor("cfo")
    d.add_actor("b1", manager_id="chair")
    d.add_actor("b2", manager_id="chair")
    d.add_actor("b3", manager_id="chair")
    d.add_actor("chair")
    d.add_actor("pa-1")
    d.add_actor("alt-1")
    d.add_actor("deputy-1")
    d.add_actor("admin-1")
    d.add_actor("init-1", org_unit_id="ou-1")

    d.add_position("pos-finance-head", [PositionAssignment(actor_id="fin-1", assignment_type="primary")])
    d.add_position("pos-empty", [])
    d.add_workflow_role("wr-finance", [
        WorkflowRolePosition(position_id="pos-empty", is_primary=True, priority_order=1),
        WorkflowRolePosition(position_id="pos-finance-head", is_primary=False, priority_order=2),
    ])
    d.add_role("payroll_admins", ["pa-1"])
    d.add_governance_body("board", ["b1", "b2", "b3"])
    return d


@pytest.fixture
def template_repo():
    return InMemoryTemplateRepository()


@pytest.fixture
def phase_template_repo():
    return InMemoryPhaseTemplateRepository()


@pytest.fixture
def instance_repo():
    return InMemoryInstanceRepository()


@pytest.fixture
def action_repo():
    return InMemoryActionRepository()


@pytest.fixture
def outbox():
    return InMemoryEventOutboxRepository()


@pytest.fixture
def events() -> List[WorkflowEvent]:
    """Events published through the engine's publisher, in order"""
    return []


@pytest.fixture
def publisher(outbox, events, clock):
    p = EventPublisher(outbox, clock=clock)
    p.subscribe(events.append)
    return p


@pytest.fixture
def resolver(directory):
    return ApproverResolver(directory, hr_capability="hr_manager")


@pytest.fixture
def engine(instance_repo, action_repo, resolver, publisher, clock):
    return WorkflowEngine(
        instance_repo,
        action_repo,
        resolver,
        publisher=publisher,
        governance_policies={"board": UnanimousPolicy()},
        clock=clock,
    )


@pytest.fixture
def template_service(template_repo, phase_template_repo, clock):
    return TemplateService(template_repo, phase_template_repo, clock=clock)


@pytest.fixture
def workflow_service(engine, template_repo):
    return WorkflowService(engine, template_repo)


@pytest.fixture
def initiator():
    return ActorContext(actor_id="init-1", display_name="Initiator")


@pytest.fixture
def admin():
    return ActorContext(actor_id="admin-1", roles=["workflow_admin"])


@pytest.fixture
def context():
    return InstanceContext(subject_id="emp-1", initiator_id="init-1", org_unit_id="ou-1")


@pytest.fixture
def make_template(template_repo, clock):
    """Store an active template built from step dicts"""

    def _make(steps: List[Dict[str, Any]], active: bool = True, **fields: Any) -> WorkflowTemplate:
        template_id = generate_template_id()
        now = clock()
        template = WorkflowTemplate(
            template_id=template_id,
            name=fields.pop("name", "Test Workflow"),
            code=fields.pop("code", "TEST_WF"),
            category=fields.pop("category", WorkflowCategory.GENERAL),
            steps=[
                WorkflowStep(step_id=generate_step_id(), template_id=template_id, **s)
                for s in steps
            ],
            is_active=active,
            activated_at=now if active else None,
            created_at=now,
            updated_at=now,
            **fields,
        )
        template_repo.create(template)
        return template

    return _make


@pytest.fixture
def start_instance(engine, make_template, context, initiator):
    """Create an instance of a fresh template"""

    def _start(steps: List[Dict[str, Any]], instance_context: Optional[InstanceContext] = None, **fields: Any):
        template = make_template(steps, **fields)
        return engine.create_instance(
            template, "leave_request", "LR-1", instance_context or context, initiator
        )

    return _start
