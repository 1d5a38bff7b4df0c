"""
Approval Engine - Wiring and Lifecycle

Builds the repositories, engine, services and SLA clock, and runs the
startup / shutdown sequence around them.

Usage:
    system = create_system(directory, governance_policies={"board": QuorumPolicy(fraction=0.5)})
    startup(system)
    ...
    shutdown(system)
"""
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .config.settings import settings
from .engine.approver_resolver import ApproverResolver
from .engine.event_publisher import EventPublisher
from .engine.governance import GovernancePolicy
from .engine.permission_guard import PermissionGuard
from .engine.workflow_engine import WorkflowEngine
from .repositories.memory import (
    InMemoryTemplateRepository, InMemoryPhaseTemplateRepository, InMemoryInstanceRepository,
    InMemoryActionRepository, InMemoryEventOutboxRepository
)
from .repositories.mongo_client import create_indexes, close_connection, health_check
from .repositories.org_directory import OrgDirectory
from .repositories.template_repo import MongoTemplateRepository, MongoPhaseTemplateRepository
from .repositories.instance_repo import MongoInstanceRepository, MongoActionRepository
from .repositories.event_repo import MongoEventOutboxRepository
from .scheduler.sla_clock import SlaClock
from .services.template_service import TemplateService
from .services.workflow_service import WorkflowService
from .utils.logger import setup_logging, get_logger
from .utils.time import utc_now

logger = get_logger(__name__)


class ApprovalSystem:
    """Everything a host application needs, wired together"""

    def __init__(
        self,
        engine: WorkflowEngine,
        workflow_service: WorkflowService,
        template_service: TemplateService,
        sla_clock: SlaClock,
        persistent: bool
    ):
        self.engine = engine
        self.workflow_service = workflow_service
        self.template_service = template_service
        self.sla_clock = sla_clock
        self.persistent = persistent

    @property
    def publisher(self) -> EventPublisher:
        return self.engine.publisher


def create_system(
    directory: OrgDirectory,
    in_memory: bool = False,
    governance_policies: Optional[Dict[str, GovernancePolicy]] = None,
    default_governance_policy: Optional[GovernancePolicy] = None,
    clock: Callable[[], datetime] = utc_now
) -> ApprovalSystem:
    """
    Wire an approval system

    Args:
        directory: Organization directory used for approver resolution
        in_memory: Keep everything in process instead of MongoDB
        governance_policies: Decision policy per governance body id
        default_governance_policy: Policy for bodies without their own entry
        clock: Time source shared by the engine and the SLA clock
    """
    if in_memory:
        template_repo = InMemoryTemplateRepository()
        phase_repo = InMemoryPhaseTemplateRepository()
        instance_repo = InMemoryInstanceRepository()
        action_repo = InMemoryActionRepository()
        outbox = InMemoryEventOutboxRepository()
    else:
        template_repo = MongoTemplateRepository()
        phase_repo = MongoPhaseTemplateRepository()
        instance_repo = MongoInstanceRepository()
        action_repo = MongoActionRepository()
        outbox = MongoEventOutboxRepository()

    engine = WorkflowEngine(
        instance_repo=instance_repo,
        action_repo=action_repo,
        resolver=ApproverResolver(directory),
        publisher=EventPublisher(outbox, clock=clock),
        permission_guard=PermissionGuard(),
        governance_policies=governance_policies,
        default_governance_policy=default_governance_policy,
        clock=clock,
    )
    return ApprovalSystem(
        engine=engine,
        workflow_service=WorkflowService(engine, template_repo),
        template_service=TemplateService(template_repo, phase_repo, clock=clock),
        sla_clock=SlaClock(engine, clock=clock),
        persistent=not in_memory,
    )


def startup(system: ApprovalSystem, start_sla_clock: Optional[bool] = None) -> None:
    """
    Startup:
        - Configures logging
        - Creates MongoDB indexes (persistent systems)
        - Starts the SLA clock unless disabled
    """
    setup_logging(to_files=settings.log_to_files)
    logger.info("Starting approval engine...")

    if system.persistent:
        create_indexes()

    if start_sla_clock if start_sla_clock is not None else settings.run_sla_clock:
        system.sla_clock.start()

    logger.info("Approval engine started")


def shutdown(system: ApprovalSystem) -> None:
    """Stop the SLA clock and close the database connection"""
    logger.info("Shutting down approval engine...")
    if system.sla_clock.is_running:
        system.sla_clock.stop()
    if system.persistent:
        close_connection()
    logger.info("Approval engine shutdown complete")


def health(system: ApprovalSystem) -> Dict[str, Any]:
    """Liveness of the storage and the SLA clock"""
    return {
        "storage": health_check() if system.persistent else {"status": "healthy", "connection": "in_memory"},
        "sla_clock": "running" if system.sla_clock.is_running else "stopped",
    }
