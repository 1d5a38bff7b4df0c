"""Repository modules - Data access layer"""
from .mongo_client import get_database, get_collection, create_indexes
from .base import (
    TemplateRepository, PhaseTemplateRepository, InstanceRepository,
    ActionRepository, EventOutboxRepository
)
from .template_repo import MongoTemplateRepository, MongoPhaseTemplateRepository
from .instance_repo import MongoInstanceRepository, MongoActionRepository
from .event_repo import MongoEventOutboxRepository
from .memory import (
    InMemoryTemplateRepository, InMemoryPhaseTemplateRepository, InMemoryInstanceRepository,
    InMemoryActionRepository, InMemoryEventOutboxRepository
)
from .org_directory import OrgDirectory, InMemoryOrgDirectory, PositionAssignment, WorkflowRolePosition

__all__ = [
    "get_database",
    "get_collection",
    "create_indexes",
    "TemplateRepository",
    "PhaseTemplateRepository",
    "InstanceRepository",
    "ActionRepository",
    "EventOutboxRepository",
    "MongoTemplateRepository",
    "MongoPhaseTemplateRepository",
    "MongoInstanceRepository",
    "MongoActionRepository",
    "MongoEventOutboxRepository",
    "InMemoryTemplateRepository",
    "InMemoryPhaseTemplateRepository",
    "InMemoryInstanceRepository",
    "InMemoryActionRepository",
    "InMemoryEventOutboxRepository",
    "OrgDirectory",
    "InMemoryOrgDirectory",
    "PositionAssignment",
    "WorkflowRolePosition",
]
