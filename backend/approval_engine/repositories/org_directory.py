"""Org Directory - Read-only lookups into the organization structure

The directory itself (employees, positions, roles, committees) is owned by
the HR core; the engine only reads from it through OrgDirectory.
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set
from pydantic import BaseModel, Field

from ..utils.logger import get_logger

logger = get_logger(__name__)

ACTING = "acting"
PRIMARY = "primary"
SECONDARY = "secondary"


class PositionAssignment(BaseModel):
    """An actor holding a position"""
    actor_id: str
    assignment_type: str = Field(default=PRIMARY, description="acting | primary | secondary")


class WorkflowRolePosition(BaseModel):
    """A position linked to a workflow approval role"""
    position_id: str
    is_primary: bool = False
    priority_order: int = 0


class OrgDirectory(ABC):
    """Directory lookups used by approver resolution"""

    @abstractmethod
    def is_active(self, actor_id: str) -> bool:
        """Whether the actor exists and may act"""
        pass

    @abstractmethod
    def get_manager(self, actor_id: str) -> Optional[str]:
        """Direct manager of an actor, if any"""
        pass

    @abstractmethod
    def get_capability_holders(self, capability: str, org_unit_id: Optional[str]) -> Set[str]:
        """Actors holding a capability in an org unit (any unit when None)"""
        pass

    @abstractmethod
    def get_position_holders(self, position_id: str) -> Optional[List[PositionAssignment]]:
        """Holders of a position; None if the position is unknown or inactive"""
        pass

    @abstractmethod
    def get_workflow_role_positions(self, role_id: str) -> Optional[List[WorkflowRolePosition]]:
        """Positions of a workflow approval role; None if the role is unknown"""
        pass

    @abstractmethod
    def get_role_members(self, role: str) -> Optional[Set[str]]:
        """Members of a system role; None if the role is unknown"""
        pass

    @abstractmethod
    def get_governance_members(self, body_id: str) -> Optional[Set[str]]:
        """Members of a governance body; None if the body is unknown or dissolved"""
        pass


class _DirectoryActor(BaseModel):
    actor_id: str
    manager_id: Optional[str] = None
    org_unit_id: Optional[str] = None
    capabilities: Set[str] = Field(default_factory=set)
    active: bool = True


class InMemoryOrgDirectory(OrgDirectory):
    """Dictionary-backed directory for tests and embedding"""

    def __init__(self):
        self._actors: Dict[str, _DirectoryActor] = {}
        self._positions: Dict[str, List[PositionAssignment]] = {}
        self._inactive_positions: Set[str] = set()
        self._workflow_roles: Dict[str, List[WorkflowRolePosition]] = {}
        self._roles: Dict[str, Set[str]] = {}
        self._governance_bodies: Dict[str, Set[str]] = {}

    # Population

    def add_actor(
        self,
        actor_id: str,
        manager_id: Optional[str] = None,
        org_unit_id: Optional[str] = None,
        capabilities: Iterable[str] = (),
        active: bool = True
    ) -> None:
        self._actors[actor_id] = _DirectoryActor(
            actor_id=actor_id,
            manager_id=manager_id,
            org_unit_id=org_unit_id,
            capabilities=set(capabilities),
            active=active,
        )

    def deactivate_actor(self, actor_id: str) -> None:
        if actor_id in self._actors:
            self._actors[actor_id].active = False

    def add_position(self, position_id: str, holders: Iterable[PositionAssignment] = (), active: bool = True) -> None:
        self._positions[position_id] = list(holders)
        if not active:
            self._inactive_positions.add(position_id)

    def add_workflow_role(self, role_id: str, positions: Iterable[WorkflowRolePosition]) -> None:
        self._workflow_roles[role_id] = list(positions)

    def add_role(self, role: str, members: Iterable[str]) -> None:
        self._roles[role] = set(members)

    def add_governance_body(self, body_id: str, members: Iterable[str]) -> None:
        self._governance_bodies[body_id] = set(members)

    # OrgDirectory

    def is_active(self, actor_id: str) -> bool:
        actor = self._actors.get(actor_id)
        return actor is not None and actor.active

    def get_manager(self, actor_id: str) -> Optional[str]:
        actor = self._actors.get(actor_id)
        return actor.manager_id if actor else None

    def get_capability_holders(self, capability: str, org_unit_id: Optional[str]) -> Set[str]:
        return {
            a.actor_id for a in self._actors.values()
            if capability in a.capabilities
            and (org_unit_id is None or a.org_unit_id == org_unit_id)
        }

    def get_position_holders(self, position_id: str) -> Optional[List[PositionAssignment]]:
        if position_id not in self._positions or position_id in self._inactive_positions:
            return None
        return list(self._positions[position_id])

    def get_workflow_role_positions(self, role_id: str) -> Optional[List[WorkflowRolePosition]]:
        positions = self._workflow_roles.get(role_id)
        return list(positions) if positions is not None else None

    def get_role_members(self, role: str) -> Optional[Set[str]]:
        members = self._roles.get(role)
        return set(members) if members is not None else None

    def get_governance_members(self, body_id: str) -> Optional[Set[str]]:
        members = self._governance_bodies.get(body_id)
        return set(members) if members is not None else None
