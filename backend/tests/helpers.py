"""Test helpers shared across suites"""
from datetime import datetime, timedelta
from typing import Any, Dict

from approval_engine.domain.models import ActorContext
from approval_engine.domain.enums import ApproverType


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float = 0, days: float = 0) -> datetime:
        self.now = self.now + timedelta(hours=hours, days=days)
        return self.now


def actor(actor_id: str, *roles: str) -> ActorContext:
    return ActorContext(actor_id=actor_id, roles=list(roles))


def build_step(order: int, approver_type: ApproverType = ApproverType.MANAGER, **fields: Any) -> Dict[str, Any]:
    return {"order": order, "name": f"Step {order}", "approver_type": approver_type, **fields}
