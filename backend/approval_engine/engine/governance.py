"""Governance Policies - Decision semantics for governance body steps

The engine never assumes how a committee decides: every governance body
step needs a policy configured by the caller.
"""
import math
from abc import ABC, abstractmethod
from typing import Collection, FrozenSet


class GovernancePolicy(ABC):
    """Decides when the approvals collected on a step carry the body"""

    name: str = "governance"

    @abstractmethod
    def is_satisfied(self, members: FrozenSet[str], approvals: Collection[str]) -> bool:
        """
        Check whether the step can advance

        Args:
            members: Current member set of the body
            approvals: Actors who approved the step so far (may include
                former members, who do not count)
        """
        pass

    def _counted(self, members: FrozenSet[str], approvals: Collection[str]) -> int:
        return len(members.intersection(approvals))


class UnanimousPolicy(GovernancePolicy):
    """Every current member must approve"""

    name = "unanimous"

    def is_satisfied(self, members: FrozenSet[str], approvals: Collection[str]) -> bool:
        return bool(members) and self._counted(members, approvals) == len(members)


class SingleMemberPolicy(GovernancePolicy):
    """Any one member's approval carries the body"""

    name = "single_member"

    def is_satisfied(self, members: FrozenSet[str], approvals: Collection[str]) -> bool:
        return self._counted(members, approvals) >= 1


class QuorumPolicy(GovernancePolicy):
    """
    A minimum number of members must approve

    Either a fixed count (minimum_approvals) or a share of the current
    membership (fraction, rounded up).
    """

    name = "quorum"

    def __init__(self, minimum_approvals: int = None, fraction: float = None):
        if (minimum_approvals is None) == (fraction is None):
            raise ValueError("Provide exactly one of minimum_approvals or fraction")
        if minimum_approvals is not None and minimum_approvals < 1:
            raise ValueError("minimum_approvals must be at least 1")
        if fraction is not None and not 0 < fraction <= 1:
            raise ValueError("fraction must be in (0, 1]")
        self.minimum_approvals = minimum_approvals
        self.fraction = fraction

    def required(self, members: FrozenSet[str]) -> int:
        if self.minimum_approvals is not None:
            return min(self.minimum_approvals, len(members))
        return max(1, math.ceil(len(members) * self.fraction))

    def is_satisfied(self, members: FrozenSet[str], approvals: Collection[str]) -> bool:
        if not members:
            return False
        return self._counted(members, approvals) >= self.required(members)
