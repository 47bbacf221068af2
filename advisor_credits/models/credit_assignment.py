from datetime import datetime
from enum import Enum

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from advisor_credits.core.exceptions import InvalidTransitionError


class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_retired(self) -> bool:
        return self is not AssignmentStatus.ACTIVE

    def can_transition(self, target: "AssignmentStatus") -> bool:
        return target in _ASSIGNMENT_TRANSITIONS[self]


# No retired -> active edge; CreditAssignment.reactivate is the only way back.
_ASSIGNMENT_TRANSITIONS = {
    AssignmentStatus.ACTIVE: {AssignmentStatus.EXPIRED, AssignmentStatus.CANCELLED},
    AssignmentStatus.EXPIRED: set(),
    AssignmentStatus.CANCELLED: set(),
}

RETIRED_STATUSES = [AssignmentStatus.EXPIRED.value, AssignmentStatus.CANCELLED.value]


class CreditAssignment(Document):
    """Advisor -> dependent credit grant. One row per pair, reused across grants."""
    advisor_id: str
    dependent_id: str
    start_date: datetime
    end_date: datetime
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    auto_renewal_enabled: bool = True
    entitlement_id: str | None = None
    renewal_count: int = 0
    assigned_at: datetime = Field(default_factory=datetime.utcnow)
    expired_at: datetime | None = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_assignments"
        indexes = [
            IndexModel([("advisor_id", ASCENDING), ("dependent_id", ASCENDING)], unique=True),
            IndexModel([("status", ASCENDING), ("auto_renewal_enabled", ASCENDING), ("end_date", ASCENDING)]),
            IndexModel([("advisor_id", ASCENDING), ("assigned_at", DESCENDING)]),
        ]

    def transition(self, target: AssignmentStatus) -> None:
        if not self.status.can_transition(target):
            raise InvalidTransitionError("assignment", self.status.value, target.value)
        self.status = target

    def expire(self, now: datetime) -> None:
        self.transition(AssignmentStatus.EXPIRED)
        self.expired_at = now
        self.auto_renewal_enabled = False
        self.updated_at = now

    def reactivate(self, start: datetime, end: datetime, auto_renewal: bool, now: datetime) -> None:
        """Reuse a retired row for a new grant (the only way back to active)."""
        if not self.status.is_retired:
            raise InvalidTransitionError("assignment", self.status.value, AssignmentStatus.ACTIVE.value)
        self.status = AssignmentStatus.ACTIVE
        self.start_date = start
        self.end_date = end
        self.auto_renewal_enabled = auto_renewal
        self.expired_at = None
        self.entitlement_id = None
        self.updated_at = now

    def is_current(self, now: datetime) -> bool:
        return self.status is AssignmentStatus.ACTIVE and self.end_date > now
