from datetime import datetime
from enum import Enum

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from advisor_credits.core.exceptions import InvalidTransitionError


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    def can_transition(self, target: "SubscriptionStatus") -> bool:
        return target in _SUBSCRIPTION_TRANSITIONS[self]


_SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.CANCELLED: set(),
    SubscriptionStatus.EXPIRED: set(),
}


class RecurringCreditSubscription(Document):
    """Advisor-level monthly credit bundle billed by a payment gateway."""
    advisor_id: str
    plan_id: str
    credits_per_month: int
    price_per_month: float
    currency: str
    gateway: str
    gateway_subscription_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime | None = None
    last_billing_date: datetime | None = None
    billing_cycle_count: int = 0
    total_paid: float = 0.0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    cancelled_at: datetime | None = None

    class Settings:
        name = "advisor_credit_subscriptions"
        indexes = [
            IndexModel([("gateway", ASCENDING), ("gateway_subscription_id", ASCENDING)], unique=True),
            IndexModel([("advisor_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)]),
        ]

    def transition(self, target: SubscriptionStatus, now: datetime) -> None:
        if not self.status.can_transition(target):
            raise InvalidTransitionError("subscription", self.status.value, target.value)
        self.status = target
        self.updated_at = now
        if target is SubscriptionStatus.CANCELLED:
            self.cancelled_at = now
