from datetime import datetime
from enum import Enum
from typing import Any

from beanie import Document, Indexed
from pydantic import Field


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    def can_transition(self, target: "PurchaseStatus") -> bool:
        return self is PurchaseStatus.PENDING and target in (PurchaseStatus.COMPLETED, PurchaseStatus.FAILED)


class PurchaseHistoryEntry(Document):
    """Append-only audit row for every credit-granting event."""
    advisor_id: str
    credits_purchased: int
    amount_paid: float
    currency: str
    gateway: str | None = None  # razorpay, paypal, payaid, manual
    transaction_id: str | None = None
    status: PurchaseStatus = PurchaseStatus.PENDING
    idempotency_key: Indexed(str, unique=True)  # "<gateway>:<txn>", "<gateway>:<txn>#<attempt>" or "failure:<uuid>"
    metadata: dict[str, Any] = Field(default_factory=dict)
    purchased_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_purchase_history"
        indexes = [
            [("advisor_id", 1), ("purchased_at", -1)],
            [("gateway", 1), ("transaction_id", 1)],
        ]
