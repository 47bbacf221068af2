from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class CreditAccount(Document):
    """Credit ledger row per advisor. Written only through services.ledger."""
    advisor_id: Indexed(str, unique=True)
    credits_available: int = 0
    credits_used: int = 0
    credits_purchased: int = 0  # monotonic
    last_purchase_amount: float | None = None
    last_purchase_currency: str | None = None
    last_purchase_date: datetime | None = None
    version: int = 0  # bumped on every write; compare-and-swap guard
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_accounts"

    @property
    def is_balanced(self) -> bool:
        return self.credits_available + self.credits_used == self.credits_purchased
