from datetime import datetime
from typing import Literal

from beanie import Document
from pydantic import Field

Region = Literal["India", "Global"]


class CreditPricing(Document):
    """Per-credit price for one-time purchases. Maintained by admins."""
    country: Region
    price_per_credit: float
    currency: str
    is_active: bool = True
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_pricing_config"
        indexes = [[("country", 1), ("is_active", 1)]]


class CreditSubscriptionPlan(Document):
    """Monthly bundle of credits at a fixed price."""
    plan_name: str
    country: Region
    credits_per_month: int
    price_per_month: float
    currency: str
    is_active: bool = True

    class Settings:
        name = "credit_subscription_plans"
        indexes = [[("country", 1), ("is_active", 1), ("credits_per_month", 1)]]
