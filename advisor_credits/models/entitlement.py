from datetime import datetime
from typing import Literal

from beanie import Document
from pydantic import Field


class Entitlement(Document):
    """Dependent's premium subscription record; one active row per dependent."""
    dependent_id: str
    tier: str = "premium"
    status: Literal["active", "inactive"] = "active"
    period_start: datetime
    period_end: datetime
    paid_by_advisor_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "entitlements"
        indexes = [[("dependent_id", 1), ("status", 1), ("period_end", -1)]]
