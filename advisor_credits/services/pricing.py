"""Credit price and subscription plan lookup by region."""

from advisor_credits.core.exceptions import NotFoundError
from advisor_credits.db.guard import bounded, object_id
from advisor_credits.models.pricing import CreditPricing, CreditSubscriptionPlan

DEFAULT_CURRENCY = {"India": "INR", "Global": "EUR"}


def normalize_country(country: str | None) -> str:
    """Pricing has two regions: India and everything else."""
    return "India" if (country or "").strip().lower() == "india" else "Global"


async def get_credit_price(country: str | None) -> dict:
    """Return {price, currency}; price 0 until an admin configures the region."""
    region = normalize_country(country)
    row = await bounded(
        CreditPricing.find_one(CreditPricing.country == region, CreditPricing.is_active == True),  # noqa: E712
        "credit_price",
    )
    if not row:
        return {"price": 0.0, "currency": DEFAULT_CURRENCY[region], "region": region}
    return {"price": float(row.price_per_credit), "currency": row.currency, "region": region}


async def get_subscription_plans(country: str | None) -> list[CreditSubscriptionPlan]:
    region = normalize_country(country)
    return await bounded(
        CreditSubscriptionPlan.find(
            CreditSubscriptionPlan.country == region,
            CreditSubscriptionPlan.is_active == True,  # noqa: E712
        )
        .sort(+CreditSubscriptionPlan.credits_per_month)
        .to_list(),
        "subscription_plans",
    )


async def get_plan(plan_id: str) -> CreditSubscriptionPlan:
    plan = await bounded(CreditSubscriptionPlan.get(object_id(plan_id, "Subscription plan")), "get_plan")
    if not plan or not plan.is_active:
        raise NotFoundError("Subscription plan not found")
    return plan
