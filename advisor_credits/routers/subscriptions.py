from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from advisor_credits.deps import get_current_advisor
from advisor_credits.models.credit_subscription import RecurringCreditSubscription
from advisor_credits.services import pricing
from advisor_credits.services import subscriptions as subscriptions_service

router = APIRouter()


class CreateSubscriptionRequest(BaseModel):
    plan_id: str
    gateway: str = "razorpay"
    gateway_subscription_id: str


def _serialize(s: RecurringCreditSubscription) -> dict:
    return {
        "id": str(s.id),
        "plan_id": s.plan_id,
        "credits_per_month": s.credits_per_month,
        "price_per_month": s.price_per_month,
        "currency": s.currency,
        "gateway": s.gateway,
        "gateway_subscription_id": s.gateway_subscription_id,
        "status": s.status.value,
        "current_period_start": s.current_period_start.isoformat(),
        "current_period_end": s.current_period_end.isoformat(),
        "next_billing_date": s.next_billing_date.isoformat() if s.next_billing_date else None,
        "billing_cycle_count": s.billing_cycle_count,
        "total_paid": s.total_paid,
    }


@router.get("/plans")
async def subscription_plans(country: str = Query("Global"), advisor_id: str = Depends(get_current_advisor)):
    plans = await pricing.get_subscription_plans(country)
    return {
        "plans": [
            {
                "id": str(p.id),
                "plan_name": p.plan_name,
                "credits_per_month": p.credits_per_month,
                "price_per_month": p.price_per_month,
                "currency": p.currency,
            }
            for p in plans
        ]
    }


@router.get("")
async def list_subscriptions(advisor_id: str = Depends(get_current_advisor)):
    subs = await subscriptions_service.get_active_subscriptions(advisor_id)
    return {"subscriptions": [_serialize(s) for s in subs]}


@router.post("")
async def create_subscription(body: CreateSubscriptionRequest, advisor_id: str = Depends(get_current_advisor)):
    """Record a gateway subscription after checkout. Safe to retry."""
    sub = await subscriptions_service.create_subscription(
        advisor_id, body.plan_id, body.gateway, body.gateway_subscription_id
    )
    return _serialize(sub)


@router.post("/{subscription_id}/cancel")
async def cancel_subscription(subscription_id: str, advisor_id: str = Depends(get_current_advisor)):
    sub = await subscriptions_service.cancel_subscription(subscription_id, advisor_id=advisor_id)
    return _serialize(sub)
