"""Service-to-service routes: credit grants, billing events, manual sweep trigger."""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from advisor_credits.deps import require_internal_service
from advisor_credits.services import purchases, renewals
from advisor_credits.services import subscriptions as subscriptions_service

router = APIRouter(dependencies=[Depends(require_internal_service)])


class AddCreditsRequest(BaseModel):
    advisor_id: str
    credits: int = Field(gt=0)
    amount: float = Field(ge=0)
    currency: str = "INR"
    gateway: str = "razorpay"
    transaction_id: str


class BillingChargedRequest(BaseModel):
    gateway: str = "razorpay"
    gateway_subscription_id: str
    amount: float = Field(ge=0)
    currency: str = "INR"
    transaction_id: str


class BillingFailedRequest(BaseModel):
    gateway: str = "razorpay"
    gateway_subscription_id: str


class RenewalRunRequest(BaseModel):
    now: datetime | None = None


@router.post("/credits/add")
async def add_credits(body: AddCreditsRequest):
    return await purchases.record_credit_purchase(
        body.advisor_id,
        body.credits,
        body.amount,
        body.currency,
        body.gateway,
        body.transaction_id,
    )


@router.post("/billing/charged")
async def billing_charged(body: BillingChargedRequest):
    return await subscriptions_service.process_billing_cycle_payment(
        body.gateway,
        body.gateway_subscription_id,
        body.amount,
        body.currency,
        body.transaction_id,
    )


@router.post("/billing/failed")
async def billing_failed(body: BillingFailedRequest):
    return await subscriptions_service.handle_billing_failure(body.gateway, body.gateway_subscription_id)


@router.post("/renewals/run")
async def run_renewals(body: RenewalRunRequest | None = None):
    """Run the renewal sweep now (normally the worker's daily cron)."""
    now = body.now if body else None
    counts = await renewals.run_renewal_sweep(now=now)
    expired = await renewals.expire_lapsed_assignments(now=now)
    return {**counts, "expired": expired}
