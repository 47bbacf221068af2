"""Recurring advisor credit subscriptions and their billing-cycle webhooks."""

from datetime import datetime
from typing import Any

from beanie import UpdateResponse
from pymongo.errors import DuplicateKeyError

from advisor_credits.core.audit import alert, notify
from advisor_credits.core.config import get_settings
from advisor_credits.core.dates import add_one_month, utcnow
from advisor_credits.core.exceptions import AppError, ContentionError, InconsistentStateError, NotFoundError
from advisor_credits.core.logging import get_logger
from advisor_credits.db.guard import bounded, object_id
from advisor_credits.models.credit_subscription import RecurringCreditSubscription, SubscriptionStatus
from advisor_credits.models.purchase_history import PurchaseHistoryEntry, PurchaseStatus
from advisor_credits.services import ledger, pricing, purchases

log = get_logger(__name__)


async def find_by_gateway_ref(gateway: str, gateway_subscription_id: str) -> RecurringCreditSubscription | None:
    return await bounded(
        RecurringCreditSubscription.find_one(
            RecurringCreditSubscription.gateway == gateway,
            RecurringCreditSubscription.gateway_subscription_id == gateway_subscription_id,
        ),
        "find_subscription",
    )


async def get_active_subscriptions(advisor_id: str) -> list[RecurringCreditSubscription]:
    """An advisor may hold several subscriptions at once."""
    return await bounded(
        RecurringCreditSubscription.find(
            RecurringCreditSubscription.advisor_id == advisor_id,
            RecurringCreditSubscription.status == SubscriptionStatus.ACTIVE,
        )
        .sort(-RecurringCreditSubscription.created_at)
        .to_list(),
        "active_subscriptions",
    )


async def create_subscription(
    advisor_id: str,
    plan_id: str,
    gateway: str,
    gateway_subscription_id: str,
) -> RecurringCreditSubscription:
    """
    Record a gateway subscription the advisor just set up.
    Retries and duplicate webhooks land on the unique gateway ref and get the existing row back.
    """
    plan = await pricing.get_plan(plan_id)
    now = utcnow()
    period_end = add_one_month(now)
    sub = RecurringCreditSubscription(
        advisor_id=advisor_id,
        plan_id=str(plan.id),
        credits_per_month=plan.credits_per_month,
        price_per_month=plan.price_per_month,
        currency=plan.currency,
        gateway=gateway,
        gateway_subscription_id=gateway_subscription_id,
        current_period_start=now,
        current_period_end=period_end,
        next_billing_date=period_end,
        created_at=now,
        updated_at=now,
    )
    try:
        await bounded(sub.insert(), "create_subscription")
    except DuplicateKeyError:
        existing = await find_by_gateway_ref(gateway, gateway_subscription_id)
        if existing is None:
            raise ContentionError("Subscription is being created, please retry")
        log.info("subscription_create_duplicate", subscription_id=str(existing.id), gateway=gateway)
        return existing
    log.info("subscription_created", subscription_id=str(sub.id), advisor_id=advisor_id, plan_id=plan_id)
    await notify(advisor_id, "subscription_created", "subscription", str(sub.id), {"plan_id": plan_id})
    return sub


async def _advance_period(
    sub: RecurringCreditSubscription,
    amount: float,
    now: datetime,
) -> RecurringCreditSubscription | None:
    """Move the billing period forward one month; CAS on billing_cycle_count."""
    new_start = sub.current_period_end
    new_end = add_one_month(new_start)
    return await bounded(
        RecurringCreditSubscription.find_one(
            {"_id": sub.id, "billing_cycle_count": sub.billing_cycle_count},
        ).update(
            {
                "$set": {
                    "current_period_start": new_start,
                    "current_period_end": new_end,
                    "next_billing_date": new_end,
                    "last_billing_date": now,
                    "updated_at": now,
                },
                "$inc": {"billing_cycle_count": 1, "total_paid": amount},
            },
            response_type=UpdateResponse.NEW_DOCUMENT,
        ),
        "advance_period",
    )


async def process_billing_cycle_payment(
    gateway: str,
    gateway_subscription_id: str,
    amount: float,
    currency: str,
    transaction_id: str,
) -> dict[str, Any]:
    """
    Apply one successful billing cycle: advance the period, grant credits_per_month, record history.
    Idempotent per transaction_id. A replay after a failure that wrote nothing re-drives the cycle.
    If credits cannot be granted after the period moved we stop and alert instead, since a
    blind retry would advance the period twice.
    """
    sub = await find_by_gateway_ref(gateway, gateway_subscription_id)
    if sub is None or sub.status is not SubscriptionStatus.ACTIVE:
        raise NotFoundError("Active subscription not found for payment")

    entry, created = await purchases.claim(
        sub.advisor_id,
        sub.credits_per_month,
        amount,
        currency,
        gateway,
        transaction_id,
        metadata={"subscription_id": str(sub.id), "payment_type": "subscription"},
    )
    if not created:
        return {
            "subscription_id": str(sub.id),
            "entry_id": str(entry.id),
            "status": entry.status.value,
            "duplicate": True,
        }

    now = utcnow()
    advanced = None
    try:
        for _ in range(get_settings().ledger_max_retries):
            advanced = await _advance_period(sub, amount, now)
            if advanced is not None:
                break
            sub = await find_by_gateway_ref(gateway, gateway_subscription_id)
        if advanced is None:
            raise ContentionError("Subscription period changed concurrently", details={"subscription_id": str(sub.id)})
    except AppError as e:
        await purchases.fail(entry, e.message, {"code": e.code, "retryable": purchases.retryable(e)})
        raise

    cycle = advanced.billing_cycle_count
    try:
        account = await ledger.add_credits(sub.advisor_id, sub.credits_per_month, amount=amount, currency=currency)
    except AppError as e:
        details = {
            "subscription_id": str(sub.id),
            "transaction_id": transaction_id,
            "billing_cycle": cycle,
            "credits": sub.credits_per_month,
            "error": e.message,
        }
        await purchases.fail(entry, e.message, {"period_advanced": True, "billing_cycle": cycle, "inconsistent": True, "retryable": False})
        await alert("billing_inconsistency", "subscription", str(sub.id), details, actor_id=sub.advisor_id)
        raise InconsistentStateError("Billing period advanced but credits were not granted", details=details) from e

    entry = await purchases.complete(
        entry,
        {
            "billing_cycle": cycle,
            "purchase_type": "subscription",
            "credits_available": account.credits_available,
        },
    )
    log.info(
        "billing_cycle_applied",
        subscription_id=str(sub.id),
        advisor_id=sub.advisor_id,
        billing_cycle=cycle,
        credits=sub.credits_per_month,
    )
    return {
        "subscription_id": str(sub.id),
        "entry_id": str(entry.id),
        "status": entry.status.value,
        "duplicate": False,
        "billing_cycle": cycle,
        "credits_available": account.credits_available,
    }


async def consecutive_failures(subscription_id: str) -> int:
    """Failed billing attempts since the last completed cycle."""
    entries = await bounded(
        PurchaseHistoryEntry.find({"metadata.subscription_id": subscription_id})
        .sort(-PurchaseHistoryEntry.purchased_at)
        .limit(50)
        .to_list(),
        "subscription_history",
    )
    count = 0
    for e in entries:
        if e.status is PurchaseStatus.COMPLETED:
            break
        if e.status is PurchaseStatus.FAILED:
            count += 1
    return count


async def handle_billing_failure(gateway: str, gateway_subscription_id: str) -> dict[str, Any]:
    """
    Record a failed charge. Status is left alone: callers decide whether to pause
    using the returned consecutive_failures count.
    """
    sub = await find_by_gateway_ref(gateway, gateway_subscription_id)
    if sub is None:
        raise NotFoundError("Subscription not found")
    entry = await purchases.record_failure(
        sub.advisor_id,
        sub.price_per_month,
        sub.currency,
        gateway,
        "Payment failed",
        metadata={"subscription_id": str(sub.id), "payment_type": "subscription"},
    )
    failures = await consecutive_failures(str(sub.id))
    log.warning("billing_cycle_failed", subscription_id=str(sub.id), advisor_id=sub.advisor_id, failures=failures)
    await notify(sub.advisor_id, "billing_failed", "subscription", str(sub.id), {"consecutive_failures": failures})
    return {"subscription_id": str(sub.id), "entry_id": str(entry.id), "consecutive_failures": failures}


async def _get_owned(subscription_id: str, advisor_id: str | None) -> RecurringCreditSubscription:
    sub = await bounded(RecurringCreditSubscription.get(object_id(subscription_id, "Subscription")), "get_subscription")
    if not sub or (advisor_id is not None and sub.advisor_id != advisor_id):
        raise NotFoundError("Subscription not found")
    return sub


async def _transition(
    subscription_id: str,
    target: SubscriptionStatus,
    advisor_id: str | None = None,
) -> RecurringCreditSubscription:
    sub = await _get_owned(subscription_id, advisor_id)
    previous = sub.status
    sub.transition(target, utcnow())
    updated = await bounded(
        RecurringCreditSubscription.find_one({"_id": sub.id, "status": previous.value}).update(
            {"$set": {"status": sub.status.value, "updated_at": sub.updated_at, "cancelled_at": sub.cancelled_at}},
            response_type=UpdateResponse.NEW_DOCUMENT,
        ),
        "subscription_status",
    )
    if updated is None:
        raise ContentionError("Subscription changed concurrently, please retry")
    log.info("subscription_status_changed", subscription_id=subscription_id, status=target.value, previous=previous.value)
    await notify(updated.advisor_id, f"subscription_{target.value}", "subscription", subscription_id)
    return updated


async def cancel_subscription(subscription_id: str, advisor_id: str | None = None) -> RecurringCreditSubscription:
    return await _transition(subscription_id, SubscriptionStatus.CANCELLED, advisor_id)


async def pause_subscription(subscription_id: str) -> RecurringCreditSubscription:
    return await _transition(subscription_id, SubscriptionStatus.PAUSED)


async def resume_subscription(subscription_id: str) -> RecurringCreditSubscription:
    return await _transition(subscription_id, SubscriptionStatus.ACTIVE)
