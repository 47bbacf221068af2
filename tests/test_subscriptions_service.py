"""Recurring credit subscriptions: creation, billing cycles, failures, status changes."""

import pytest

from advisor_credits.core.exceptions import (
    ContentionError,
    InconsistentStateError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)
from advisor_credits.core.dates import add_one_month
from advisor_credits.models.credit_subscription import RecurringCreditSubscription, SubscriptionStatus
from advisor_credits.models.pricing import CreditPricing, CreditSubscriptionPlan
from advisor_credits.models.purchase_history import PurchaseHistoryEntry, PurchaseStatus
from advisor_credits.services import ledger, pricing, purchases
from advisor_credits.services import subscriptions as subs

pytestmark = pytest.mark.asyncio


async def _plan(credits=5, price=499.0, country="India", currency="INR", active=True):
    plan = CreditSubscriptionPlan(
        plan_name=f"{credits} credits",
        country=country,
        credits_per_month=credits,
        price_per_month=price,
        currency=currency,
        is_active=active,
    )
    await plan.insert()
    return plan


async def test_create_subscription_is_idempotent_per_gateway_ref(db):
    plan = await _plan()
    first = await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_123")
    second = await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_123")

    assert first.id == second.id
    assert first.credits_per_month == 5
    assert first.current_period_end == add_one_month(first.current_period_start)
    assert await RecurringCreditSubscription.find_all().count() == 1


async def test_create_subscription_requires_active_plan(db):
    plan = await _plan(active=False)
    with pytest.raises(NotFoundError):
        await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_1")
    with pytest.raises(NotFoundError):
        await subs.create_subscription("adv-1", "not-an-id", "razorpay", "sub_1")


async def test_billing_cycle_grants_credits_once(db):
    plan = await _plan(credits=5)
    sub = await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_1")

    first = await subs.process_billing_cycle_payment("razorpay", "sub_1", 499.0, "INR", "pay_1")
    replay = await subs.process_billing_cycle_payment("razorpay", "sub_1", 499.0, "INR", "pay_1")

    assert first["duplicate"] is False
    assert first["billing_cycle"] == 1
    assert replay["duplicate"] is True
    assert replay["entry_id"] == first["entry_id"]
    assert await ledger.get_balance("adv-1") == 5

    sub_after = await RecurringCreditSubscription.get(sub.id)
    assert sub_after.billing_cycle_count == 1
    assert sub_after.total_paid == 499.0
    assert sub_after.current_period_start == sub.current_period_end
    entries = await PurchaseHistoryEntry.find(PurchaseHistoryEntry.advisor_id == "adv-1").to_list()
    assert len(entries) == 1
    assert entries[0].status is PurchaseStatus.COMPLETED
    assert entries[0].metadata["subscription_id"] == str(sub.id)


async def test_billing_cycle_for_unknown_or_cancelled_subscription(db):
    with pytest.raises(NotFoundError):
        await subs.process_billing_cycle_payment("razorpay", "sub_missing", 1.0, "INR", "pay_x")

    plan = await _plan()
    sub = await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_1")
    await subs.cancel_subscription(str(sub.id), advisor_id="adv-1")
    with pytest.raises(NotFoundError):
        await subs.process_billing_cycle_payment("razorpay", "sub_1", 499.0, "INR", "pay_1")
    assert await ledger.get_balance("adv-1") == 0


async def test_grant_failure_after_period_advance_is_flagged(db, monkeypatch):
    plan = await _plan(credits=5)
    await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_1")

    async def broken_add(*args, **kwargs):
        raise PersistenceError("ledger_write timed out")

    monkeypatch.setattr(ledger, "add_credits", broken_add)
    with pytest.raises(InconsistentStateError):
        await subs.process_billing_cycle_payment("razorpay", "sub_1", 499.0, "INR", "pay_1")

    entry = await purchases.find_by_transaction("razorpay", "pay_1")
    assert entry.status is PurchaseStatus.FAILED
    assert entry.metadata["inconsistent"] is True
    # the same payment is not applied again on replay
    replay = await subs.process_billing_cycle_payment("razorpay", "sub_1", 499.0, "INR", "pay_1")
    assert replay["duplicate"] is True


async def test_billing_failures_are_counted_and_leave_status_alone(db):
    plan = await _plan()
    sub = await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_1")

    await subs.handle_billing_failure("razorpay", "sub_1")
    out = await subs.handle_billing_failure("razorpay", "sub_1")
    assert out["consecutive_failures"] == 2

    sub_after = await RecurringCreditSubscription.get(sub.id)
    assert sub_after.status is SubscriptionStatus.ACTIVE


async def test_status_transitions(db):
    plan = await _plan()
    sub = await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_1")

    paused = await subs.pause_subscription(str(sub.id))
    assert paused.status is SubscriptionStatus.PAUSED
    resumed = await subs.resume_subscription(str(sub.id))
    assert resumed.status is SubscriptionStatus.ACTIVE
    cancelled = await subs.cancel_subscription(str(sub.id))
    assert cancelled.status is SubscriptionStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    with pytest.raises(InvalidTransitionError):
        await subs.resume_subscription(str(sub.id))


async def test_cancel_checks_ownership(db):
    plan = await _plan()
    sub = await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_1")
    with pytest.raises(NotFoundError):
        await subs.cancel_subscription(str(sub.id), advisor_id="adv-2")


async def test_advisor_may_hold_several_subscriptions(db):
    small = await _plan(credits=5)
    large = await _plan(credits=20, price=1799.0)
    await subs.create_subscription("adv-1", str(small.id), "razorpay", "sub_a")
    await subs.create_subscription("adv-1", str(large.id), "razorpay", "sub_b")
    active = await subs.get_active_subscriptions("adv-1")
    assert {s.credits_per_month for s in active} == {5, 20}


async def test_pricing_by_region(db):
    await CreditPricing(country="India", price_per_credit=99.0, currency="INR").insert()
    await _plan(credits=20, price=1799.0)
    await _plan(credits=5, price=499.0)
    await _plan(credits=10, price=9.0, country="Global", currency="EUR")

    assert await pricing.get_credit_price("india") == {"price": 99.0, "currency": "INR", "region": "India"}
    assert await pricing.get_credit_price("Germany") == {"price": 0.0, "currency": "EUR", "region": "Global"}
    plans = await pricing.get_subscription_plans("India")
    assert [p.credits_per_month for p in plans] == [5, 20]


async def test_billing_cycle_is_redriven_when_the_period_never_moved(db, monkeypatch):
    plan = await _plan(credits=5)
    sub = await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_1")
    real_advance = subs._advance_period
    calls = []

    async def advance_once(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise PersistenceError("update_subscription failed", details={"outcome_unknown": False})
        return await real_advance(*args, **kwargs)

    monkeypatch.setattr(subs, "_advance_period", advance_once)
    with pytest.raises(PersistenceError):
        await subs.process_billing_cycle_payment("razorpay", "sub_1", 499.0, "INR", "pay_1")
    assert await ledger.get_balance("adv-1") == 0

    retried = await subs.process_billing_cycle_payment("razorpay", "sub_1", 499.0, "INR", "pay_1")
    assert retried["duplicate"] is False
    assert retried["billing_cycle"] == 1
    assert await ledger.get_balance("adv-1") == 5
    sub_after = await RecurringCreditSubscription.get(sub.id)
    assert sub_after.billing_cycle_count == 1

    replay = await subs.process_billing_cycle_payment("razorpay", "sub_1", 499.0, "INR", "pay_1")
    assert replay["duplicate"] is True
    assert await ledger.get_balance("adv-1") == 5


async def test_billing_payment_already_in_flight_is_not_reported_as_duplicate(db):
    plan = await _plan(credits=5)
    sub = await subs.create_subscription("adv-1", str(plan.id), "razorpay", "sub_1")
    await purchases.claim("adv-1", 5, 499.0, "INR", "razorpay", "pay_1", metadata={"subscription_id": str(sub.id)})

    with pytest.raises(ContentionError):
        await subs.process_billing_cycle_payment("razorpay", "sub_1", 499.0, "INR", "pay_1")
    assert await ledger.get_balance("adv-1") == 0
