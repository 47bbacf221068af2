"""Razorpay webhook: verify HMAC, route payment outcomes to purchases and subscriptions."""

import json
from typing import Any

from advisor_credits.core.config import get_settings
from advisor_credits.core.exceptions import BadRequestError, NotFoundError
from advisor_credits.core.logging import get_logger
from advisor_credits.core.security import verify_razorpay_webhook
from advisor_credits.services import purchases
from advisor_credits.services import subscriptions as subscriptions_service

log = get_logger(__name__)

GATEWAY = "razorpay"
CREDIT_PURCHASE_PURPOSE = "advisor_credits"
FAILURE_EVENTS = ("subscription.pending", "subscription.halted")


def _entity(data: dict[str, Any], kind: str) -> dict[str, Any]:
    return data.get("payload", {}).get(kind, {}).get("entity", {}) or {}


def _major_units(amount_minor: int | None) -> float:
    """Razorpay amounts are in paise/cents."""
    return round((amount_minor or 0) / 100, 2)


async def _handle_credit_purchase(payment: dict[str, Any]) -> dict[str, Any] | None:
    notes = payment.get("notes") or {}
    if notes.get("purpose") != CREDIT_PURCHASE_PURPOSE:
        return None
    advisor_id = notes.get("advisor_id")
    try:
        credits = int(notes.get("credits") or 0)
    except (TypeError, ValueError):
        credits = 0
    if not advisor_id or credits <= 0:
        log.warning("webhook_purchase_missing_notes", payment_id=payment.get("id"))
        return None
    return await purchases.record_credit_purchase(
        advisor_id,
        credits,
        _major_units(payment.get("amount")),
        payment.get("currency", "INR"),
        GATEWAY,
        payment["id"],
    )


async def handle_webhook(payload: bytes, signature: str) -> dict[str, Any] | None:
    """Verify signature and apply the event idempotently. Unknown events are ignored."""
    settings = get_settings()
    if not settings.razorpay_webhook_secret:
        raise BadRequestError("Webhook secret not configured")
    if not verify_razorpay_webhook(payload, signature, settings.razorpay_webhook_secret):
        raise BadRequestError("Invalid webhook signature")
    try:
        data = json.loads(payload.decode())
    except ValueError as e:
        raise BadRequestError("Malformed webhook body") from e
    event = data.get("event")
    log.info("webhook_received", gateway=GATEWAY, webhook_event=event)

    if event == "payment.captured":
        return await _handle_credit_purchase(_entity(data, "payment"))

    if event == "subscription.charged":
        subscription = _entity(data, "subscription")
        payment = _entity(data, "payment")
        try:
            return await subscriptions_service.process_billing_cycle_payment(
                GATEWAY,
                subscription.get("id", ""),
                _major_units(payment.get("amount")),
                payment.get("currency", "INR"),
                payment.get("id", ""),
            )
        except NotFoundError:
            # Not one of ours (or no longer active): acknowledge so the gateway stops retrying.
            log.warning("webhook_subscription_unknown", gateway_subscription_id=subscription.get("id"))
            return None

    if event in FAILURE_EVENTS:
        subscription = _entity(data, "subscription")
        try:
            return await subscriptions_service.handle_billing_failure(GATEWAY, subscription.get("id", ""))
        except NotFoundError:
            log.warning("webhook_subscription_unknown", gateway_subscription_id=subscription.get("id"))
            return None

    return None
