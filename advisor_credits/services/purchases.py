"""Purchase history: append-only audit rows for every credit-granting event.

Each gateway transaction is claimed by inserting a pending row under a unique
key before anything is granted. A failed attempt that provably wrote nothing
may be claimed again under "<key>#<attempt>"; the failed row itself stays as is.
"""

import uuid
from datetime import datetime
from typing import Any

from beanie import UpdateResponse
from pymongo.errors import DuplicateKeyError

from advisor_credits.core.audit import alert, notify
from advisor_credits.core.config import get_settings
from advisor_credits.core.dates import utcnow
from advisor_credits.core.exceptions import (
    AppError,
    ContentionError,
    InconsistentStateError,
    InvalidTransitionError,
    PersistenceError,
)
from advisor_credits.core.logging import get_logger
from advisor_credits.db.guard import bounded
from advisor_credits.models.purchase_history import PurchaseHistoryEntry, PurchaseStatus
from advisor_credits.services import ledger

log = get_logger(__name__)


def payment_key(gateway: str, transaction_id: str, attempt: int = 0) -> str:
    key = f"{gateway}:{transaction_id}"
    return key if attempt == 0 else f"{key}#{attempt}"


def retryable(err: AppError) -> bool:
    """True when the failed step is known to have written nothing."""
    if isinstance(err, ContentionError):
        return True
    return isinstance(err, PersistenceError) and not err.details.get("outcome_unknown", False)


async def find_by_transaction(gateway: str, transaction_id: str) -> PurchaseHistoryEntry | None:
    """Latest attempt for this transaction."""
    entries = await bounded(
        PurchaseHistoryEntry.find(
            PurchaseHistoryEntry.gateway == gateway,
            PurchaseHistoryEntry.transaction_id == transaction_id,
        ).to_list(),
        "find_purchase",
    )
    if not entries:
        return None
    return max(entries, key=lambda e: e.metadata.get("attempt", 0))


async def _insert_claim(entry: PurchaseHistoryEntry) -> bool:
    try:
        await bounded(entry.insert(), "claim_purchase")
    except DuplicateKeyError:
        return False
    return True


async def _refuse_in_flight(entry: PurchaseHistoryEntry, now: datetime) -> None:
    """A pending claim is either still being processed or belongs to a crashed grant."""
    age = (now - entry.purchased_at).total_seconds()
    details = {
        "entry_id": str(entry.id),
        "gateway": entry.gateway,
        "transaction_id": entry.transaction_id,
        "pending_seconds": int(age),
    }
    if age < get_settings().purchase_claim_stale_seconds:
        raise ContentionError("Payment is still being processed, please retry", details=details)
    await alert("purchase_stuck_pending", "purchase", str(entry.id), details, actor_id=entry.advisor_id)
    raise InconsistentStateError("Payment was claimed but never settled", details=details)


async def claim(
    advisor_id: str,
    credits: int,
    amount: float,
    currency: str,
    gateway: str,
    transaction_id: str,
    metadata: dict[str, Any] | None = None,
) -> tuple[PurchaseHistoryEntry, bool]:
    """
    Insert a pending entry for this payment. Returns (entry, created).
    created=False means the transaction was already settled: the caller must not grant again.
    A pending entry raises ContentionError while fresh, InconsistentStateError (with an alert) once stale.
    """
    metadata = metadata or {}

    def attempt_entry(attempt: int, extra: dict[str, Any]) -> PurchaseHistoryEntry:
        return PurchaseHistoryEntry(
            advisor_id=advisor_id,
            credits_purchased=credits,
            amount_paid=amount,
            currency=currency,
            gateway=gateway,
            transaction_id=transaction_id,
            idempotency_key=payment_key(gateway, transaction_id, attempt),
            metadata={**metadata, **extra},
        )

    entry = attempt_entry(0, {})
    if await _insert_claim(entry):
        return entry, True

    latest = await find_by_transaction(gateway, transaction_id)
    if latest is None:
        raise ContentionError("Payment is being recorded, please retry")
    if latest.status is PurchaseStatus.PENDING:
        await _refuse_in_flight(latest, utcnow())
    if latest.status is PurchaseStatus.FAILED and latest.metadata.get("retryable"):
        attempt = latest.metadata.get("attempt", 0) + 1
        retry = attempt_entry(attempt, {"attempt": attempt, "retry_of": str(latest.id)})
        if not await _insert_claim(retry):
            raise ContentionError("Payment retry already in progress, please retry")
        log.info("purchase_retry", gateway=gateway, transaction_id=transaction_id, attempt=attempt)
        return retry, True

    log.info("purchase_duplicate", gateway=gateway, transaction_id=transaction_id, status=latest.status.value)
    return latest, False


async def _settle(entry: PurchaseHistoryEntry, target: PurchaseStatus, metadata: dict[str, Any]) -> PurchaseHistoryEntry:
    if not entry.status.can_transition(target):
        raise InvalidTransitionError("purchase", entry.status.value, target.value)
    merged = {**entry.metadata, **metadata}
    updated = await bounded(
        PurchaseHistoryEntry.find_one(
            {"_id": entry.id, "status": PurchaseStatus.PENDING.value},
        ).update(
            {"$set": {"status": target.value, "metadata": merged}},
            response_type=UpdateResponse.NEW_DOCUMENT,
        ),
        "settle_purchase",
    )
    if updated is None:
        raise InvalidTransitionError("purchase", "settled", target.value)
    return updated


async def complete(entry: PurchaseHistoryEntry, metadata: dict[str, Any] | None = None) -> PurchaseHistoryEntry:
    return await _settle(entry, PurchaseStatus.COMPLETED, metadata or {})


async def fail(entry: PurchaseHistoryEntry, reason: str, metadata: dict[str, Any] | None = None) -> PurchaseHistoryEntry:
    return await _settle(entry, PurchaseStatus.FAILED, {"error": reason, **(metadata or {})})


async def record_failure(
    advisor_id: str,
    amount: float,
    currency: str,
    gateway: str,
    reason: str,
    metadata: dict[str, Any] | None = None,
) -> PurchaseHistoryEntry:
    """Append a failed entry (no transaction to key on, so each failure gets its own row)."""
    entry = PurchaseHistoryEntry(
        advisor_id=advisor_id,
        credits_purchased=0,
        amount_paid=amount,
        currency=currency,
        gateway=gateway,
        status=PurchaseStatus.FAILED,
        idempotency_key=f"failure:{uuid.uuid4().hex}",
        metadata={"failure_reason": reason, **(metadata or {})},
    )
    await bounded(entry.insert(), "record_failure")
    return entry


async def record_credit_purchase(
    advisor_id: str,
    credits: int,
    amount: float,
    currency: str,
    gateway: str,
    transaction_id: str,
) -> dict[str, Any]:
    """
    One-time credit purchase reported by a gateway.
    Idempotent per (gateway, transaction_id): a replay returns the first outcome without granting.
    """
    entry, created = await claim(
        advisor_id,
        credits,
        amount,
        currency,
        gateway,
        transaction_id,
        metadata={"purchase_type": "one_time"},
    )
    if not created:
        return {"entry_id": str(entry.id), "status": entry.status.value, "duplicate": True}

    try:
        account = await ledger.add_credits(advisor_id, credits, amount=amount, currency=currency)
    except AppError as e:
        await fail(entry, e.message, {"code": e.code, "retryable": retryable(e)})
        log.error("credit_purchase_failed", advisor_id=advisor_id, transaction_id=transaction_id, error=e.message)
        raise

    entry = await complete(
        entry,
        {
            "credits_available": account.credits_available,
            "credits_used": account.credits_used,
            "credits_purchased": account.credits_purchased,
        },
    )
    await notify(advisor_id, "credits_purchased", "purchase", str(entry.id), {"credits": credits, "gateway": gateway})
    return {
        "entry_id": str(entry.id),
        "status": entry.status.value,
        "duplicate": False,
        "credits_available": account.credits_available,
    }


async def get_purchase_history(advisor_id: str, limit: int = 50, offset: int = 0) -> list[PurchaseHistoryEntry]:
    return await bounded(
        PurchaseHistoryEntry.find(PurchaseHistoryEntry.advisor_id == advisor_id)
        .sort(-PurchaseHistoryEntry.purchased_at)
        .skip(offset)
        .limit(limit)
        .to_list(),
        "purchase_history",
    )
