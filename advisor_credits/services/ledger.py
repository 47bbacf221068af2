"""Advisor credit ledger: the single write path for balances.

Every mutation is a compare-and-swap on CreditAccount.version, retried a few
times on a lost race. Callers outside the engine only get read projections.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any

from beanie import UpdateResponse
from pymongo.errors import DuplicateKeyError

from advisor_credits.core.config import get_settings
from advisor_credits.core.dates import utcnow
from advisor_credits.core.exceptions import (
    BadRequestError,
    ContentionError,
    InconsistentStateError,
    InsufficientCreditsError,
)
from advisor_credits.core.logging import get_logger
from advisor_credits.db.guard import bounded
from advisor_credits.models.credit_account import CreditAccount

log = get_logger(__name__)


@dataclass
class Reservation:
    """Credits taken by reserve(); hand it back to release() to undo exactly once."""
    advisor_id: str
    amount: int
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    released: bool = False


async def get_account(advisor_id: str) -> CreditAccount | None:
    """Point read; None means the advisor never bought credits."""
    return await bounded(CreditAccount.find_one(CreditAccount.advisor_id == advisor_id), "get_account")


async def get_balance(advisor_id: str) -> int:
    account = await get_account(advisor_id)
    return account.credits_available if account else 0


async def balance_summary(advisor_id: str) -> dict[str, Any]:
    account = await get_account(advisor_id)
    if not account:
        return {
            "credits_available": 0,
            "credits_used": 0,
            "credits_purchased": 0,
            "last_purchase": None,
        }
    return {
        "credits_available": account.credits_available,
        "credits_used": account.credits_used,
        "credits_purchased": account.credits_purchased,
        "last_purchase": {
            "amount": account.last_purchase_amount,
            "currency": account.last_purchase_currency,
            "date": account.last_purchase_date.isoformat() if account.last_purchase_date else None,
        }
        if account.last_purchase_date
        else None,
    }


async def _compare_and_swap(
    account: CreditAccount,
    update: dict[str, Any],
    condition: dict[str, Any] | None = None,
) -> CreditAccount | None:
    """Apply update only if the row still has the version we read. None on a lost race."""
    query = {"advisor_id": account.advisor_id, "version": account.version, **(condition or {})}
    update.setdefault("$inc", {})["version"] = 1
    update.setdefault("$set", {})["updated_at"] = utcnow()
    return await bounded(
        CreditAccount.find_one(query).update(update, response_type=UpdateResponse.NEW_DOCUMENT),
        "ledger_write",
    )


async def add_credits(
    advisor_id: str,
    delta: int,
    amount: float | None = None,
    currency: str | None = None,
) -> CreditAccount:
    """Grant purchased credits; creates the account on first use."""
    if delta <= 0:
        raise BadRequestError("Credits to add must be positive", details={"delta": delta})
    purchase: dict[str, Any] = {"last_purchase_date": utcnow()}
    if amount is not None:
        purchase["last_purchase_amount"] = amount
    if currency is not None:
        purchase["last_purchase_currency"] = currency

    for attempt in range(get_settings().ledger_max_retries):
        account = await get_account(advisor_id)
        if account is None:
            account = CreditAccount(
                advisor_id=advisor_id,
                credits_available=delta,
                credits_purchased=delta,
                version=1,
                **purchase,
            )
            try:
                await bounded(account.insert(), "ledger_create")
            except DuplicateKeyError:
                log.info("ledger_cas_conflict", op="add_credits", advisor_id=advisor_id, attempt=attempt)
                continue
            log.info("credits_added", advisor_id=advisor_id, delta=delta, credits_available=delta, created=True)
            return account

        updated = await _compare_and_swap(
            account,
            {"$inc": {"credits_available": delta, "credits_purchased": delta}, "$set": dict(purchase)},
        )
        if updated:
            log.info("credits_added", advisor_id=advisor_id, delta=delta, credits_available=updated.credits_available)
            return updated
        log.info("ledger_cas_conflict", op="add_credits", advisor_id=advisor_id, attempt=attempt)
    raise ContentionError("Could not add credits, please retry", details={"advisor_id": advisor_id})


async def reserve(advisor_id: str, amount: int = 1) -> Reservation:
    """Move credits from available to used, or raise InsufficientCreditsError / ContentionError."""
    for attempt in range(get_settings().ledger_max_retries):
        account = await get_account(advisor_id)
        available = account.credits_available if account else 0
        if account is None or available < amount:
            raise InsufficientCreditsError(credits_available=available, credits_required=amount)
        updated = await _compare_and_swap(
            account,
            {"$inc": {"credits_available": -amount, "credits_used": amount}},
            condition={"credits_available": {"$gte": amount}},
        )
        if updated:
            log.info(
                "credit_reserved",
                advisor_id=advisor_id,
                amount=amount,
                credits_available=updated.credits_available,
                credits_used=updated.credits_used,
            )
            return Reservation(advisor_id=advisor_id, amount=amount)
        log.info("ledger_cas_conflict", op="reserve", advisor_id=advisor_id, attempt=attempt)
    raise ContentionError("Could not reserve credit, please retry", details={"advisor_id": advisor_id})


async def release(reservation: Reservation) -> CreditAccount | None:
    """Undo a reservation. A second release of the same reservation is ignored."""
    if reservation.released:
        log.warning("double_release_ignored", advisor_id=reservation.advisor_id, token=reservation.token)
        return None
    for attempt in range(get_settings().ledger_max_retries):
        account = await get_account(reservation.advisor_id)
        if account is None or account.credits_used < reservation.amount:
            log.error("release_refused", advisor_id=reservation.advisor_id, amount=reservation.amount, token=reservation.token)
            raise InconsistentStateError(
                "Release would make credits_used negative",
                details={"advisor_id": reservation.advisor_id, "amount": reservation.amount},
            )
        updated = await _compare_and_swap(
            account,
            {"$inc": {"credits_available": reservation.amount, "credits_used": -reservation.amount}},
            condition={"credits_used": {"$gte": reservation.amount}},
        )
        if updated:
            reservation.released = True
            log.info(
                "credit_released",
                advisor_id=reservation.advisor_id,
                amount=reservation.amount,
                credits_available=updated.credits_available,
            )
            return updated
        log.info("ledger_cas_conflict", op="release", advisor_id=reservation.advisor_id, attempt=attempt)
    raise ContentionError("Could not release credit", details={"advisor_id": reservation.advisor_id})
