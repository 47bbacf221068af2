"""Advisor -> dependent credit assignments.

Assigning spends one credit, writes (or reactivates) the pair's assignment row
and grants the dependent's entitlement. The three writes hit different
collections, so they run as a Saga and are undone in reverse if any fails.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from beanie import UpdateResponse
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from advisor_credits.core.audit import notify
from advisor_credits.core.config import get_settings
from advisor_credits.core.dates import grant_window, truncate_ms, utcnow
from advisor_credits.core.exceptions import (
    AlreadyEntitledError,
    AppError,
    ConflictError,
    ContentionError,
    InsufficientCreditsError,
)
from advisor_credits.core.logging import get_logger
from advisor_credits.core.saga import Saga
from advisor_credits.db.guard import bounded
from advisor_credits.models.credit_assignment import RETIRED_STATUSES, AssignmentStatus, CreditAssignment
from advisor_credits.services import entitlements, ledger

log = get_logger(__name__)


class AssignmentResult(BaseModel):
    """Outcome of assign_credit. Refusals (no credits, already entitled) are results, not exceptions."""
    success: bool
    assignment_id: str | None = None
    credit_spent: bool = False
    reason: str | None = None  # insufficient_credits | already_entitled
    message: str | None = None
    credits_available: int | None = None
    credits_required: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    @classmethod
    def refused(cls, err: AppError) -> "AssignmentResult":
        out = cls(success=False, reason=err.code.lower(), message=err.message)
        if isinstance(err, InsufficientCreditsError):
            out.credits_available = err.credits_available
            out.credits_required = err.credits_required
        return out


class _ActiveAssignmentExists(Exception):
    """Another request activated this pair between our read and our write."""


@dataclass
class _AssignmentWrite:
    row: CreditAssignment
    inserted: bool
    previous: dict[str, Any] | None = None


_SNAPSHOT_FIELDS = ("status", "start_date", "end_date", "auto_renewal_enabled", "entitlement_id", "expired_at", "renewal_count")


def _snapshot(row: CreditAssignment) -> dict[str, Any]:
    data = {f: getattr(row, f) for f in _SNAPSHOT_FIELDS}
    data["status"] = row.status.value
    return data


async def conditional_set(row_id, expected: dict[str, Any], fields: dict[str, Any]) -> CreditAssignment | None:
    """$set fields only if the row still matches expected. None when it changed underneath us."""
    return await bounded(
        CreditAssignment.find_one({"_id": row_id, **expected}).update(
            {"$set": fields},
            response_type=UpdateResponse.NEW_DOCUMENT,
        ),
        "update_assignment",
    )


async def get_active_assignment(
    advisor_id: str,
    dependent_id: str,
    now: datetime | None = None,
) -> CreditAssignment | None:
    """Active row whose end_date is still in the future. Lapsed active rows are the sweeper's business."""
    now = now or utcnow()
    return await bounded(
        CreditAssignment.find_one(
            CreditAssignment.advisor_id == advisor_id,
            CreditAssignment.dependent_id == dependent_id,
            CreditAssignment.status == AssignmentStatus.ACTIVE,
            CreditAssignment.end_date > now,
        ),
        "get_active_assignment",
    )


async def _find_active_row(advisor_id: str, dependent_id: str) -> CreditAssignment | None:
    """Active row regardless of end_date."""
    return await bounded(
        CreditAssignment.find_one(
            CreditAssignment.advisor_id == advisor_id,
            CreditAssignment.dependent_id == dependent_id,
            CreditAssignment.status == AssignmentStatus.ACTIVE,
        ),
        "find_active_assignment",
    )


async def _find_pair_row(advisor_id: str, dependent_id: str) -> CreditAssignment | None:
    rows = await bounded(
        CreditAssignment.find(
            CreditAssignment.advisor_id == advisor_id,
            CreditAssignment.dependent_id == dependent_id,
        )
        .sort(-CreditAssignment.assigned_at)
        .limit(1)
        .to_list(),
        "find_assignment",
    )
    return rows[0] if rows else None


async def get_advisor_assignments(advisor_id: str) -> list[CreditAssignment]:
    return await bounded(
        CreditAssignment.find(CreditAssignment.advisor_id == advisor_id)
        .sort(-CreditAssignment.assigned_at)
        .to_list(),
        "advisor_assignments",
    )


async def set_auto_renewal(advisor_id: str, dependent_id: str, enabled: bool) -> bool:
    """Toggle auto-renewal on the active row. False if there is none."""
    row = await _find_active_row(advisor_id, dependent_id)
    if not row:
        return False
    updated = await conditional_set(
        row.id,
        {"status": AssignmentStatus.ACTIVE.value},
        {"auto_renewal_enabled": enabled, "updated_at": utcnow()},
    )
    if updated:
        log.info("assignment_auto_renewal_set", advisor_id=advisor_id, dependent_id=dependent_id, enabled=enabled)
    return updated is not None


async def cancel_auto_renewal(advisor_id: str, dependent_id: str) -> bool:
    """
    Stop renewing. The dependent keeps access until end_date.
    Works on lapsed active rows too; no active row is a successful no-op.
    """
    if await set_auto_renewal(advisor_id, dependent_id, False):
        await notify(advisor_id, "auto_renewal_cancelled", "assignment", None, {"dependent_id": dependent_id})
    return True


async def _reactivate(
    row: CreditAssignment,
    start: datetime,
    end: datetime,
    auto_renewal: bool,
    now: datetime,
) -> _AssignmentWrite:
    previous = _snapshot(row)
    if row.status is AssignmentStatus.ACTIVE:
        if row.is_current(now):
            raise _ActiveAssignmentExists("assignment is still current")
        # Lapsed but never swept: retire it first so the reuse path applies.
        row.expire(now)
        row = await conditional_set(
            row.id,
            {"status": AssignmentStatus.ACTIVE.value, "end_date": previous["end_date"]},
            {"status": row.status.value, "expired_at": now, "auto_renewal_enabled": False, "updated_at": now},
        )
        if row is None:
            raise _ActiveAssignmentExists("lapsed row changed before it could be retired")

    row.reactivate(start, end, auto_renewal, now)
    renewal_count = previous["renewal_count"] + (1 if previous["end_date"] == start else 0)
    updated = await conditional_set(
        row.id,
        {"status": {"$in": RETIRED_STATUSES}},
        {
            "status": row.status.value,
            "start_date": start,
            "end_date": end,
            "auto_renewal_enabled": auto_renewal,
            "expired_at": None,
            "entitlement_id": None,
            "renewal_count": renewal_count,
            "updated_at": now,
        },
    )
    if updated is None:
        raise _ActiveAssignmentExists("row was reactivated concurrently")
    log.info("assignment_reactivated", assignment_id=str(updated.id), previous_status=previous["status"])
    return _AssignmentWrite(row=updated, inserted=False, previous=previous)


async def _write_assignment(
    advisor_id: str,
    dependent_id: str,
    start: datetime,
    end: datetime,
    auto_renewal: bool,
    now: datetime,
) -> _AssignmentWrite:
    row = await _find_pair_row(advisor_id, dependent_id)
    if row is None:
        row = CreditAssignment(
            advisor_id=advisor_id,
            dependent_id=dependent_id,
            start_date=start,
            end_date=end,
            auto_renewal_enabled=auto_renewal,
            assigned_at=now,
            updated_at=now,
        )
        try:
            await bounded(row.insert(), "insert_assignment")
            return _AssignmentWrite(row=row, inserted=True)
        except DuplicateKeyError:
            log.info("assignment_insert_conflict", advisor_id=advisor_id, dependent_id=dependent_id)
            row = await _find_pair_row(advisor_id, dependent_id)
            if row is None:
                raise ContentionError("Assignment changed concurrently, please retry")
    return await _reactivate(row, start, end, auto_renewal, now)


async def _undo_assignment(write: _AssignmentWrite) -> None:
    if write.inserted:
        await bounded(write.row.delete(), "delete_assignment")
        log.info("assignment_deleted", assignment_id=str(write.row.id))
        return
    restored = await conditional_set(
        write.row.id,
        {"status": AssignmentStatus.ACTIVE.value, "start_date": write.row.start_date},
        {**write.previous, "updated_at": utcnow()},
    )
    if restored is None:
        log.warning("assignment_restore_skipped", assignment_id=str(write.row.id))
    else:
        log.info("assignment_restored", assignment_id=str(write.row.id), status=write.previous["status"])


async def _link_entitlement(row: CreditAssignment, entitlement_id: str) -> None:
    """Best-effort back-reference; the grant itself already succeeded."""
    try:
        await conditional_set(row.id, {"status": AssignmentStatus.ACTIVE.value}, {"entitlement_id": entitlement_id})
    except AppError as e:
        log.warning("entitlement_link_failed", assignment_id=str(row.id), entitlement_id=entitlement_id, error=e.message)


async def assign_credit(
    advisor_id: str,
    dependent_id: str,
    enable_auto_renewal: bool = True,
    start: datetime | None = None,
    _retry: bool = True,
) -> AssignmentResult:
    """
    Spend one credit to give the dependent a one-month entitlement starting at start (default now).
    An existing active assignment only has its auto-renewal flag updated; no credit is spent.
    """
    now = utcnow()
    existing = await get_active_assignment(advisor_id, dependent_id, now)
    if existing:
        await set_auto_renewal(advisor_id, dependent_id, enable_auto_renewal)
        return AssignmentResult(
            success=True,
            assignment_id=str(existing.id),
            credit_spent=False,
            start_date=existing.start_date,
            end_date=existing.end_date,
        )

    start, end = grant_window(truncate_ms(start or now))
    if await entitlements.has_valid_entitlement(dependent_id, start):
        log.info("assignment_refused", reason="already_entitled", advisor_id=advisor_id, dependent_id=dependent_id)
        return AssignmentResult.refused(AlreadyEntitledError(dependent_id))

    tier = get_settings().entitlement_tier
    saga = Saga("assign_credit", context={"advisor_id": advisor_id, "dependent_id": dependent_id})
    saga.step("reserve", lambda: ledger.reserve(advisor_id, 1), ledger.release)
    saga.step(
        "assignment",
        lambda: _write_assignment(advisor_id, dependent_id, start, end, enable_auto_renewal, now),
        _undo_assignment,
    )
    saga.step(
        "entitlement",
        lambda: entitlements.grant(dependent_id, tier, start, end, advisor_id),
        entitlements.revoke,
    )
    try:
        results = await saga.run()
    except InsufficientCreditsError as e:
        log.info("assignment_refused", reason="insufficient_credits", advisor_id=advisor_id, dependent_id=dependent_id)
        return AssignmentResult.refused(e)
    except _ActiveAssignmentExists:
        if _retry:
            return await assign_credit(advisor_id, dependent_id, enable_auto_renewal, start, _retry=False)
        raise ConflictError("An active assignment already exists for this dependent")

    write: _AssignmentWrite = results["assignment"]
    entitlement_id: str = results["entitlement"]
    await _link_entitlement(write.row, entitlement_id)
    log.info(
        "credit_assigned",
        advisor_id=advisor_id,
        dependent_id=dependent_id,
        assignment_id=str(write.row.id),
        entitlement_id=entitlement_id,
        reused=not write.inserted,
    )
    await notify(
        advisor_id,
        "credit_assigned",
        "assignment",
        str(write.row.id),
        {"dependent_id": dependent_id, "start_date": start.isoformat(), "end_date": end.isoformat()},
    )
    return AssignmentResult(
        success=True,
        assignment_id=str(write.row.id),
        credit_spent=True,
        start_date=start,
        end_date=end,
    )
