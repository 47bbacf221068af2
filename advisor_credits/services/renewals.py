"""Daily sweep: renew auto-renewing assignments near expiry, expire the rest."""

from datetime import datetime, timedelta

from advisor_credits.core.audit import notify
from advisor_credits.core.config import get_settings
from advisor_credits.core.dates import utcnow
from advisor_credits.core.exceptions import AppError
from advisor_credits.core.logging import get_logger
from advisor_credits.db.guard import bounded
from advisor_credits.models.credit_assignment import AssignmentStatus, CreditAssignment
from advisor_credits.services import assignments as assignments_service
from advisor_credits.services import entitlements, ledger

log = get_logger(__name__)


async def _expire(row: CreditAssignment, now: datetime, disable_auto_renewal: bool) -> CreditAssignment | None:
    """Conditionally retire the row we read. None if another run already moved it."""
    fields = {"status": AssignmentStatus.EXPIRED.value, "expired_at": now, "updated_at": now}
    if disable_auto_renewal:
        fields["auto_renewal_enabled"] = False
    return await assignments_service.conditional_set(
        row.id,
        {"status": AssignmentStatus.ACTIVE.value, "end_date": row.end_date},
        fields,
    )


async def _revoke_linked(row: CreditAssignment) -> None:
    if row.entitlement_id:
        await entitlements.revoke(row.entitlement_id, covering_until=row.end_date)


async def _abandon_renewal(row: CreditAssignment, previous_end: datetime) -> None:
    """Renewal failed after the row was expired: stop renewing it and end the dependent's access."""
    await assignments_service.conditional_set(
        row.id,
        {"status": AssignmentStatus.EXPIRED.value, "end_date": previous_end},
        {"auto_renewal_enabled": False, "updated_at": utcnow()},
    )
    await _revoke_linked(row)


async def renew_assignment(row: CreditAssignment, now: datetime) -> str:
    """Renew or expire one assignment. Returns renewed | failed | skipped."""
    balance = await ledger.get_balance(row.advisor_id)
    if balance < 1:
        expired = await _expire(row, now, disable_auto_renewal=True)
        if expired is None:
            return "skipped"
        await _revoke_linked(row)
        log.info("renewal_no_credits", assignment_id=str(row.id), advisor_id=row.advisor_id)
        await notify(
            row.advisor_id,
            "assignment_expired",
            "assignment",
            str(row.id),
            {"dependent_id": row.dependent_id, "reason": "insufficient_credits"},
        )
        return "failed"

    previous_end = row.end_date
    expired = await _expire(row, now, disable_auto_renewal=False)
    if expired is None:
        return "skipped"
    try:
        result = await assignments_service.assign_credit(
            row.advisor_id,
            row.dependent_id,
            enable_auto_renewal=row.auto_renewal_enabled,
            start=previous_end,
        )
    except AppError:
        await _abandon_renewal(row, previous_end)
        raise
    if not result.success:
        log.info("renewal_refused", assignment_id=str(row.id), reason=result.reason)
        await _abandon_renewal(row, previous_end)
        await notify(
            row.advisor_id,
            "assignment_expired",
            "assignment",
            str(row.id),
            {"dependent_id": row.dependent_id, "reason": result.reason},
        )
        return "failed"
    log.info(
        "assignment_renewed",
        assignment_id=str(row.id),
        advisor_id=row.advisor_id,
        dependent_id=row.dependent_id,
        start_date=result.start_date.isoformat() if result.start_date else None,
    )
    await notify(
        row.advisor_id,
        "assignment_renewed",
        "assignment",
        str(row.id),
        {
            "dependent_id": row.dependent_id,
            "expired_at": now.isoformat(),
            "previous_end_date": previous_end.isoformat(),
            "credit_spent": result.credit_spent,
        },
    )
    return "renewed"


async def run_renewal_sweep(now: datetime | None = None, lookahead: timedelta | None = None) -> dict[str, int]:
    """
    Act on active auto-renewing rows ending within [now, now + lookahead].
    One row's failure never stops the others. Safe to re-run or overlap: every write is conditional.
    """
    now = now or utcnow()
    lookahead = lookahead if lookahead is not None else timedelta(days=get_settings().renewal_lookahead_days)
    due = await bounded(
        CreditAssignment.find(
            CreditAssignment.status == AssignmentStatus.ACTIVE,
            CreditAssignment.auto_renewal_enabled == True,  # noqa: E712
            CreditAssignment.end_date >= now,
            CreditAssignment.end_date <= now + lookahead,
        )
        .sort(+CreditAssignment.end_date)
        .to_list(),
        "renewal_candidates",
    )
    counts = {"renewed": 0, "failed": 0, "skipped": 0}
    for row in due:
        try:
            outcome = await renew_assignment(row, now)
        except AppError as e:
            log.error("renewal_failed", assignment_id=str(row.id), code=e.code, error=e.message)
            outcome = "failed"
        counts[outcome] += 1
    log.info("renewal_sweep_done", candidates=len(due), **counts)
    return counts


async def expire_lapsed_assignments(now: datetime | None = None) -> int:
    """Expire active rows already past end_date and deactivate their entitlements."""
    now = now or utcnow()
    lapsed = await bounded(
        CreditAssignment.find(
            CreditAssignment.status == AssignmentStatus.ACTIVE,
            CreditAssignment.end_date < now,
        ).to_list(),
        "lapsed_assignments",
    )
    count = 0
    for row in lapsed:
        try:
            if await _expire(row, now, disable_auto_renewal=True) is None:
                continue
            await _revoke_linked(row)
        except AppError as e:
            log.error("expire_lapsed_failed", assignment_id=str(row.id), code=e.code, error=e.message)
            continue
        count += 1
    if count:
        log.info("lapsed_assignments_expired", count=count)
    return count
