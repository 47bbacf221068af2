"""Dependent entitlement records (premium tier) touched by credit assignments."""

from datetime import datetime

from advisor_credits.core.dates import utcnow
from advisor_credits.core.logging import get_logger
from advisor_credits.db.guard import bounded, object_id
from advisor_credits.models.entitlement import Entitlement

log = get_logger(__name__)


async def has_valid_entitlement(dependent_id: str, at_time: datetime) -> bool:
    """True if the dependent holds an active entitlement still running at at_time, whoever paid."""
    row = await bounded(
        Entitlement.find_one(
            Entitlement.dependent_id == dependent_id,
            Entitlement.status == "active",
            Entitlement.period_end > at_time,
        ),
        "has_valid_entitlement",
    )
    return row is not None


async def grant(
    dependent_id: str,
    tier: str,
    period_start: datetime,
    period_end: datetime,
    paid_by_advisor_id: str | None,
) -> str:
    """Create or update the dependent's active entitlement; returns its id."""
    now = utcnow()
    existing = await bounded(
        Entitlement.find_one(Entitlement.dependent_id == dependent_id, Entitlement.status == "active"),
        "find_entitlement",
    )
    if existing:
        existing.tier = tier
        existing.period_start = period_start
        existing.period_end = period_end
        existing.paid_by_advisor_id = paid_by_advisor_id
        existing.updated_at = now
        await bounded(existing.save(), "update_entitlement")
        log.info("entitlement_updated", dependent_id=dependent_id, entitlement_id=str(existing.id))
        return str(existing.id)

    ent = Entitlement(
        dependent_id=dependent_id,
        tier=tier,
        period_start=period_start,
        period_end=period_end,
        paid_by_advisor_id=paid_by_advisor_id,
    )
    await bounded(ent.insert(), "create_entitlement")
    log.info("entitlement_created", dependent_id=dependent_id, entitlement_id=str(ent.id))
    return str(ent.id)


async def revoke(entitlement_id: str, covering_until: datetime | None = None) -> None:
    """
    Force the entitlement inactive. Missing rows are ignored.
    With covering_until, an entitlement already extended past that date (paid for by
    someone else since) is left alone.
    """
    ent = await bounded(Entitlement.get(object_id(entitlement_id, "Entitlement")), "get_entitlement")
    if not ent or ent.status == "inactive":
        return
    if covering_until is not None and ent.period_end > covering_until:
        log.info("entitlement_revoke_skipped", entitlement_id=entitlement_id, period_end=ent.period_end.isoformat())
        return
    ent.status = "inactive"
    ent.updated_at = utcnow()
    await bounded(ent.save(), "revoke_entitlement")
    log.info("entitlement_revoked", dependent_id=ent.dependent_id, entitlement_id=entitlement_id)
