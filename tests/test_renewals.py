"""Renewal sweep and lapsed-assignment expiry with an injected clock."""

from datetime import datetime, timedelta

import pytest
from beanie import PydanticObjectId

from advisor_credits.core.exceptions import PersistenceError
from advisor_credits.models.audit_log import AuditLog
from advisor_credits.models.credit_assignment import AssignmentStatus, CreditAssignment
from advisor_credits.models.entitlement import Entitlement
from advisor_credits.services import assignments, entitlements, ledger, renewals

pytestmark = pytest.mark.asyncio

FEB_1 = datetime(2024, 2, 1)
MAR_1 = datetime(2024, 3, 1)
SWEEP_AT = datetime(2024, 2, 29, 12, 0)


async def _assign_feb(advisor_id="adv-1", dependent_id="dep-1", auto_renewal=True):
    result = await assignments.assign_credit(advisor_id, dependent_id, enable_auto_renewal=auto_renewal, start=FEB_1)
    assert result.success
    return await CreditAssignment.get(PydanticObjectId(result.assignment_id))


async def test_sweep_renews_from_previous_end_date(db):
    await ledger.add_credits("adv-1", 2)
    await _assign_feb()

    counts = await renewals.run_renewal_sweep(now=SWEEP_AT)

    assert counts == {"renewed": 1, "failed": 0, "skipped": 0}
    row = await assignments._find_active_row("adv-1", "dep-1")
    assert row.start_date == MAR_1
    assert row.end_date == datetime(2024, 4, 1)
    assert row.renewal_count == 1
    assert row.auto_renewal_enabled is True
    account = await ledger.get_account("adv-1")
    assert account.credits_available == 0
    assert account.credits_used == 2
    ent = await Entitlement.find_one(Entitlement.dependent_id == "dep-1", Entitlement.status == "active")
    assert ent.period_end == datetime(2024, 4, 1)
    renewed = await AuditLog.find_one(AuditLog.event_type == "assignment_renewed")
    assert renewed.metadata["previous_end_date"] == MAR_1.isoformat()


async def test_sweep_is_safe_to_rerun(db):
    await ledger.add_credits("adv-1", 3)
    await _assign_feb()

    await renewals.run_renewal_sweep(now=SWEEP_AT)
    counts = await renewals.run_renewal_sweep(now=SWEEP_AT)

    assert counts == {"renewed": 0, "failed": 0, "skipped": 0}
    assert await ledger.get_balance("adv-1") == 1


async def test_sweep_without_credits_expires_and_revokes(db):
    await ledger.add_credits("adv-1", 1)
    row = await _assign_feb()

    counts = await renewals.run_renewal_sweep(now=SWEEP_AT)

    assert counts == {"renewed": 0, "failed": 1, "skipped": 0}
    row = await CreditAssignment.get(row.id)
    assert row.status is AssignmentStatus.EXPIRED
    assert row.auto_renewal_enabled is False
    assert row.expired_at == SWEEP_AT
    ent = await Entitlement.get(PydanticObjectId(row.entitlement_id))
    assert ent.status == "inactive"
    account = await ledger.get_account("adv-1")
    assert account.credits_used == 1
    assert account.credits_available == 0


async def test_sweep_ignores_rows_without_auto_renewal_or_outside_window(db):
    await ledger.add_credits("adv-1", 4)
    await _assign_feb(dependent_id="dep-off", auto_renewal=False)
    await assignments.assign_credit("adv-1", "dep-later", start=datetime(2024, 2, 20))

    counts = await renewals.run_renewal_sweep(now=SWEEP_AT)

    assert counts == {"renewed": 0, "failed": 0, "skipped": 0}
    assert await ledger.get_balance("adv-1") == 2


async def test_sweep_lookahead_widens_the_window(db):
    await ledger.add_credits("adv-1", 2)
    await _assign_feb()

    counts = await renewals.run_renewal_sweep(now=datetime(2024, 2, 25), lookahead=timedelta(days=7))

    assert counts["renewed"] == 1


async def test_expire_lapsed_assignments(db):
    await ledger.add_credits("adv-1", 2)
    row = await _assign_feb(auto_renewal=False)

    assert await renewals.expire_lapsed_assignments(now=datetime(2024, 3, 2)) == 1
    assert await renewals.expire_lapsed_assignments(now=datetime(2024, 3, 2)) == 0

    row = await CreditAssignment.get(row.id)
    assert row.status is AssignmentStatus.EXPIRED
    ent = await Entitlement.get(PydanticObjectId(row.entitlement_id))
    assert ent.status == "inactive"
    assert await ledger.get_balance("adv-1") == 1


async def test_one_bad_row_does_not_stop_the_sweep(db, monkeypatch):
    await ledger.add_credits("adv-1", 2)
    await ledger.add_credits("adv-2", 2)
    await _assign_feb("adv-1", "dep-1")
    await _assign_feb("adv-2", "dep-2")

    real_get_balance = ledger.get_balance

    async def flaky_balance(advisor_id):
        if advisor_id == "adv-1":
            raise PersistenceError("get_account timed out")
        return await real_get_balance(advisor_id)

    monkeypatch.setattr(ledger, "get_balance", flaky_balance)
    counts = await renewals.run_renewal_sweep(now=SWEEP_AT)

    assert counts == {"renewed": 1, "failed": 1, "skipped": 0}
    row = await assignments._find_active_row("adv-1", "dep-1")
    assert row.end_date == MAR_1


async def test_renewal_on_the_expiry_instant_with_no_lookahead(db):
    await ledger.add_credits("adv-1", 2)
    await _assign_feb()

    counts = await renewals.run_renewal_sweep(now=MAR_1, lookahead=timedelta(0))

    assert counts == {"renewed": 1, "failed": 0, "skipped": 0}
    row = await assignments._find_active_row("adv-1", "dep-1")
    assert row.start_date == MAR_1
    assert row.end_date == datetime(2024, 4, 1)
    assert await ledger.get_balance("adv-1") == 0


async def test_failed_grant_during_renewal_stops_renewing_and_revokes(db, monkeypatch):
    await ledger.add_credits("adv-1", 2)
    row = await _assign_feb()

    async def grant_unavailable(*args, **kwargs):
        raise PersistenceError("create_entitlement timed out", details={"outcome_unknown": True})

    monkeypatch.setattr(entitlements, "grant", grant_unavailable)
    counts = await renewals.run_renewal_sweep(now=SWEEP_AT)

    assert counts == {"renewed": 0, "failed": 1, "skipped": 0}
    row = await CreditAssignment.get(row.id)
    assert row.status is AssignmentStatus.EXPIRED
    assert row.end_date == MAR_1
    assert row.auto_renewal_enabled is False
    ent = await Entitlement.get(PydanticObjectId(row.entitlement_id))
    assert ent.status == "inactive"
    account = await ledger.get_account("adv-1")
    assert account.credits_available == 1
    assert account.credits_used == 1

    # Nothing left for a later sweep to pick up.
    monkeypatch.undo()
    counts = await renewals.run_renewal_sweep(now=SWEEP_AT)
    assert counts == {"renewed": 0, "failed": 0, "skipped": 0}


async def test_refused_renewal_stops_renewing_and_revokes(db, monkeypatch):
    await ledger.add_credits("adv-1", 1)
    row = await _assign_feb()

    async def stale_balance(advisor_id):
        return 1

    monkeypatch.setattr(ledger, "get_balance", stale_balance)
    counts = await renewals.run_renewal_sweep(now=SWEEP_AT)

    assert counts == {"renewed": 0, "failed": 1, "skipped": 0}
    row = await CreditAssignment.get(row.id)
    assert row.status is AssignmentStatus.EXPIRED
    assert row.auto_renewal_enabled is False
    ent = await Entitlement.get(PydanticObjectId(row.entitlement_id))
    assert ent.status == "inactive"
    account = await ledger.get_account("adv-1")
    assert account.credits_available == 0
    assert account.credits_used == 1
    expired = await AuditLog.find_one(AuditLog.event_type == "assignment_expired")
    assert expired.metadata["reason"] == "insufficient_credits"


async def test_refused_renewal_leaves_an_entitlement_paid_past_the_window(db):
    await ledger.add_credits("adv-1", 2)
    row = await _assign_feb()
    # Someone else extended the dependent's entitlement into March.
    await entitlements.grant("dep-1", "premium", MAR_1, datetime(2024, 4, 1), "adv-other")

    counts = await renewals.run_renewal_sweep(now=SWEEP_AT)

    assert counts == {"renewed": 0, "failed": 1, "skipped": 0}
    row = await CreditAssignment.get(row.id)
    assert row.status is AssignmentStatus.EXPIRED
    assert row.auto_renewal_enabled is False
    ent = await Entitlement.get(PydanticObjectId(row.entitlement_id))
    assert ent.status == "active"
    assert ent.period_end == datetime(2024, 4, 1)
    assert await ledger.get_balance("adv-1") == 1
