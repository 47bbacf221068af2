from fastapi import APIRouter, Depends, status
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel

from advisor_credits.core.exceptions import NotFoundError
from advisor_credits.deps import get_current_advisor
from advisor_credits.models.credit_assignment import CreditAssignment
from advisor_credits.services import assignments as assignments_service
from advisor_credits.services import ledger

router = APIRouter()

REFUSAL_STATUS = {
    "insufficient_credits": status.HTTP_402_PAYMENT_REQUIRED,
    "already_entitled": status.HTTP_409_CONFLICT,
}


class AssignCreditRequest(BaseModel):
    dependent_id: str
    enable_auto_renewal: bool = True


class AutoRenewalRequest(BaseModel):
    enabled: bool


def _serialize(a: CreditAssignment) -> dict:
    return {
        "id": str(a.id),
        "dependent_id": a.dependent_id,
        "start_date": a.start_date.isoformat(),
        "end_date": a.end_date.isoformat(),
        "status": a.status.value,
        "auto_renewal_enabled": a.auto_renewal_enabled,
        "entitlement_id": a.entitlement_id,
        "renewal_count": a.renewal_count,
        "assigned_at": a.assigned_at.isoformat(),
        "expired_at": a.expired_at.isoformat() if a.expired_at else None,
    }


@router.post("")
async def assign_credit(body: AssignCreditRequest, advisor_id: str = Depends(get_current_advisor)):
    """Spend one credit on a dependent. Refusals come back as 402/409 with balance context."""
    result = await assignments_service.assign_credit(advisor_id, body.dependent_id, body.enable_auto_renewal)
    if not result.success:
        return ORJSONResponse(
            status_code=REFUSAL_STATUS.get(result.reason, status.HTTP_400_BAD_REQUEST),
            content=result.model_dump(mode="json"),
        )
    payload = result.model_dump(mode="json")
    payload["balance"] = await ledger.balance_summary(advisor_id)
    return payload


@router.get("")
async def list_assignments(advisor_id: str = Depends(get_current_advisor)):
    """All assignments for the advisor (active and historical), newest first."""
    rows = await assignments_service.get_advisor_assignments(advisor_id)
    return {"assignments": [_serialize(a) for a in rows]}


@router.get("/{dependent_id}")
async def get_active_assignment(dependent_id: str, advisor_id: str = Depends(get_current_advisor)):
    row = await assignments_service.get_active_assignment(advisor_id, dependent_id)
    if not row:
        raise NotFoundError("No active assignment")
    return _serialize(row)


@router.put("/{dependent_id}/auto-renewal")
async def set_auto_renewal(
    dependent_id: str,
    body: AutoRenewalRequest,
    advisor_id: str = Depends(get_current_advisor),
):
    if not await assignments_service.set_auto_renewal(advisor_id, dependent_id, body.enabled):
        raise NotFoundError("No active assignment")
    return {"dependent_id": dependent_id, "auto_renewal_enabled": body.enabled}


@router.post("/{dependent_id}/cancel")
async def cancel_auto_renewal(dependent_id: str, advisor_id: str = Depends(get_current_advisor)):
    """Turn off auto-renewal; access continues until the paid period ends."""
    await assignments_service.cancel_auto_renewal(advisor_id, dependent_id)
    return {"status": "ok"}
