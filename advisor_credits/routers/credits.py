from fastapi import APIRouter, Depends, Query

from advisor_credits.core.pagination import paginate
from advisor_credits.deps import get_current_advisor
from advisor_credits.services import ledger, pricing, purchases

router = APIRouter()


@router.get("/balance")
async def credits_balance(advisor_id: str = Depends(get_current_advisor)):
    """Return available / used / purchased credits."""
    return await ledger.balance_summary(advisor_id)


@router.get("/history")
async def credits_history(
    advisor_id: str = Depends(get_current_advisor),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Purchase history (one-time and subscription cycles), newest first."""
    limit, offset = paginate(limit, offset)
    entries = await purchases.get_purchase_history(advisor_id, limit=limit, offset=offset)
    out = [
        {
            "id": str(e.id),
            "credits_purchased": e.credits_purchased,
            "amount_paid": e.amount_paid,
            "currency": e.currency,
            "gateway": e.gateway,
            "transaction_id": e.transaction_id,
            "status": e.status.value,
            "metadata": e.metadata,
            "purchased_at": e.purchased_at.isoformat(),
        }
        for e in entries
    ]
    return {"entries": out, "limit": limit, "offset": offset}


@router.get("/pricing")
async def credits_pricing(
    country: str = Query("Global"),
    advisor_id: str = Depends(get_current_advisor),
):
    """Per-credit price for the advisor's region."""
    return await pricing.get_credit_price(country)
