from fastapi import APIRouter, Depends, HTTPException

from ..models import PendingPayment
from ..schemas import ReconcileActionIn, ReconcileRow
from ..services.store import PaymentStore
from ..services.verification import VerificationOrchestrator
from ..utils import get_orchestrator, get_store, require_admin_key
from .pesapal import result_to_response

router = APIRouter(prefix="/admin/payments", tags=["admin"], dependencies=[Depends(require_admin_key)])


def _iso(value):
    return value.isoformat() if value else None


def _row(p: PendingPayment) -> dict:
    return ReconcileRow(
        order_id=p.order_id,
        tracking_id=p.order_tracking_id,
        metadata=p.payment_metadata,
        status=p.status,
        fulfillment_status=p.fulfillment_status,
        fulfillment_error=p.fulfillment_error,
        pesapal_status=p.pesapal_status,
        created_at=_iso(p.created_at),
        completed_at=_iso(p.completed_at),
        fulfilled_at=_iso(p.fulfilled_at),
    ).model_dump(by_alias=True)


@router.get("/reconcile")
async def reconcile(store: PaymentStore = Depends(get_store)):
    """Payments confirmed by pesapal but not yet granted, plus recent activity."""
    unfulfilled = await store.list_unfulfilled()
    fulfilled = await store.list_recently_fulfilled()
    pending = await store.list_pending()
    return {
        "success": True,
        "data": {
            "pendingFulfillment": [_row(p) for p in unfulfilled],
            "recentlyFulfilled": [_row(p) for p in fulfilled],
            "awaitingPayment": [_row(p) for p in pending],
            "summary": {
                "pendingFulfillmentCount": len(unfulfilled),
                "recentlyFulfilledCount": len(fulfilled),
                "awaitingPaymentCount": len(pending),
            },
        },
    }


@router.post("/reconcile")
async def reconcile_action(payload: ReconcileActionIn,
                           orchestrator: VerificationOrchestrator = Depends(get_orchestrator)):
    if payload.action != "retry_fulfillment":
        raise HTTPException(status_code=400, detail="Unknown action")
    # full verification again; fulfillment_status is checked before any grant
    result = await orchestrator.verify_and_fulfill(order_ref=payload.order_id)
    return result_to_response(result)
