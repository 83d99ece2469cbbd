import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ..errors import GatewayError
from ..schemas import ProcessPaymentIn, VerifyResult
from ..services.pesapal import PesapalClient
from ..services.token_cache import GatewayAuthCache
from ..services.verification import VerificationOrchestrator
from ..utils import get_auth_cache, get_orchestrator, get_pesapal_client, require_service_api_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pesapal", tags=["pesapal"])

HTTP_STATUS = {
    "NotFound": 404,
    "Rejected": 403,
    "AmountMismatch": 400,
    "Pending": 200,  # awaiting confirmation is not a failure
    "GatewayError": 502,
    "FulfillmentError": 200,  # payment is confirmed, grant retried later
}

# IPN acknowledgement: 200 = received, 500 = pesapal should call again
IPN_ACK = {
    "GatewayError": 500,
    "FulfillmentError": 500,
}


def result_to_response(result: VerifyResult) -> JSONResponse:
    body = result.model_dump(by_alias=True, exclude_none=True, mode="json")
    body["success"] = result.ok
    if result.ok:
        return JSONResponse(body, status_code=200)
    body["error"] = result.detail
    if result.reason == "Pending":
        body["status"] = "pending"
    return JSONResponse(body, status_code=HTTP_STATUS.get(result.reason, 400))


@router.post("/process-payment")
async def process_payment(payload: ProcessPaymentIn,
                          orchestrator: VerificationOrchestrator = Depends(get_orchestrator)):
    """Client-side poll after the redirect back from Pesapal: verify and fulfil."""
    if not payload.order_tracking_id and not payload.order_ref:
        raise HTTPException(status_code=400, detail="Missing order reference")
    result = await orchestrator.verify_and_fulfill(payload.order_tracking_id, payload.order_ref)
    return result_to_response(result)


async def _ipn_params(request: Request) -> dict:
    if request.method == "GET":
        return dict(request.query_params)
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid IPN payload")
    return body if isinstance(body, dict) else {}


@router.api_route("/ipn", methods=["GET", "POST"])
async def ipn(request: Request, orchestrator: VerificationOrchestrator = Depends(get_orchestrator)):
    """
    Pesapal instant payment notification. Pesapal sends OrderTrackingId,
    OrderMerchantReference and OrderNotificationType and expects them echoed
    back with a status of 200 once the notification has been handled.
    """
    params = await _ipn_params(request)
    tracking_id: Optional[str] = params.get("OrderTrackingId")
    merchant_ref: Optional[str] = params.get("OrderMerchantReference")
    notification_type = params.get("OrderNotificationType")
    logger.info("IPN received: %s %s %s", tracking_id, merchant_ref, notification_type)

    if not tracking_id:
        raise HTTPException(status_code=400, detail="Missing order tracking ID")

    result = await orchestrator.verify_and_fulfill(tracking_id, merchant_ref)
    if not result.ok:
        logger.info("IPN for %s not fulfilled: %s", tracking_id, result.reason)

    return {
        "orderNotificationType": notification_type,
        "orderTrackingId": tracking_id,
        "orderMerchantReference": result.order_id or merchant_ref,
        "status": IPN_ACK.get(result.reason, 200),
    }


@router.get("/verify", dependencies=[Depends(require_service_api_key)])
async def verify(order_tracking_id: str = Query(..., alias="orderTrackingId"),
                 auth: GatewayAuthCache = Depends(get_auth_cache),
                 client: PesapalClient = Depends(get_pesapal_client)):
    """Live gateway status for a tracking id, without touching local records."""
    try:
        token = await auth.get_valid_token()
        status = await client.get_status(order_tracking_id, token)
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "success": status.is_completed,
        "data": {
            "statusCode": status.status_code,
            "statusLabel": status.status_label,
            "state": status.state,
            "paymentMethod": status.payment_method,
            "amount": status.amount,
            "currency": status.currency,
            "description": status.description,
            "merchantReference": status.merchant_reference,
            "orderTrackingId": order_tracking_id,
            "confirmationCode": status.confirmation_code,
            "paymentAccount": status.payment_account,
            "paymentStatusDescription": status.payment_status_description,
            "message": status.message,
        },
    }
