import logging
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    AmountMismatch,
    FulfillmentError,
    GatewayPending,
    PaymentVerificationError,
    SignatureInvalid,
)
from ..models import PendingPayment
from ..schemas import GatewayStatus, PaymentFacts, PaymentMetadata, SubscriptionDetails, VerifyResult
from .fulfillment import FulfillmentDispatcher
from .pesapal import PesapalClient, as_float
from .signing import verify_metadata_signature
from .store import PaymentStore
from .token_cache import GatewayAuthCache

logger = logging.getLogger(__name__)

# what callers see for each failure; security rejections say nothing more
PUBLIC_DETAIL = {
    "NotFound": "Payment record not found",
    "Rejected": "Payment verification failed",
    "AmountMismatch": "Payment verification failed",
    "Pending": "Awaiting payment confirmation",
    "GatewayError": "Payment gateway unavailable, try again",
    "FulfillmentError": "Payment confirmed, fulfillment will be retried",
}

METADATA_ECHO = ("type", "agentId", "userId", "planType", "credits", "amount", "email")


class _LostRace(Exception):
    pass


class VerificationOrchestrator:
    """
    verify-and-fulfill for one order, safe to call any number of times from
    the IPN callback, the client poll and the admin retry alike.

    NEW -> VERIFYING_SIGNATURE -> REJECTED | CHECKING_GATEWAY
        -> COMPLETED_NOT_FULFILLED | FULFILLED | FAILED
    """

    def __init__(self,
                 store: PaymentStore,
                 auth: GatewayAuthCache,
                 gateway: PesapalClient,
                 dispatcher: FulfillmentDispatcher,
                 signing_secret: str,
                 amount_tolerance: float = 0.01,
                 ):
        self.store = store
        self.auth = auth
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.signing_secret = signing_secret
        self.amount_tolerance = amount_tolerance

    async def verify_and_fulfill(self,
                                 order_tracking_id: Optional[str] = None,
                                 order_ref: Optional[str] = None,
                                 ) -> VerifyResult:
        if not order_tracking_id and not order_ref:
            raise ValueError("Missing order reference")
        try:
            return await self._run(order_tracking_id, order_ref)
        except PaymentVerificationError as e:
            return self._failure(e)

    async def _run(self, order_tracking_id: Optional[str], order_ref: Optional[str]) -> VerifyResult:
        record = await self.store.resolve(order_tracking_id, order_ref)
        order_id = record.order_id

        if not record.has_valid_state():
            logger.error("Payment %s in impossible state %s/%s",
                         order_id, record.status, record.fulfillment_status)
            raise SignatureInvalid("invalid state", order_id=order_id)

        if record.is_fulfilled:
            logger.info("Payment %s already fulfilled", order_id)
            return self._already_processed(record)

        if not verify_metadata_signature(record.payment_metadata, record.signature, self.signing_secret):
            logger.error("Signature verification failed for %s", order_id)
            raise SignatureInvalid("signature mismatch", order_id=order_id)

        try:
            metadata = PaymentMetadata.model_validate(record.payment_metadata)
        except ValidationError as e:
            logger.error("Signed metadata for %s is malformed: %s", order_id, e)
            raise SignatureInvalid("malformed metadata", order_id=order_id) from e

        if record.is_completed:
            facts = self._facts_from_snapshot(record, metadata)
        else:
            facts = await self._confirm_with_gateway(record, metadata, order_tracking_id)

        return await self._fulfill(record, metadata, facts)

    async def _confirm_with_gateway(self,
                                    record: PendingPayment,
                                    metadata: PaymentMetadata,
                                    order_tracking_id: Optional[str],
                                    ) -> PaymentFacts:
        order_id = record.order_id
        tracking_id = record.order_tracking_id or order_tracking_id
        if not tracking_id:
            raise GatewayPending("Payment not yet processed", order_id=order_id)

        token = await self.auth.get_valid_token()
        status = await self.gateway.get_status(tracking_id, token)
        logger.info("Pesapal status for %s: %s (%s)", order_id, status.status_label, status.status_code)

        if status.merchant_reference and status.merchant_reference != order_id:
            logger.error("Tracking id %s belongs to %s, not %s",
                         tracking_id, status.merchant_reference, order_id)
            raise SignatureInvalid("merchant reference mismatch", order_id=order_id)

        if not status.is_completed:
            raise GatewayPending(
                status.status_label,
                order_id=order_id,
                status_label=status.status_label,
                status_code=status.status_code,
            )

        self._check_amount(order_id, metadata, status)

        if await self.store.mark_completed(order_id, status.raw, tracking_id):
            logger.info("Payment %s marked completed", order_id)

        return PaymentFacts(
            order_id=order_id,
            tracking_id=tracking_id,
            amount=status.amount,
            payment_method=status.payment_method,
            confirmation_code=status.confirmation_code,
        )

    def _check_amount(self, order_id: str, metadata: PaymentMetadata, status: GatewayStatus) -> None:
        if status.amount is None or abs(status.amount - metadata.amount) > self.amount_tolerance:
            logger.error("Amount mismatch for %s: expected %s, received %s",
                         order_id, metadata.amount, status.amount)
            raise AmountMismatch(order_id=order_id, expected=metadata.amount, received=status.amount)

    def _facts_from_snapshot(self, record: PendingPayment, metadata: PaymentMetadata) -> PaymentFacts:
        snapshot = record.pesapal_status or {}
        amount = as_float(snapshot.get("amount"))
        return PaymentFacts(
            order_id=record.order_id,
            tracking_id=record.order_tracking_id,
            amount=amount if amount is not None else metadata.amount,
            payment_method=snapshot.get("payment_method"),
            confirmation_code=snapshot.get("confirmation_code"),
        )

    async def _fulfill(self, record: PendingPayment, metadata: PaymentMetadata, facts: PaymentFacts) -> VerifyResult:
        order_id = record.order_id
        try:
            async with self.store.session_factory() as session:
                async with session.begin():
                    receipt = await self.dispatcher.fulfill(session, metadata, facts)
                    if not await self.store.mark_fulfilled(session, order_id, receipt):
                        # rolls back this request's grant
                        raise _LostRace()
        except _LostRace:
            logger.info("Payment %s was fulfilled by a concurrent request", order_id)
            latest = await self.store.find_by_order_id(order_id)
            return self._already_processed(latest or record)
        except (FulfillmentError, SQLAlchemyError) as e:
            logger.error("Fulfillment failed for %s: %s", order_id, e)
            await self.store.record_fulfillment_failure(order_id, str(e))
            return VerifyResult(
                ok=False,
                reason="FulfillmentError",
                detail=PUBLIC_DETAIL["FulfillmentError"],
                retryable=True,
                verified=True,
                payment_confirmed=True,
                order_id=order_id,
                metadata=self._echo_metadata(record),
                payment=facts,
            )

        logger.info("Payment %s fulfilled: %s", order_id, receipt)
        return VerifyResult(
            ok=True,
            verified=True,
            payment_confirmed=True,
            order_id=order_id,
            metadata=self._echo_metadata(record),
            payment=facts,
            receipt=receipt,
            subscription_details=self._subscription_details(receipt),
        )

    def _already_processed(self, record: PendingPayment) -> VerifyResult:
        snapshot = record.pesapal_status or {}
        return VerifyResult(
            ok=True,
            already_processed=True,
            verified=True,
            payment_confirmed=True,
            order_id=record.order_id,
            metadata=self._echo_metadata(record),
            payment=PaymentFacts(
                order_id=record.order_id,
                tracking_id=record.order_tracking_id,
                amount=as_float(snapshot.get("amount")),
                payment_method=snapshot.get("payment_method"),
                confirmation_code=snapshot.get("confirmation_code"),
            ),
            receipt=record.fulfillment_receipt,
            subscription_details=self._subscription_details(record.fulfillment_receipt),
        )

    @staticmethod
    def _echo_metadata(record: PendingPayment) -> dict:
        stored = record.payment_metadata or {}
        echoed = {k: stored.get(k) for k in METADATA_ECHO if k in stored}
        echoed["orderId"] = stored.get("orderId") or record.order_id
        return echoed

    @staticmethod
    def _subscription_details(receipt: Optional[dict]) -> Optional[SubscriptionDetails]:
        if receipt and receipt.get("startDate") and receipt.get("endDate"):
            return SubscriptionDetails(start_date=receipt["startDate"], end_date=receipt["endDate"])
        return None

    @staticmethod
    def _failure(e: PaymentVerificationError) -> VerifyResult:
        detail = PUBLIC_DETAIL.get(e.reason, "Payment verification failed")
        label = e.context.get("status_label")
        if e.reason == "Pending":
            logger.info("Payment %s awaiting confirmation: %s", e.context.get("order_id"), e)
            if label:
                # FAILED or REVERSED tells the client to stop polling
                detail = f"{detail} ({label})"
        return VerifyResult(
            ok=False,
            reason=e.reason,
            detail=detail,
            retryable=e.retryable,
            gateway_status=label,
            status_code=e.context.get("status_code"),
            order_id=e.context.get("order_id"),
        )
