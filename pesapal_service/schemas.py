from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PaymentType = Literal["agent_subscription", "user_subscription", "credit_purchase"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentMetadata(CamelModel):
    """What was promised at checkout. Parsed only after the signature has been checked."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: PaymentType
    agent_id: Optional[str] = None
    user_id: Optional[str] = None
    plan_type: Optional[str] = None
    credits: int = 0
    amount: float
    currency: Optional[str] = "KES"
    email: Optional[str] = None
    order_id: Optional[str] = None

    @property
    def subject_id(self) -> Optional[str]:
        return self.agent_id or self.user_id

    @property
    def is_subscription(self) -> bool:
        return self.type in ("agent_subscription", "user_subscription")


class GatewayStatus(BaseModel):
    status_code: int
    status_label: str
    state: Literal["completed", "pending", "failed"]
    amount: Optional[float] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    confirmation_code: Optional[str] = None
    merchant_reference: Optional[str] = None
    payment_account: Optional[str] = None
    payment_status_description: Optional[str] = None
    description: Optional[str] = None
    message: Optional[str] = None
    raw: dict = Field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.state == "completed"


class PaymentFacts(CamelModel):
    """Payment details handed to fulfillment and echoed to the caller."""
    order_id: str
    tracking_id: Optional[str] = None
    amount: Optional[float] = None
    payment_method: Optional[str] = None
    confirmation_code: Optional[str] = None
    status: str = "COMPLETED"


class SubscriptionDetails(CamelModel):
    start_date: str
    end_date: str


class ProcessPaymentIn(CamelModel):
    order_tracking_id: Optional[str] = None
    order_ref: Optional[str] = None


class VerifyResult(CamelModel):
    ok: bool
    reason: Optional[Literal[
        "NotFound", "Pending", "Rejected", "AmountMismatch", "GatewayError", "FulfillmentError",
    ]] = None
    detail: Optional[str] = None
    retryable: bool = False
    gateway_status: Optional[str] = None  # pesapal label when the payment is not completed
    status_code: Optional[int] = None
    already_processed: bool = False
    verified: bool = False
    payment_confirmed: bool = False
    order_id: Optional[str] = None
    metadata: Optional[dict] = None
    payment: Optional[PaymentFacts] = None
    receipt: Optional[dict] = None
    subscription_details: Optional[SubscriptionDetails] = None


class ReconcileActionIn(CamelModel):
    order_id: str
    action: str


class ReconcileRow(CamelModel):
    order_id: str
    tracking_id: Optional[str] = None
    metadata: Optional[dict] = None
    status: str
    fulfillment_status: str
    fulfillment_error: Optional[str] = None
    pesapal_status: Optional[dict] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    fulfilled_at: Optional[str] = None
