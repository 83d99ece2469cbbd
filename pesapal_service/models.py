from enum import Enum
from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import Column, JSON, String
from sqlmodel import SQLModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "unfulfilled"
    FULFILLED = "fulfilled"


# (status, fulfillment_status) pairs a row may legitimately be in
VALID_STATES = {
    (PaymentStatus.PENDING, FulfillmentStatus.UNFULFILLED),
    (PaymentStatus.COMPLETED, FulfillmentStatus.UNFULFILLED),
    (PaymentStatus.COMPLETED, FulfillmentStatus.FULFILLED),
}


class PendingPayment(SQLModel, table=True):
    __tablename__ = "pending_payments"

    order_id: str = Field(primary_key=True, max_length=64)  # merchant reference
    order_tracking_id: Optional[str] = Field(default=None, index=True, max_length=64)  # issued by pesapal
    payment_metadata: dict = Field(sa_column=Column("metadata", JSON, nullable=False))
    signature: str
    status: str = Field(
        default=PaymentStatus.PENDING.value,
        sa_column=Column(String(20), nullable=False, index=True, default=PaymentStatus.PENDING.value),
    )
    fulfillment_status: str = Field(
        default=FulfillmentStatus.UNFULFILLED.value,
        sa_column=Column(String(20), nullable=False, index=True, default=FulfillmentStatus.UNFULFILLED.value),
    )
    pesapal_status: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    fulfillment_receipt: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    fulfillment_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    fulfilled_at: Optional[datetime] = None

    @property
    def is_fulfilled(self) -> bool:
        return self.fulfillment_status == FulfillmentStatus.FULFILLED

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    def has_valid_state(self) -> bool:
        try:
            pair = (PaymentStatus(self.status), FulfillmentStatus(self.fulfillment_status))
        except ValueError:
            return False
        return pair in VALID_STATES


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    plan_type: str = "monthly"
    status: str = Field(default="active", index=True)
    start_date: datetime
    end_date: datetime
    amount: Optional[float] = None
    payment_method: Optional[str] = None
    payment_reference: str = Field(index=True)  # order_id
    tracking_id: Optional[str] = None
    confirmation_code: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class AgentWallet(SQLModel, table=True):
    __tablename__ = "agent_wallets"

    subject_id: str = Field(primary_key=True)
    balance: int = 0
    updated_at: datetime = Field(default_factory=utc_now)


class CreditTransaction(SQLModel, table=True):
    __tablename__ = "credit_transactions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    amount: int
    type: str = "credit"
    reason: str
    balance_after: int
    payment_reference: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utc_now)
