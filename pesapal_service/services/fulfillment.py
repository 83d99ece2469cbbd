import calendar
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..errors import FulfillmentError
from ..models import AgentWallet, CreditTransaction, Subscription, utc_now
from ..schemas import PaymentFacts, PaymentMetadata

logger = logging.getLogger(__name__)

PLAN_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}

SubscriptionGrant = Callable[[AsyncSession, str, dict], Awaitable[dict]]
CreditGrant = Callable[[AsyncSession, str, int, dict], Awaitable[dict]]


def add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calculate_subscription_end_date(start: datetime, plan_type: Optional[str] = "monthly") -> datetime:
    return add_months(start, PLAN_MONTHS.get(plan_type or "monthly", 1))


async def grant_subscription(session: AsyncSession, user_id: str, data: dict) -> dict:
    sub = Subscription(
        user_id=user_id,
        plan_type=data.get("planType") or "monthly",
        start_date=data["startDate"],
        end_date=data["endDate"],
        amount=data.get("amount"),
        payment_method=data.get("paymentMethod"),
        payment_reference=data["paymentReference"],
        tracking_id=data.get("trackingId"),
        confirmation_code=data.get("confirmationCode"),
    )
    session.add(sub)
    await session.flush()
    return {"success": True, "subscriptionId": sub.id}


async def grant_credits(session: AsyncSession, agent_id: str, credits: int, data: dict) -> dict:
    now = utc_now()
    res = await session.execute(
        update(AgentWallet)
        .where(AgentWallet.subject_id == agent_id)
        .values(balance=AgentWallet.balance + credits, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        session.add(AgentWallet(subject_id=agent_id, balance=credits, updated_at=now))
        await session.flush()

    balance = (await session.exec(
        select(AgentWallet.balance).where(AgentWallet.subject_id == agent_id)
    )).one()

    reason = f"Credit purchase via {data.get('paymentMethod') or 'Payment'} - {data.get('confirmationCode') or ''}"
    session.add(CreditTransaction(
        user_id=agent_id,
        amount=credits,
        reason=reason.strip(),
        balance_after=balance,
        payment_reference=data.get("paymentReference"),
    ))
    await session.flush()
    return {"success": True, "newBalance": balance}


class FulfillmentDispatcher:
    """
    Performs the grant a confirmed payment paid for. It keeps no record of
    what it has granted: the caller runs it inside the transaction that also
    flips ``fulfillment_status``, so a lost race rolls the grant back.
    """

    def __init__(self,
                 subscription_grant: SubscriptionGrant = grant_subscription,
                 credit_grant: CreditGrant = grant_credits,
                 clock: Callable[[], datetime] = utc_now,
                 ):
        self.subscription_grant = subscription_grant
        self.credit_grant = credit_grant
        self.clock = clock

    async def fulfill(self, session: AsyncSession, metadata: PaymentMetadata, facts: PaymentFacts) -> dict:
        subject_id = metadata.subject_id
        if not subject_id:
            raise FulfillmentError("Payment metadata names no subject", order_id=facts.order_id)

        data = {
            "paymentReference": facts.order_id,
            "trackingId": facts.tracking_id,
            "amount": facts.amount if facts.amount is not None else metadata.amount,
            "paymentMethod": facts.payment_method,
            "confirmationCode": facts.confirmation_code,
        }
        receipt = {"type": metadata.type, "subjectId": subject_id, "orderId": facts.order_id}

        try:
            if metadata.is_subscription:
                start = self.clock()
                end = calculate_subscription_end_date(start, metadata.plan_type)
                data.update(startDate=start, endDate=end, planType=metadata.plan_type or "monthly")
                result = await self.subscription_grant(session, subject_id, data)
                receipt.update(
                    planType=data["planType"],
                    startDate=start.isoformat(),
                    endDate=end.isoformat(),
                )
            elif metadata.type == "credit_purchase":
                if metadata.credits <= 0:
                    raise FulfillmentError("Credit purchase without credits", order_id=facts.order_id)
                result = await self.credit_grant(session, subject_id, metadata.credits, data)
                receipt.update(credits=metadata.credits)
            else:
                raise FulfillmentError(f"Unknown payment type {metadata.type!r}", order_id=facts.order_id)
        except FulfillmentError:
            raise
        except SQLAlchemyError as e:
            logger.error("Grant failed for %s: %s", facts.order_id, e)
            raise FulfillmentError(f"Grant failed: {e.__class__.__name__}", order_id=facts.order_id) from e
        except Exception as e:
            # grant collaborators may call out to other services
            logger.exception("Grant failed for %s", facts.order_id)
            raise FulfillmentError(f"Grant failed: {e}", order_id=facts.order_id) from e

        if not isinstance(result, dict) or not result.get("success"):
            error = result.get("error") if isinstance(result, dict) else None
            raise FulfillmentError(f"Grant failed: {error or 'grant returned no result'}", order_id=facts.order_id)

        receipt.update({k: v for k, v in result.items() if k != "success"})
        receipt.update(success=True, grantedAt=self.clock().isoformat())
        return receipt
