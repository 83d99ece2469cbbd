import logging
from typing import List, Optional

from sqlalchemy import func, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..errors import NotFound
from ..models import FulfillmentStatus, PaymentStatus, PendingPayment, utc_now

logger = logging.getLogger(__name__)


class PaymentStore:
    """
    Access to ``pending_payments``. Both state transitions are single
    conditional UPDATEs so concurrent verifications of one order cannot both
    win; callers learn whether they won from the returned bool.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def find_by_tracking_id(self, tracking_id: str) -> Optional[PendingPayment]:
        async with self.session_factory() as session:
            q = select(PendingPayment).where(PendingPayment.order_tracking_id == tracking_id)
            res = await session.exec(q)
            return res.first()

    async def find_by_order_id(self, order_id: str) -> Optional[PendingPayment]:
        async with self.session_factory() as session:
            return await session.get(PendingPayment, order_id)

    async def resolve(self, tracking_id: Optional[str] = None, order_ref: Optional[str] = None) -> PendingPayment:
        # the gateway callback knows the tracking id, the client only its own order id
        found = None
        if tracking_id:
            found = await self.find_by_tracking_id(tracking_id)
        if found is None and order_ref:
            found = await self.find_by_order_id(order_ref)
        if found is None:
            raise NotFound("Payment record not found", tracking_id=tracking_id, order_ref=order_ref)
        return found

    async def mark_completed(self, order_id: str, snapshot: dict, tracking_id: Optional[str] = None) -> bool:
        """pending -> completed. Returns False when the row was already completed."""
        stmt = (
            update(PendingPayment)
            .where(PendingPayment.order_id == order_id)
            .where(PendingPayment.status == PaymentStatus.PENDING.value)
            .values(
                status=PaymentStatus.COMPLETED.value,
                completed_at=utc_now(),
                pesapal_status=snapshot,
                order_tracking_id=func.coalesce(PendingPayment.order_tracking_id, tracking_id),
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            res = await session.execute(stmt)
            await session.commit()
            return res.rowcount == 1

    async def mark_fulfilled(self, session: AsyncSession, order_id: str, receipt: dict) -> bool:
        """
        unfulfilled -> fulfilled, inside the caller's transaction. Only a
        completed row can be fulfilled. Returns False when another request
        already fulfilled the order; the caller must then roll back its grant.
        """
        stmt = (
            update(PendingPayment)
            .where(PendingPayment.order_id == order_id)
            .where(PendingPayment.status == PaymentStatus.COMPLETED.value)
            .where(PendingPayment.fulfillment_status != FulfillmentStatus.FULFILLED.value)
            .values(
                fulfillment_status=FulfillmentStatus.FULFILLED.value,
                fulfilled_at=utc_now(),
                fulfillment_receipt=receipt,
                fulfillment_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(stmt)
        return res.rowcount == 1

    async def record_fulfillment_failure(self, order_id: str, detail: str) -> None:
        stmt = (
            update(PendingPayment)
            .where(PendingPayment.order_id == order_id)
            .where(PendingPayment.fulfillment_status != FulfillmentStatus.FULFILLED.value)
            .values(fulfillment_error=detail[:500])
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def _list(self, *conditions, order_by, limit: int) -> List[PendingPayment]:
        async with self.session_factory() as session:
            q = select(PendingPayment).where(*conditions).order_by(order_by).limit(limit)
            res = await session.exec(q)
            return list(res.all())

    async def list_unfulfilled(self, limit: int = 100) -> List[PendingPayment]:
        """Completed payments still waiting for their grant."""
        return await self._list(
            PendingPayment.status == PaymentStatus.COMPLETED.value,
            PendingPayment.fulfillment_status == FulfillmentStatus.UNFULFILLED.value,
            order_by=PendingPayment.completed_at.desc(),
            limit=limit,
        )

    async def list_recently_fulfilled(self, limit: int = 50) -> List[PendingPayment]:
        return await self._list(
            PendingPayment.fulfillment_status == FulfillmentStatus.FULFILLED.value,
            order_by=PendingPayment.fulfilled_at.desc(),
            limit=limit,
        )

    async def list_pending(self, limit: int = 50) -> List[PendingPayment]:
        return await self._list(
            PendingPayment.status == PaymentStatus.PENDING.value,
            order_by=PendingPayment.created_at.desc(),
            limit=limit,
        )
