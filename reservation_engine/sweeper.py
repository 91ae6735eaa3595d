"""
Expiry Sweeper

Periodic pass, independent of the request path:

- ACTIVE loans past their due date become OVERDUE (copy stays on loan).
- Orders still unpaid after the payment timeout become EXPIRED and give
  their stock back.
- Orders left in PAID by an interrupted fulfillment are finished.
- Ledger tokens left HELD by a crash (no owning record, or an owner that
  already closed) are settled once older than the payment timeout.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from reservation_engine.config import LOG_LEVEL, PAYMENT_TIMEOUT_MINUTES, SWEEP_INTERVAL_SECONDS
from reservation_engine.database import AsyncSessionLocal, init_db
from reservation_engine.gateway import HttpPaymentGateway
from reservation_engine.ledger import InventoryLedger, ReservationToken
from reservation_engine.messaging import EventPublisher, notify
from reservation_engine.models import (
    CANCELLABLE_ORDER_STATES,
    LedgerToken,
    LoanState,
    OrderState,
    Reservation,
    TokenState,
    Transaction,
    utcnow,
)
from reservation_engine.orders import OrderManager

logger = logging.getLogger(__name__)

RELEASED_ORDER_STATES = (OrderState.CANCELLED, OrderState.DECLINED, OrderState.EXPIRED)


@dataclass
class SweepReport:
    overdue_loans: List[str] = field(default_factory=list)
    expired_orders: List[str] = field(default_factory=list)
    fulfilled_orders: List[str] = field(default_factory=list)
    reclaimed_tokens: List[str] = field(default_factory=list)


class ExpirySweeper:
    def __init__(
        self,
        ledger: InventoryLedger,
        orders: OrderManager,
        session_factory: async_sessionmaker,
        publisher: Optional[EventPublisher] = None,
        payment_timeout: timedelta = timedelta(minutes=PAYMENT_TIMEOUT_MINUTES),
        interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable = utcnow,
    ):
        self.ledger = ledger
        self.orders = orders
        self.session_factory = session_factory
        self.publisher = publisher
        self.payment_timeout = payment_timeout
        self.interval = interval
        self.clock = clock

    async def run_once(self) -> SweepReport:
        now = self.clock()
        report = SweepReport(
            overdue_loans=await self.mark_overdue(now),
            expired_orders=await self.expire_orders(now),
            fulfilled_orders=await self.finish_paid_orders(now),
            reclaimed_tokens=await self.reclaim_orphaned_tokens(now),
        )
        logger.info(
            f"Sweep at {now}: {len(report.overdue_loans)} overdue, "
            f"{len(report.expired_orders)} expired, {len(report.fulfilled_orders)} finished, "
            f"{len(report.reclaimed_tokens)} reclaimed"
        )
        return report

    async def run_forever(self, stop: Optional[asyncio.Event] = None):
        stop = stop or asyncio.Event()
        logger.info(f"Expiry sweeper started, interval {self.interval}s")
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Sweep failed: {e}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Expiry sweeper stopped")

    async def mark_overdue(self, now: datetime) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Reservation).where(Reservation.state == LoanState.ACTIVE, Reservation.due_at < now)
            )
            candidates = list(result.scalars().all())

        flagged = []
        for loan in candidates:
            async with self.session_factory() as session:
                # Re-checks due_at so a loan renewed meanwhile is left alone
                result = await session.execute(
                    update(Reservation)
                    .where(
                        Reservation.id == loan.id,
                        Reservation.state == LoanState.ACTIVE,
                        Reservation.due_at < now,
                    )
                    .values(state=LoanState.OVERDUE)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                await session.commit()

            flagged.append(loan.id)
            logger.info(f"Loan {loan.id} overdue since {loan.due_at}")
            await notify(
                self.publisher,
                "loan.overdue",
                "LoanOverdue",
                reservation_id=loan.id,
                item_id=loan.item_id,
                principal_id=loan.principal_id,
                due_at=loan.due_at,
            )
        return flagged

    async def expire_orders(self, now: datetime) -> List[str]:
        cutoff = now - self.payment_timeout
        async with self.session_factory() as session:
            result = await session.execute(
                select(Transaction.id).where(
                    Transaction.state.in_(CANCELLABLE_ORDER_STATES),
                    Transaction.created_at < cutoff,
                )
            )
            candidates = list(result.scalars().all())

        expired = []
        for transaction_id in candidates:
            if await self.orders.expire(transaction_id):
                expired.append(transaction_id)
        return expired

    async def finish_paid_orders(self, now: datetime) -> List[str]:
        cutoff = now - self.payment_timeout
        async with self.session_factory() as session:
            result = await session.execute(
                select(Transaction.id).where(
                    Transaction.state == OrderState.PAID,
                    Transaction.updated_at < cutoff,
                )
            )
            candidates = list(result.scalars().all())

        finished = []
        for transaction_id in candidates:
            logger.warning(f"Order {transaction_id} stuck in PAID, resuming fulfillment")
            try:
                if await self.orders.fulfill(transaction_id):
                    finished.append(transaction_id)
            except Exception as e:
                logger.exception(f"Resuming fulfillment of order {transaction_id} failed: {e}")
        return finished

    async def reclaim_orphaned_tokens(self, now: datetime) -> List[str]:
        cutoff = now - self.payment_timeout
        async with self.session_factory() as session:
            result = await session.execute(
                select(LedgerToken).where(LedgerToken.state == TokenState.HELD, LedgerToken.created_at < cutoff)
            )
            tokens = list(result.scalars().all())

        reclaimed = []
        for row in tokens:
            token = ReservationToken(row.id, row.item_id, row.quantity)
            verdict = await self._owner_verdict(row.owner_ref)
            if verdict == "release":
                if await self.ledger.release(token):
                    reclaimed.append(row.id)
                    logger.warning(f"Reclaimed orphaned token {row.id} ({row.quantity} x {row.item_id})")
            elif verdict == "commit":
                await self.ledger.commit(token)
                logger.warning(f"Committed token {row.id} left held by fulfilled order {row.owner_ref}")
        return reclaimed

    async def _owner_verdict(self, owner_ref: Optional[str]) -> str:
        if owner_ref is None:
            return "release"
        async with self.session_factory() as session:
            loan = await session.get(Reservation, owner_ref)
            transaction = await session.get(Transaction, owner_ref) if loan is None else None
        if loan is not None:
            return "release" if loan.state is LoanState.RETURNED else "keep"
        if transaction is None:
            return "release"
        if transaction.state in RELEASED_ORDER_STATES:
            return "release"
        if transaction.state is OrderState.FULFILLED:
            return "commit"
        return "keep"


async def main():
    logging.basicConfig(level=LOG_LEVEL)
    await init_db()
    publisher = EventPublisher()
    await publisher.connect()
    ledger = InventoryLedger(AsyncSessionLocal)
    orders = OrderManager(ledger, AsyncSessionLocal, HttpPaymentGateway(), publisher)
    sweeper = ExpirySweeper(ledger, orders, AsyncSessionLocal, publisher)
    try:
        await sweeper.run_forever()
    finally:
        await publisher.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Expiry sweeper stopped.")
