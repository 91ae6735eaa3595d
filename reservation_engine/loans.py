"""
Loan state machine.

    AVAILABLE -> ACTIVE -> RETURNED
                  |   \
                  |    -> OVERDUE -> RETURNED   (sweeper flags OVERDUE)
                  renew (ACTIVE only)

A COPY item has capacity 1 in the ledger, so the ledger reservation taken by
``borrow`` is what keeps a second loan of the same copy from opening.
"""

import logging
from datetime import timedelta
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from reservation_engine.auth import Operation, Principal, authorize
from reservation_engine.config import LOAN_PERIOD_DAYS, MAX_RENEWALS
from reservation_engine.exceptions import (
    AlreadyReturned,
    InvalidState,
    NotFound,
    OutOfStock,
    Unavailable,
    ValidationError,
)
from reservation_engine.ledger import InventoryLedger
from reservation_engine.messaging import EventPublisher, notify
from reservation_engine.models import OPEN_LOAN_STATES, ItemKind, LoanState, Reservation, utcnow

logger = logging.getLogger(__name__)


class LoanManager:
    def __init__(
        self,
        ledger: InventoryLedger,
        session_factory: async_sessionmaker,
        publisher: Optional[EventPublisher] = None,
        loan_period: timedelta = timedelta(days=LOAN_PERIOD_DAYS),
        max_renewals: int = MAX_RENEWALS,
        clock: Callable = utcnow,
    ):
        self.ledger = ledger
        self.session_factory = session_factory
        self.publisher = publisher
        self.loan_period = loan_period
        self.max_renewals = max_renewals
        self.clock = clock

    async def borrow(self, item_id: str, principal: Principal) -> Reservation:
        authorize(principal, Operation.BORROW)

        item = await self.ledger.get_item(item_id)
        if item.kind is not ItemKind.COPY:
            raise ValidationError(f"Item {item_id} is not a loanable copy")

        reservation_id = str(uuid4())
        try:
            token = await self.ledger.reserve(item_id, 1, owner_ref=reservation_id)
        except OutOfStock:
            raise Unavailable(item_id)

        now = self.clock()
        reservation = Reservation(
            id=reservation_id,
            item_id=item_id,
            principal_id=principal.principal_id,
            token_id=token.token_id,
            state=LoanState.ACTIVE,
            renewals=0,
            created_at=now,
            due_at=now + self.loan_period,
        )
        async with self.session_factory() as session:
            session.add(reservation)
            await session.commit()

        logger.info(f"Loan {reservation_id} opened: {item_id} to {principal.principal_id}, due {reservation.due_at}")
        return reservation

    async def return_loan(self, reservation_id: str, principal: Principal) -> Reservation:
        authorize(principal, Operation.RETURN)
        reservation = await self._load(reservation_id)
        authorize(principal, Operation.RETURN, owner_id=reservation.principal_id)

        if reservation.state is LoanState.RETURNED:
            raise AlreadyReturned(f"Loan {reservation_id} was already returned")

        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(Reservation)
                .where(Reservation.id == reservation_id, Reservation.state.in_(OPEN_LOAN_STATES))
                .values(state=LoanState.RETURNED, returned_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Lost the race against a concurrent return
                raise AlreadyReturned(f"Loan {reservation_id} was already returned")
            await session.commit()

        token = await self.ledger.load_token(reservation.token_id)
        await self.ledger.release(token)

        logger.info(f"Loan {reservation_id} returned ({reservation.item_id})")
        await notify(
            self.publisher,
            "loan.returned",
            "LoanReturned",
            reservation_id=reservation_id,
            item_id=reservation.item_id,
            principal_id=reservation.principal_id,
        )
        return await self._load(reservation_id)

    async def renew(self, reservation_id: str, principal: Principal) -> Reservation:
        authorize(principal, Operation.RENEW)
        reservation = await self._load(reservation_id)
        authorize(principal, Operation.RENEW, owner_id=reservation.principal_id)

        if reservation.state is not LoanState.ACTIVE:
            raise InvalidState(f"Loan {reservation_id} is {reservation.state.value} and cannot be renewed")
        if reservation.renewals >= self.max_renewals:
            raise InvalidState(f"Loan {reservation_id} has reached the renewal limit")

        async with self.session_factory() as session:
            result = await session.execute(
                update(Reservation)
                .where(
                    Reservation.id == reservation_id,
                    Reservation.state == LoanState.ACTIVE,
                    Reservation.renewals == reservation.renewals,
                )
                .values(
                    due_at=reservation.due_at + self.loan_period,
                    renewals=reservation.renewals + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidState(f"Loan {reservation_id} changed while renewing")
            await session.commit()

        logger.info(f"Loan {reservation_id} renewed")
        return await self._load(reservation_id)

    async def get_loan(self, reservation_id: str, principal: Principal) -> Reservation:
        authorize(principal, Operation.VIEW_LOAN)
        reservation = await self._load(reservation_id)
        authorize(principal, Operation.VIEW_LOAN, owner_id=reservation.principal_id)
        return reservation

    async def list_loans(self, principal: Principal, principal_id: Optional[str] = None) -> List[Reservation]:
        """Loans of ``principal_id`` (default: the caller). ADMIN may pass any id."""
        owner = principal_id or principal.principal_id
        authorize(principal, Operation.VIEW_LOAN, owner_id=owner)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Reservation)
                .where(Reservation.principal_id == owner)
                .order_by(Reservation.created_at)
            )
            return list(result.scalars().all())

    async def _load(self, reservation_id: str) -> Reservation:
        async with self.session_factory() as session:
            reservation = await session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFound(f"Loan {reservation_id} not found")
        return reservation
