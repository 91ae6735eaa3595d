"""
Order state machine.

    CREATED -> AWAITING_PAYMENT -> PAID -> FULFILLED
                                -> DECLINED
                                -> EXPIRED     (sweeper)
    CREATED | AWAITING_PAYMENT  -> CANCELLED

Every transition is a compare-and-set UPDATE on the current state, taken
under the transaction's lock, so of two racing transitions exactly one
wins. Ledger effects follow the winning transition.
"""

import logging
import secrets
from typing import Callable, List, NamedTuple, Optional, Sequence
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from reservation_engine.auth import Operation, Principal, authorize
from reservation_engine.exceptions import (
    ExternalServiceError,
    InvalidState,
    NotFound,
    ReservationEngineError,
    ValidationError,
)
from reservation_engine.gateway import PaymentGateway
from reservation_engine.ledger import InventoryLedger, ReservationToken
from reservation_engine.locks import KeyedLocks
from reservation_engine.messaging import EventPublisher, notify
from reservation_engine.models import (
    CANCELLABLE_ORDER_STATES,
    PAYABLE_ORDER_STATES,
    ItemKind,
    OrderState,
    RetrievalGrant,
    Transaction,
    TransactionLine,
    utcnow,
)

logger = logging.getLogger(__name__)


class OrderLine(NamedTuple):
    item_id: str
    quantity: int


class OrderManager:
    def __init__(
        self,
        ledger: InventoryLedger,
        session_factory: async_sessionmaker,
        gateway: PaymentGateway,
        publisher: Optional[EventPublisher] = None,
        clock: Callable = utcnow,
    ):
        self.ledger = ledger
        self.session_factory = session_factory
        self.gateway = gateway
        self.publisher = publisher
        self.clock = clock
        self.locks = KeyedLocks()

    async def create_order(self, lines: Sequence[OrderLine], principal: Principal) -> Transaction:
        """Reserve every line or none, then hand the order to the payment gateway."""
        authorize(principal, Operation.CREATE_ORDER)
        if not lines:
            raise ValidationError("An order needs at least one line")

        priced = []
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError(f"Quantity for {line.item_id} must be positive")
            item = await self.ledger.get_item(line.item_id)
            if item.kind is not ItemKind.STOCK_UNIT:
                raise ValidationError(f"Item {line.item_id} is not for sale")
            priced.append((line, item.unit_price))

        transaction_id = str(uuid4())
        tokens: List[ReservationToken] = []
        try:
            for line, _ in priced:
                tokens.append(await self.ledger.reserve(line.item_id, line.quantity, owner_ref=transaction_id))
        except ReservationEngineError:
            for token in tokens:
                await self.ledger.release(token)
            raise

        total = round(sum(line.quantity * price for line, price in priced), 2)
        transaction = Transaction(
            id=transaction_id,
            principal_id=principal.principal_id,
            state=OrderState.CREATED,
            total_amount=total,
            payment_ref=f"pay_{uuid4().hex}",
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        async with self.session_factory() as session:
            session.add(transaction)
            for (line, price), token in zip(priced, tokens):
                session.add(TransactionLine(
                    transaction_id=transaction_id,
                    item_id=line.item_id,
                    quantity=line.quantity,
                    unit_price=price,
                    token_id=token.token_id,
                ))
            await session.commit()
        logger.info(f"Order {transaction_id} created for {principal.principal_id}, total {total}")

        try:
            checkout_url = await self.gateway.initiate_checkout(
                transaction.payment_ref, total, principal.principal_id
            )
        except ExternalServiceError:
            await self._close(transaction_id, (OrderState.CREATED,), OrderState.CANCELLED, "order.cancelled")
            raise

        async with self.locks.hold(transaction_id):
            moved = await self._transition(
                transaction_id,
                (OrderState.CREATED,),
                OrderState.AWAITING_PAYMENT,
                checkout_url=checkout_url,
            )
        if moved:
            logger.info(f"Order {transaction_id} awaiting payment ({transaction.payment_ref})")
        else:
            logger.warning(f"Order {transaction_id} left CREATED before checkout completed")
        return await self._load(transaction_id)

    async def cancel(self, transaction_id: str, principal: Principal) -> Transaction:
        authorize(principal, Operation.CANCEL_ORDER)
        transaction = await self._load(transaction_id)
        authorize(principal, Operation.CANCEL_ORDER, owner_id=transaction.principal_id)

        closed = await self._close(transaction_id, CANCELLABLE_ORDER_STATES, OrderState.CANCELLED, "order.cancelled")
        if not closed:
            current = await self._load(transaction_id)
            raise InvalidState(f"Order {transaction_id} is {current.state.value} and cannot be cancelled")
        return await self._load(transaction_id)

    async def expire(self, transaction_id: str) -> bool:
        """Close an unpaid order and give its stock back. False if it already moved on."""
        return await self._close(transaction_id, CANCELLABLE_ORDER_STATES, OrderState.EXPIRED, "order.expired")

    async def decline(self, transaction_id: str) -> bool:
        return await self._close(transaction_id, (OrderState.AWAITING_PAYMENT,), OrderState.DECLINED, "order.declined")

    async def fulfill(self, transaction_id: str) -> bool:
        """AWAITING_PAYMENT -> PAID -> FULFILLED. False if the order was neither awaiting payment nor PAID.

        An order left in PAID by an interrupted fulfillment is picked up where
        it stopped: committed tokens and issued grants are not repeated.
        """
        async with self.locks.hold(transaction_id):
            if not await self._transition(transaction_id, PAYABLE_ORDER_STATES, OrderState.PAID):
                return False

            transaction = await self._load(transaction_id)
            lines = await self.lines_for(transaction_id)
            for line in lines:
                await self.ledger.commit(ReservationToken(line.token_id, line.item_id, line.quantity))
            grants = await self._issue_grants(transaction, lines)

            await self._transition(
                transaction_id, (OrderState.PAID,), OrderState.FULFILLED, completed_at=self.clock()
            )

        logger.info(f"Order {transaction_id} fulfilled with {len(grants)} retrieval grant(s)")
        await notify(
            self.publisher,
            "order.fulfilled",
            "OrderFulfilled",
            order_id=transaction_id,
            principal_id=transaction.principal_id,
            total_amount=transaction.total_amount,
            grants=[grant.id for grant in grants],
        )
        return True

    async def get_order(self, transaction_id: str, principal: Principal) -> Transaction:
        authorize(principal, Operation.VIEW_ORDER)
        transaction = await self._load(transaction_id)
        authorize(principal, Operation.VIEW_ORDER, owner_id=transaction.principal_id)
        return transaction

    async def list_orders(self, principal: Principal, principal_id: Optional[str] = None) -> List[Transaction]:
        owner = principal_id or principal.principal_id
        authorize(principal, Operation.VIEW_ORDER, owner_id=owner)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Transaction).where(Transaction.principal_id == owner).order_by(Transaction.created_at)
            )
            return list(result.scalars().all())

    async def find_by_payment_ref(self, payment_ref: str) -> Optional[Transaction]:
        async with self.session_factory() as session:
            result = await session.execute(select(Transaction).where(Transaction.payment_ref == payment_ref))
            return result.scalar_one_or_none()

    async def lines_for(self, transaction_id: str) -> List[TransactionLine]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TransactionLine)
                .where(TransactionLine.transaction_id == transaction_id)
                .order_by(TransactionLine.id)
            )
            return list(result.scalars().all())

    async def grants_for(self, transaction_id: str) -> List[RetrievalGrant]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RetrievalGrant).where(RetrievalGrant.transaction_id == transaction_id)
            )
            return list(result.scalars().all())

    async def _close(self, transaction_id: str, allowed: tuple, target: OrderState, routing_key: str) -> bool:
        async with self.locks.hold(transaction_id):
            if not await self._transition(transaction_id, allowed, target, completed_at=self.clock()):
                return False
            for line in await self.lines_for(transaction_id):
                await self.ledger.release(ReservationToken(line.token_id, line.item_id, line.quantity))

        transaction = await self._load(transaction_id)
        logger.info(f"Order {transaction_id} {target.value}, reservations released")
        await notify(
            self.publisher,
            routing_key,
            f"Order{target.value.capitalize()}",
            order_id=transaction_id,
            principal_id=transaction.principal_id,
        )
        return True

    async def _transition(self, transaction_id: str, allowed: tuple, target: OrderState, **values) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id, Transaction.state.in_(allowed))
                .values(state=target, updated_at=self.clock(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            await session.commit()
        return True

    async def _issue_grants(self, transaction: Transaction, lines: List[TransactionLine]) -> List[RetrievalGrant]:
        issued = await self.grants_for(transaction.id)
        granted_items = {grant.item_id for grant in issued}
        grants = []
        for line in lines:
            item = await self.ledger.get_item(line.item_id)
            if not item.digital or line.item_id in granted_items:
                continue
            grants.append(RetrievalGrant(
                id=str(uuid4()),
                transaction_id=transaction.id,
                item_id=line.item_id,
                principal_id=transaction.principal_id,
                access_key=secrets.token_urlsafe(24),
                issued_at=self.clock(),
            ))
        if grants:
            async with self.session_factory() as session:
                session.add_all(grants)
                await session.commit()
        return issued + grants

    async def _load(self, transaction_id: str) -> Transaction:
        async with self.session_factory() as session:
            transaction = await session.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFound(f"Order {transaction_id} not found")
        return transaction
