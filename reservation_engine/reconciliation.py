"""
Payment Reconciliation

Applies payment-gateway outcomes to orders. Delivery is at-least-once and
unordered, so every event is written to an append-only log keyed by its
idempotency key; a key seen before returns the recorded result without
touching the order or the ledger again. Outcomes that arrive for an order
that is already terminal are logged as anomalies and never re-applied.
Nothing is recorded while the order can still move (CREATED, or PAID with
fulfillment interrupted): the event is refused and the gateway's redelivery
retries it.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from reservation_engine.exceptions import InvalidState, UnknownTransaction, ValidationError
from reservation_engine.locks import KeyedLocks
from reservation_engine.messaging import EventPublisher, notify
from reservation_engine.models import (
    TERMINAL_ORDER_STATES,
    EventDisposition,
    OrderState,
    PaymentEvent,
    PaymentOutcome,
    Transaction,
    utcnow,
)
from reservation_engine.orders import OrderManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayEvent:
    payment_ref: str
    outcome: PaymentOutcome
    idempotency_key: str
    event_id: Optional[str] = None


@dataclass(frozen=True)
class ReconciliationResult:
    transaction_id: str
    outcome: PaymentOutcome
    disposition: EventDisposition
    state: OrderState
    replayed: bool = False

    @classmethod
    def from_record(cls, record: PaymentEvent, replayed: bool) -> "ReconciliationResult":
        return cls(
            transaction_id=record.transaction_id,
            outcome=record.outcome,
            disposition=record.disposition,
            state=record.resulting_state,
            replayed=replayed,
        )


class PaymentReconciler:
    def __init__(
        self,
        orders: OrderManager,
        session_factory: async_sessionmaker,
        publisher: Optional[EventPublisher] = None,
        clock: Callable = utcnow,
    ):
        self.orders = orders
        self.session_factory = session_factory
        self.publisher = publisher
        self.clock = clock
        self.locks = KeyedLocks()

    async def apply_event(self, event: GatewayEvent) -> ReconciliationResult:
        if not event.idempotency_key:
            raise ValidationError("Payment event without idempotency key")
        if not isinstance(event.outcome, PaymentOutcome):
            raise ValidationError(f"Unknown payment outcome {event.outcome!r}")

        async with self.locks.hold(event.idempotency_key):
            transaction = await self.orders.find_by_payment_ref(event.payment_ref)
            if transaction is None:
                logger.warning(f"Payment event {event.idempotency_key} references unknown ref {event.payment_ref}")
                raise UnknownTransaction(f"No order for payment ref {event.payment_ref}")

            previous = await self.recorded(event.idempotency_key)
            if previous is not None:
                logger.info(
                    f"Replay of payment event {event.idempotency_key} for order {previous.transaction_id}, "
                    f"keeping {previous.resulting_state.value}"
                )
                return ReconciliationResult.from_record(previous, replayed=True)

            disposition, state = await self._reduce(transaction, event.outcome)

            record = PaymentEvent(
                event_id=event.event_id or str(uuid4()),
                idempotency_key=event.idempotency_key,
                transaction_id=transaction.id,
                payment_ref=event.payment_ref,
                outcome=event.outcome,
                disposition=disposition,
                resulting_state=state,
                received_at=self.clock(),
            )
            try:
                async with self.session_factory() as session:
                    session.add(record)
                    await session.commit()
            except IntegrityError:
                # Another process logged the same key first; its record wins
                logger.warning(f"Payment event {event.idempotency_key} was recorded concurrently")
                previous = await self.recorded(event.idempotency_key)
                if previous is None:
                    raise
                return ReconciliationResult.from_record(previous, replayed=True)

        if disposition is EventDisposition.ANOMALY:
            await self._report_anomaly(transaction, event.outcome, state)
        return ReconciliationResult.from_record(record, replayed=False)

    async def recorded(self, idempotency_key: str) -> Optional[PaymentEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentEvent).where(PaymentEvent.idempotency_key == idempotency_key)
            )
            return result.scalar_one_or_none()

    async def _reduce(self, transaction: Transaction, outcome: PaymentOutcome):
        if outcome is PaymentOutcome.CONFIRMED and await self.orders.fulfill(transaction.id):
            return EventDisposition.APPLIED, OrderState.FULFILLED
        if outcome is PaymentOutcome.DECLINED and await self.orders.decline(transaction.id):
            return EventDisposition.APPLIED, OrderState.DECLINED

        current = await self.orders.find_by_payment_ref(transaction.payment_ref)
        if current.state is OrderState.PAID:
            # An earlier confirmation stopped partway; finish it before judging this event
            await self.orders.fulfill(transaction.id)
            current = await self.orders.find_by_payment_ref(transaction.payment_ref)

        if current.state not in TERMINAL_ORDER_STATES:
            logger.warning(
                f"Deferring {outcome.value} for order {transaction.id} in {current.state.value}; "
                f"waiting for redelivery"
            )
            raise InvalidState(f"Order {transaction.id} is {current.state.value}, payment event not applied yet")
        return EventDisposition.ANOMALY, current.state

    async def _report_anomaly(self, transaction: Transaction, outcome: PaymentOutcome, state: OrderState):
        if outcome is PaymentOutcome.CONFIRMED and state is OrderState.EXPIRED:
            reason = "confirmed_after_expiry"
            logger.warning(
                f"Payment confirmed for order {transaction.id} after it expired; "
                f"inventory was already released, refund needs manual review"
            )
        elif outcome is PaymentOutcome.REFUNDED:
            reason = "refund_not_supported"
            logger.warning(f"Refund reported for order {transaction.id} in {state.value}; not applied")
        else:
            reason = "not_awaiting_payment"
            logger.warning(f"Ignoring {outcome.value} for order {transaction.id} in {state.value}")

        await notify(
            self.publisher,
            "payment.anomaly",
            "PaymentAnomaly",
            order_id=transaction.id,
            payment_ref=transaction.payment_ref,
            outcome=outcome.value,
            state=state.value,
            reason=reason,
        )
