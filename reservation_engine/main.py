import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from reservation_engine.auth import HeaderPrincipalResolver, Operation, Principal, authorize
from reservation_engine.config import LOAN_PERIOD_DAYS, LOG_LEVEL, PAYMENT_TIMEOUT_MINUTES
from reservation_engine.database import engine as default_engine, init_db, make_session_factory
from reservation_engine.exceptions import OutOfStock, ReservationEngineError, Unauthenticated, ValidationError
from reservation_engine.gateway import HmacSignatureVerifier, HttpPaymentGateway
from reservation_engine.ledger import InventoryLedger
from reservation_engine.loans import LoanManager
from reservation_engine.messaging import EventPublisher
from reservation_engine.models import Transaction, utcnow
from reservation_engine.orders import OrderLine, OrderManager
from reservation_engine.reconciliation import GatewayEvent, PaymentReconciler
from reservation_engine.schemas import (
    AvailabilityRead,
    BorrowRequest,
    ItemCreate,
    OrderCreate,
    OrderLineRead,
    PaymentWebhook,
    ReservationRead,
    RetrievalGrantRead,
    SweepRead,
    TransactionRead,
    WebhookAck,
)
from reservation_engine.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


def create_app(
    engine: AsyncEngine = default_engine,
    gateway=None,
    publisher: Optional[EventPublisher] = None,
    resolver=None,
    verifier=None,
    clock=utcnow,
    loan_period: timedelta = timedelta(days=LOAN_PERIOD_DAYS),
    payment_timeout: timedelta = timedelta(minutes=PAYMENT_TIMEOUT_MINUTES),
    manage_resources: bool = True,
) -> FastAPI:
    """Wire the engine's services into a FastAPI app.

    With ``manage_resources`` the lifespan creates tables, connects the
    notification publisher and runs the expiry sweeper in the background.
    """
    session_factory = make_session_factory(engine)
    gateway = gateway or HttpPaymentGateway()
    publisher = publisher or EventPublisher()

    ledger = InventoryLedger(session_factory, clock=clock)
    loans = LoanManager(ledger, session_factory, publisher, loan_period=loan_period, clock=clock)
    orders = OrderManager(ledger, session_factory, gateway, publisher, clock=clock)
    reconciler = PaymentReconciler(orders, session_factory, publisher, clock=clock)
    sweeper = ExpirySweeper(ledger, orders, session_factory, publisher, payment_timeout=payment_timeout, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not manage_resources:
            yield
            return
        await init_db(engine)
        await publisher.connect()
        stop = asyncio.Event()
        task = asyncio.create_task(sweeper.run_forever(stop))
        try:
            yield
        finally:
            stop.set()
            await task
            await publisher.close()
            if isinstance(gateway, HttpPaymentGateway):
                await gateway.close()

    app = FastAPI(title="Reservation Engine", lifespan=lifespan)
    app.state.ledger = ledger
    app.state.loans = loans
    app.state.orders = orders
    app.state.reconciler = reconciler
    app.state.sweeper = sweeper
    app.state.resolver = resolver or HeaderPrincipalResolver()
    app.state.verifier = verifier or HmacSignatureVerifier()

    @app.exception_handler(ReservationEngineError)
    async def engine_error_handler(request: Request, exc: ReservationEngineError):
        body = {"detail": exc.detail, "error": type(exc).__name__}
        if isinstance(exc, OutOfStock):
            body["item_id"] = exc.item_id
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=ValidationError.status_code,
            content={"detail": jsonable_encoder(exc.errors()), "error": ValidationError.__name__},
        )

    def get_principal(request: Request) -> Principal:
        return request.app.state.resolver.resolve(request.headers)

    async def order_view(transaction: Transaction) -> TransactionRead:
        lines = await orders.lines_for(transaction.id)
        grants = await orders.grants_for(transaction.id)
        return TransactionRead(
            id=transaction.id,
            principal_id=transaction.principal_id,
            state=transaction.state,
            total_amount=transaction.total_amount,
            payment_ref=transaction.payment_ref,
            checkout_url=transaction.checkout_url,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
            completed_at=transaction.completed_at,
            lines=[OrderLineRead.model_validate(line) for line in lines],
            grants=[RetrievalGrantRead.model_validate(grant) for grant in grants],
        )

    @app.post("/api/inventory", response_model=AvailabilityRead, status_code=201)
    async def register_item(data: ItemCreate, principal: Principal = Depends(get_principal)):
        authorize(principal, Operation.REGISTER_ITEM)
        await ledger.register_item(data.item_id, data.kind, data.capacity, data.unit_price, data.digital)
        return AvailabilityRead(**await ledger.availability(data.item_id))

    @app.get("/api/inventory/{item_id}", response_model=AvailabilityRead)
    async def get_availability(item_id: str):
        return AvailabilityRead(**await ledger.availability(item_id))

    @app.post("/api/loans", response_model=ReservationRead, status_code=201)
    async def borrow(data: BorrowRequest, principal: Principal = Depends(get_principal)):
        return ReservationRead.model_validate(await loans.borrow(data.item_id, principal))

    @app.get("/api/loans", response_model=List[ReservationRead])
    async def list_loans(principal_id: Optional[str] = None, principal: Principal = Depends(get_principal)):
        return [ReservationRead.model_validate(r) for r in await loans.list_loans(principal, principal_id)]

    @app.get("/api/loans/{reservation_id}", response_model=ReservationRead)
    async def get_loan(reservation_id: str, principal: Principal = Depends(get_principal)):
        return ReservationRead.model_validate(await loans.get_loan(reservation_id, principal))

    @app.post("/api/loans/{reservation_id}/return", response_model=ReservationRead)
    async def return_loan(reservation_id: str, principal: Principal = Depends(get_principal)):
        return ReservationRead.model_validate(await loans.return_loan(reservation_id, principal))

    @app.post("/api/loans/{reservation_id}/renew", response_model=ReservationRead)
    async def renew_loan(reservation_id: str, principal: Principal = Depends(get_principal)):
        return ReservationRead.model_validate(await loans.renew(reservation_id, principal))

    @app.post("/api/orders", response_model=TransactionRead, status_code=201)
    async def create_order(data: OrderCreate, principal: Principal = Depends(get_principal)):
        lines = [OrderLine(line.item_id, line.quantity) for line in data.lines]
        return await order_view(await orders.create_order(lines, principal))

    @app.get("/api/orders", response_model=List[TransactionRead])
    async def list_orders(principal_id: Optional[str] = None, principal: Principal = Depends(get_principal)):
        return [await order_view(t) for t in await orders.list_orders(principal, principal_id)]

    @app.get("/api/orders/{transaction_id}", response_model=TransactionRead)
    async def get_order(transaction_id: str, principal: Principal = Depends(get_principal)):
        return await order_view(await orders.get_order(transaction_id, principal))

    @app.post("/api/orders/{transaction_id}/cancel", response_model=TransactionRead)
    async def cancel_order(transaction_id: str, principal: Principal = Depends(get_principal)):
        return await order_view(await orders.cancel(transaction_id, principal))

    @app.post("/api/payments/webhook", response_model=WebhookAck)
    async def payment_webhook(request: Request):
        try:
            payload = PaymentWebhook.model_validate(await request.json())
        except ValueError as e:
            raise ValidationError(f"Malformed payment event: {e}")

        if not request.app.state.verifier.verify(
            payload.payment_ref, payload.outcome.value, payload.idempotency_key, payload.signature
        ):
            logger.warning(f"Rejected payment event {payload.idempotency_key}: bad signature")
            raise Unauthenticated("Invalid payment event signature")

        result = await reconciler.apply_event(GatewayEvent(
            payment_ref=payload.payment_ref,
            outcome=payload.outcome,
            idempotency_key=payload.idempotency_key,
            event_id=payload.event_id,
        ))
        return WebhookAck(
            transaction_id=result.transaction_id,
            disposition=result.disposition,
            state=result.state,
            replayed=result.replayed,
        )

    @app.post("/api/admin/sweep", response_model=SweepRead)
    async def run_sweep(principal: Principal = Depends(get_principal)):
        authorize(principal, Operation.RUN_SWEEP)
        report = await sweeper.run_once()
        return SweepRead(
            overdue_loans=report.overdue_loans,
            expired_orders=report.expired_orders,
            fulfilled_orders=report.fulfilled_orders,
            reclaimed_tokens=report.reclaimed_tokens,
        )

    return app


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL)
    uvicorn.run("reservation_engine.main:create_app", factory=True, host="0.0.0.0", port=8000)
