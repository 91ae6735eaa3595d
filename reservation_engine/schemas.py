from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from reservation_engine.models import EventDisposition, ItemKind, LoanState, OrderState, PaymentOutcome


class ItemCreate(BaseModel):
    item_id: str = Field(..., min_length=1, example="book-42-copy-1")
    kind: ItemKind
    capacity: Optional[int] = Field(None, ge=0, description="Omit for unlimited digital licenses")
    unit_price: float = Field(0.0, ge=0.0)
    digital: bool = False


class AvailabilityRead(BaseModel):
    item_id: str
    kind: ItemKind
    capacity: Optional[int]
    reserved_units: int
    available_units: Optional[int]


class BorrowRequest(BaseModel):
    item_id: str = Field(..., min_length=1, example="book-42-copy-1")


class ReservationRead(BaseModel):
    id: str
    item_id: str
    principal_id: str
    state: LoanState
    renewals: int
    created_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderLineIn(BaseModel):
    item_id: str = Field(..., min_length=1, example="product-A")
    quantity: int = Field(..., gt=0, example=2)


class OrderCreate(BaseModel):
    lines: List[OrderLineIn] = Field(..., min_length=1)


class OrderLineRead(BaseModel):
    item_id: str
    quantity: int
    unit_price: float

    class Config:
        from_attributes = True


class RetrievalGrantRead(BaseModel):
    id: str
    item_id: str
    access_key: str
    issued_at: datetime

    class Config:
        from_attributes = True


class TransactionRead(BaseModel):
    id: str
    principal_id: str
    state: OrderState
    total_amount: float
    payment_ref: str
    checkout_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    lines: List[OrderLineRead] = []
    grants: List[RetrievalGrantRead] = []


class PaymentWebhook(BaseModel):
    payment_ref: str = Field(..., alias="paymentRef", min_length=1)
    outcome: PaymentOutcome
    idempotency_key: str = Field(..., alias="idempotencyKey", min_length=1)
    signature: str = Field(..., min_length=1)
    event_id: Optional[str] = Field(None, alias="eventId")

    class Config:
        populate_by_name = True


class WebhookAck(BaseModel):
    transaction_id: str
    disposition: EventDisposition
    state: OrderState
    replayed: bool


class SweepRead(BaseModel):
    overdue_loans: List[str]
    expired_orders: List[str]
    fulfilled_orders: List[str]
    reclaimed_tokens: List[str]
