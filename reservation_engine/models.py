from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ItemKind(enum.Enum):
    COPY = "COPY"
    STOCK_UNIT = "STOCK_UNIT"


class TokenState(enum.Enum):
    HELD = "HELD"
    RELEASED = "RELEASED"
    COMMITTED = "COMMITTED"


class LoanState(enum.Enum):
    # AVAILABLE is implicit: no loan row, or the latest one is RETURNED
    RESERVED = "RESERVED"
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"


class OrderState(enum.Enum):
    CREATED = "CREATED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAID = "PAID"
    FULFILLED = "FULFILLED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class PaymentOutcome(enum.Enum):
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    REFUNDED = "REFUNDED"


class EventDisposition(enum.Enum):
    APPLIED = "APPLIED"
    ANOMALY = "ANOMALY"


OPEN_LOAN_STATES = (LoanState.ACTIVE, LoanState.OVERDUE)
CANCELLABLE_ORDER_STATES = (OrderState.CREATED, OrderState.AWAITING_PAYMENT)
# PAID is included so an interrupted fulfillment can be resumed
PAYABLE_ORDER_STATES = (OrderState.AWAITING_PAYMENT, OrderState.PAID)
TERMINAL_ORDER_STATES = (
    OrderState.FULFILLED,
    OrderState.DECLINED,
    OrderState.EXPIRED,
    OrderState.CANCELLED,
)


class InventoryItem(Base):
    __tablename__ = "inventory_items"
    __table_args__ = (
        CheckConstraint("reserved_units >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint(
            "capacity IS NULL OR reserved_units <= capacity",
            name="ck_inventory_reserved_within_capacity",
        ),
    )

    id = Column(String, primary_key=True, index=True)
    kind = Column(Enum(ItemKind), nullable=False)
    capacity = Column(Integer, nullable=True)  # NULL means unlimited (digital licenses)
    reserved_units = Column(Integer, nullable=False, default=0)
    unit_price = Column(Float, nullable=False, default=0.0)
    digital = Column(Boolean, nullable=False, default=False)


class LedgerToken(Base):
    __tablename__ = "ledger_tokens"

    id = Column(String, primary_key=True, index=True)
    item_id = Column(String, ForeignKey("inventory_items.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    state = Column(Enum(TokenState), nullable=False, default=TokenState.HELD, index=True)
    owner_ref = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    settled_at = Column(DateTime, nullable=True)


class Reservation(Base):
    """A loan of one COPY item."""

    __tablename__ = "reservations"

    id = Column(String, primary_key=True, index=True)
    item_id = Column(String, ForeignKey("inventory_items.id"), nullable=False, index=True)
    principal_id = Column(String, index=True, nullable=False)
    token_id = Column(String, ForeignKey("ledger_tokens.id"), nullable=False)
    state = Column(Enum(LoanState), default=LoanState.ACTIVE, nullable=False, index=True)
    renewals = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    due_at = Column(DateTime, nullable=False, index=True)
    returned_at = Column(DateTime, nullable=True)


class Transaction(Base):
    """An order over one or more stock lines."""

    __tablename__ = "transactions"

    id = Column(String, primary_key=True, index=True)
    principal_id = Column(String, index=True, nullable=False)
    state = Column(Enum(OrderState), default=OrderState.CREATED, nullable=False, index=True)
    total_amount = Column(Float, nullable=False, default=0.0)
    payment_ref = Column(String, unique=True, index=True, nullable=False)
    checkout_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)


class TransactionLine(Base):
    __tablename__ = "transaction_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String, ForeignKey("transactions.id"), nullable=False, index=True)
    item_id = Column(String, ForeignKey("inventory_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)
    token_id = Column(String, ForeignKey("ledger_tokens.id"), nullable=False)


class PaymentEvent(Base):
    """Append-only log of gateway events, keyed by idempotency key."""

    __tablename__ = "payment_events"

    event_id = Column(String, primary_key=True)
    idempotency_key = Column(String, unique=True, index=True, nullable=False)
    transaction_id = Column(String, ForeignKey("transactions.id"), nullable=False, index=True)
    payment_ref = Column(String, nullable=False)
    outcome = Column(Enum(PaymentOutcome), nullable=False)
    disposition = Column(Enum(EventDisposition), nullable=False)
    resulting_state = Column(Enum(OrderState), nullable=False)
    received_at = Column(DateTime, default=utcnow, nullable=False)


class RetrievalGrant(Base):
    __tablename__ = "retrieval_grants"

    id = Column(String, primary_key=True)
    transaction_id = Column(String, ForeignKey("transactions.id"), nullable=False, index=True)
    item_id = Column(String, ForeignKey("inventory_items.id"), nullable=False)
    principal_id = Column(String, nullable=False, index=True)
    access_key = Column(String, nullable=False, unique=True)
    issued_at = Column(DateTime, default=utcnow, nullable=False)
