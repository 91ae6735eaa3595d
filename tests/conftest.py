import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import create_async_engine

from reservation_engine.auth import Principal, Role
from reservation_engine.database import init_db, make_session_factory
from reservation_engine.exceptions import ExternalServiceError
from reservation_engine.ledger import InventoryLedger
from reservation_engine.loans import LoanManager
from reservation_engine.models import ItemKind
from reservation_engine.orders import OrderManager
from reservation_engine.reconciliation import PaymentReconciler
from reservation_engine.sweeper import ExpirySweeper

T0 = datetime(2026, 1, 5, 9, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeGateway:
    def __init__(self):
        self.calls = []
        self.fail = False

    async def initiate_checkout(self, payment_ref, amount, principal_id):
        self.calls.append((payment_ref, amount, principal_id))
        if self.fail:
            raise ExternalServiceError("Payment gateway unavailable, retry the order")
        return f"https://pay.example.test/checkout/{payment_ref}"


class RecordingPublisher:
    def __init__(self):
        self.events = []

    async def connect(self):
        pass

    async def close(self):
        pass

    async def publish(self, routing_key, message_data):
        self.events.append((routing_key, message_data))
        return True

    def routed(self, routing_key):
        return [data for key, data in self.events if key == routing_key]


def fail_first_call(method):
    """Wrap an async ledger method so its first call fails like a dropped connection."""
    calls = []

    async def side_effect(token):
        calls.append(token.token_id)
        if len(calls) == 1:
            raise ConnectionError("database connection lost")
        return await method(token)

    return side_effect


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def alice():
    return Principal("alice", Role.CUSTOMER)


@pytest.fixture
def bob():
    return Principal("bob", Role.CUSTOMER)


@pytest.fixture
def admin():
    return Principal("root", Role.ADMIN)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def ledger(session_factory, clock):
    return InventoryLedger(session_factory, clock=clock)


@pytest.fixture
def loans(ledger, session_factory, publisher, clock):
    return LoanManager(ledger, session_factory, publisher, loan_period=timedelta(days=14), max_renewals=1, clock=clock)


@pytest.fixture
def orders(ledger, session_factory, gateway, publisher, clock):
    return OrderManager(ledger, session_factory, gateway, publisher, clock=clock)


@pytest.fixture
def reconciler(orders, session_factory, publisher, clock):
    return PaymentReconciler(orders, session_factory, publisher, clock=clock)


@pytest.fixture
def sweeper(ledger, orders, session_factory, publisher, clock):
    return ExpirySweeper(
        ledger, orders, session_factory, publisher, payment_timeout=timedelta(minutes=30), interval=0.01, clock=clock
    )


@pytest_asyncio.fixture
async def stocked(ledger):
    """A small catalogue: two loanable copies, two stock products, one e-book."""
    await ledger.register_item("copy-1", ItemKind.COPY, 1)
    await ledger.register_item("copy-2", ItemKind.COPY, 1)
    await ledger.register_item("product-A", ItemKind.STOCK_UNIT, 10, unit_price=12.5)
    await ledger.register_item("product-Y", ItemKind.STOCK_UNIT, 5, unit_price=4.0)
    await ledger.register_item("ebook-1", ItemKind.STOCK_UNIT, None, unit_price=9.99, digital=True)
    return ledger
