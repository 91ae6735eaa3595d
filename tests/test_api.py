import httpx
import pytest
import pytest_asyncio

from reservation_engine.gateway import HmacSignatureVerifier
from reservation_engine.main import create_app

ALICE = {"x-principal-id": "alice", "x-principal-role": "CUSTOMER"}
BOB = {"x-principal-id": "bob", "x-principal-role": "CUSTOMER"}
ADMIN = {"x-principal-id": "root", "x-principal-role": "ADMIN"}

SECRET = "test-secret"


@pytest_asyncio.fixture
async def client(engine, gateway, publisher, clock):
    app = create_app(
        engine=engine,
        gateway=gateway,
        publisher=publisher,
        clock=clock,
        verifier=HmacSignatureVerifier(SECRET),
        manage_resources=False,
    )
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        for item in (
            {"item_id": "copy-1", "kind": "COPY", "capacity": 1},
            {"item_id": "product-A", "kind": "STOCK_UNIT", "capacity": 2, "unit_price": 12.5},
        ):
            response = await client.post("/api/inventory", json=item, headers=ADMIN)
            assert response.status_code == 201
        yield client


def webhook_body(payment_ref, outcome, key):
    signature = HmacSignatureVerifier(SECRET).sign(payment_ref, outcome, key)
    return {"paymentRef": payment_ref, "outcome": outcome, "idempotencyKey": key, "signature": signature}


@pytest.mark.asyncio
async def test_register_item_requires_admin(client):
    """
    Test case 1: Registering inventory over HTTP needs the admin role.
    """
    response = await client.post("/api/inventory", json={"item_id": "copy-9", "kind": "COPY", "capacity": 1}, headers=ALICE)
    assert response.status_code == 403
    assert response.json()["error"] == "Unauthorized"

    availability = await client.get("/api/inventory/product-A")
    assert availability.status_code == 200
    assert availability.json()["available_units"] == 2


@pytest.mark.asyncio
async def test_missing_credentials(client):
    """
    Test case 2: A request without credentials gets 401.
    """
    response = await client.post("/api/loans", json={"item_id": "copy-1"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_loan_lifecycle(client):
    """
    Test case 3: Borrow, renew and return a copy through the API.
    """
    response = await client.post("/api/loans", json={"item_id": "copy-1"}, headers=ALICE)
    assert response.status_code == 201
    loan = response.json()
    assert loan["state"] == "ACTIVE"

    taken = await client.post("/api/loans", json={"item_id": "copy-1"}, headers=BOB)
    assert taken.status_code == 409
    assert taken.json()["error"] == "Unavailable"

    assert (await client.post(f"/api/loans/{loan['id']}/return", headers=BOB)).status_code == 403
    returned = await client.post(f"/api/loans/{loan['id']}/return", headers=ALICE)
    assert returned.status_code == 200
    assert returned.json()["state"] == "RETURNED"

    again = await client.post(f"/api/loans/{loan['id']}/return", headers=ALICE)
    assert again.status_code == 409
    assert (await client.post("/api/loans/missing/return", headers=ALICE)).status_code == 404


@pytest.mark.asyncio
async def test_order_out_of_stock_names_item(client):
    """
    Test case 4: An out-of-stock order answers 409 naming the item.
    """
    response = await client.post("/api/orders", json={"lines": [{"item_id": "product-A", "quantity": 3}]}, headers=ALICE)

    assert response.status_code == 409
    assert response.json()["error"] == "OutOfStock"
    assert response.json()["item_id"] == "product-A"


@pytest.mark.asyncio
async def test_order_validation(client):
    """
    Test case 5: Malformed order bodies answer 400.
    """
    empty = await client.post("/api/orders", json={"lines": []}, headers=ALICE)
    assert empty.status_code == 400
    assert empty.json()["error"] == "ValidationError"

    copy = await client.post("/api/orders", json={"lines": [{"item_id": "copy-1", "quantity": 1}]}, headers=ALICE)
    assert copy.status_code == 400


@pytest.mark.asyncio
async def test_order_paid_through_webhook(client):
    """
    Test case 6: A signed CONFIRMED webhook fulfills the order; a redelivery is a replay.
    """
    created = await client.post("/api/orders", json={"lines": [{"item_id": "product-A", "quantity": 2}]}, headers=ALICE)
    assert created.status_code == 201
    order = created.json()
    assert order["state"] == "AWAITING_PAYMENT"
    assert order["total_amount"] == 25.0
    assert order["lines"][0]["item_id"] == "product-A"

    body = webhook_body(order["payment_ref"], "CONFIRMED", "evt-1")
    first = await client.post("/api/payments/webhook", json=body)
    assert first.status_code == 200
    assert first.json() == {
        "transaction_id": order["id"],
        "disposition": "APPLIED",
        "state": "FULFILLED",
        "replayed": False,
    }

    replay = await client.post("/api/payments/webhook", json=body)
    assert replay.status_code == 200
    assert replay.json()["replayed"] is True

    fetched = await client.get(f"/api/orders/{order['id']}", headers=ALICE)
    assert fetched.json()["state"] == "FULFILLED"
    assert (await client.get(f"/api/orders/{order['id']}", headers=BOB)).status_code == 403

    cancel = await client.post(f"/api/orders/{order['id']}/cancel", headers=ALICE)
    assert cancel.status_code == 409


@pytest.mark.asyncio
async def test_webhook_rejections(client):
    """
    Test case 7: Malformed, forged and unknown-ref webhooks are rejected.
    """
    created = await client.post("/api/orders", json={"lines": [{"item_id": "product-A", "quantity": 1}]}, headers=ALICE)
    payment_ref = created.json()["payment_ref"]

    malformed = await client.post(
        "/api/payments/webhook", content=b"{not json", headers={"content-type": "application/json"}
    )
    assert malformed.status_code == 400

    forged = webhook_body(payment_ref, "CONFIRMED", "evt-2")
    forged["signature"] = "0" * 64
    assert (await client.post("/api/payments/webhook", json=forged)).status_code == 401

    unknown = await client.post("/api/payments/webhook", json=webhook_body("pay_missing", "CONFIRMED", "evt-3"))
    assert unknown.status_code == 404

    order = await client.get(f"/api/orders/{created.json()['id']}", headers=ALICE)
    assert order.json()["state"] == "AWAITING_PAYMENT"


@pytest.mark.asyncio
async def test_admin_sweep(client, clock):
    """
    Test case 8: The admin sweep endpoint expires stale orders.
    """
    created = await client.post("/api/orders", json={"lines": [{"item_id": "product-A", "quantity": 1}]}, headers=ALICE)

    assert (await client.post("/api/admin/sweep", headers=ALICE)).status_code == 403

    clock.advance(minutes=31)
    response = await client.post("/api/admin/sweep", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["expired_orders"] == [created.json()["id"]]
    assert (await client.get("/api/inventory/product-A")).json()["available_units"] == 2


@pytest.mark.asyncio
async def test_refund_for_unpaid_order_is_refused(client):
    """
    Test case 9: A refund for an order still awaiting payment answers 409 and is not logged.
    """
    created = await client.post("/api/orders", json={"lines": [{"item_id": "product-A", "quantity": 1}]}, headers=ALICE)
    order = created.json()

    body = webhook_body(order["payment_ref"], "REFUNDED", "evt-early")
    response = await client.post("/api/payments/webhook", json=body)
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidState"

    confirmed = await client.post("/api/payments/webhook", json=webhook_body(order["payment_ref"], "CONFIRMED", "evt-ok"))
    assert confirmed.json()["state"] == "FULFILLED"

    redelivered = await client.post("/api/payments/webhook", json=body)
    assert redelivered.status_code == 200
    assert redelivered.json()["disposition"] == "ANOMALY"
    assert redelivered.json()["replayed"] is False


def test_importing_main_builds_no_app():
    """
    Test case 10: Importing the entrypoint module creates no app and opens no clients.
    """
    import reservation_engine.main as entrypoint

    assert not hasattr(entrypoint, "app")
    assert callable(entrypoint.create_app)
