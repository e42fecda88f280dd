import httpx
import pytest
import pytest_asyncio

from storefront.database import get_session_factory
from storefront.models import ReservationSaga, SagaState
from storefront.main import app, get_gateway_secret, get_notifier
from storefront.signature import compute_signature

SECRET = "test-gateway-secret"


@pytest_asyncio.fixture
async def client(session_factory, notifier):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_gateway_secret] = lambda: SECRET
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def _create_order(client, gateway_order_id="gw_order_1", lines=(("A", 2),)):
    response = await client.post("/api/orders", json={
        "gateway_order_id": gateway_order_id,
        "customer_email": "jane@example.com",
        "customer_name": "Jane",
        "items": [
            {"product_id": product_id, "name": f"Product {product_id}", "price": "10.00", "quantity": quantity}
            for product_id, quantity in lines
        ],
    })
    assert response.status_code == 201
    return response.json()


def _callback(order, payment_id="pay_1", secret=SECRET):
    return {
        "gatewayOrderId": order["gateway_order_id"],
        "gatewayPaymentId": payment_id,
        "signature": compute_signature(secret, order["gateway_order_id"], payment_id),
        "internalOrderId": order["id"],
    }


@pytest.mark.asyncio
async def test_create_and_fetch_order(client):
    order = await _create_order(client)

    assert order["order_status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["items"][0]["quantity"] == 2

    response = await client.get(f"/api/orders/{order['id']}")
    assert response.status_code == 200
    assert response.json()["id"] == order["id"]

    response = await client.get("/api/orders", params={"status": "pending"})
    assert [o["id"] for o in response.json()] == [order["id"]]


@pytest.mark.asyncio
async def test_duplicate_gateway_reference_is_conflict(client):
    await _create_order(client, gateway_order_id="gw_same")
    response = await client.post("/api/orders", json={
        "gateway_order_id": "gw_same",
        "customer_email": "jane@example.com",
        "items": [{"product_id": "A", "name": "A", "price": "1.00", "quantity": 1}],
    })
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_verify_payment_happy_path(client, seed_products):
    await seed_products({"A": 5})
    order = await _create_order(client)

    response = await client.post("/api/payments/verify", json=_callback(order))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["order_status"] == "processing"

    fetched = (await client.get(f"/api/orders/{order['id']}")).json()
    assert fetched["payment_status"] == "paid"
    assert fetched["gateway_payment_id"] == "pay_1"


@pytest.mark.asyncio
async def test_verify_payment_rejects_bad_signature(client, seed_products):
    await seed_products({"A": 5})
    order = await _create_order(client)

    response = await client.post("/api/payments/verify", json=_callback(order, secret="wrong"))

    assert response.status_code == 401
    assert response.json()["verified"] is False


@pytest.mark.asyncio
async def test_verify_payment_unknown_order(client):
    order = {"id": "ORD-missing", "gateway_order_id": "gw_missing"}

    response = await client.post("/api/payments/verify", json=_callback(order))

    assert response.status_code == 404
    assert "contact support" in response.json()["message"]


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["gatewayOrderId", "gatewayPaymentId", "signature", "internalOrderId"])
async def test_verify_payment_requires_every_field(client, field):
    payload = _callback({"id": "ORD-1", "gateway_order_id": "gw_1"})
    payload.pop(field)

    response = await client.post("/api/payments/verify", json=payload)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_verify_payment_rejects_non_hex_signature(client):
    payload = _callback({"id": "ORD-1", "gateway_order_id": "gw_1"})
    payload["signature"] = "not-a-hex-digest"

    response = await client.post("/api/payments/verify", json=payload)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_verify_payment_rejects_uppercase_signature(client):
    payload = _callback({"id": "ORD-1", "gateway_order_id": "gw_1"})
    payload["signature"] = payload["signature"].upper()

    response = await client.post("/api/payments/verify", json=payload)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_verify_payment_while_reservation_in_progress_asks_for_retry(client, session_factory, seed_products):
    await seed_products({"A": 5})
    order = await _create_order(client)
    async with session_factory() as session:
        session.add(ReservationSaga(id="saga-live", order_id=order["id"], state=SagaState.RESERVING,
                                    items=[{"product_id": "A", "quantity": 2}]))
        await session.commit()

    response = await client.post("/api/payments/verify", json=_callback(order))

    assert response.status_code == 409
    assert response.json()["success"] is False
    response = await client.get(f"/api/orders/{order['id']}")
    assert response.json()["order_status"] == "pending"


@pytest.mark.asyncio
async def test_verify_payment_out_of_stock_names_the_item(client, seed_products):
    await seed_products({"A": 5, "B": 0})
    order = await _create_order(client, lines=(("A", 1), ("B", 1)))

    response = await client.post("/api/payments/verify", json=_callback(order))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["order_status"] == "cancelled"
    assert "Product B" in body["message"]


@pytest.mark.asyncio
async def test_admin_status_updates(client, seed_products):
    await seed_products({"A": 5})
    order = await _create_order(client)
    await client.post("/api/payments/verify", json=_callback(order))

    response = await client.patch(f"/api/orders/{order['id']}/status", json={"new_status": "shipped"})
    assert response.status_code == 409

    response = await client.patch(f"/api/orders/{order['id']}/status",
                                  json={"new_status": "shipped", "tracking_number": "TRK-1"})
    assert response.status_code == 200
    assert response.json()["order"]["tracking_number"] == "TRK-1"

    response = await client.patch(f"/api/orders/{order['id']}/status", json={"new_status": "delivered"})
    assert response.status_code == 200
    assert response.json()["order"]["order_status"] == "delivered"

    response = await client.patch(f"/api/orders/{order['id']}/status", json={"new_status": "cancelled"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_status_update_for_unknown_order(client):
    response = await client.patch("/api/orders/ORD-missing/status", json={"new_status": "cancelled"})
    assert response.status_code == 404
