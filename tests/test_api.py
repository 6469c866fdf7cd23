import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.security import create_access_token, get_order_service
from conftest import SANDBOX_INIT_POINT, checkout_request
from models.order import OrderStatus
from services.errors import NotificationError


@pytest.fixture
def client(service):
    app.dependency_overrides[get_order_service] = lambda: service
    # Not used as a context manager: the lifespan (real database, SMTP, Temporal) stays off
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id="user-1", role="user", **claims) -> dict:
    token = create_access_token(user_id, role=role, email=f"{user_id}@example.com", **claims)
    return {"Authorization": f"Bearer {token}"}


def checkout_payload(key="k1", method="mercadopago") -> dict:
    return checkout_request(key=key, method=method).model_dump(mode="json")


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_order_then_replay(client):
    created = client.post("/orders", json=checkout_payload(), headers=auth())
    assert created.status_code == 201
    body = created.json()
    assert body["success"] and body["created"]
    assert body["order"]["status"] == "pendiente"
    assert body["order"]["total_amount"] == 25.0
    assert body["payment_info"]["redirect_url"] == SANDBOX_INIT_POINT

    replay = client.post("/orders", json=checkout_payload(), headers=auth())
    assert replay.status_code == 200
    assert replay.json()["order_id"] == body["order_id"]
    assert replay.json()["created"] is False


def test_create_order_requires_a_token(client):
    assert client.post("/orders", json=checkout_payload()).status_code == 401
    bad = {"Authorization": "Bearer not-a-jwt"}
    assert client.post("/orders", json=checkout_payload(), headers=bad).status_code == 401


def test_invalid_checkout_is_rejected(client):
    payload = checkout_payload()
    payload["items"] = []
    assert client.post("/orders", json=payload, headers=auth()).status_code == 422

    payload = checkout_payload()
    payload["shipping_info"]["email"] = "nope"
    assert client.post("/orders", json=payload, headers=auth()).status_code == 422


def test_gateway_failure_returns_502_with_the_order(client, sdk, store):
    sdk.preference_error = ConnectionError("gateway down")
    response = client.post("/orders", json=checkout_payload(), headers=auth())

    assert response.status_code == 502
    body = response.json()
    assert body["error_kind"] == "gateway"
    assert "payment_info" not in body
    assert store.get(body["order_id"]).status == OrderStatus.PENDING


def test_whatsapp_checkout(client):
    response = client.post("/orders", json=checkout_payload(method="whatsapp"), headers=auth())
    assert response.status_code == 201
    assert response.json()["order"]["status"] == "whatsapp_pendiente"
    assert "payment_info" not in response.json()


def test_get_order_owner_and_admin_only(client):
    order_id = client.post("/orders", json=checkout_payload(), headers=auth()).json()["order_id"]

    assert client.get(f"/orders/{order_id}", headers=auth()).status_code == 200
    assert client.get(f"/orders/{order_id}", headers=auth("user-2")).status_code == 403
    assert client.get(f"/orders/{order_id}", headers=auth("admin-1", "admin")).status_code == 200
    assert client.get("/orders/missing", headers=auth()).status_code == 404


def test_recreate_payment(client, sdk):
    order_id = client.post("/orders", json=checkout_payload(), headers=auth()).json()["order_id"]
    response = client.post(f"/orders/{order_id}/recreate-payment", headers=auth())

    assert response.status_code == 200
    assert response.json()["payment_info"]["id"] == "pref-1"
    assert len(sdk.preference_payloads) == 2


def test_send_confirmation_answers_200_even_when_email_fails(client, transport):
    order_id = client.post("/orders", json=checkout_payload(), headers=auth()).json()["order_id"]
    transport.always_fail = NotificationError("smtp down")

    response = client.post(f"/orders/{order_id}/send-confirmation", headers=auth())
    assert response.status_code == 200
    assert response.json()["success"] is False


def test_whatsapp_link(client):
    order_id = client.post("/orders", json=checkout_payload(), headers=auth()).json()["order_id"]
    response = client.get(f"/orders/{order_id}/whatsapp-link", headers=auth())
    assert response.status_code == 200
    assert response.json()["url"].startswith("https://wa.me/")


def test_webhook_marks_order_paid(client, sdk, store, transport):
    order_id = client.post("/orders", json=checkout_payload(), headers=auth()).json()["order_id"]
    sdk.add_payment(123, order_id)
    transport.sent.clear()
    notification = {"action": "payment.updated", "type": "payment", "data": {"id": "123"}}

    first = client.post("/payments/webhook", json=notification)
    second = client.post("/payments/webhook", json=notification)

    assert first.status_code == 200 and first.json()["processed"]
    assert second.status_code == 200 and not second.json()["processed"]
    assert store.get(order_id).status == OrderStatus.PAID
    assert len(transport.sent) == 2


def test_webhook_with_query_parameters_only(client, sdk, store):
    order_id = client.post("/orders", json=checkout_payload(), headers=auth()).json()["order_id"]
    sdk.add_payment(55, order_id)

    response = client.post("/payments/webhook?type=payment&data.id=55")
    assert response.status_code == 200
    assert store.get(order_id).status == OrderStatus.PAID


def test_webhook_always_answers_200_outside_production(client):
    response = client.post("/payments/webhook", content=b"not json")
    assert response.status_code == 200
    assert response.json()["processed"] is False


def test_webhook_signature_enforced_in_production(client, settings):
    settings.ENVIRONMENT = "production"
    settings.MERCADOPAGO_WEBHOOK_SECRET = "s3cret"
    body = json.dumps({"type": "merchant_order"}).encode()

    rejected = client.post("/payments/webhook", content=body, headers={"x-signature": "ts=1,v1=bad"})
    assert rejected.status_code == 401

    digest = hmac.new(b"s3cret", b"1." + body, hashlib.sha256).hexdigest()
    accepted = client.post(
        "/payments/webhook",
        content=body,
        headers={"x-signature": f"ts=1,v1={digest}", "content-type": "application/json"},
    )
    assert accepted.status_code == 200


def test_webhook_health(client):
    assert client.get("/payments/webhook").json()["status"] == "active"


def test_gateway_status_is_admin_only(client):
    assert client.get("/payments/gateway-status", headers=auth()).status_code == 403
    response = client.get("/payments/gateway-status", headers=auth("admin-1", "admin"))
    assert response.status_code == 200
    assert response.json()["token_type"] == "test"


def test_admin_order_management(client, store):
    order_id = client.post("/orders", json=checkout_payload(method="whatsapp"), headers=auth()).json()["order_id"]
    admin = auth("admin-1", "admin")

    assert client.get("/admin/orders", headers=auth()).status_code == 403
    listing = client.get("/admin/orders?status=whatsapp_pendiente", headers=admin).json()
    assert listing["count"] == 1

    paid = client.patch(f"/admin/orders/{order_id}/status", json={"status": "pagado"}, headers=admin)
    assert paid.status_code == 200
    assert paid.json()["order"]["status"] == "pagado"

    invalid = client.patch(f"/admin/orders/{order_id}/status", json={"status": "pendiente"}, headers=admin)
    assert invalid.status_code == 409


def test_admin_cleanup(client):
    client.post("/orders", json=checkout_payload(), headers=auth())
    admin = auth("admin-1", "admin")

    stats = client.get("/admin/orders/cleanup", headers=admin)
    assert stats.status_code == 200
    assert stats.json()["stale_orders"] == 0

    cleanup = client.post("/admin/orders/cleanup", headers=admin)
    assert cleanup.status_code == 200
    assert cleanup.json()["cancelled"] == 0
