"""HTTP surface: blueprints, error mapping and the admin gate."""
import importlib.util
import json

import pytest
import stripe

from conftest import ADMIN_HEADERS, order_payload
from storefront import config as config_module
from storefront.config import Config
from storefront.models import Order, OrderStatus, PaymentStatus, ProductVariant
from storefront.observability.metrics import get_metrics_snapshot


def _reserve(client, product, quantity, session_id=None, variant=None):
    body = {
        "productId": product.productID,
        "productVariantId": (variant or product.variants[0]).variantID,
        "quantity": quantity,
    }
    if session_id:
        body["sessionId"] = session_id
    return client.post("/api/cart-reservations", json=body)


def test_reserve_and_release_round(client, make_product):
    product = make_product(inventory=5)

    response = _reserve(client, product, 3)
    assert response.status_code == 200
    body = response.get_json()
    session_id = body["sessionId"]
    assert body["reservation"]["quantity"] == 3

    availability = client.get(
        "/api/cart-reservations/availability",
        query_string={"variantId": product.variants[0].variantID},
    ).get_json()
    assert availability["available"] == 2
    assert availability["reserved"] == 3

    released = client.delete("/api/cart-reservations", query_string={"sessionId": session_id})
    assert released.status_code == 200
    assert released.get_json()["released"] == 1


def test_reserve_conflict_reports_availability(client, make_product):
    product = make_product(inventory=5)
    _reserve(client, product, 3, session_id="A")

    response = _reserve(client, product, 3, session_id="B")

    assert response.status_code == 409
    body = response.get_json()
    assert body["available"] == 2
    assert body["requested"] == 3
    assert body["code"] == "INSUFFICIENT_INVENTORY"


def test_reserve_validation_and_not_found(client, make_product):
    product = make_product()

    bad = client.post("/api/cart-reservations", json={"productId": product.productID, "quantity": 0})
    assert bad.status_code == 400
    assert bad.get_json()["code"] == "VALIDATION_ERROR"

    missing = client.post("/api/cart-reservations", json={"productId": 999999, "quantity": 1})
    assert missing.status_code == 404


def test_release_without_identifiers_is_rejected(client):
    assert client.delete("/api/cart-reservations").status_code == 400


def test_regular_product_reservation_is_a_no_op(client, make_product):
    product = make_product(limited=False)
    body = _reserve(client, product, 1).get_json()
    assert body["success"] is True
    assert body["message"] == "Regular product - no reservation needed"
    assert "reservation" not in body


def test_order_create_and_fetch(client, db_session, make_product):
    product = make_product(inventory=5)
    payload = order_payload(
        [{"productId": product.productID, "productVariantId": product.variants[0].variantID, "quantity": 2}]
    )

    created = client.post("/api/orders", json=payload)
    assert created.status_code == 201
    order = created.get_json()["order"]
    assert order["status"] == "PENDING"
    assert order["items"][0]["variantDetails"]["color"] == "Black"

    fetched = client.get(f"/api/orders/{order['id']}")
    assert fetched.status_code == 200
    assert fetched.get_json()["order"]["orderNumber"] == order["orderNumber"]

    db_session.expire_all()
    assert db_session.get(ProductVariant, product.variants[0].variantID).inventory == 3


def test_order_validation_errors(client):
    response = client.post("/api/orders", json={"customerEmail": "not-an-email", "items": []})
    assert response.status_code == 400
    assert client.get("/api/orders/424242").status_code == 404


def test_send_confirmation(client, make_product, outbox):
    product = make_product(inventory=5)
    payload = order_payload(
        [{"productId": product.productID, "productVariantId": product.variants[0].variantID, "quantity": 1}]
    )
    order_id = client.post("/api/orders", json=payload).get_json()["order"]["id"]

    response = client.post(f"/api/orders/{order_id}/send-confirmation")

    assert response.status_code == 200
    assert len(outbox.messages) == 1


def test_payment_intent(client, monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "pi_test_1", "client_secret": "pi_test_1_secret"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    response = client.post(
        "/api/stripe/payment-intent",
        json={"amount": 12000, "metadata": {"orderId": 7, "sessionId": "abc"}},
    )

    assert response.status_code == 200
    assert response.get_json() == {"clientSecret": "pi_test_1_secret", "paymentIntentId": "pi_test_1"}
    assert captured["currency"] == "usd"
    assert captured["metadata"] == {"orderId": "7", "sessionId": "abc"}


def test_payment_intent_requires_positive_amount(client):
    assert client.post("/api/stripe/payment-intent", json={"amount": 0}).status_code == 400


@pytest.fixture
def signed_events(monkeypatch):
    """Bypass signature checks; the event is whatever JSON was posted."""

    def fake_construct(payload, sig_header, secret):
        if sig_header != "t=1,v1=good":
            raise stripe.SignatureVerificationError("bad signature", sig_header)
        return json.loads(payload)

    monkeypatch.setattr(stripe.Webhook, "construct_event", fake_construct)


def _post_event(client, event_type, intent, signature="t=1,v1=good"):
    headers = {"Stripe-Signature": signature} if signature else {}
    return client.post(
        "/api/stripe/webhook",
        data=json.dumps({"type": event_type, "data": {"object": intent}}),
        headers=headers,
        content_type="application/json",
    )


def test_webhook_signature_errors(client, signed_events):
    missing = _post_event(client, "payment_intent.succeeded", {}, signature=None)
    assert missing.status_code == 400
    assert missing.get_json()["error"] == "No signature provided"

    invalid = _post_event(client, "payment_intent.succeeded", {}, signature="t=1,v1=forged")
    assert invalid.status_code == 400
    assert invalid.get_json()["error"] == "Invalid signature"


def test_webhook_success_is_idempotent(client, db_session, make_product, signed_events, outbox):
    product = make_product(inventory=5)
    payload = order_payload(
        [{"productId": product.productID, "productVariantId": product.variants[0].variantID, "quantity": 2}]
    )
    order_id = client.post("/api/orders", json=payload).get_json()["order"]["id"]
    intent = {"id": "pi_hook", "metadata": {"orderId": str(order_id)}}

    first = _post_event(client, "payment_intent.succeeded", intent)
    second = _post_event(client, "payment_intent.succeeded", intent)

    assert first.status_code == 200
    assert first.get_json()["alreadyProcessed"] is False
    assert second.get_json()["alreadyProcessed"] is True
    db_session.expire_all()
    order = db_session.get(Order, order_id)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_status == PaymentStatus.PAID
    assert db_session.get(ProductVariant, product.variants[0].variantID).inventory == 3
    assert len(outbox.messages) == 1


def test_webhook_failure_restores_stock(client, db_session, make_product, signed_events):
    product = make_product(inventory=5)
    payload = order_payload(
        [{"productId": product.productID, "productVariantId": product.variants[0].variantID, "quantity": 2}],
        paymentIntentId="pi_fail",
    )
    order_id = client.post("/api/orders", json=payload).get_json()["order"]["id"]

    # No orderId in metadata: resolved through the stored payment intent id
    response = _post_event(client, "payment_intent.payment_failed", {"id": "pi_fail", "metadata": {}})

    assert response.status_code == 200
    db_session.expire_all()
    assert db_session.get(Order, order_id).status == OrderStatus.CANCELLED
    assert db_session.get(ProductVariant, product.variants[0].variantID).inventory == 5


def test_webhook_ignores_unrelated_events(client, signed_events):
    response = _post_event(client, "charge.refunded", {"id": "ch_1"})
    assert response.status_code == 200
    assert response.get_json() == {"received": True}


def test_active_drop_endpoint(client, make_product):
    product = make_product(inventory=4, variants=2)
    _reserve(client, product, 1, session_id="A")

    drop = client.get("/api/drops/active").get_json()["drop"]

    assert drop["id"] == product.productID
    assert drop["status"] == "live"
    assert drop["available"] == 7


def test_active_drop_endpoint_empty(client):
    assert client.get("/api/drops/active").get_json() == {"drop": None}


def test_drop_notification_endpoints(client, make_product):
    product = make_product()
    body = {"email": "Fan@Example.com", "productId": product.productID}

    created = client.post("/api/drop-notifications", json=body)
    repeat = client.post("/api/drop-notifications", json=body)

    assert created.status_code == 201
    assert created.get_json()["notification"]["email"] == "fan@example.com"
    assert repeat.status_code == 200

    assert client.get("/api/drop-notifications", query_string={"productId": product.productID}).status_code == 403
    stats = client.get(
        "/api/drop-notifications",
        query_string={"productId": product.productID},
        headers=ADMIN_HEADERS,
    ).get_json()
    assert stats["total"] == 1
    assert stats["pending"] == 1

    dispatched = client.post(
        f"/api/drop-notifications/{product.productID}/dispatch",
        json={},
        headers=ADMIN_HEADERS,
    ).get_json()
    assert dispatched["sent"] == 1


def test_drop_notification_rejects_bad_email(client, make_product):
    product = make_product()
    response = client.post("/api/drop-notifications", json={"email": "nope", "productId": product.productID})
    assert response.status_code == 400


def test_admin_restock_and_low_stock(client, make_product):
    product = make_product(inventory=1)
    variant_id = product.variants[0].variantID
    url = f"/api/products/{product.productID}/restock"

    assert client.patch(url, json={"variants": []}).status_code == 403

    response = client.patch(url, json={"variants": [{"id": variant_id, "inventory": 25}]}, headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert response.get_json()["product"]["variants"][0]["inventory"] == 25

    invalid = client.patch(url, json={"variants": [{"id": 999999, "inventory": 1}]}, headers=ADMIN_HEADERS)
    assert invalid.status_code == 400
    assert invalid.get_json()["details"] == [999999]

    low = client.get("/api/admin/low-stock", headers=ADMIN_HEADERS).get_json()
    assert low["total_alerts"] == 0


def test_health_and_metrics(client, make_product):
    health = client.get("/health")
    assert health.status_code == 200
    body = health.get_json()
    assert body["status"] == "UP"
    assert body["components"]["reservations"]["active_holds"] == 0
    assert health.headers.get("X-Request-ID")

    assert client.get("/admin/metrics").status_code == 403
    metrics = client.get("/admin/metrics", headers=ADMIN_HEADERS).get_json()
    assert "http_requests_total" in metrics["counters"]


def test_unknown_route_is_json(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.get_json()["code"] == "NOT_FOUND"


def test_admin_routes_are_locked_without_a_configured_token(client, make_product, monkeypatch):
    monkeypatch.setattr(Config, "ADMIN_API_TOKEN", "")
    product = make_product(inventory=1)
    variant_id = product.variants[0].variantID
    blank = {Config.ADMIN_TOKEN_HEADER: ""}

    for headers in (ADMIN_HEADERS, blank, {}):
        restock = client.patch(
            f"/api/products/{product.productID}/restock",
            json={"variants": [{"id": variant_id, "inventory": 99}]},
            headers=headers,
        )
        assert restock.status_code == 403
        assert client.get("/api/admin/low-stock", headers=headers).status_code == 403
        assert client.get("/admin/metrics", headers=headers).status_code == 403


def test_admin_token_defaults_to_empty(monkeypatch):
    monkeypatch.delenv("ADMIN_API_TOKEN", raising=False)
    location = importlib.util.spec_from_file_location("storefront_config_defaults", config_module.__file__)
    fresh = importlib.util.module_from_spec(location)
    location.loader.exec_module(fresh)

    assert fresh.Config.ADMIN_API_TOKEN == ""


def test_http_metrics_follow_observability_toggle(client, monkeypatch):
    from storefront.main import app

    monkeypatch.setitem(app.config, "OBSERVABILITY_ENABLED", False)
    response = client.get("/health")

    assert response.headers.get("X-Request-ID")
    assert "http_requests_total" not in get_metrics_snapshot()["counters"]
    assert "http_request_latency_ms" not in get_metrics_snapshot()["histograms"]

    monkeypatch.setitem(app.config, "OBSERVABILITY_ENABLED", True)
    client.get("/health")
    assert "http_requests_total" in get_metrics_snapshot()["counters"]


def test_webhook_falls_back_to_intent_id_for_unknown_order(client, db_session, make_product, signed_events):
    product = make_product(inventory=5)
    payload = order_payload(
        [{"productId": product.productID, "productVariantId": product.variants[0].variantID, "quantity": 2}],
        paymentIntentId="pi_stale_meta",
    )
    order_id = client.post("/api/orders", json=payload).get_json()["order"]["id"]
    intent = {"id": "pi_stale_meta", "metadata": {"orderId": "987654"}}

    response = _post_event(client, "payment_intent.succeeded", intent)

    assert response.status_code == 200
    assert response.get_json()["orderId"] == order_id
    db_session.expire_all()
    assert db_session.get(Order, order_id).payment_status == PaymentStatus.PAID
