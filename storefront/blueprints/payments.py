from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, request

from storefront.blueprints.common import json_body
from storefront.database import get_db
from storefront.exceptions import ValidationError
from storefront.models import Order
from storefront.observability import increment_counter
from storefront.services.order_service import OrderService
from storefront.services.payment_service import PaymentService
from storefront.validation import parse_positive_int

payments_bp = Blueprint("payments", __name__)
logger = logging.getLogger(__name__)

_METADATA_KEYS = ("orderId", "customerId", "items", "sessionId")


@payments_bp.route("/api/stripe/payment-intent", methods=["POST"])
def api_create_payment_intent():
    payload = json_body()
    amount = parse_positive_int(payload.get("amount"), "amount")
    currency = payload.get("currency")
    if currency is not None and not isinstance(currency, str):
        raise ValidationError("currency must be a string")

    raw_metadata = payload.get("metadata") or {}
    if not isinstance(raw_metadata, dict):
        raise ValidationError("metadata must be an object")
    metadata = {key: str(raw_metadata[key]) for key in _METADATA_KEYS if raw_metadata.get(key) is not None}

    intent = PaymentService().create_payment_intent(amount, currency=currency, metadata=metadata)
    return jsonify(intent)


def _order_for_intent(service: OrderService, intent: Dict[str, Any]) -> Optional[Order]:
    metadata = intent.get("metadata") or {}
    return service.find_for_payment(order_id=metadata.get("orderId"), payment_intent_id=intent.get("id"))


@payments_bp.route("/api/stripe/webhook", methods=["POST"])
def api_stripe_webhook():
    event = PaymentService().construct_event(
        request.get_data(),
        request.headers.get("Stripe-Signature"),
    )
    event_type = event["type"]
    intent = event["data"]["object"]
    increment_counter("stripe_webhooks_total", labels={"type": event_type})

    if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        logger.info("Unhandled event type %s", event_type)
        return jsonify({"received": True})

    service = OrderService(get_db())
    order = _order_for_intent(service, intent)
    if order is None:
        logger.warning("No order matches payment intent %s", intent.get("id"))
        return jsonify({"received": True, "warnings": ["No matching order"]})

    if event_type == "payment_intent.succeeded":
        metadata = intent.get("metadata") or {}
        outcome = service.confirm_payment(
            order.orderID,
            session_id=metadata.get("sessionId"),
            payment_intent_id=intent.get("id"),
        )
        return jsonify(
            {
                "received": True,
                "orderId": order.orderID,
                "alreadyProcessed": outcome.already_processed,
                "warnings": outcome.warnings,
            }
        )

    service.fail_payment(order.orderID)
    return jsonify({"received": True, "orderId": order.orderID})
