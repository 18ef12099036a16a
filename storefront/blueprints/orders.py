from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import Blueprint, jsonify

from storefront.blueprints.common import iso, json_body
from storefront.database import get_db
from storefront.models import Address, Order
from storefront.services.order_service import OrderService
from storefront.validation import parse_order_request

orders_bp = Blueprint("orders", __name__)


def _get_order_service() -> OrderService:
    return OrderService(get_db())


def _serialize_address(address: Optional[Address]) -> Optional[Dict[str, Any]]:
    if address is None:
        return None
    return {
        "firstName": address.first_name,
        "lastName": address.last_name,
        "company": address.company,
        "address1": address.address1,
        "address2": address.address2,
        "city": address.city,
        "state": address.state,
        "postalCode": address.postal_code,
        "country": address.country,
    }


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": order.orderID,
        "orderNumber": order.order_number,
        "customerEmail": order.customer_email,
        "customerPhone": order.customer_phone,
        "status": order.status.value if order.status else None,
        "paymentStatus": order.payment_status.value if order.payment_status else None,
        "paymentIntentId": order.payment_intent_id,
        "subtotal": float(order.subtotal),
        "shipping": float(order.shipping),
        "tax": float(order.tax),
        "total": float(order.total),
        "createdAt": iso(order.created_at),
        "shippingAddress": _serialize_address(order.shipping_address),
        "billingAddress": _serialize_address(order.billing_address),
        "items": [
            {
                "id": item.orderItemID,
                "productId": item.productID,
                "productVariantId": item.variantID,
                "productName": item.product_name,
                "productImage": item.product_image,
                "variantDetails": json.loads(item.variant_details) if item.variant_details else None,
                "quantity": item.quantity,
                "price": float(item.price),
            }
            for item in order.items
        ],
    }


@orders_bp.route("/api/orders", methods=["POST"])
def api_create_order():
    order_input = parse_order_request(json_body())
    order = _get_order_service().create_order(order_input)
    return jsonify({"success": True, "order": serialize_order(order)}), 201


@orders_bp.route("/api/orders/<int:order_id>", methods=["GET"])
def api_get_order(order_id: int):
    order = _get_order_service().get_order(order_id)
    return jsonify({"order": serialize_order(order)})


@orders_bp.route("/api/orders/<int:order_id>/send-confirmation", methods=["POST"])
def api_send_confirmation(order_id: int):
    sent, message = _get_order_service().send_confirmation(order_id)
    status_code = 200 if sent else 502
    return jsonify({"success": sent, "message": message}), status_code
