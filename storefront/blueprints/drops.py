from __future__ import annotations

from flask import Blueprint, jsonify, request

from storefront.blueprints.common import forbidden, iso, is_admin_request, json_body
from storefront.database import get_db
from storefront.exceptions import ValidationError
from storefront.services.drop_notification_service import DropNotificationService
from storefront.services.drop_service import DropService
from storefront.services.reservation_service import ReservationService
from storefront.validation import clean_text, parse_email, parse_id

drops_bp = Blueprint("drops", __name__)


@drops_bp.route("/api/drops/active", methods=["GET"])
def api_active_drop():
    db = get_db()
    drop_service = DropService(db)
    now = drop_service.clock()
    product = drop_service.get_active_drop(now)
    if product is None:
        return jsonify({"drop": None})

    reservations = ReservationService(db)
    drop = drop_service.describe(product, now)
    drop["variants"] = [
        {
            "id": variant.variantID,
            "sku": variant.sku,
            "size": variant.size,
            "color": variant.color,
            "available": max(0, reservations.available_inventory(variant.variantID, now)),
        }
        for variant in product.variants
        if variant.is_active
    ]
    drop["available"] = sum(v["available"] for v in drop["variants"])
    return jsonify({"drop": drop})


@drops_bp.route("/api/drop-notifications", methods=["POST"])
def api_subscribe():
    payload = json_body()
    email = parse_email(payload.get("email"))
    product_id = parse_id(payload.get("productId"), "product ID")
    source = clean_text(payload.get("source"), "source", required=False, max_length=100)

    notification, created = DropNotificationService(get_db()).subscribe(email, product_id, source)
    message = "You will be notified when this drop goes live" if created else "You're already on the list"
    return (
        jsonify(
            {
                "success": True,
                "message": message,
                "notification": {
                    "id": notification.notificationID,
                    "email": notification.email,
                    "productId": notification.productID,
                    "source": notification.source,
                    "createdAt": iso(notification.created_at),
                },
            }
        ),
        201 if created else 200,
    )


@drops_bp.route("/api/drop-notifications", methods=["GET"])
def api_subscription_stats():
    if not is_admin_request():
        return forbidden()
    product_id = parse_id(request.args.get("productId"), "product ID")
    stats = DropNotificationService(get_db()).get_stats(product_id)
    return jsonify({"productId": product_id, **stats})


@drops_bp.route("/api/drop-notifications/<int:product_id>/dispatch", methods=["POST"])
def api_dispatch_notifications(product_id: int):
    if not is_admin_request():
        return forbidden()
    product_url = json_body().get("productUrl")
    if product_url is not None and not isinstance(product_url, str):
        raise ValidationError("productUrl must be a string")
    result = DropNotificationService(get_db()).dispatch_live_notifications(product_id, product_url)
    return jsonify({"success": True, **result})
