from __future__ import annotations

from flask import Blueprint, jsonify, request

from storefront.blueprints.common import json_body
from storefront.database import get_db
from storefront.services.reservation_service import ReservationService
from storefront.validation import parse_id, parse_reserve_request

reservations_bp = Blueprint("reservations", __name__)


def _get_reservation_service() -> ReservationService:
    return ReservationService(get_db())


@reservations_bp.route("/api/cart-reservations", methods=["POST"])
def api_reserve():
    data = parse_reserve_request(json_body())
    result = _get_reservation_service().reserve(
        product_id=data.product_id,
        quantity=data.quantity,
        variant_id=data.variant_id,
        session_id=data.session_id,
    )
    return jsonify(result.to_dict())


@reservations_bp.route("/api/cart-reservations", methods=["DELETE"])
def api_release():
    session_id = request.args.get("sessionId") or None
    reservation_id = parse_id(request.args.get("reservationId"), "reservation ID", required=False)
    released = _get_reservation_service().release(session_id=session_id, reservation_id=reservation_id)
    return jsonify({"success": True, "message": "Reservations released", "released": released})


@reservations_bp.route("/api/cart-reservations", methods=["GET"])
def api_session_reservations():
    session_id = request.args.get("sessionId")
    if not session_id:
        return jsonify({"error": "Session ID is required", "code": "VALIDATION_ERROR"}), 400
    reservations = _get_reservation_service().get_session_reservations(session_id)
    return jsonify({"sessionId": session_id, "reservations": reservations})


@reservations_bp.route("/api/cart-reservations/availability", methods=["GET"])
def api_availability():
    variant_id = parse_id(request.args.get("variantId"), "variant ID")
    service = _get_reservation_service()
    available = service.available_inventory(variant_id)
    return jsonify(
        {
            "variantId": variant_id,
            "available": max(0, available),
            "reserved": service.held_quantity(variant_id),
        }
    )
