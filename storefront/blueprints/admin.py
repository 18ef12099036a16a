from __future__ import annotations

from flask import Blueprint, jsonify

from storefront.blueprints.common import forbidden, is_admin_request, json_body
from storefront.database import get_db
from storefront.services.inventory_service import InventoryService
from storefront.services.low_stock_alert_service import LowStockAlertService
from storefront.validation import parse_restock_request

admin_bp = Blueprint("admin", __name__)


@admin_bp.route("/api/products/<int:product_id>/restock", methods=["PATCH"])
def api_restock(product_id: int):
    if not is_admin_request():
        return forbidden()

    updates = parse_restock_request(json_body())
    product = InventoryService(get_db()).restock(product_id, updates)
    return jsonify(
        {
            "success": True,
            "product": {
                "id": product.productID,
                "name": product.name,
                "variants": [
                    {"id": v.variantID, "sku": v.sku, "inventory": v.inventory}
                    for v in product.variants
                ],
            },
        }
    )


@admin_bp.route("/api/admin/low-stock", methods=["GET"])
def api_low_stock():
    if not is_admin_request():
        return forbidden()
    return jsonify(LowStockAlertService(get_db()).get_alert_summary())
