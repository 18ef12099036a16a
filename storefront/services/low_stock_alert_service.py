"""
Low stock alerts over product variants.

Inventory changes publish an ``inventory_updated`` event; the admin endpoint
lists every active variant at or below ``Config.LOW_STOCK_THRESHOLD``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, joinedload

from storefront.config import Config
from storefront.models import ProductVariant
from storefront.observability import increment_counter, record_event


class LowStockAlertService:
    """Reports variants whose on-hand count has fallen to the threshold."""

    def __init__(
        self,
        db_session: Session,
        threshold: Optional[int] = None,
    ) -> None:
        self.db = db_session
        self.threshold = Config.LOW_STOCK_THRESHOLD if threshold is None else threshold
        self.logger = logging.getLogger(__name__)

    def get_low_stock_variants(self) -> List[Dict[str, Any]]:
        variants = (
            self.db.query(ProductVariant)
            .options(joinedload(ProductVariant.product))
            .filter(ProductVariant.is_active.is_(True))
            .filter(ProductVariant.inventory <= self.threshold)
            .order_by(ProductVariant.inventory.asc(), ProductVariant.variantID.asc())
            .all()
        )
        alerts = [self._alert_for(variant) for variant in variants]
        self.logger.info(
            "Retrieved %d low stock alerts (threshold: %d)",
            len(alerts),
            self.threshold,
        )
        return alerts

    def check_variant(self, variant: ProductVariant) -> Optional[Dict[str, Any]]:
        """Alert for one variant if it is at or below threshold."""
        if variant.inventory > self.threshold:
            return None

        alert = self._alert_for(variant)
        alert["timestamp"] = datetime.now(timezone.utc).isoformat()
        increment_counter("low_stock_alerts_total", labels={"severity": alert["severity"]})
        record_event("low_stock_alert", alert)
        self.logger.warning(
            "Low stock alert: %s (%s) has %d units (threshold: %d)",
            alert["product_name"],
            variant.sku,
            variant.inventory,
            self.threshold,
        )
        return alert

    def get_alert_summary(self) -> Dict[str, Any]:
        alerts = self.get_low_stock_variants()
        return {
            "total_alerts": len(alerts),
            "critical_count": sum(1 for a in alerts if a["severity"] == "critical"),
            "warning_count": sum(1 for a in alerts if a["severity"] == "warning"),
            "out_of_stock_count": sum(1 for a in alerts if a["current_inventory"] == 0),
            "threshold": self.threshold,
            "alerts": alerts,
        }

    def _alert_for(self, variant: ProductVariant) -> Dict[str, Any]:
        product = variant.product
        return {
            "variant_id": variant.variantID,
            "product_id": variant.productID,
            "product_name": product.name if product else None,
            "sku": variant.sku,
            "size": variant.size,
            "color": variant.color,
            "current_inventory": variant.inventory,
            "threshold": self.threshold,
            "severity": self._calculate_severity(variant.inventory),
        }

    def _calculate_severity(self, inventory: int) -> str:
        if inventory == 0:
            return "critical"
        elif inventory <= self.threshold // 2:
            return "warning"
        else:
            return "low"


def publish_inventory_update_event(
    variant_id: int,
    old_inventory: int,
    new_inventory: int,
    reason: str,
) -> None:
    """Record a ledger movement for observability."""
    record_event(
        "inventory_updated",
        {
            "variant_id": variant_id,
            "old_inventory": old_inventory,
            "new_inventory": new_inventory,
            "change": new_inventory - old_inventory,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    increment_counter(
        "inventory_updates_total",
        labels={"reason": reason, "direction": "decrease" if new_inventory < old_inventory else "increase"},
    )
