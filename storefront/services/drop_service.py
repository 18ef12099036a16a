from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session, selectinload

from storefront.clock import Clock, ensure_utc, utcnow
from storefront.models import Product

logger = logging.getLogger(__name__)


class DropStatus(str, Enum):
    UPCOMING = "upcoming"
    LIVE = "live"
    ENDED = "ended"


def classify_drop(
    now: datetime,
    release_date: Optional[datetime],
    drop_end_date: Optional[datetime],
) -> DropStatus:
    """Map a drop window to its lifecycle state; both boundaries count as live.

    A window missing either date is reported as upcoming.
    """
    if release_date is None or drop_end_date is None:
        return DropStatus.UPCOMING

    now = ensure_utc(now)
    release_date = ensure_utc(release_date)
    drop_end_date = ensure_utc(drop_end_date)

    if now < release_date:
        return DropStatus.UPCOMING
    if now <= drop_end_date:
        return DropStatus.LIVE
    return DropStatus.ENDED


class DropService:
    """Read-side queries over limited-edition products."""

    def __init__(self, db_session: Session, clock: Optional[Clock] = None) -> None:
        self.db = db_session
        self.clock = clock or utcnow

    def status_for(self, product: Product, now: Optional[datetime] = None) -> DropStatus:
        if product.is_limited_edition and (product.release_date is None or product.drop_end_date is None):
            logger.warning(
                "Limited edition product %s has an incomplete drop window; reporting it as upcoming",
                product.productID,
            )
        return classify_drop(now or self.clock(), product.release_date, product.drop_end_date)

    def get_active_drop(self, now: Optional[datetime] = None) -> Optional[Product]:
        """Live drop ending soonest, else the upcoming drop starting soonest."""
        now = now or self.clock()
        base = (
            self.db.query(Product)
            .options(selectinload(Product.variants))
            .filter(Product.is_limited_edition.is_(True), Product.is_active.is_(True))
        )

        live = (
            base.filter(Product.release_date <= now, Product.drop_end_date >= now)
            .order_by(Product.drop_end_date.asc())
            .first()
        )
        if live is not None:
            return live

        return (
            base.filter(Product.release_date > now)
            .order_by(Product.release_date.asc())
            .first()
        )

    def describe(self, product: Product, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        release = ensure_utc(product.release_date)
        end = ensure_utc(product.drop_end_date)
        return {
            "id": product.productID,
            "name": product.name,
            "slug": product.slug,
            "description": product.description,
            "price": float(product.price),
            "image": product.first_image_url(),
            "releaseDate": release.isoformat() if release else None,
            "dropEndDate": end.isoformat() if end else None,
            "maxQuantity": product.max_quantity,
            "status": self.status_for(product, now).value,
            "totalInventory": sum(v.inventory for v in product.variants),
        }
