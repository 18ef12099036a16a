from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.clock import Clock, utcnow
from storefront.config import Config
from storefront.exceptions import (
    DropEndedError,
    NotFoundError,
    TransactionFailure,
    ValidationError,
)
from storefront.models import DropNotification, Product
from storefront.observability import increment_counter
from storefront.services.drop_service import DropStatus, classify_drop
from storefront.services.email_service import EmailService


class DropNotificationService:
    """
    "Notify me" sign-ups for limited-edition drops.
    One row per (email, product); signing up again refreshes the source.
    """

    def __init__(
        self,
        db_session: Session,
        email_service: Optional[EmailService] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.db = db_session
        self.email = email_service or EmailService()
        self.clock = clock or utcnow
        self.logger = logging.getLogger(__name__)

    def subscribe(
        self,
        email: str,
        product_id: int,
        source: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[DropNotification, bool]:
        """Returns the row and whether it was newly created."""
        now = now or self.clock()
        source = source or Config.DEFAULT_DROP_NOTIFICATION_SOURCE

        product = self.db.query(Product).filter_by(productID=product_id).first()
        if product is None:
            raise NotFoundError("Product not found")
        if not product.is_limited_edition:
            raise ValidationError("Notifications are only available for limited edition drops")
        if product.has_drop_ended(now):
            raise DropEndedError()

        existing = self._find(email, product_id)
        if existing is not None:
            existing.source = source
            self.db.commit()
            return existing, False

        notification = DropNotification(email=email, productID=product_id, source=source, created_at=now)
        self.db.add(notification)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with an identical sign-up; theirs is as good as ours
            self.db.rollback()
            existing = self._find(email, product_id)
            if existing is None:
                raise TransactionFailure("Failed to save notification")
            existing.source = source
            self.db.commit()
            return existing, False
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.exception("Drop notification insert failed")
            raise TransactionFailure("Failed to save notification") from exc

        increment_counter("drop_notifications_total", labels={"source": source})
        self.logger.info("Drop notification created", extra={"product_id": product_id, "source": source})
        return notification, True

    def get_stats(self, product_id: int) -> Dict[str, int]:
        base = self.db.query(func.count(DropNotification.notificationID)).filter(
            DropNotification.productID == product_id
        )
        total = int(base.scalar() or 0)
        notified = int(base.filter(DropNotification.notified.is_(True)).scalar() or 0)
        return {"total": total, "notified": notified, "pending": total - notified}

    def dispatch_live_notifications(
        self,
        product_id: int,
        product_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Email every pending subscriber once the drop is live."""
        now = now or self.clock()
        product = self.db.query(Product).filter_by(productID=product_id).first()
        if product is None:
            raise NotFoundError("Product not found")
        status = classify_drop(now, product.release_date, product.drop_end_date)
        if status is not DropStatus.LIVE:
            raise ValidationError(f"Drop is {status.value}, not live")

        pending = (
            self.db.query(DropNotification)
            .filter(
                DropNotification.productID == product_id,
                DropNotification.notified.is_(False),
            )
            .order_by(DropNotification.notificationID.asc())
            .all()
        )

        sent = 0
        failed = []
        for notification in pending:
            ok, message = self.email.send_drop_live(notification.email, product, product_url)
            if ok:
                notification.notified = True
                notification.notified_at = now
                sent += 1
            else:
                failed.append({"email": notification.email, "error": message})
        self.db.commit()

        increment_counter("drop_notifications_sent_total", amount=sent)
        self.logger.info(
            "Dispatched drop notifications for product %s: %d sent, %d failed",
            product_id,
            sent,
            len(failed),
        )
        return {"sent": sent, "failed": failed, "stats": self.get_stats(product_id)}

    def _find(self, email: str, product_id: int) -> Optional[DropNotification]:
        return self.db.query(DropNotification).filter_by(email=email, productID=product_id).first()
