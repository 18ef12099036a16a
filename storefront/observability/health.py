from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import func, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.clock import utcnow
from storefront.database import engine
from storefront.models import CartReservation
from storefront.observability.metrics import set_gauge


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_reservation_backlog(session: Session) -> Dict[str, Any]:
    """Count holds that have expired but not been swept yet.

    A growing backlog only means sweeps are not running often; availability
    is still correct because expiry is evaluated at read time.
    """
    try:
        now = utcnow()
        active = (
            session.query(func.count(CartReservation.reservationID))
            .filter(CartReservation.is_active.is_(True))
            .scalar()
        ) or 0
        unswept = (
            session.query(func.count(CartReservation.reservationID))
            .filter(CartReservation.is_active.is_(True), CartReservation.expires_at <= now)
            .scalar()
        ) or 0
        set_gauge("reservations_active_holds", int(active))
        return {"status": "UP", "active_holds": int(active), "expired_unswept": int(unswept)}
    except SQLAlchemyError as exc:
        return {"status": "DOWN", "detail": str(exc)}
