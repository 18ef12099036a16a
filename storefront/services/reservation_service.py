"""Cart reservations for limited-edition drops.

A reservation is a time-boxed hold on units of one variant, owned by an opaque
shopper session id. Expiry is never a scheduled transition: a hold simply
stops counting once ``expires_at <= now``, and ``sweep_expired`` flips such
rows to inactive whenever a caller wants the table tidy (it runs before every
reserve). Rows are never deleted; an inactive hold is terminal.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.clock import Clock, ensure_utc, utcnow
from storefront.config import Config
from storefront.exceptions import (
    DropEndedError,
    InsufficientInventoryError,
    NotFoundError,
    StorefrontError,
    TransactionFailure,
    ValidationError,
)
from storefront.models import CartReservation, Product, ProductVariant
from storefront.observability import increment_counter, record_event
from storefront.services.locking import LockRegistry, variant_locks


@dataclass(frozen=True)
class ReservationPolicy:
    """How long a hold lasts. One global policy today, passed in so it can vary by tier."""

    duration: timedelta = timedelta(minutes=15)

    @classmethod
    def from_config(cls, config: type[Config] = Config) -> "ReservationPolicy":
        return cls(duration=timedelta(minutes=config.RESERVATION_DURATION_MINUTES))

    @property
    def duration_ms(self) -> int:
        return int(self.duration.total_seconds() * 1000)


@dataclass
class ReservationResult:
    session_id: str
    reserved: bool
    message: str
    reservation_id: Optional[int] = None
    quantity: Optional[int] = None
    expires_at: Optional[datetime] = None
    time_remaining_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": True,
            "message": self.message,
            "sessionId": self.session_id,
        }
        if self.reserved:
            payload["reservation"] = {
                "id": self.reservation_id,
                "sessionId": self.session_id,
                "quantity": self.quantity,
                "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
                "timeRemaining": self.time_remaining_ms,
            }
        return payload


def _require_positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field_name} must be a positive integer")
    return value


class ReservationService:
    """Reservation store, reconciler, and the reserve/release operations."""

    def __init__(
        self,
        db_session: Session,
        policy: Optional[ReservationPolicy] = None,
        clock: Optional[Clock] = None,
        locks: Optional[LockRegistry] = None,
    ) -> None:
        self.db = db_session
        self.policy = policy or ReservationPolicy.from_config()
        self.clock = clock or utcnow
        self.locks = locks if locks is not None else variant_locks
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Reconciler
    # ------------------------------------------------------------------
    def held_quantity(
        self,
        variant_id: int,
        now: Optional[datetime] = None,
        exclude_session_id: Optional[str] = None,
    ) -> int:
        now = now or self.clock()
        query = self.db.query(func.coalesce(func.sum(CartReservation.quantity), 0)).filter(
            CartReservation.variantID == variant_id,
            CartReservation.is_active.is_(True),
            CartReservation.expires_at > now,
        )
        if exclude_session_id:
            query = query.filter(CartReservation.session_id != exclude_session_id)
        return int(query.scalar() or 0)

    def available_inventory(
        self,
        variant_id: int,
        now: Optional[datetime] = None,
        exclude_session_id: Optional[str] = None,
    ) -> int:
        """Ledger count minus live holds.

        The raw difference is returned and can be negative if holds were ever
        over-committed; callers treat anything <= 0 as sold out.
        """
        variant = self.db.query(ProductVariant).filter_by(variantID=variant_id).first()
        if variant is None:
            raise NotFoundError("Product variant not found")
        return variant.inventory - self.held_quantity(variant_id, now, exclude_session_id)

    def sweep_expired(
        self,
        now: Optional[datetime] = None,
        variant_id: Optional[int] = None,
        commit: bool = True,
    ) -> int:
        """Deactivate active holds whose expiry has passed. Idempotent."""
        now = now or self.clock()
        query = self.db.query(CartReservation).filter(
            CartReservation.is_active.is_(True),
            CartReservation.expires_at <= now,
        )
        if variant_id is not None:
            query = query.filter(CartReservation.variantID == variant_id)

        swept = query.update({CartReservation.is_active: False}, synchronize_session="fetch")
        if commit:
            self.db.commit()

        if swept:
            increment_counter("reservations_swept_total", amount=swept)
            self.logger.info("Swept %d expired reservations", swept, extra={"variant_id": variant_id})
        return int(swept or 0)

    # ------------------------------------------------------------------
    # Reserve / release
    # ------------------------------------------------------------------
    def reserve(
        self,
        product_id: int,
        quantity: int,
        variant_id: Optional[int] = None,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReservationResult:
        quantity = _require_positive_int(quantity, "quantity")
        session_id = session_id or str(uuid4())
        now = now or self.clock()

        product = self.db.query(Product).filter_by(productID=product_id).first()
        if product is None:
            raise NotFoundError("Product not found")

        if not product.is_limited_edition:
            increment_counter("reservations_total", labels={"outcome": "not_required"})
            return ReservationResult(
                session_id=session_id,
                reserved=False,
                message="Regular product - no reservation needed",
            )

        if product.has_drop_ended(now):
            increment_counter("reservations_total", labels={"outcome": "drop_ended"})
            raise DropEndedError()

        variant = self._resolve_variant(product, variant_id)

        with self.locks.hold([variant.variantID]):
            try:
                reservation = self._reserve_locked(product, variant.variantID, quantity, session_id, now)
            except InsufficientInventoryError:
                self.db.rollback()
                increment_counter("reservations_total", labels={"outcome": "insufficient"})
                raise
            except StorefrontError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                self.logger.exception("Reservation commit failed for variant %s", variant.variantID)
                raise TransactionFailure("Failed to reserve inventory") from exc

        increment_counter("reservations_total", labels={"outcome": "reserved"})
        record_event(
            "reservation_created",
            {
                "reservation_id": reservation.reservationID,
                "variant_id": reservation.variantID,
                "quantity": reservation.quantity,
            },
        )
        return ReservationResult(
            session_id=session_id,
            reserved=True,
            message="Items reserved",
            reservation_id=reservation.reservationID,
            quantity=reservation.quantity,
            expires_at=ensure_utc(reservation.expires_at),
            time_remaining_ms=self.policy.duration_ms,
        )

    def _reserve_locked(
        self,
        product: Product,
        variant_id: int,
        quantity: int,
        session_id: str,
        now: datetime,
    ) -> CartReservation:
        variant = (
            self.db.query(ProductVariant)
            .filter(ProductVariant.variantID == variant_id)
            .populate_existing()
            .with_for_update()
            .one()
        )
        self.sweep_expired(now, variant_id=variant_id, commit=False)

        # The session's own hold is replaced below, so it does not count against it
        available = variant.inventory - self.held_quantity(variant_id, now, exclude_session_id=session_id)
        if quantity > available:
            # Keep the sweep even though the hold is refused
            self.db.commit()
            raise InsufficientInventoryError(available=available, requested=quantity, variant_id=variant_id)

        expires_at = now + self.policy.duration
        existing = (
            self.db.query(CartReservation)
            .filter(
                CartReservation.session_id == session_id,
                CartReservation.variantID == variant_id,
                CartReservation.is_active.is_(True),
                CartReservation.expires_at > now,
            )
            .order_by(CartReservation.reservationID.asc())
            .first()
        )

        if existing is not None:
            existing.quantity = quantity
            existing.expires_at = expires_at
            reservation = existing
        else:
            reservation = CartReservation(
                session_id=session_id,
                productID=product.productID,
                variantID=variant_id,
                quantity=quantity,
                expires_at=expires_at,
                is_active=True,
                created_at=now,
            )
            self.db.add(reservation)

        self.db.commit()
        self.db.refresh(reservation)
        self.logger.info(
            "Reserved %d of variant %d for session %s",
            quantity,
            variant_id,
            session_id,
            extra={"reservation_id": reservation.reservationID, "refreshed": existing is not None},
        )
        return reservation

    def release(
        self,
        session_id: Optional[str] = None,
        reservation_id: Optional[int] = None,
        commit: bool = True,
    ) -> int:
        """Deactivate matching active holds; releasing nothing is not an error."""
        if not session_id and reservation_id is None:
            raise ValidationError("Session ID or Reservation ID is required")

        query = self.db.query(CartReservation).filter(CartReservation.is_active.is_(True))
        if reservation_id is not None:
            query = query.filter(CartReservation.reservationID == reservation_id)
        if session_id:
            query = query.filter(CartReservation.session_id == session_id)

        released = query.update({CartReservation.is_active: False}, synchronize_session="fetch")
        if commit:
            self.db.commit()

        if released:
            increment_counter("reservations_released_total", amount=released)
            self.logger.info(
                "Released %d reservations",
                released,
                extra={"session": session_id, "reservation_id": reservation_id},
            )
        return int(released or 0)

    def get_session_reservations(
        self,
        session_id: str,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        now = now or self.clock()
        reservations = (
            self.db.query(CartReservation)
            .filter(
                CartReservation.session_id == session_id,
                CartReservation.is_active.is_(True),
                CartReservation.expires_at > now,
            )
            .order_by(CartReservation.expires_at.asc())
            .all()
        )
        result = []
        for reservation in reservations:
            expires_at = ensure_utc(reservation.expires_at)
            result.append(
                {
                    "id": reservation.reservationID,
                    "productId": reservation.productID,
                    "variantId": reservation.variantID,
                    "quantity": reservation.quantity,
                    "expiresAt": expires_at.isoformat(),
                    "timeRemaining": max(0, int((expires_at - ensure_utc(now)).total_seconds() * 1000)),
                }
            )
        return result

    def _resolve_variant(self, product: Product, variant_id: Optional[int]) -> ProductVariant:
        if variant_id is not None:
            for variant in product.variants:
                if variant.variantID == variant_id:
                    return variant
            raise NotFoundError("Product variant not found")

        variant = product.default_variant()
        if variant is None:
            raise NotFoundError("Product variant not found")
        return variant
