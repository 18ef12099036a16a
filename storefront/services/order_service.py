"""Checkout / order finalizer.

Turns a validated cart into an Order and moves inventory out of the ledger,
atomically. The decrement happens exactly once per order: ``create_order``
applies it and sets ``Order.inventory_applied`` in the same transaction, and
the payment webhook path (``confirm_payment``) only applies it when that flag
is still false.
"""
from __future__ import annotations

import json
import logging
import secrets
import string
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.clock import Clock, utcnow
from storefront.config import Config
from storefront.exceptions import (
    InsufficientInventoryError,
    NotFoundError,
    StorefrontError,
    TransactionFailure,
    ValidationError,
)
from storefront.models import (
    Address,
    AddressType,
    Customer,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductVariant,
)
from storefront.observability import increment_counter, observe_latency, record_event
from storefront.services.email_service import EmailService
from storefront.services.inventory_service import InventoryService
from storefront.services.locking import LockRegistry, order_locks, variant_locks
from storefront.services.reservation_service import ReservationService
from storefront.validation import AddressInput, OrderInput

_BASE36 = string.digits + string.ascii_uppercase


def generate_order_number(prefix: str = Config.ORDER_NUMBER_PREFIX) -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


@dataclass
class PaymentOutcome:
    order: Order
    already_processed: bool = False
    inventory_applied_now: bool = False
    warnings: List[str] = field(default_factory=list)


class OrderService:
    def __init__(
        self,
        db_session: Session,
        inventory_service: Optional[InventoryService] = None,
        reservation_service: Optional[ReservationService] = None,
        email_service: Optional[EmailService] = None,
        clock: Optional[Clock] = None,
        locks: Optional[LockRegistry] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.clock = clock or utcnow
        self.locks = locks if locks is not None else variant_locks
        self.inventory = inventory_service or InventoryService(db_session, locks=self.locks)
        self.reservations = reservation_service or ReservationService(
            db_session, clock=self.clock, locks=self.locks
        )
        self.email = email_service or EmailService()
        self.config = config
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------
    def create_order(self, order_input: OrderInput, now: Optional[datetime] = None) -> Order:
        """
        Persist the order and decrement inventory in one transaction.

        Either every line is written and every variant decremented, or nothing
        is. The caller's own reservations are released in the same commit.
        """
        now = now or self.clock()
        started = time.perf_counter()
        variant_ids = [item.variant_id for item in order_input.items if item.variant_id is not None]

        with self.locks.hold(variant_ids):
            try:
                order = self._create_order_locked(order_input, variant_ids, now)
                self.db.commit()
            except StorefrontError as exc:
                self.db.rollback()
                increment_counter("orders_total", labels={"outcome": exc.code.lower()})
                self.logger.warning("Order rejected: %s", exc.message, extra={"code": exc.code})
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                increment_counter("orders_total", labels={"outcome": "transaction_failed"})
                self.logger.exception("Order transaction failed")
                raise TransactionFailure("Failed to create order. Please try again.") from exc

        self.db.refresh(order)
        increment_counter("orders_total", labels={"outcome": "created"})
        observe_latency("order_finalize_ms", (time.perf_counter() - started) * 1000)
        record_event(
            "order_created",
            {"order_id": order.orderID, "order_number": order.order_number, "total": float(order.total)},
        )
        self.logger.info(
            "Order %s created",
            order.order_number,
            extra={"order_id": order.orderID, "items": len(order.items)},
        )
        return order

    def _create_order_locked(self, data: OrderInput, variant_ids: List[int], now: datetime) -> Order:
        customer = self._resolve_customer(data.customer_email, data.customer_phone)
        shipping = self._build_address(customer, data.shipping_address, AddressType.SHIPPING)
        billing = self._build_address(customer, data.billing_address, AddressType.BILLING)
        self.db.flush()

        locked = self.inventory.lock_variants(variant_ids)

        items = []
        for line in data.items:
            product = self.db.query(Product).filter_by(productID=line.product_id).first()
            if product is None:
                raise NotFoundError(
                    f"Product {line.product_id} does not exist. Please refresh your cart and try again."
                )
            variant = locked.get(line.variant_id) if line.variant_id is not None else None
            if variant is not None and variant.productID != product.productID:
                raise ValidationError(
                    f"Variant {variant.variantID} does not belong to product {product.productID}"
                )
            items.append(
                OrderItem(
                    productID=product.productID,
                    variantID=variant.variantID if variant is not None else None,
                    quantity=line.quantity,
                    price=line.price,
                    product_name=product.name,
                    product_image=product.first_image_url(),
                    variant_details=json.dumps(variant.details()) if variant is not None else None,
                )
            )

        order = Order(
            order_number=self._unique_order_number(),
            customerID=customer.customerID,
            customer_email=data.customer_email,
            customer_phone=data.customer_phone,
            shippingAddressID=shipping.addressID,
            billingAddressID=billing.addressID,
            subtotal=data.subtotal,
            shipping=data.shipping,
            tax=data.tax,
            total=data.total,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            payment_method="stripe",
            payment_intent_id=data.payment_intent_id,
            session_id=data.session_id,
            inventory_applied=False,
            created_at=now,
        )
        order.items = items
        self.db.add(order)
        self.db.flush()

        self._apply_inventory(order, locked, data.session_id, now, reason="order")

        if data.session_id:
            self.reservations.release(session_id=data.session_id, commit=False)
        return order

    def _apply_inventory(
        self,
        order: Order,
        locked: Dict[int, ProductVariant],
        session_id: Optional[str],
        now: datetime,
        reason: str,
    ) -> bool:
        if order.inventory_applied:
            return False

        totals: Dict[int, int] = defaultdict(int)
        for item in order.items:
            if item.variantID is not None:
                totals[item.variantID] += item.quantity

        # Check every line before touching any row so a refusal leaves nothing half-applied
        for variant_id in sorted(totals):
            variant = locked[variant_id]
            quantity = totals[variant_id]
            available = variant.inventory
            if variant.product.is_limited_edition:
                # Units held by other shoppers are not for sale to this one
                available -= self.reservations.held_quantity(variant_id, now, exclude_session_id=session_id)
            if quantity > available:
                raise InsufficientInventoryError(
                    available=available,
                    requested=quantity,
                    variant_id=variant_id,
                )

        for variant_id in sorted(totals):
            self.inventory.decrement(locked[variant_id], totals[variant_id], reason=reason)

        order.inventory_applied = True
        return True

    def _resolve_customer(self, email: str, phone: Optional[str]) -> Customer:
        customer = self.db.query(Customer).filter_by(email=email).first()
        if customer is None:
            customer = Customer(email=email, phone=phone)
            self.db.add(customer)
            self.db.flush()
        elif phone and not customer.phone:
            customer.phone = phone
        return customer

    def _build_address(self, customer: Customer, data: AddressInput, kind: AddressType) -> Address:
        address = Address(
            customerID=customer.customerID,
            type=kind,
            first_name=data.first_name,
            last_name=data.last_name,
            company=data.company,
            address1=data.address1,
            address2=data.address2,
            city=data.city,
            state=data.state,
            postal_code=data.postal_code,
            country=data.country,
        )
        self.db.add(address)
        return address

    def _unique_order_number(self) -> str:
        for _ in range(self.config.ORDER_NUMBER_MAX_ATTEMPTS):
            candidate = generate_order_number(self.config.ORDER_NUMBER_PREFIX)
            if self.db.query(Order.orderID).filter_by(order_number=candidate).first() is None:
                return candidate
            self.logger.warning("Order number collision on %s", candidate)
        raise TransactionFailure("Could not allocate an order number")

    # ------------------------------------------------------------------
    # Payment webhook paths
    # ------------------------------------------------------------------
    def confirm_payment(
        self,
        order_id: int,
        session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentOutcome:
        """Mark the order paid. Safe to call again for the same order."""
        now = now or self.clock()
        variant_ids = self._variant_ids_for(order_id)

        with order_locks.hold([order_id]), self.locks.hold(variant_ids):
            try:
                order = self._lock_order(order_id)
                if order.payment_status == PaymentStatus.PAID:
                    self.db.rollback()
                    increment_counter("payment_events_total", labels={"outcome": "duplicate"})
                    self.logger.info("Payment for order %s already recorded", order.order_number)
                    return PaymentOutcome(order=order, already_processed=True)

                outcome = PaymentOutcome(order=order)
                order.status = OrderStatus.CONFIRMED
                order.payment_status = PaymentStatus.PAID
                if payment_intent_id:
                    order.payment_intent_id = payment_intent_id

                if not order.inventory_applied:
                    locked = self.inventory.lock_variants(variant_ids)
                    hold_owner = session_id or order.session_id
                    try:
                        outcome.inventory_applied_now = self._apply_inventory(
                            order, locked, hold_owner, now, reason="payment"
                        )
                    except InsufficientInventoryError as exc:
                        # Money is taken; record it and leave fulfilment to a human
                        order.status = OrderStatus.PENDING
                        outcome.warnings.append(
                            f"Payment recorded but inventory could not be applied: {exc.message}"
                        )
                        record_event(
                            "paid_order_without_inventory",
                            {"order_id": order.orderID, "variant_id": exc.variant_id},
                        )
                        self.logger.error(
                            "Paid order %s could not take inventory",
                            order.order_number,
                            extra={"variant_id": exc.variant_id, "available": exc.available},
                        )

                hold_owner = session_id or order.session_id
                if hold_owner:
                    self.reservations.release(session_id=hold_owner, commit=False)
                self.db.commit()
            except StorefrontError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                self.logger.exception("Payment confirmation failed for order %s", order_id)
                raise TransactionFailure("Failed to confirm payment") from exc

        increment_counter("payment_events_total", labels={"outcome": "paid"})
        record_event("order_paid", {"order_id": order.orderID})

        if outcome.order.status == OrderStatus.CONFIRMED:
            sent, message = self.email.send_order_confirmation(order)
            if not sent:
                outcome.warnings.append(message)
        return outcome

    def fail_payment(self, order_id: int) -> Order:
        """Cancel an unpaid order and put back any inventory it took."""
        variant_ids = self._variant_ids_for(order_id)

        with order_locks.hold([order_id]), self.locks.hold(variant_ids):
            try:
                order = self._lock_order(order_id)
                if order.payment_status == PaymentStatus.PAID:
                    self.db.rollback()
                    self.logger.warning(
                        "Ignoring payment failure for paid order %s", order.order_number
                    )
                    return order
                if order.payment_status == PaymentStatus.FAILED:
                    self.db.rollback()
                    return order

                order.status = OrderStatus.CANCELLED
                order.payment_status = PaymentStatus.FAILED
                if order.inventory_applied:
                    locked = self.inventory.lock_variants(variant_ids)
                    for item in order.items:
                        if item.variantID is not None:
                            self.inventory.restore(
                                locked[item.variantID],
                                item.quantity,
                                reason="payment_failed",
                            )
                    order.inventory_applied = False
                self.db.commit()
            except StorefrontError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                self.logger.exception("Payment failure handling failed for order %s", order_id)
                raise TransactionFailure("Failed to cancel order") from exc

        increment_counter("payment_events_total", labels={"outcome": "failed"})
        record_event("order_payment_failed", {"order_id": order.orderID})
        return order

    def _lock_order(self, order_id: int) -> Order:
        order = (
            self.db.query(Order)
            .filter(Order.orderID == order_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def _variant_ids_for(self, order_id: int) -> List[int]:
        rows = (
            self.db.query(OrderItem.variantID)
            .filter(OrderItem.orderID == order_id, OrderItem.variantID.isnot(None))
            .all()
        )
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter_by(orderID=order_id).first()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def get_order_by_number(self, order_number: str) -> Order:
        order = self.db.query(Order).filter_by(order_number=order_number).first()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        return self.db.query(Order).filter_by(payment_intent_id=payment_intent_id).first()

    def find_for_payment(
        self,
        order_id: Optional[Any] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Optional[Order]:
        """Resolve a webhook's order by its metadata id, then by the stored intent id."""
        if order_id is not None and str(order_id).isdigit():
            order = self.db.query(Order).filter_by(orderID=int(order_id)).first()
            if order is not None:
                return order
            self.logger.warning("Payment metadata names unknown order %s", order_id)
        if payment_intent_id:
            return self.find_by_payment_intent(payment_intent_id)
        return None

    def send_confirmation(self, order_id: int) -> Tuple[bool, str]:
        order = self.get_order(order_id)
        return self.email.send_order_confirmation(order)
