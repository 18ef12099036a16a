# storefront/models.py
import json
import logging
from enum import Enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    CheckConstraint,
    UniqueConstraint,
    Index,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from storefront.database import Base
from storefront.clock import ensure_utc

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class AddressType(str, Enum):
    SHIPPING = "SHIPPING"
    BILLING = "BILLING"


class Product(Base):
    __tablename__ = 'Product'
    productID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    images = Column(Text, default="[]")  # JSON list of {"url": ...}
    is_active = Column(Boolean, default=True, nullable=False)
    is_limited_edition = Column(Boolean, default=False, nullable=False)
    release_date = Column(DateTime(timezone=True))
    drop_end_date = Column(DateTime(timezone=True))
    max_quantity = Column(Integer)  # advisory; per-variant inventory is what gets enforced
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    variants = relationship(
        "ProductVariant",
        back_populates="product",
        order_by="ProductVariant.variantID",
    )

    def first_image_url(self) -> Optional[str]:
        if not self.images:
            return None
        try:
            parsed = json.loads(self.images)
        except (TypeError, ValueError):
            logger.warning("Unparseable images payload on product %s", self.productID)
            return None
        if isinstance(parsed, list) and parsed:
            first = parsed[0]
            if isinstance(first, dict):
                return first.get("url")
            if isinstance(first, str):
                return first
        return None

    def has_drop_ended(self, now: datetime) -> bool:
        end = ensure_utc(self.drop_end_date)
        return end is not None and ensure_utc(now) > end

    def default_variant(self) -> Optional["ProductVariant"]:
        active = [v for v in self.variants if v.is_active]
        if active:
            return active[0]
        return self.variants[0] if self.variants else None


class ProductVariant(Base):
    __tablename__ = 'ProductVariant'
    __table_args__ = (
        CheckConstraint('inventory >= 0', name='ck_variant_inventory_non_negative'),
    )
    variantID = Column(Integer, primary_key=True, autoincrement=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    sku = Column(String(100), unique=True, nullable=False)
    size = Column(String(50))
    color = Column(String(50))
    inventory = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    product = relationship("Product", back_populates="variants")

    def details(self) -> dict:
        return {"size": self.size, "color": self.color, "sku": self.sku}


class CartReservation(Base):
    __tablename__ = 'CartReservation'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_reservation_quantity_positive'),
        Index('ix_reservation_variant_active', 'variantID', 'is_active', 'expires_at'),
        Index('ix_reservation_session_active', 'session_id', 'is_active'),
    )
    reservationID = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    variantID = Column(Integer, ForeignKey('ProductVariant.variantID'), nullable=False)
    quantity = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    product = relationship("Product")
    variant = relationship("ProductVariant")

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(self.expires_at) <= ensure_utc(now)

    def holds_inventory(self, now: datetime) -> bool:
        """Only active, unexpired holds count against the variant."""
        return bool(self.is_active) and not self.is_expired(now)


class Customer(Base):
    __tablename__ = 'Customer'
    customerID = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(50))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    addresses = relationship("Address", back_populates="customer")
    orders = relationship("Order", back_populates="customer")


class Address(Base):
    __tablename__ = 'Address'
    addressID = Column(Integer, primary_key=True, autoincrement=True)
    customerID = Column(Integer, ForeignKey('Customer.customerID'), nullable=False)
    type = Column(
        SAEnum(AddressType, name="address_type", native_enum=False, validate_strings=True),
        nullable=False,
    )
    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=False)
    company = Column(String(255))
    address1 = Column(String(255), nullable=False)
    address2 = Column(String(255))
    city = Column(String(120), nullable=False)
    state = Column(String(120), nullable=False)
    postal_code = Column(String(32), nullable=False)
    country = Column(String(2), nullable=False, default="US")
    customer = relationship("Customer", back_populates="addresses")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Order(Base):
    __tablename__ = 'Order'
    orderID = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(64), unique=True, nullable=False)
    customerID = Column(Integer, ForeignKey('Customer.customerID'), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50))
    shippingAddressID = Column(Integer, ForeignKey('Address.addressID'), nullable=False)
    billingAddressID = Column(Integer, ForeignKey('Address.addressID'), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    shipping = Column(Numeric(10, 2), nullable=False, default=0)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    payment_status = Column(
        SAEnum(PaymentStatus, name="payment_status", native_enum=False, validate_strings=True),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_method = Column(String(50), default="stripe")
    payment_intent_id = Column(String(255), index=True)
    session_id = Column(String(64))
    # Set in the same transaction as the variant decrements; both finalization paths check it
    inventory_applied = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    customer = relationship("Customer", back_populates="orders")
    shipping_address = relationship("Address", foreign_keys=[shippingAddressID])
    billing_address = relationship("Address", foreign_keys=[billingAddressID])
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.orderItemID",
    )


class OrderItem(Base):
    __tablename__ = 'OrderItem'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_item_quantity_positive'),
    )
    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    variantID = Column(Integer, ForeignKey('ProductVariant.variantID'))
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    # Purchase-time snapshot; later catalog edits must not rewrite history
    product_name = Column(String(255), nullable=False)
    product_image = Column(String(512))
    variant_details = Column(Text)
    order = relationship("Order", back_populates="items")
    product = relationship("Product")
    variant = relationship("ProductVariant")

    @property
    def line_total(self) -> float:
        return float(self.price) * self.quantity


class DropNotification(Base):
    __tablename__ = 'DropNotification'
    __table_args__ = (
        UniqueConstraint('email', 'productID', name='uq_drop_notification_email_product'),
    )
    notificationID = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    source = Column(String(100), default="homepage")
    notified = Column(Boolean, default=False, nullable=False)
    notified_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    product = relationship("Product")
