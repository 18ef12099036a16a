"""Request payload parsing.

Shapes are checked here, before any storage is touched; the services only
enforce business rules (availability, drop windows). Field names follow the
storefront client's camelCase JSON.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

import bleach

from storefront.exceptions import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def clean_text(value: Any, field_name: str, required: bool = True, max_length: int = 255) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field_name} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    cleaned = bleach.clean(value, tags=[], strip=True).strip()
    if required and not cleaned:
        raise ValidationError(f"{field_name} is required")
    if len(cleaned) > max_length:
        raise ValidationError(f"{field_name} must be at most {max_length} characters")
    return cleaned or None


def parse_email(value: Any, field_name: str = "email") -> str:
    if not isinstance(value, str) or not _EMAIL_RE.match(value.strip()):
        raise ValidationError("Invalid email address")
    return value.strip().lower()


def parse_id(value: Any, field_name: str, required: bool = True) -> Optional[int]:
    """Accept positive integers, or their string form (query strings)."""
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field_name} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field_name}")
    if isinstance(value, str):
        if not value.strip().isdigit():
            raise ValidationError(f"Invalid {field_name}")
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"Invalid {field_name}")
    return value


def parse_positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field_name} must be a positive integer")
    return value


def parse_money(value: Any, field_name: str, allow_zero: bool = False) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValidationError(f"{field_name} must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"{field_name} must be a number") from exc
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field_name} must be {'non-negative' if allow_zero else 'positive'}")
    return amount.quantize(Decimal("0.01"))


@dataclass
class ReserveRequest:
    product_id: int
    quantity: int
    variant_id: Optional[int] = None
    session_id: Optional[str] = None


def parse_reserve_request(body: Mapping[str, Any]) -> ReserveRequest:
    session_id = body.get("sessionId")
    if session_id is not None and (not isinstance(session_id, str) or len(session_id) > 64):
        raise ValidationError("Invalid session ID")
    return ReserveRequest(
        product_id=parse_id(body.get("productId"), "product ID"),
        variant_id=parse_id(body.get("productVariantId"), "variant ID", required=False),
        quantity=parse_positive_int(body.get("quantity"), "quantity"),
        session_id=session_id or None,
    )


@dataclass
class AddressInput:
    first_name: str
    last_name: str
    address1: str
    city: str
    state: str
    postal_code: str
    country: str = "US"
    company: Optional[str] = None
    address2: Optional[str] = None


def parse_address(raw: Any, label: str) -> AddressInput:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"{label} is required")
    country = clean_text(raw.get("country"), "Country", required=False, max_length=2) or "US"
    return AddressInput(
        first_name=clean_text(raw.get("firstName"), "First name", max_length=120),
        last_name=clean_text(raw.get("lastName"), "Last name", max_length=120),
        company=clean_text(raw.get("company"), "Company", required=False),
        address1=clean_text(raw.get("address1"), "Address"),
        address2=clean_text(raw.get("address2"), "Address line 2", required=False),
        city=clean_text(raw.get("city"), "City", max_length=120),
        state=clean_text(raw.get("state"), "State", max_length=120),
        postal_code=clean_text(raw.get("postalCode"), "Postal code", max_length=32),
        country=country.upper(),
    )


@dataclass
class OrderItemInput:
    product_id: int
    quantity: int
    price: Decimal
    variant_id: Optional[int] = None


@dataclass
class OrderInput:
    customer_email: str
    shipping_address: AddressInput
    billing_address: AddressInput
    items: List[OrderItemInput]
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal
    customer_phone: Optional[str] = None
    payment_intent_id: Optional[str] = None
    session_id: Optional[str] = None


def parse_order_request(body: Mapping[str, Any]) -> OrderInput:
    raw_items = body.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Order must have at least one item")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, Mapping):
            raise ValidationError(f"Item {index + 1} is malformed")
        # The storefront cart sends "" for variant-less products
        variant_raw = raw.get("productVariantId")
        if isinstance(variant_raw, str) and not variant_raw.strip():
            variant_raw = None
        items.append(
            OrderItemInput(
                product_id=parse_id(raw.get("productId"), "product ID"),
                variant_id=parse_id(variant_raw, "variant ID", required=False),
                quantity=parse_positive_int(raw.get("quantity"), "quantity"),
                price=parse_money(raw.get("price"), "price"),
            )
        )

    session_id = body.get("sessionId")
    if session_id is not None and not isinstance(session_id, str):
        raise ValidationError("Invalid session ID")

    return OrderInput(
        customer_email=parse_email(body.get("customerEmail")),
        customer_phone=clean_text(body.get("customerPhone"), "Phone", required=False, max_length=50),
        shipping_address=parse_address(body.get("shippingAddress"), "Shipping address"),
        billing_address=parse_address(body.get("billingAddress"), "Billing address"),
        items=items,
        subtotal=parse_money(body.get("subtotal"), "subtotal"),
        shipping=parse_money(body.get("shipping", 0), "shipping", allow_zero=True),
        tax=parse_money(body.get("tax", 0), "tax", allow_zero=True),
        total=parse_money(body.get("total"), "total"),
        payment_intent_id=clean_text(body.get("paymentIntentId"), "Payment intent", required=False),
        session_id=session_id or None,
    )


def parse_restock_request(body: Mapping[str, Any]) -> List[Dict[str, int]]:
    variants = body.get("variants")
    if not isinstance(variants, list):
        raise ValidationError("variants must be a list")
    updates = []
    for raw in variants:
        if not isinstance(raw, Mapping):
            raise ValidationError("Each variant update must be an object")
        inventory = raw.get("inventory")
        if isinstance(inventory, bool) or not isinstance(inventory, int) or inventory < 0:
            raise ValidationError("Inventory must be a non-negative integer")
        updates.append({"id": parse_id(raw.get("id"), "variant ID"), "inventory": inventory})
    return updates
