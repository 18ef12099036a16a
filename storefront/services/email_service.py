"""Transactional email over SMTP.

Sending is always best effort: callers get ``(success, message)`` back and an
SMTP failure never propagates into the transaction that triggered it.
"""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Tuple

from storefront.config import Config
from storefront.models import Order, Product
from storefront.observability import increment_counter


class EmailService:
    def __init__(self, config: type[Config] = Config) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)

    def send(self, to_email: str, subject: str, body: str) -> Tuple[bool, str]:
        if not self.config.EMAIL_ENABLED:
            return False, "Email delivery is disabled"

        msg = EmailMessage()
        msg["From"] = self.config.EMAIL_FROM
        msg["To"] = to_email
        msg["Reply-To"] = self.config.EMAIL_REPLY_TO
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.config.SMTP_HOST, self.config.SMTP_PORT, timeout=self.config.SMTP_TIMEOUT) as server:
                if self.config.SMTP_USE_TLS:
                    server.starttls()
                if self.config.SMTP_USERNAME and self.config.SMTP_PASSWORD:
                    server.login(self.config.SMTP_USERNAME, self.config.SMTP_PASSWORD)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            increment_counter("emails_total", labels={"outcome": "failed"})
            self.logger.warning("Email to %s failed: %s", to_email, exc, extra={"subject": subject})
            return False, f"Failed to send email: {exc}"

        increment_counter("emails_total", labels={"outcome": "sent"})
        self.logger.info("Email sent", extra={"to": to_email, "subject": subject})
        return True, "Email sent"

    def send_order_confirmation(self, order: Order) -> Tuple[bool, str]:
        subject = f"Order Confirmation - {order.order_number}"
        return self.send(order.customer_email, subject, render_order_confirmation(order))

    def send_drop_live(self, to_email: str, product: Product, product_url: Optional[str] = None) -> Tuple[bool, str]:
        subject = f"{product.name} is live"
        lines = [
            f"The drop you signed up for, {product.name}, is live now.",
            "Quantities are limited and holds last a few minutes once you add to cart.",
        ]
        if product_url:
            lines.append(product_url)
        return self.send(to_email, subject, "\n\n".join(lines))


def render_order_confirmation(order: Order) -> str:
    address = order.shipping_address
    lines = [
        f"Thanks for your order {order.order_number}.",
        "",
    ]
    for item in order.items:
        lines.append(f"{item.quantity} x {item.product_name}  ${item.line_total:.2f}")
    lines.extend(
        [
            "",
            f"Subtotal: ${float(order.subtotal):.2f}",
            f"Shipping: ${float(order.shipping):.2f}",
            f"Tax: ${float(order.tax):.2f}",
            f"Total: ${float(order.total):.2f}",
        ]
    )
    if address is not None:
        lines.extend(
            [
                "",
                "Shipping to:",
                address.full_name,
                address.address1,
            ]
        )
        if address.address2:
            lines.append(address.address2)
        lines.append(f"{address.city}, {address.state} {address.postal_code}")
    return "\n".join(lines)
