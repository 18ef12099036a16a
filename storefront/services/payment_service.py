from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe

from storefront.config import Config
from storefront.exceptions import PaymentError


class PaymentService:
    """
    Thin wrapper over the Stripe client.
    Intent creation and webhook signature checks are delegated to the SDK.
    """

    def __init__(self, config: type[Config] = Config) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)

    def _require_secret_key(self) -> None:
        if not self.config.STRIPE_SECRET_KEY:
            raise PaymentError("Stripe is not configured. Set STRIPE_SECRET_KEY.", status_code=500)
        stripe.api_key = self.config.STRIPE_SECRET_KEY

    def create_payment_intent(
        self,
        amount: int,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Create an intent for ``amount`` in minor units (cents)."""
        self._require_secret_key()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency or self.config.STRIPE_CURRENCY,
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as exc:
            self.logger.error("Stripe payment intent error: %s", exc)
            raise PaymentError("Failed to create payment intent", status_code=502) from exc

        self.logger.info("Payment intent created", extra={"payment_intent_id": intent["id"]})
        return {"clientSecret": intent["client_secret"], "paymentIntentId": intent["id"]}

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        """Verify the webhook signature and return the parsed event."""
        if not signature:
            raise PaymentError("No signature provided")
        if not self.config.STRIPE_WEBHOOK_SECRET:
            raise PaymentError("STRIPE_WEBHOOK_SECRET is not configured", status_code=500)
        try:
            return stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.config.STRIPE_WEBHOOK_SECRET,
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            self.logger.warning("Webhook signature verification failed: %s", exc)
            raise PaymentError("Invalid signature") from exc
