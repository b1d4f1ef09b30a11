"""Stripe Checkout adapter and webhook signature verification."""

import json
import logging
from typing import List, Optional

import stripe
from django.conf import settings

from .domain import CheckoutSession, PaymentProviderPort, ProviderLineItem
from .exceptions import UpstreamError, WebhookSignatureError

logger = logging.getLogger(__name__)


class StripeCheckoutProvider(PaymentProviderPort):
    """Opens hosted Stripe Checkout sessions in ``payment`` mode."""

    def __init__(self, api_key: str | None = None, currency: str | None = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.currency = (currency or getattr(settings, "STORE_CURRENCY", "aed")).lower()

    def create_session(
        self,
        line_items: List[ProviderLineItem],
        success_url: str,
        cancel_url: str,
        metadata: dict,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": li.name},
                        "unit_amount": li.unit_amount,
                    },
                    "quantity": li.quantity,
                }
                for li in line_items
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error(
                "stripe session creation failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            raise UpstreamError("Payment provider unavailable") from e
        return CheckoutSession(id=session.id, url=session.url)


def verify_webhook(payload: bytes, signature: Optional[str], secret: str, tolerance: int = 300) -> dict:
    """Verify a Stripe webhook signature over the raw body and parse it.

    Args:
        payload: The request body exactly as received. Anything else (an
            already parsed dict, a re-serialized string) is refused because
            the signature covers the original bytes.
        signature: Value of the ``Stripe-Signature`` header.
        secret: Endpoint signing secret (``whsec_...``).
        tolerance: Maximum accepted age of the signature, in seconds.

    Returns:
        dict: The parsed event.

    Raises:
        WebhookSignatureError: Missing header or secret, bad signature,
            stale timestamp, non-bytes payload or a body that is not JSON.
    """
    if not isinstance(payload, (bytes, bytearray)):
        raise WebhookSignatureError("Webhook payload must be the raw request body")
    if not signature or not secret:
        raise WebhookSignatureError("Missing webhook signature")
    try:
        text = bytes(payload).decode("utf-8")
        stripe.WebhookSignature.verify_header(text, signature, secret, tolerance)
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        raise WebhookSignatureError("Invalid webhook signature") from e
    try:
        event = json.loads(text)
    except ValueError as e:
        raise WebhookSignatureError("Webhook payload is not valid JSON") from e
    if not isinstance(event, dict):
        raise WebhookSignatureError("Webhook payload is not an event object")
    return event
