"""
Reusable Stripe service: initializes SDK from settings and exposes a minimal API.

Use this module for all server-side Stripe operations; do not put Stripe logic in views.
Secret key is never exposed; only backend code uses this.
"""
import logging

import stripe
from django.conf import settings

logger = logging.getLogger(__name__)


def is_configured() -> bool:
    """Return True if Stripe secret key is set and non-empty."""
    key = getattr(settings, "STRIPE_SECRET_KEY", None) or ""
    return bool(key.strip())


def get_client():
    """
    Return the Stripe SDK module (stripe) with API key set.
    Use for Stripe API calls, e.g. stripe_service.get_client().PaymentIntent.create(...)
    """
    if not is_configured():
        raise RuntimeError("Stripe is not configured: STRIPE_SECRET_KEY is missing or empty.")
    stripe.api_key = settings.STRIPE_SECRET_KEY
    return stripe


def check_api_ok() -> bool:
    """Minimal Stripe API call to verify the key works. False on invalid key or network error."""
    if not is_configured():
        return False
    try:
        get_client().Balance.retrieve()
        return True
    except stripe.StripeError as e:
        logger.warning("check_api_ok: Stripe API check failed: %s", e)
        return False


def construct_webhook_event(payload: bytes, sig_header: str):
    """
    Verify a webhook signature and return the event.
    Raises ValueError (bad payload) or stripe.SignatureVerificationError (bad signature).
    """
    webhook_secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "") or ""
    if not webhook_secret:
        raise ValueError("STRIPE_WEBHOOK_SECRET is not configured")
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
