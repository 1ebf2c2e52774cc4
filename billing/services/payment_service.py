"""
Expert wallet recharge: create a Stripe PaymentIntent for topping up a payer's wallet with one expert.

The webhook (payment_intent.succeeded) records the Payment and credits the wallet via
wallet_service.recharge_wallet. Nothing is credited here.
"""
from decimal import Decimal

from billing import config
from billing.models import Payment
from billing.services.pricing import round_money, to_decimal
from billing.services.stripe_service import get_client, is_configured
from billing.services.wallet_service import WalletError, validate_currency


class BillingError(Exception):
    """Raised when payment set-up fails; message is safe to show to user."""

    def __init__(self, message: str, payment_intent_id: str = None):
        self.message = message
        self.payment_intent_id = payment_intent_id
        super().__init__(message)


def to_minor_units(amount) -> int:
    """Decimal major units -> Stripe integer minor units (e.g. 499.50 INR -> 49950)."""
    return int((round_money(amount) * config.STRIPE_MINOR_UNITS).to_integral_value())


def from_minor_units(amount_minor) -> Decimal:
    return round_money(Decimal(int(amount_minor or 0)) / config.STRIPE_MINOR_UNITS)


def create_wallet_recharge_payment_intent(
    *,
    amount,
    user_profile,
    expert_profile,
    currency: str = config.DEFAULT_CURRENCY,
    bonus_amount=None,
    attempt_id: str | None = None,
) -> dict:
    """
    Create a Stripe PaymentIntent for an expert wallet recharge (do not confirm).
    Metadata: payment_type=expert_wallet_recharge, client_id, expert_id, bonus_amount.

    Returns:
        {"payment_intent_id": "pi_xxx", "client_secret": "...", "amount": Decimal, "currency": "INR"}

    Raises:
        BillingError: when Stripe is not configured, the input is invalid or create fails.
    """
    if not is_configured():
        raise BillingError("Payment is not configured. Please try again later.")
    try:
        currency = validate_currency(currency)
    except WalletError as e:
        raise BillingError(str(e))
    amount = round_money(to_decimal(amount))
    if amount <= 0:
        raise BillingError("Invalid amount for wallet recharge.")
    bonus = round_money(to_decimal(bonus_amount or 0))
    if bonus < 0:
        raise BillingError("Invalid bonus amount.")

    stripe = get_client()
    metadata = {
        "payment_type": Payment.TYPE_WALLET_RECHARGE,
        "client_id": str(user_profile.id),
        "expert_id": str(expert_profile.id),
        "bonus_amount": str(bonus),
    }
    idempotency_key = None
    if (attempt_id or "").strip():
        idempotency_key = (
            f"expert_wallet_recharge:{user_profile.id}:{expert_profile.id}:{(attempt_id or '').strip()[:64]}"
        )
    try:
        create_kwargs = dict(
            amount=to_minor_units(amount),
            currency=currency.lower(),
            confirm=False,
            capture_method="automatic",
            description=f"Wallet recharge for expert #{expert_profile.id}",
            metadata=metadata,
            payment_method_types=["card"],
        )
        if idempotency_key:
            create_kwargs["idempotency_key"] = idempotency_key
        intent = stripe.PaymentIntent.create(**create_kwargs)
    except stripe.StripeError as e:
        err = getattr(e, "error", e)
        msg = getattr(err, "user_message", None) or str(e)
        if not msg or "api" in msg.lower():
            msg = "Could not start wallet recharge. Please try again."
        raise BillingError(msg)
    return {
        "payment_intent_id": intent.id,
        "client_secret": intent.client_secret,
        "amount": amount,
        "currency": currency,
    }
