"""
Billing models. Per-expert payer wallets, expert earnings ledger and Stripe payments.
Stripe is the source of truth for card payments; wallet_service and earnings_service for balance changes.
"""
from decimal import Decimal

from django.db import models


class TransactionType(models.TextChoices):
    RECHARGE = "RECHARGE", "Recharge"
    BONUS = "BONUS", "Bonus"
    CASHBACK = "CASHBACK", "Cashback"
    REFERRAL_BONUS = "REFERRAL_BONUS", "Referral bonus"
    REFUND = "REFUND", "Refund"
    CONSULTATION_DEDUCTION = "CONSULTATION_DEDUCTION", "Consultation deduction"


class TransactionSource(models.TextChoices):
    PAYMENT = "PAYMENT", "Payment"
    GATEWAY = "GATEWAY", "Payment gateway"
    PROMOTION = "PROMOTION", "Promotion"
    ADMIN = "ADMIN", "Admin"


class Payment(models.Model):
    """One row per Stripe PaymentIntent; updated by webhooks (idempotent)."""

    TYPE_WALLET_RECHARGE = "expert_wallet_recharge"

    stripe_payment_intent_id = models.CharField(max_length=255, unique=True)
    payment_type = models.CharField(max_length=50, default=TYPE_WALLET_RECHARGE)

    expert = models.ForeignKey(
        "accounts.ExpertProfile",
        on_delete=models.SET_NULL,
        related_name="payments",
        null=True,
        blank=True,
    )
    client = models.ForeignKey(
        "accounts.UserProfile",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="payments",
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    bonus_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default="INR")

    status = models.CharField(max_length=50)  # succeeded, failed, refunded

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        ordering = ["-created_at"]

    def __str__(self):
        return f"Payment {self.stripe_payment_intent_id} ({self.status})"


class ExpertWallet(models.Model):
    """
    Prepaid balance a payer holds with one expert, per currency.

    real_balance is the cash-backed part of balance; NULL marks a legacy wallet that predates
    tracking (treated as all real cash).
    """

    user = models.ForeignKey(
        "accounts.UserProfile",
        on_delete=models.CASCADE,
        related_name="expert_wallets",
    )
    expert = models.ForeignKey(
        "accounts.ExpertProfile",
        on_delete=models.CASCADE,
        related_name="payer_wallets",
    )
    currency = models.CharField(max_length=3)
    balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    real_balance = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Expert Wallet"
        verbose_name_plural = "Expert Wallets"
        constraints = [
            models.UniqueConstraint(fields=["user", "expert", "currency"], name="unique_expert_wallet_per_currency"),
        ]

    def __str__(self):
        return f"Wallet user={self.user_id} expert={self.expert_id} {self.balance} {self.currency}"


class WalletTransaction(models.Model):
    """Ledger entry for every wallet balance change. Never update a balance without creating one."""

    user = models.ForeignKey(
        "accounts.UserProfile",
        on_delete=models.CASCADE,
        related_name="wallet_transactions",
    )
    expert = models.ForeignKey(
        "accounts.ExpertProfile",
        on_delete=models.CASCADE,
        related_name="wallet_transactions",
    )
    type = models.CharField(max_length=30, choices=TransactionType.choices)
    source = models.CharField(max_length=20, choices=TransactionSource.choices, default=TransactionSource.PAYMENT)
    amount = models.DecimalField(max_digits=12, decimal_places=2)  # positive = credit, negative = debit
    currency = models.CharField(max_length=3)
    status = models.CharField(max_length=20, default="SUCCESS")
    description = models.CharField(max_length=255, blank=True, default="")

    order = models.ForeignKey(
        "consultations.ConsultationOrder",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="wallet_transactions",
    )
    payment = models.ForeignKey(
        "billing.Payment",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="wallet_transactions",
    )

    # Consultation audit metadata (deductions only)
    duration_seconds = models.PositiveIntegerField(null=True, blank=True)
    rate_per_minute = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    consultation_type = models.CharField(max_length=50, blank=True, default="")
    category = models.CharField(max_length=50, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"WalletTransaction user={self.user_id} {self.type} {self.amount} {self.currency}"


class ExpertEarningsAccount(models.Model):
    """Running earnings balance of an expert, per currency."""

    expert = models.ForeignKey(
        "accounts.ExpertProfile",
        on_delete=models.CASCADE,
        related_name="earnings_accounts",
    )
    currency = models.CharField(max_length=3)
    balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Expert Earnings Account"
        verbose_name_plural = "Expert Earnings Accounts"
        constraints = [
            models.UniqueConstraint(fields=["expert", "currency"], name="unique_earnings_account_per_currency"),
        ]

    def __str__(self):
        return f"Earnings expert={self.expert_id} {self.balance} {self.currency}"


class ExpertEarning(models.Model):
    """Append-only earnings ledger. One ORDER_EARNING entry per settled consultation."""

    TYPE_ORDER_EARNING = "ORDER_EARNING"
    TYPE_CHOICES = [
        (TYPE_ORDER_EARNING, "Order earning"),
    ]

    expert = models.ForeignKey(
        "accounts.ExpertProfile",
        on_delete=models.CASCADE,
        related_name="earnings",
    )
    type = models.CharField(max_length=30, choices=TYPE_CHOICES, default=TYPE_ORDER_EARNING)
    gross_amount = models.DecimalField(max_digits=12, decimal_places=2)
    platform_fee = models.DecimalField(max_digits=12, decimal_places=2)
    net_amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3)
    status = models.CharField(max_length=20, default="COMPLETED")
    description = models.CharField(max_length=255, blank=True, default="")
    order = models.ForeignKey(
        "consultations.ConsultationOrder",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="earnings",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"ExpertEarning expert={self.expert_id} {self.net_amount} {self.currency}"
