"""
Consultation orders. One row per pay-per-minute consultation between a payer (UserProfile)
and an expert (ExpertProfile). Settlement fields stay NULL until settlement commits them once.
"""
import uuid

from django.db import models

from consultations.lifecycle import OrderStatus


def _new_order_id():
    return uuid.uuid4().hex


class ConsultationOrder(models.Model):
    DEFAULT_CALL_TYPE = "consultation_video"

    TYPE_ON_DEMAND = "ON_DEMAND_CONSULTATION"
    TYPE_CHOICES = [
        (TYPE_ON_DEMAND, "On-demand consultation"),
    ]

    order_id = models.CharField(max_length=64, unique=True, default=_new_order_id)

    user = models.ForeignKey(
        "accounts.UserProfile",
        on_delete=models.PROTECT,
        related_name="consultation_orders",
    )
    expert = models.ForeignKey(
        "accounts.ExpertProfile",
        on_delete=models.PROTECT,
        related_name="consultation_orders",
    )

    status = models.CharField(max_length=20, choices=OrderStatus.choices, default=OrderStatus.INITIATED)
    consultation_type = models.CharField(max_length=50, choices=TYPE_CHOICES, default=TYPE_ON_DEMAND)
    category = models.CharField(max_length=50, blank=True, default="")

    # Pricing snapshot taken when the order is initiated
    expert_rate_per_minute = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="INR")
    max_allowed_duration = models.PositiveIntegerField(help_text="Seconds the payer has paid for")
    # NULL: resolved from the expert's platform_fee_config at settlement
    platform_fee_percent = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)

    # Call presence
    stream_call_cid = models.CharField(max_length=255, blank=True, default="", db_index=True)
    user_joined_at = models.DateTimeField(null=True, blank=True)
    expert_joined_at = models.DateTimeField(null=True, blank=True)
    both_participants_joined_at = models.DateTimeField(null=True, blank=True)
    # Legacy accumulated presence: [{"joined_at": iso, "left_at": iso|null}, ...]
    user_intervals = models.JSONField(null=True, blank=True)
    expert_intervals = models.JSONField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    start_time = models.DateTimeField(null=True, blank=True)
    end_time = models.DateTimeField(null=True, blank=True)

    # Written exactly once by settlement
    duration_seconds = models.PositiveIntegerField(null=True, blank=True)
    cost = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    platform_fee_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    expert_earnings = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    class Meta:
        verbose_name = "Consultation Order"
        verbose_name_plural = "Consultation Orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["expert", "status"], name="consult_order_expert_status"),
        ]

    def __str__(self):
        return f"Order {self.order_id} ({self.status})"

    @property
    def is_settled(self) -> bool:
        return self.status == OrderStatus.COMPLETED and self.cost is not None

    @property
    def call_reference(self) -> str:
        """`{type}:{id}` of the video call; the call id is the order id unless Stream assigned one."""
        return self.stream_call_cid or f"{self.DEFAULT_CALL_TYPE}:{self.order_id}"
