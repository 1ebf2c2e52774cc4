"""
Stale consultation sweep.

A CONNECTED order whose paid time (start_time + max_allowed_duration) plus a grace period has
passed should already have been settled by the call webhook. When a webhook is lost, this sweep
settles it. Settlement is idempotent, so running the sweep while webhooks arrive is safe.

RULES:
1. Only CONNECTED orders with a start_time are considered
2. Deadline = start_time + max_allowed_duration + grace (UTC)
3. Each order is settled independently; one failure never stops the sweep
"""
import logging
from datetime import timedelta

from django.utils import timezone

from billing.services.settlement_service import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_SKIPPED,
    STATUS_ZERO_CHARGE,
    build_settlement_service,
)
from consultations.lifecycle import OrderStatus
from consultations.models import ConsultationOrder

logger = logging.getLogger(__name__)


def find_stale_orders(now=None, grace_seconds=120):
    now = now or timezone.now()
    candidates = ConsultationOrder.objects.filter(
        status=OrderStatus.CONNECTED,
        start_time__isnull=False,
        start_time__lt=now - timedelta(seconds=grace_seconds),
    ).only("id", "order_id", "stream_call_cid", "start_time", "max_allowed_duration")
    return [
        order for order in candidates
        if order.start_time + timedelta(seconds=order.max_allowed_duration + grace_seconds) < now
    ]


def settle_stale_orders(now=None, service=None):
    """
    Settle every overdue CONNECTED order.

    Returns:
        dict: {
            'orders_checked': int,
            'orders_completed': int,
            'orders_zero_charge': int,
            'orders_skipped': int,
            'orders_failed': int
        }
    """
    now = now or timezone.now()
    service = service or build_settlement_service()
    grace = service.config.stale_grace_seconds

    stale = find_stale_orders(now=now, grace_seconds=grace)
    logger.info("[settle_stale_orders] Starting sweep at %s, %s stale orders", now, len(stale))

    counts = {
        'orders_checked': len(stale),
        'orders_completed': 0,
        'orders_zero_charge': 0,
        'orders_skipped': 0,
        'orders_failed': 0,
    }
    status_keys = {
        STATUS_COMPLETED: 'orders_completed',
        STATUS_ZERO_CHARGE: 'orders_zero_charge',
        STATUS_SKIPPED: 'orders_skipped',
        STATUS_ERROR: 'orders_failed',
    }
    for order in stale:
        result = service.settle(order.call_reference)
        counts[status_keys[result.status]] += 1
        if result.status == STATUS_ERROR:
            logger.error("[settle_stale_orders] order_id=%s failed: %s", order.order_id, result.message)

    logger.info("[settle_stale_orders] Done: %s", counts)
    return counts
