"""
Order lookups and presence bookkeeping. Settlement itself lives in billing.services.settlement_service;
this module only moves orders INITIATED -> CONNECTED (both parties joined) and -> CANCELLED.
"""
import logging
from typing import Optional, Tuple

from django.db import transaction
from django.utils import timezone

from accounts.models import ExpertProfile
from consultations.lifecycle import OrderStatus, ensure_transition
from consultations.models import ConsultationOrder

logger = logging.getLogger(__name__)

PARTY_USER = "user"
PARTY_EXPERT = "expert"


class CallReferenceError(ValueError):
    """Raised for a call reference that is not of the form `{type}:{id}`."""
    pass


def parse_call_reference(call_reference: str) -> Tuple[str, str]:
    """Split `{type}:{id}` into (call_type, call_id)."""
    if not call_reference or not isinstance(call_reference, str):
        raise CallReferenceError("Call reference is empty")
    call_type, sep, call_id = call_reference.strip().partition(":")
    if not sep or not call_type or not call_id:
        raise CallReferenceError(f"Invalid call reference: {call_reference!r}")
    return call_type, call_id


def find_order_by_call_reference(call_reference: str) -> Optional[ConsultationOrder]:
    """
    Resolve a call reference to its order: stored `stream_call_cid` first, then the id part
    of the reference as `order_id`. Raises CallReferenceError when the reference is malformed.
    """
    _, call_id = parse_call_reference(call_reference)
    order = (
        ConsultationOrder.objects.select_related("user", "expert")
        .filter(stream_call_cid=call_reference.strip())
        .first()
    )
    if order is None:
        order = ConsultationOrder.objects.select_related("user", "expert").filter(order_id=call_id).first()
    return order


def party_for(order: ConsultationOrder, party_id: str) -> Optional[str]:
    """Return PARTY_USER / PARTY_EXPERT for a timeline party id, or None for strangers."""
    party_id = str(party_id)
    if party_id == order.user.party_id:
        return PARTY_USER
    if party_id == order.expert.party_id:
        return PARTY_EXPERT
    return None


def has_other_connected_orders(expert_id, exclude_order_pk) -> bool:
    return (
        ConsultationOrder.objects.filter(expert_id=expert_id, status=OrderStatus.CONNECTED)
        .exclude(pk=exclude_order_pk)
        .exists()
    )


def set_expert_status(expert: ExpertProfile, status: str, now=None) -> None:
    expert.consultation_status = status
    expert.consultation_status_updated_at = now or timezone.now()
    expert.save(update_fields=["consultation_status", "consultation_status_updated_at"])


def release_expert_if_idle(expert: ExpertProfile, exclude_order_pk, now=None) -> bool:
    """Mark the expert FREE unless another CONNECTED order still keeps them busy."""
    if has_other_connected_orders(expert.pk, exclude_order_pk):
        return False
    set_expert_status(expert, ExpertProfile.CONSULTATION_FREE, now=now)
    return True


@transaction.atomic()
def record_participant_joined(order: ConsultationOrder, party_id: str, joined_at=None) -> ConsultationOrder:
    """
    Record that a party joined the call. When both have joined, the order becomes CONNECTED
    and the expert is marked BUSY. Repeated joins (reconnects) keep the first timestamps.
    """
    joined_at = joined_at or timezone.now()
    order = ConsultationOrder.objects.select_for_update().select_related("user", "expert").get(pk=order.pk)
    party = party_for(order, party_id)
    if party is None:
        logger.warning("record_participant_joined: unknown party order_id=%s party_id=%s", order.order_id, party_id)
        return order
    if order.status != OrderStatus.INITIATED and order.status != OrderStatus.CONNECTED:
        logger.info(
            "record_participant_joined: ignoring join on %s order order_id=%s", order.status, order.order_id
        )
        return order

    update_fields = []
    if party == PARTY_USER and order.user_joined_at is None:
        order.user_joined_at = joined_at
        update_fields.append("user_joined_at")
    if party == PARTY_EXPERT and order.expert_joined_at is None:
        order.expert_joined_at = joined_at
        update_fields.append("expert_joined_at")

    if order.user_joined_at and order.expert_joined_at and order.both_participants_joined_at is None:
        both_at = max(order.user_joined_at, order.expert_joined_at)
        ensure_transition(order.status, OrderStatus.CONNECTED)
        order.both_participants_joined_at = both_at
        order.start_time = order.start_time or both_at
        order.status = OrderStatus.CONNECTED
        update_fields += ["both_participants_joined_at", "start_time", "status"]
        expert = ExpertProfile.objects.select_for_update().get(pk=order.expert_id)
        set_expert_status(expert, ExpertProfile.CONSULTATION_BUSY, now=both_at)
        logger.info("record_participant_joined: order connected order_id=%s", order.order_id)

    if update_fields:
        order.save(update_fields=update_fields)
    return order


@transaction.atomic()
def record_participant_left(order: ConsultationOrder, party_id: str, left_at=None) -> ConsultationOrder:
    """Record the latest departure as the call end time. Settlement is triggered by the caller."""
    left_at = left_at or timezone.now()
    order = ConsultationOrder.objects.select_for_update().select_related("user", "expert").get(pk=order.pk)
    if party_for(order, party_id) is None:
        logger.warning("record_participant_left: unknown party order_id=%s party_id=%s", order.order_id, party_id)
        return order
    if order.status != OrderStatus.CONNECTED:
        return order
    if order.end_time is None or left_at > order.end_time:
        order.end_time = left_at
        order.save(update_fields=["end_time"])
    return order


@transaction.atomic()
def cancel_order(order: ConsultationOrder, now=None) -> ConsultationOrder:
    """Cancel an unsettled order. Raises InvalidTransition for terminal orders."""
    now = now or timezone.now()
    order = ConsultationOrder.objects.select_for_update().get(pk=order.pk)
    was_connected = order.status == OrderStatus.CONNECTED
    ensure_transition(order.status, OrderStatus.CANCELLED)
    order.status = OrderStatus.CANCELLED
    order.end_time = order.end_time or now
    order.save(update_fields=["status", "end_time"])
    if was_connected:
        expert = ExpertProfile.objects.select_for_update().get(pk=order.expert_id)
        release_expert_if_idle(expert, exclude_order_pk=order.pk, now=now)
    logger.info("cancel_order: order cancelled order_id=%s", order.order_id)
    return order
