"""
Consultation settlement: turn a finished call into one charge, one expert credit and a closed order.

settle() is safe under at-least-once delivery. Webhook retries and the stale-order sweep may call
it repeatedly or concurrently for the same call. The committing write only happens while the order,
re-read under row lock inside the same transaction, is still CONNECTED; a caller that loses that
race gets `skipped`, not an error.

Outline:
    1. resolve call reference -> order            (error: not_found / invalid_reference)
    2. fast status check                            (skipped if COMPLETED, error if not CONNECTED)
    3. billable seconds: stored intervals > call timeline > both-joined fallback > 0
    4. zero seconds or zero cost -> zero-charge transaction
    5. otherwise charge transaction (reads, re-check, writes)
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.utils import timezone

from accounts.models import ExpertProfile, UserProfile
from billing.config import SettlementConfig
from billing.services.call_timeline_service import StreamTimelineClient, TimelineUnavailable
from billing.services.earnings_service import lock_earnings_account, record_order_earning
from billing.services.payout_service import calculate_payout_breakdown, extract_real_ratio
from billing.services.pricing import (
    calculate_cost,
    calculate_expert_earnings,
    calculate_platform_fee,
    resolve_platform_fee_percent,
    round_money,
)
from billing.services.transaction_runner import run_in_transaction
from billing.services.wallet_service import debit_wallet_for_order, lock_wallet
from consultations.lifecycle import OrderStatus, ensure_transition
from consultations.models import ConsultationOrder
from consultations.presence import (
    calculate_simple_billable_seconds,
    compute_overlap_seconds,
    parse_stored_intervals,
)
from consultations.services.order_service import (
    CallReferenceError,
    find_order_by_call_reference,
    has_other_connected_orders,
    set_expert_status,
)

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_ZERO_CHARGE = "zero_charge"
STATUS_ERROR = "error"

REASON_ALREADY_COMPLETED = "already_completed"
REASON_NOT_FOUND = "not_found"
REASON_INVALID_STATE = "invalid_state"
REASON_INVALID_REFERENCE = "invalid_reference"
REASON_UNEXPECTED = "unexpected"

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class SettlementResult:
    status: str
    order_id: Optional[str] = None
    billable_seconds: Optional[int] = None
    cost: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None
    expert_earnings: Optional[Decimal] = None
    reason: str = ""
    message: str = ""

    @classmethod
    def completed(cls, order_id, billable_seconds, cost, platform_fee, expert_earnings):
        return cls(
            status=STATUS_COMPLETED,
            order_id=order_id,
            billable_seconds=billable_seconds,
            cost=cost,
            platform_fee=platform_fee,
            expert_earnings=expert_earnings,
            message="Charge applied",
        )

    @classmethod
    def zero_charge(cls, order_id):
        return cls(
            status=STATUS_ZERO_CHARGE,
            order_id=order_id,
            billable_seconds=0,
            cost=ZERO,
            platform_fee=ZERO,
            expert_earnings=ZERO,
            message="No billable time; order closed without charge",
        )

    @classmethod
    def skipped(cls, order_id, reason=REASON_ALREADY_COMPLETED):
        return cls(status=STATUS_SKIPPED, order_id=order_id, reason=reason, message="Order already settled")

    @classmethod
    def error(cls, message, reason=REASON_UNEXPECTED, order_id=None):
        return cls(status=STATUS_ERROR, order_id=order_id, reason=reason, message=message)

    @property
    def success(self) -> bool:
        return self.status != STATUS_ERROR

    def to_dict(self) -> dict:
        data = {"status": self.status, "success": self.success}
        for key in ("order_id", "billable_seconds", "reason", "message"):
            value = getattr(self, key)
            if value not in (None, ""):
                data[key] = value
        for key in ("cost", "platform_fee", "expert_earnings"):
            value = getattr(self, key)
            if value is not None:
                data[key] = str(value)
        return data


@dataclass(frozen=True)
class RaceLoss:
    """Returned by a settlement transaction that found the order no longer CONNECTED."""

    observed_status: str


@dataclass(frozen=True)
class ChargeApplied:
    billable_seconds: int
    cost: Decimal
    platform_fee: Decimal
    expert_earnings: Decimal


class SettlementService:
    def __init__(self, config: Optional[SettlementConfig] = None, timeline_client=None, clock=timezone.now):
        self.config = config or SettlementConfig()
        self.timeline_client = timeline_client
        self.clock = clock

    def settle(self, call_reference: str) -> SettlementResult:
        logger.info("settle: start call=%s", call_reference)
        try:
            order = find_order_by_call_reference(call_reference)
        except CallReferenceError as e:
            logger.warning("settle: invalid call reference call=%s: %s", call_reference, e)
            return SettlementResult.error(str(e), reason=REASON_INVALID_REFERENCE)
        except Exception as e:
            logger.exception("settle: order lookup failed call=%s", call_reference)
            return SettlementResult.error(str(e))

        if order is None:
            logger.warning("settle: order not found call=%s", call_reference)
            return SettlementResult.error(f"Order not found for call {call_reference}", reason=REASON_NOT_FOUND)

        # Advisory only; the transaction re-checks under lock
        if order.status == OrderStatus.COMPLETED:
            logger.info("settle: skipped, already completed order_id=%s", order.order_id)
            return SettlementResult.skipped(order.order_id)
        if order.status != OrderStatus.CONNECTED:
            logger.warning("settle: order not settleable order_id=%s status=%s", order.order_id, order.status)
            return SettlementResult.error(
                f"Order is {order.status}, expected {OrderStatus.CONNECTED}",
                reason=REASON_INVALID_STATE,
                order_id=order.order_id,
            )

        try:
            now = self.clock()
            billable_seconds = self.billable_seconds_for(order, call_reference, now)
            cost, fee, earnings = quote_charge(
                billable_seconds,
                order.expert_rate_per_minute,
                self.fee_percent_for(order, order.expert),
            )
            logger.info(
                "settle: computed order_id=%s billable_seconds=%s rate=%s cost=%s fee=%s earnings=%s",
                order.order_id, billable_seconds, order.expert_rate_per_minute, cost, fee, earnings,
            )

            if billable_seconds == 0 or cost == 0:
                outcome = run_in_transaction(
                    lambda: self._apply_zero_charge(order.pk, now),
                    attempts=self.config.transaction_attempts,
                )
                if isinstance(outcome, RaceLoss):
                    return self._race_lost(order, outcome)
                logger.info("settle: zero charge order_id=%s", order.order_id)
                return SettlementResult.zero_charge(order.order_id)

            outcome = run_in_transaction(
                lambda: self._apply_charge(order.pk, billable_seconds, cost, now),
                attempts=self.config.transaction_attempts,
            )
            if isinstance(outcome, RaceLoss):
                return self._race_lost(order, outcome)
            logger.info(
                "settle: charge committed order_id=%s cost=%s fee=%s earnings=%s",
                order.order_id, outcome.cost, outcome.platform_fee, outcome.expert_earnings,
            )
            return SettlementResult.completed(
                order.order_id,
                outcome.billable_seconds,
                outcome.cost,
                outcome.platform_fee,
                outcome.expert_earnings,
            )
        except Exception as e:
            logger.exception("settle: unexpected error order_id=%s", order.order_id)
            return SettlementResult.error(str(e), order_id=order.order_id)

    def billable_seconds_for(self, order: ConsultationOrder, call_reference: str, now) -> int:
        """
        Seconds both parties were present, capped at what the payer paid for.

        Intervals stored on the order win when both sides have some (orders from the older
        accumulation flow). Otherwise the call timeline is fetched; if that fails the time since
        both joined is billed, else nothing.
        """
        cap = order.max_allowed_duration
        end = order.end_time or now

        user_stored = parse_stored_intervals(order.user_intervals)
        expert_stored = parse_stored_intervals(order.expert_intervals)
        if user_stored and expert_stored:
            logger.info("billable_seconds_for: using stored intervals order_id=%s", order.order_id)
            return compute_overlap_seconds(user_stored, expert_stored, cap, now=end)
        if user_stored or expert_stored:
            logger.info("billable_seconds_for: stored intervals one-sided, asking timeline order_id=%s", order.order_id)

        try:
            if self.timeline_client is None:
                raise TimelineUnavailable("No call timeline client configured")
            timeline = self.timeline_client.get_presence_timeline(order.stream_call_cid or call_reference)
        except Exception as e:
            if order.both_participants_joined_at is None:
                logger.warning(
                    "billable_seconds_for: timeline unavailable and no join time order_id=%s: %s",
                    order.order_id, e,
                )
                return 0
            seconds = calculate_simple_billable_seconds(order.both_participants_joined_at, order.end_time, cap, now=now)
            logger.warning(
                "billable_seconds_for: timeline unavailable, billing since both joined order_id=%s seconds=%s: %s",
                order.order_id, seconds, e,
            )
            return seconds

        if not timeline.found:
            logger.info("billable_seconds_for: call has no session order_id=%s", order.order_id)
            return 0
        user_intervals = timeline.intervals_for(order.user.party_id)
        expert_intervals = timeline.intervals_for(order.expert.party_id)
        logger.info(
            "billable_seconds_for: using call timeline order_id=%s user_intervals=%s expert_intervals=%s",
            order.order_id, len(user_intervals), len(expert_intervals),
        )
        return compute_overlap_seconds(user_intervals, expert_intervals, cap, now=end)

    def fee_percent_for(self, order: ConsultationOrder, expert: ExpertProfile) -> Decimal:
        if order.platform_fee_percent is not None:
            return order.platform_fee_percent
        return resolve_platform_fee_percent(
            expert.platform_fee_config,
            order_type=order.consultation_type,
            category=order.category,
            default=self.config.default_platform_fee_percent,
        )

    def _apply_zero_charge(self, order_pk, now):
        order = ConsultationOrder.objects.select_for_update().get(pk=order_pk)
        if order.status != OrderStatus.CONNECTED:
            return RaceLoss(order.status)
        expert = ExpertProfile.objects.select_for_update().get(pk=order.expert_id)
        expert_still_busy = has_other_connected_orders(expert.pk, order.pk)

        ensure_transition(order.status, OrderStatus.COMPLETED)
        order.status = OrderStatus.COMPLETED
        order.end_time = order.end_time or now
        order.duration_seconds = 0
        order.cost = ZERO
        order.platform_fee_amount = ZERO
        order.expert_earnings = ZERO
        order.save(update_fields=[
            "status", "end_time", "duration_seconds", "cost", "platform_fee_amount", "expert_earnings",
        ])
        if not expert_still_busy:
            set_expert_status(expert, ExpertProfile.CONSULTATION_FREE, now=now)
        return None

    def _apply_charge(self, order_pk, billable_seconds: int, cost: Decimal, now):
        # Reads (all under row lock) before any write
        order = ConsultationOrder.objects.select_for_update().get(pk=order_pk)
        if order.status != OrderStatus.CONNECTED:
            return RaceLoss(order.status)
        expert = ExpertProfile.objects.select_for_update().get(pk=order.expert_id)
        payer = UserProfile.objects.get(pk=order.user_id)
        wallet = lock_wallet(payer, expert, order.currency)
        earnings_account = lock_earnings_account(expert, order.currency)
        expert_still_busy = has_other_connected_orders(expert.pk, order.pk)

        fee_percent = self.fee_percent_for(order, expert)
        real_ratio = extract_real_ratio(wallet.balance, wallet.real_balance)
        breakdown = calculate_payout_breakdown(ZERO, cost, real_ratio, fee_percent)
        logger.info(
            "_apply_charge: payout order_id=%s real_ratio=%s effective_real=%s fee_percent=%s fee=%s earnings=%s",
            order.order_id, real_ratio, breakdown.effective_real_amount, fee_percent,
            breakdown.fee_amount, breakdown.expert_earnings,
        )

        # Writes
        debit_wallet_for_order(wallet, order, cost, billable_seconds)
        record_order_earning(
            earnings_account,
            order,
            gross_amount=breakdown.effective_real_amount,
            platform_fee=breakdown.fee_amount,
            net_amount=breakdown.expert_earnings,
        )

        ensure_transition(order.status, OrderStatus.COMPLETED)
        order.status = OrderStatus.COMPLETED
        order.end_time = order.end_time or now
        order.duration_seconds = billable_seconds
        order.cost = round_money(cost)
        order.platform_fee_amount = breakdown.fee_amount
        order.expert_earnings = breakdown.expert_earnings
        order.save(update_fields=[
            "status", "end_time", "duration_seconds", "cost", "platform_fee_amount", "expert_earnings",
        ])
        if not expert_still_busy:
            set_expert_status(expert, ExpertProfile.CONSULTATION_FREE, now=now)

        return ChargeApplied(
            billable_seconds=billable_seconds,
            cost=order.cost,
            platform_fee=breakdown.fee_amount,
            expert_earnings=breakdown.expert_earnings,
        )

    def _race_lost(self, order, outcome: RaceLoss) -> SettlementResult:
        logger.info(
            "settle: race lost, order settled elsewhere order_id=%s observed_status=%s",
            order.order_id, outcome.observed_status,
        )
        if outcome.observed_status == OrderStatus.COMPLETED:
            return SettlementResult.skipped(order.order_id)
        return SettlementResult.skipped(order.order_id, reason=f"order_{str(outcome.observed_status).lower()}")


def quote_charge(billable_seconds: int, rate_per_minute, fee_percent):
    """Cost, fee and earnings for a duration, before any wallet ratio is applied."""
    cost = calculate_cost(billable_seconds, rate_per_minute)
    fee = calculate_platform_fee(cost, fee_percent)
    return cost, fee, calculate_expert_earnings(cost, fee)


def build_settlement_service() -> SettlementService:
    return SettlementService(
        config=SettlementConfig.from_settings(),
        timeline_client=StreamTimelineClient.from_settings(),
    )


def settle_call(call_reference: str) -> SettlementResult:
    """Entry point for webhooks, admin triggers and the stale-order sweep."""
    return build_settlement_service().settle(call_reference)
