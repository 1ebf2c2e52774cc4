from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest import TestCase
from unittest.mock import Mock, patch

from django.db import OperationalError
from django.test import TestCase as DjangoTestCase
from django.utils import timezone

from accounts.models import CustomUser, ExpertProfile, UserProfile
from billing.config import SettlementConfig
from billing.services.settlement_service import SettlementService
from consultations.cleanup.stale_orders import find_stale_orders, settle_stale_orders
from consultations.lifecycle import (
    InvalidTransition,
    OrderStatus,
    can_transition,
    ensure_transition,
    is_settleable,
)
from consultations.models import ConsultationOrder
from consultations.presence import (
    InvalidIntervalError,
    PresenceInterval,
    calculate_simple_billable_seconds,
    compute_overlap_seconds,
    merge_intervals,
    parse_stored_intervals,
)
from consultations.services.order_service import (
    CallReferenceError,
    cancel_order,
    find_order_by_call_reference,
    parse_call_reference,
    record_participant_joined,
    record_participant_left,
)

T0 = datetime(2025, 3, 1, 10, 0, 0, tzinfo=dt_timezone.utc)


def span(start, end=None):
    """Interval in seconds relative to T0; end=None leaves it open."""
    return PresenceInterval(
        joined_at=T0 + timedelta(seconds=start),
        left_at=T0 + timedelta(seconds=end) if end is not None else None,
    )


class OverlapCalculatorTests(TestCase):
    def test_simple_overlap(self):
        self.assertEqual(compute_overlap_seconds([span(0, 100)], [span(50, 150)], cap_seconds=None), 50)

    def test_reconnect_segments_sum_pairwise_intersections(self):
        user = [span(0, 30), span(40, 100)]
        expert = [span(20, 90)]
        self.assertEqual(compute_overlap_seconds(user, expert, cap_seconds=None), 60)

    def test_overlapping_segments_of_one_party_are_coalesced(self):
        # Duplicate join events for the same party must not bill the shared 50s twice
        user = [span(0, 100), span(50, 120)]
        expert = [span(0, 200)]
        self.assertEqual(compute_overlap_seconds(user, expert, cap_seconds=None), 120)

    def test_touching_segments_merge(self):
        self.assertEqual(merge_intervals([span(10, 20), span(0, 10)], now=T0), [
            (T0, T0 + timedelta(seconds=20)),
        ])

    def test_cap_limits_billable_seconds(self):
        self.assertEqual(compute_overlap_seconds([span(0, 500)], [span(0, 500)], cap_seconds=300), 300)

    def test_empty_list_gives_zero(self):
        self.assertEqual(compute_overlap_seconds([], [span(0, 100)], cap_seconds=600), 0)
        self.assertEqual(compute_overlap_seconds([span(0, 100)], [], cap_seconds=600), 0)

    def test_open_intervals_close_at_now(self):
        now = T0 + timedelta(seconds=90)
        self.assertEqual(compute_overlap_seconds([span(0)], [span(30)], cap_seconds=None, now=now), 60)

    def test_fractional_seconds_are_truncated(self):
        a = [PresenceInterval(T0, T0 + timedelta(seconds=10, milliseconds=999))]
        b = [PresenceInterval(T0, T0 + timedelta(seconds=20))]
        self.assertEqual(compute_overlap_seconds(a, b, cap_seconds=None), 10)

    def test_disjoint_presence_gives_zero(self):
        self.assertEqual(compute_overlap_seconds([span(0, 10)], [span(20, 30)], cap_seconds=None), 0)

    def test_scenario_order(self):
        self.assertEqual(compute_overlap_seconds([span(0, 300)], [span(60, 360)], cap_seconds=600), 240)


class PresenceIntervalTests(TestCase):
    def test_left_before_joined_is_rejected(self):
        with self.assertRaises(InvalidIntervalError):
            PresenceInterval(joined_at=T0, left_at=T0 - timedelta(seconds=1))

    def test_dict_round_trip_keeps_open_end(self):
        interval = span(5)
        self.assertEqual(PresenceInterval.from_dict(interval.to_dict()), interval)
        self.assertTrue(interval.is_open)

    def test_parse_stored_intervals(self):
        self.assertIsNone(parse_stored_intervals(None))
        self.assertEqual(parse_stored_intervals([]), [])
        parsed = parse_stored_intervals([{"joined_at": "2025-03-01T10:00:00Z", "left_at": "2025-03-01T10:01:00Z"}])
        self.assertEqual(parsed, [span(0, 60)])

    def test_parse_stored_intervals_rejects_garbage(self):
        with self.assertRaises(InvalidIntervalError):
            parse_stored_intervals({"joined_at": "x"})
        with self.assertRaises(InvalidIntervalError):
            parse_stored_intervals([{"joined_at": "not a date"}])


class SimpleBillableSecondsTests(TestCase):
    def test_elapsed_since_both_joined(self):
        self.assertEqual(calculate_simple_billable_seconds(T0, T0 + timedelta(seconds=95), cap_seconds=600), 95)

    def test_capped_and_never_negative(self):
        self.assertEqual(calculate_simple_billable_seconds(T0, T0 + timedelta(hours=1), cap_seconds=600), 600)
        self.assertEqual(calculate_simple_billable_seconds(T0, T0 - timedelta(seconds=5), cap_seconds=600), 0)

    def test_missing_join_time(self):
        self.assertEqual(calculate_simple_billable_seconds(None, T0, cap_seconds=600), 0)

    def test_open_call_uses_now(self):
        now = T0 + timedelta(seconds=42)
        self.assertEqual(calculate_simple_billable_seconds(T0, None, cap_seconds=None, now=now), 42)


class LifecycleTests(TestCase):
    def test_allowed_edges(self):
        self.assertTrue(can_transition(OrderStatus.INITIATED, OrderStatus.CONNECTED))
        self.assertTrue(can_transition(OrderStatus.CONNECTED, OrderStatus.COMPLETED))
        self.assertTrue(can_transition(OrderStatus.CONNECTED, OrderStatus.CANCELLED))

    def test_terminal_states_do_not_move(self):
        with self.assertRaises(InvalidTransition):
            ensure_transition(OrderStatus.COMPLETED, OrderStatus.COMPLETED)
        with self.assertRaises(InvalidTransition):
            ensure_transition(OrderStatus.CANCELLED, OrderStatus.CONNECTED)

    def test_initiated_cannot_complete(self):
        self.assertFalse(can_transition(OrderStatus.INITIATED, OrderStatus.COMPLETED))

    def test_only_connected_is_settleable(self):
        self.assertTrue(is_settleable(OrderStatus.CONNECTED))
        self.assertFalse(is_settleable(OrderStatus.COMPLETED))
        self.assertFalse(is_settleable("UNKNOWN"))


class CallReferenceTests(TestCase):
    def test_parse(self):
        self.assertEqual(parse_call_reference("consultation_video:abc123"), ("consultation_video", "abc123"))

    def test_malformed(self):
        for bad in ("", "abc123", ":abc", "type:", None):
            with self.assertRaises(CallReferenceError):
                parse_call_reference(bad)


def make_parties(suffix=""):
    expert_user = CustomUser.objects.create_user(email=f"expert{suffix}@example.com", password="pw-123456")
    client_user = CustomUser.objects.create_user(email=f"client{suffix}@example.com", password="pw-123456")
    expert = ExpertProfile.objects.create(user=expert_user, first_name="Eve", last_name="Expert")
    client = UserProfile.objects.create(user=client_user, first_name="Carl", last_name="Client")
    return expert, client


def make_order(expert, client, **overrides):
    fields = dict(
        user=client,
        expert=expert,
        status=OrderStatus.INITIATED,
        expert_rate_per_minute=Decimal("5.00"),
        currency="INR",
        max_allowed_duration=600,
    )
    fields.update(overrides)
    return ConsultationOrder.objects.create(**fields)


class OrderServiceTests(DjangoTestCase):
    def setUp(self):
        self.expert, self.client_profile = make_parties()

    def test_find_by_stored_call_cid_then_order_id(self):
        by_cid = make_order(self.expert, self.client_profile, stream_call_cid="default:room-1")
        by_id = make_order(self.expert, self.client_profile, order_id="order-42")
        self.assertEqual(find_order_by_call_reference("default:room-1"), by_cid)
        self.assertEqual(find_order_by_call_reference("consultation_video:order-42"), by_id)
        self.assertIsNone(find_order_by_call_reference("consultation_video:missing"))

    def test_both_joins_connect_order_and_mark_expert_busy(self):
        order = make_order(self.expert, self.client_profile)
        record_participant_joined(order, self.client_profile.party_id, joined_at=T0)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.INITIATED)

        record_participant_joined(order, self.expert.party_id, joined_at=T0 + timedelta(seconds=30))
        order.refresh_from_db()
        self.expert.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.CONNECTED)
        self.assertEqual(order.both_participants_joined_at, T0 + timedelta(seconds=30))
        self.assertEqual(order.start_time, T0 + timedelta(seconds=30))
        self.assertTrue(self.expert.is_busy)

    def test_rejoin_keeps_first_join_time(self):
        order = make_order(self.expert, self.client_profile)
        record_participant_joined(order, self.client_profile.party_id, joined_at=T0)
        record_participant_joined(order, self.client_profile.party_id, joined_at=T0 + timedelta(minutes=2))
        order.refresh_from_db()
        self.assertEqual(order.user_joined_at, T0)

    def test_unknown_party_is_ignored(self):
        order = make_order(self.expert, self.client_profile)
        record_participant_joined(order, "someone-else", joined_at=T0)
        order.refresh_from_db()
        self.assertIsNone(order.user_joined_at)
        self.assertIsNone(order.expert_joined_at)

    def test_left_records_latest_end_time(self):
        order = make_order(self.expert, self.client_profile, status=OrderStatus.CONNECTED)
        record_participant_left(order, self.client_profile.party_id, left_at=T0 + timedelta(seconds=50))
        record_participant_left(order, self.expert.party_id, left_at=T0 + timedelta(seconds=40))
        order.refresh_from_db()
        self.assertEqual(order.end_time, T0 + timedelta(seconds=50))

    def test_cancel_connected_order_frees_expert(self):
        order = make_order(self.expert, self.client_profile, status=OrderStatus.CONNECTED)
        self.expert.consultation_status = ExpertProfile.CONSULTATION_BUSY
        self.expert.save()
        cancel_order(order, now=T0)
        order.refresh_from_db()
        self.expert.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertFalse(self.expert.is_busy)

    def test_cancel_keeps_expert_busy_with_other_call(self):
        order = make_order(self.expert, self.client_profile, status=OrderStatus.CONNECTED)
        make_order(self.expert, self.client_profile, status=OrderStatus.CONNECTED)
        self.expert.consultation_status = ExpertProfile.CONSULTATION_BUSY
        self.expert.save()
        cancel_order(order, now=T0)
        self.expert.refresh_from_db()
        self.assertTrue(self.expert.is_busy)

    def test_cancel_completed_order_is_rejected(self):
        order = make_order(self.expert, self.client_profile, status=OrderStatus.COMPLETED)
        with self.assertRaises(InvalidTransition):
            cancel_order(order)


class StaleOrderSweepTests(DjangoTestCase):
    def setUp(self):
        self.expert, self.client_profile = make_parties()
        self.now = timezone.now()

    def test_only_overdue_connected_orders_are_stale(self):
        overdue = make_order(
            self.expert, self.client_profile,
            status=OrderStatus.CONNECTED, start_time=self.now - timedelta(minutes=20),
        )
        make_order(
            self.expert, self.client_profile,
            status=OrderStatus.CONNECTED, start_time=self.now - timedelta(minutes=5),
        )
        make_order(
            self.expert, self.client_profile,
            status=OrderStatus.COMPLETED, start_time=self.now - timedelta(hours=2),
        )
        self.assertEqual([o.pk for o in find_stale_orders(now=self.now, grace_seconds=120)], [overdue.pk])

    def test_sweep_counts_results(self):
        make_order(
            self.expert, self.client_profile, order_id="stale-1",
            status=OrderStatus.CONNECTED, start_time=self.now - timedelta(minutes=20),
        )
        make_order(
            self.expert, self.client_profile, order_id="stale-2",
            status=OrderStatus.CONNECTED, start_time=self.now - timedelta(minutes=30),
        )
        service = Mock()
        service.config = SimpleNamespace(stale_grace_seconds=120)
        service.settle.side_effect = [
            SimpleNamespace(status="completed", message=""),
            SimpleNamespace(status="error", message="boom"),
        ]

        counts = settle_stale_orders(now=self.now, service=service)

        self.assertEqual(counts["orders_checked"], 2)
        self.assertEqual(counts["orders_completed"], 1)
        self.assertEqual(counts["orders_failed"], 1)
        called_refs = sorted(call.args[0] for call in service.settle.call_args_list)
        self.assertEqual(called_refs, ["consultation_video:stale-1", "consultation_video:stale-2"])

    @patch(
        "billing.services.settlement_service.find_order_by_call_reference",
        side_effect=OperationalError("db down"),
    )
    def test_sweep_survives_database_errors(self, find_order_by_call_reference):
        for order_id in ("stale-1", "stale-2"):
            make_order(
                self.expert, self.client_profile, order_id=order_id,
                status=OrderStatus.CONNECTED, start_time=self.now - timedelta(minutes=20),
            )

        counts = settle_stale_orders(now=self.now, service=SettlementService(config=SettlementConfig()))

        self.assertEqual(counts["orders_checked"], 2)
        self.assertEqual(counts["orders_failed"], 2)
        self.assertEqual(find_order_by_call_reference.call_count, 2)
