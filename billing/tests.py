import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest import TestCase
from unittest.mock import MagicMock, Mock, patch

import jwt
import requests
from django.db import OperationalError
from django.test import TestCase as DjangoTestCase, override_settings
from django.urls import reverse

from accounts.models import CustomUser, ExpertProfile, UserProfile
from billing.config import SettlementConfig
from billing.models import (
    ExpertEarning,
    ExpertEarningsAccount,
    ExpertWallet,
    Payment,
    TransactionType,
    WalletTransaction,
)
from billing.services.call_timeline_service import (
    CallTimeline,
    ParticipantTimeline,
    StreamTimelineClient,
    TimelineUnavailable,
    parse_call_payload,
)
from billing.services.earnings_service import get_earnings_balance
from billing.services.payment_service import (
    BillingError,
    create_wallet_recharge_payment_intent,
    from_minor_units,
    to_minor_units,
)
from billing.services.payout_service import (
    calculate_payout_breakdown,
    extract_real_ratio,
    real_balance_after_debit,
    real_balance_credit_for,
)
from billing.services.pricing import (
    calculate_cost,
    calculate_expert_earnings,
    calculate_platform_fee,
    resolve_platform_fee_percent,
    round_money,
)
from billing.services.settlement_service import SettlementResult, SettlementService
from billing.services.transaction_runner import run_in_transaction
from billing.services.wallet_service import WalletError, credit_wallet, recharge_wallet
from consultations.lifecycle import OrderStatus
from consultations.models import ConsultationOrder
from consultations.presence import PresenceInterval

T0 = datetime(2025, 3, 1, 10, 0, 0, tzinfo=dt_timezone.utc)
NOW = T0 + timedelta(hours=1)


def span(start, end=None):
    return PresenceInterval(
        joined_at=T0 + timedelta(seconds=start),
        left_at=T0 + timedelta(seconds=end) if end is not None else None,
    )


def stored(*spans):
    return [span(start, end).to_dict() for start, end in spans]


class PricingTests(TestCase):
    def test_cost_bills_fractional_minutes(self):
        self.assertEqual(calculate_cost(90, Decimal("10.0")), Decimal("15.00"))

    def test_cost_rounds_half_up_once(self):
        # 1s at 0.30/min = 0.005 -> 0.01
        self.assertEqual(calculate_cost(1, Decimal("0.30")), Decimal("0.01"))
        self.assertEqual(calculate_cost(240, 5), Decimal("20.00"))
        self.assertEqual(calculate_cost(0, Decimal("10")), Decimal("0.00"))

    def test_fee_and_earnings(self):
        fee = calculate_platform_fee(Decimal("7.92"), Decimal("10"))
        self.assertEqual(fee, Decimal("0.79"))
        self.assertEqual(calculate_expert_earnings(Decimal("7.92"), fee), Decimal("7.13"))

    def test_round_money_accepts_floats(self):
        self.assertEqual(round_money(2.675), Decimal("2.68"))

    def test_fee_resolution_priority(self):
        fee_config = {
            "default_fee_percent": 12,
            "fee_by_type": {"ON_DEMAND_CONSULTATION": 15},
            "fee_by_category": {"TAROT": 20},
        }
        self.assertEqual(resolve_platform_fee_percent(fee_config, "ON_DEMAND_CONSULTATION", "TAROT"), Decimal("20"))
        self.assertEqual(resolve_platform_fee_percent(fee_config, "ON_DEMAND_CONSULTATION", "VEDIC"), Decimal("15"))
        self.assertEqual(resolve_platform_fee_percent(fee_config, "OTHER", ""), Decimal("12"))
        self.assertEqual(resolve_platform_fee_percent({}, "OTHER", ""), Decimal("10"))
        self.assertEqual(resolve_platform_fee_percent(None, "", "", default=Decimal("7.5")), Decimal("7.5"))


class PayoutTests(TestCase):
    def test_commission_only_on_real_portion(self):
        breakdown = calculate_payout_breakdown(0, 100, Decimal("0.5"), 10)
        self.assertEqual(breakdown.effective_real_amount, Decimal("50.00"))
        self.assertEqual(breakdown.fee_amount, Decimal("5.00"))
        self.assertEqual(breakdown.expert_earnings, Decimal("45.00"))

    def test_ratio_is_clamped(self):
        self.assertEqual(calculate_payout_breakdown(10, 100, Decimal("1.7"), 0).effective_real_amount, Decimal("110.00"))
        self.assertEqual(calculate_payout_breakdown(10, 100, Decimal("-1"), 0).effective_real_amount, Decimal("10.00"))

    def test_legacy_wallet_ratio_is_one(self):
        self.assertEqual(extract_real_ratio(Decimal("500"), None), Decimal("1"))
        self.assertEqual(extract_real_ratio(Decimal("0"), None), Decimal("1"))

    def test_empty_wallet_ratio_is_one(self):
        self.assertEqual(extract_real_ratio(Decimal("0"), Decimal("0")), Decimal("1"))
        self.assertEqual(extract_real_ratio(Decimal("-5"), Decimal("0")), Decimal("1"))

    def test_ratio(self):
        self.assertEqual(extract_real_ratio(Decimal("200"), Decimal("50")), Decimal("0.25"))
        self.assertEqual(extract_real_ratio(Decimal("100"), Decimal("150")), Decimal("1"))

    def test_real_balance_after_debit(self):
        self.assertEqual(real_balance_after_debit(Decimal("200"), Decimal("100"), Decimal("100")), Decimal("50.00"))
        # Never above the new total
        self.assertEqual(real_balance_after_debit(Decimal("100"), Decimal("100"), Decimal("30")), Decimal("70.00"))
        # Overdraft clamps at zero
        self.assertEqual(real_balance_after_debit(Decimal("10"), Decimal("10"), Decimal("20")), Decimal("0.00"))

    def test_overdrawn_wallet_keeps_real_balance_at_zero(self):
        real = real_balance_after_debit(Decimal("10"), Decimal("10"), Decimal("30"))
        self.assertEqual(real, Decimal("0.00"))
        self.assertGreater(real, Decimal("10") - Decimal("30"))
        within_balance = real_balance_after_debit(Decimal("80"), Decimal("40"), Decimal("30"))
        self.assertLessEqual(within_balance, Decimal("50"))

    def test_real_balance_after_debit_edge_cases(self):
        self.assertIsNone(real_balance_after_debit(Decimal("100"), None, Decimal("10")))
        self.assertEqual(real_balance_after_debit(Decimal("0"), Decimal("-3"), Decimal("10")), Decimal("0.00"))
        self.assertEqual(real_balance_after_debit(Decimal("50"), Decimal("20"), Decimal("0")), Decimal("20.00"))

    def test_only_cash_credits_are_real(self):
        self.assertEqual(real_balance_credit_for("RECHARGE", Decimal("100")), Decimal("100.00"))
        self.assertEqual(real_balance_credit_for("REFUND", Decimal("25")), Decimal("25.00"))
        for kind in ("BONUS", "CASHBACK", "REFERRAL_BONUS"):
            self.assertEqual(real_balance_credit_for(kind, Decimal("100")), Decimal("0.00"))


class SettlementConfigTests(TestCase):
    @override_settings(
        SETTLEMENT_DEFAULT_CURRENCY="usd",
        SETTLEMENT_DEFAULT_PLATFORM_FEE_PERCENT="12.5",
        SETTLEMENT_TRANSACTION_ATTEMPTS=0,
    )
    def test_from_settings(self):
        config = SettlementConfig.from_settings()
        self.assertEqual(config.default_currency, "USD")
        self.assertEqual(config.default_platform_fee_percent, Decimal("12.5"))
        self.assertEqual(config.transaction_attempts, 1)

    @override_settings(SETTLEMENT_DEFAULT_CURRENCY="XYZ")
    def test_unsupported_currency(self):
        with self.assertRaises(ValueError):
            SettlementConfig.from_settings()


class TransactionRunnerTests(TestCase):
    def use_connection(self, tx_module, in_atomic_block=False):
        tx_module.get_connection.return_value = SimpleNamespace(in_atomic_block=in_atomic_block)
        tx_module.atomic.return_value = MagicMock()

    @patch("billing.services.transaction_runner.time.sleep")
    @patch("billing.services.transaction_runner.transaction")
    def test_retries_whole_body_on_conflict(self, tx_module, sleep):
        self.use_connection(tx_module)
        body = Mock(side_effect=[OperationalError("database is locked"), "ok"])

        self.assertEqual(run_in_transaction(body, attempts=3), "ok")
        self.assertEqual(body.call_count, 2)
        self.assertEqual(tx_module.atomic.call_count, 2)
        sleep.assert_called_once()

    @patch("billing.services.transaction_runner.time.sleep")
    @patch("billing.services.transaction_runner.transaction")
    def test_gives_up_after_attempts(self, tx_module, sleep):
        self.use_connection(tx_module)
        body = Mock(side_effect=OperationalError("deadlock detected"))

        with self.assertRaises(OperationalError):
            run_in_transaction(body, attempts=2)
        self.assertEqual(body.call_count, 2)

    @patch("billing.services.transaction_runner.transaction")
    def test_inside_outer_transaction_runs_once(self, tx_module):
        self.use_connection(tx_module, in_atomic_block=True)
        body = Mock(side_effect=OperationalError("deadlock detected"))

        with self.assertRaises(OperationalError):
            run_in_transaction(body, attempts=5)
        body.assert_called_once()


class CallTimelineTests(TestCase):
    def payload(self):
        return {
            "call": {
                "cid": "consultation_video:o1",
                "session": {
                    "participants": [
                        {"user_id": "7", "joined_at": "2025-03-01T10:00:00Z", "left_at": "2025-03-01T10:00:30Z"},
                        {"user": {"id": "7"}, "joined_at": "2025-03-01T10:00:40Z", "left_at": None},
                        {"user_id": "9", "joined_at": "2025-03-01T10:00:20Z", "left_at": "2025-03-01T10:01:30Z"},
                        {"joined_at": "2025-03-01T10:00:00Z"},
                        {"user_id": "11"},
                    ],
                },
            },
        }

    def test_parse_participants(self):
        timeline = parse_call_payload(self.payload())
        self.assertTrue(timeline.found)
        self.assertEqual(timeline.intervals_for("7"), [span(0, 30), span(40)])
        self.assertEqual(timeline.intervals_for(9), [span(20, 90)])
        self.assertEqual(timeline.intervals_for("11"), [])

    def test_no_session_means_not_found(self):
        self.assertFalse(parse_call_payload({"call": {"cid": "x:y"}}).found)

    def make_client(self, response=None, error=None):
        session = Mock()
        if error:
            session.get.side_effect = error
        else:
            session.get.return_value = response
        return StreamTimelineClient("key", "secret", "https://stream.test/video/", timeout=3, session=session), session

    def test_fetch_timeline(self):
        response = Mock(status_code=200)
        response.json.return_value = self.payload()
        client, session = self.make_client(response)

        timeline = client.get_presence_timeline("consultation_video:o1")

        self.assertTrue(timeline.found)
        args, kwargs = session.get.call_args
        self.assertEqual(args[0], "https://stream.test/video/call/consultation_video/o1")
        self.assertEqual(kwargs["params"], {"api_key": "key"})
        self.assertEqual(kwargs["headers"]["stream-auth-type"], "jwt")
        claims = jwt.decode(kwargs["headers"]["Authorization"], "secret", algorithms=["HS256"])
        self.assertEqual(claims["user_id"], "server")
        self.assertEqual(claims["exp"] - claims["iat"], 3600)

    def test_not_found_is_unavailable(self):
        client, _ = self.make_client(Mock(status_code=404))
        with self.assertRaises(TimelineUnavailable):
            client.get_presence_timeline("consultation_video:o1")

    def test_transport_error_is_unavailable(self):
        client, _ = self.make_client(error=requests.ConnectionError("down"))
        with self.assertRaises(TimelineUnavailable):
            client.get_presence_timeline("consultation_video:o1")

    def test_unconfigured_client(self):
        client = StreamTimelineClient("", "", "https://stream.test")
        with self.assertRaises(TimelineUnavailable):
            client.get_presence_timeline("consultation_video:o1")


class StubTimelineClient:
    def __init__(self, timeline=None, error=None):
        self.timeline = timeline
        self.error = error
        self.calls = []

    def get_presence_timeline(self, call_reference):
        self.calls.append(call_reference)
        if self.error:
            raise self.error
        return self.timeline


def make_parties():
    expert_user = CustomUser.objects.create_user(email="expert@example.com", password="pw-123456")
    client_user = CustomUser.objects.create_user(email="client@example.com", password="pw-123456")
    expert = ExpertProfile.objects.create(
        user=expert_user,
        first_name="Eve",
        last_name="Expert",
        consultation_status=ExpertProfile.CONSULTATION_BUSY,
    )
    client = UserProfile.objects.create(user=client_user, first_name="Carl", last_name="Client")
    return expert, client


class SettlementServiceTests(DjangoTestCase):
    def setUp(self):
        self.expert, self.payer = make_parties()
        recharge_wallet(self.payer, self.expert, "INR", Decimal("100.00"))

    def make_order(self, **overrides):
        fields = dict(
            user=self.payer,
            expert=self.expert,
            status=OrderStatus.CONNECTED,
            expert_rate_per_minute=Decimal("5.00"),
            currency="INR",
            max_allowed_duration=600,
            platform_fee_percent=Decimal("10"),
            start_time=T0,
            both_participants_joined_at=T0,
            end_time=T0 + timedelta(seconds=400),
            user_intervals=stored((0, 300)),
            expert_intervals=stored((60, 360)),
        )
        fields.update(overrides)
        return ConsultationOrder.objects.create(**fields)

    def service(self, timeline_client=None):
        return SettlementService(config=SettlementConfig(), timeline_client=timeline_client, clock=lambda: NOW)

    def wallet(self):
        return ExpertWallet.objects.get(user=self.payer, expert=self.expert, currency="INR")

    def test_settles_scenario_order(self):
        order = self.make_order()

        result = self.service().settle(order.call_reference)

        self.assertEqual(result.status, "completed")
        self.assertEqual(result.billable_seconds, 240)
        self.assertEqual(result.cost, Decimal("20.00"))
        self.assertEqual(result.platform_fee, Decimal("2.00"))
        self.assertEqual(result.expert_earnings, Decimal("18.00"))
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(order.duration_seconds, 240)
        self.assertEqual(order.cost, Decimal("20.00"))
        self.assertEqual(order.platform_fee_amount, Decimal("2.00"))
        self.assertEqual(order.expert_earnings, Decimal("18.00"))
        self.assertEqual(order.end_time, T0 + timedelta(seconds=400))

        wallet = self.wallet()
        self.assertEqual(wallet.balance, Decimal("80.00"))
        self.assertEqual(wallet.real_balance, Decimal("80.00"))
        deduction = WalletTransaction.objects.get(order=order)
        self.assertEqual(deduction.type, TransactionType.CONSULTATION_DEDUCTION)
        self.assertEqual(deduction.amount, Decimal("-20.00"))
        self.assertEqual(deduction.duration_seconds, 240)
        self.assertEqual(deduction.rate_per_minute, Decimal("5.00"))
        earning = ExpertEarning.objects.get(order=order)
        self.assertEqual(earning.net_amount, Decimal("18.00"))
        self.assertEqual(get_earnings_balance(self.expert, "INR"), Decimal("18.00"))
        self.expert.refresh_from_db()
        self.assertFalse(self.expert.is_busy)

    def test_second_settle_is_skipped_and_changes_nothing(self):
        order = self.make_order()
        service = self.service()

        first = service.settle(order.call_reference)
        order.refresh_from_db()
        snapshot = (order.status, order.duration_seconds, order.cost, order.platform_fee_amount, order.expert_earnings)
        second = service.settle(order.call_reference)
        order.refresh_from_db()

        self.assertEqual(first.status, "completed")
        self.assertEqual(second.status, "skipped")
        self.assertEqual(second.reason, "already_completed")
        self.assertTrue(second.success)
        self.assertEqual(
            (order.status, order.duration_seconds, order.cost, order.platform_fee_amount, order.expert_earnings),
            snapshot,
        )
        self.assertEqual(ExpertEarning.objects.filter(order=order).count(), 1)
        self.assertEqual(self.wallet().balance, Decimal("80.00"))

    def test_concurrent_settle_commits_once(self):
        order = self.make_order(user_intervals=None, expert_intervals=None)

        class ReentrantClient:
            """Lets a competing settle commit between the outer call's fast check and its transaction."""
            inner = None

            def get_presence_timeline(self, call_reference):
                if self.inner is None:
                    self.inner = "running"
                    self.inner = service.settle(call_reference)
                raise TimelineUnavailable("use fallback")

        client = ReentrantClient()
        service = self.service(timeline_client=client)

        outer = service.settle(order.call_reference)

        self.assertEqual(client.inner.status, "completed")
        self.assertEqual(outer.status, "skipped")
        self.assertEqual(ExpertEarning.objects.filter(order=order).count(), 1)
        self.assertEqual(WalletTransaction.objects.filter(order=order).count(), 1)

    def test_many_competing_settles_commit_once(self):
        order = self.make_order(user_intervals=None, expert_intervals=None)
        competitors = 5

        class ChainedClient:
            """Each timeline request starts another settle until `competitors` are in flight."""

            def __init__(self):
                self.in_flight = 1
                self.results = []

            def get_presence_timeline(self, call_reference):
                if self.in_flight < competitors:
                    self.in_flight += 1
                    self.results.append(service.settle(call_reference))
                raise TimelineUnavailable("use fallback")

        client = ChainedClient()
        service = self.service(timeline_client=client)

        client.results.append(service.settle(order.call_reference))

        statuses = sorted(result.status for result in client.results)
        self.assertEqual(statuses, ["completed"] + ["skipped"] * (competitors - 1))
        self.assertEqual(ExpertEarning.objects.filter(order=order).count(), 1)
        self.assertEqual(WalletTransaction.objects.filter(order=order).count(), 1)
        self.assertEqual(self.wallet().balance, Decimal("100.00") - client.results[0].cost)

    def test_empty_timelines_close_order_without_charge(self):
        order = self.make_order(user_intervals=[], expert_intervals=[])
        client = StubTimelineClient(timeline=CallTimeline(found=True, participants=[]))

        result = self.service(client).settle(order.call_reference)

        self.assertEqual(client.calls, [order.call_reference])
        self.assertEqual(result.status, "zero_charge")
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(order.duration_seconds, 0)
        self.assertEqual(order.cost, Decimal("0.00"))
        self.assertEqual(order.platform_fee_amount, Decimal("0.00"))
        self.assertEqual(order.expert_earnings, Decimal("0.00"))
        self.assertEqual(self.wallet().balance, Decimal("100.00"))
        self.assertFalse(ExpertEarning.objects.filter(order=order).exists())
        self.expert.refresh_from_db()
        self.assertFalse(self.expert.is_busy)

    def test_uses_call_timeline_when_nothing_stored(self):
        order = self.make_order(user_intervals=None, expert_intervals=None)
        timeline = CallTimeline(found=True, participants=[
            ParticipantTimeline(self.payer.party_id, [span(0, 120)]),
            ParticipantTimeline(self.expert.party_id, [span(30, 150)]),
        ])
        client = StubTimelineClient(timeline=timeline)

        result = self.service(client).settle(order.call_reference)

        self.assertEqual(client.calls, [order.call_reference])
        self.assertEqual(result.billable_seconds, 90)
        self.assertEqual(result.cost, Decimal("7.50"))

    def test_one_sided_stored_intervals_defer_to_timeline(self):
        order = self.make_order(user_intervals=stored((0, 300)), expert_intervals=[])
        timeline = CallTimeline(found=True, participants=[
            ParticipantTimeline(self.payer.party_id, [span(0, 300)]),
            ParticipantTimeline(self.expert.party_id, [span(60, 360)]),
        ])
        client = StubTimelineClient(timeline=timeline)

        result = self.service(client).settle(order.call_reference)

        self.assertEqual(client.calls, [order.call_reference])
        self.assertEqual(result.status, "completed")
        self.assertEqual(result.billable_seconds, 240)
        self.assertEqual(result.cost, Decimal("20.00"))

    def test_stored_intervals_on_both_sides_skip_timeline(self):
        order = self.make_order()
        client = StubTimelineClient(error=AssertionError("timeline must not be fetched"))

        result = self.service(client).settle(order.call_reference)

        self.assertEqual(client.calls, [])
        self.assertEqual(result.billable_seconds, 240)

    def test_timeline_error_falls_back_to_time_since_both_joined(self):
        order = self.make_order(
            user_intervals=None,
            expert_intervals=None,
            end_time=T0 + timedelta(seconds=95),
        )
        client = StubTimelineClient(error=TimelineUnavailable("503"))

        result = self.service(client).settle(order.call_reference)

        self.assertEqual(result.status, "completed")
        self.assertEqual(result.billable_seconds, 95)
        self.assertEqual(result.cost, Decimal("7.92"))
        self.assertEqual(result.platform_fee, Decimal("0.79"))
        self.assertEqual(result.expert_earnings, Decimal("7.13"))

    def test_timeline_error_without_join_time_is_zero_charge(self):
        order = self.make_order(user_intervals=None, expert_intervals=None, both_participants_joined_at=None)
        result = self.service(StubTimelineClient(error=RuntimeError("boom"))).settle(order.call_reference)
        self.assertEqual(result.status, "zero_charge")

    def test_call_without_session_is_zero_charge(self):
        order = self.make_order(user_intervals=None, expert_intervals=None)
        result = self.service(StubTimelineClient(timeline=CallTimeline(found=False))).settle(order.call_reference)
        self.assertEqual(result.status, "zero_charge")

    def test_promotional_credit_lowers_expert_payout(self):
        ExpertWallet.objects.all().delete()
        recharge_wallet(self.payer, self.expert, "INR", Decimal("100"), bonus_amount=Decimal("100"))
        order = self.make_order(
            expert_rate_per_minute=Decimal("10.00"),
            user_intervals=stored((0, 600)),
            expert_intervals=stored((0, 600)),
        )

        result = self.service().settle(order.call_reference)

        self.assertEqual(result.cost, Decimal("100.00"))
        wallet = self.wallet()
        self.assertEqual(wallet.balance, Decimal("100.00"))
        self.assertEqual(wallet.real_balance, Decimal("50.00"))
        earning = ExpertEarning.objects.get(order=order)
        self.assertEqual(earning.gross_amount, Decimal("50.00"))
        self.assertEqual(earning.platform_fee, Decimal("5.00"))
        self.assertEqual(earning.net_amount, Decimal("45.00"))
        self.assertEqual(result.expert_earnings, Decimal("45.00"))

    def test_fee_resolved_from_expert_config(self):
        self.expert.platform_fee_config = {"default_fee_percent": 12, "fee_by_category": {"TAROT": 20}}
        self.expert.save()
        order = self.make_order(platform_fee_percent=None, category="TAROT")

        result = self.service().settle(order.call_reference)

        self.assertEqual(result.platform_fee, Decimal("4.00"))
        self.assertEqual(result.expert_earnings, Decimal("16.00"))

    def test_expert_stays_busy_with_another_connected_call(self):
        order = self.make_order()
        self.make_order(order_id="other-call")

        self.service().settle(order.call_reference)

        self.expert.refresh_from_db()
        self.assertTrue(self.expert.is_busy)

    def test_overdraft_is_allowed(self):
        ExpertWallet.objects.filter(user=self.payer, expert=self.expert).update(
            balance=Decimal("10.00"), real_balance=Decimal("10.00"),
        )
        order = self.make_order()

        result = self.service().settle(order.call_reference)

        self.assertEqual(result.status, "completed")
        wallet = self.wallet()
        self.assertEqual(wallet.balance, Decimal("-10.00"))
        self.assertEqual(wallet.real_balance, Decimal("0.00"))

    def test_missing_wallet_is_created(self):
        ExpertWallet.objects.all().delete()
        order = self.make_order()

        self.service().settle(order.call_reference)

        wallet = self.wallet()
        self.assertEqual(wallet.balance, Decimal("-20.00"))
        self.assertIsNone(wallet.real_balance)

    def test_unknown_order(self):
        result = self.service().settle("consultation_video:missing")
        self.assertEqual(result.status, "error")
        self.assertEqual(result.reason, "not_found")
        self.assertFalse(result.success)

    @patch(
        "billing.services.settlement_service.find_order_by_call_reference",
        side_effect=OperationalError("db down"),
    )
    def test_lookup_failure_is_reported_as_error(self, find_order_by_call_reference):
        result = self.service().settle("consultation_video:o1")

        self.assertEqual(result.status, "error")
        self.assertEqual(result.reason, "unexpected")
        self.assertEqual(result.message, "db down")
        self.assertFalse(result.success)

    def test_malformed_reference(self):
        result = self.service().settle("no-separator")
        self.assertEqual(result.status, "error")
        self.assertEqual(result.reason, "invalid_reference")

    def test_unsettleable_states(self):
        for status in (OrderStatus.INITIATED, OrderStatus.CANCELLED):
            order = self.make_order(status=status)
            result = self.service().settle(order.call_reference)
            self.assertEqual(result.status, "error")
            self.assertEqual(result.reason, "invalid_state")

    @patch("billing.services.settlement_service.record_order_earning", side_effect=RuntimeError("ledger down"))
    def test_unexpected_failure_rolls_back_everything(self, record_order_earning):
        order = self.make_order()

        result = self.service().settle(order.call_reference)

        self.assertEqual(result.status, "error")
        self.assertEqual(result.message, "ledger down")
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.CONNECTED)
        self.assertIsNone(order.cost)
        self.assertEqual(self.wallet().balance, Decimal("100.00"))
        self.assertFalse(WalletTransaction.objects.filter(order=order).exists())

    def test_result_serialization(self):
        data = SettlementResult.completed("o1", 240, Decimal("20.00"), Decimal("2.00"), Decimal("18.00")).to_dict()
        self.assertEqual(data["status"], "completed")
        self.assertEqual(data["cost"], "20.00")
        self.assertTrue(data["success"])
        self.assertNotIn("reason", data)


class WalletServiceTests(DjangoTestCase):
    def setUp(self):
        self.expert, self.payer = make_parties()

    def test_recharge_with_bonus(self):
        wallet = recharge_wallet(self.payer, self.expert, "inr", Decimal("100"), bonus_amount=Decimal("100"))
        self.assertEqual(wallet.currency, "INR")
        self.assertEqual(wallet.balance, Decimal("200.00"))
        self.assertEqual(wallet.real_balance, Decimal("100.00"))
        kinds = sorted(WalletTransaction.objects.filter(user=self.payer).values_list("type", flat=True))
        self.assertEqual(kinds, ["BONUS", "RECHARGE"])

    def test_legacy_wallet_keeps_old_balance_as_real(self):
        ExpertWallet.objects.create(user=self.payer, expert=self.expert, currency="INR", balance=Decimal("40.00"))
        wallet = credit_wallet(self.payer, self.expert, "INR", Decimal("10"), TransactionType.CASHBACK)
        self.assertEqual(wallet.balance, Decimal("50.00"))
        self.assertEqual(wallet.real_balance, Decimal("40.00"))

    def test_rejects_bad_input(self):
        with self.assertRaises(WalletError):
            credit_wallet(self.payer, self.expert, "XYZ", Decimal("10"), TransactionType.RECHARGE)
        with self.assertRaises(WalletError):
            credit_wallet(self.payer, self.expert, "INR", Decimal("0"), TransactionType.RECHARGE)
        with self.assertRaises(WalletError):
            credit_wallet(self.payer, self.expert, "INR", Decimal("5"), TransactionType.CONSULTATION_DEDUCTION)

    def test_earnings_balance_defaults_to_zero(self):
        self.assertEqual(get_earnings_balance(self.expert, "INR"), Decimal("0.00"))
        ExpertEarningsAccount.objects.create(expert=self.expert, currency="USD", balance=Decimal("12.50"))
        self.assertEqual(get_earnings_balance(self.expert, "usd"), Decimal("12.50"))


class PaymentServiceTests(TestCase):
    def test_minor_units(self):
        self.assertEqual(to_minor_units(Decimal("499.50")), 49950)
        self.assertEqual(from_minor_units(49950), Decimal("499.50"))

    @patch("billing.services.payment_service.get_client")
    @patch("billing.services.payment_service.is_configured", return_value=True)
    def test_creates_recharge_intent(self, is_configured, get_client):
        stripe = get_client.return_value
        stripe.PaymentIntent.create.return_value = SimpleNamespace(id="pi_1", client_secret="pi_1_secret")

        result = create_wallet_recharge_payment_intent(
            amount="499.50",
            user_profile=SimpleNamespace(id=3),
            expert_profile=SimpleNamespace(id=8),
            currency="inr",
            attempt_id="a1",
        )

        self.assertEqual(result["payment_intent_id"], "pi_1")
        self.assertEqual(result["amount"], Decimal("499.50"))
        kwargs = stripe.PaymentIntent.create.call_args.kwargs
        self.assertEqual(kwargs["amount"], 49950)
        self.assertEqual(kwargs["currency"], "inr")
        self.assertEqual(kwargs["metadata"]["payment_type"], "expert_wallet_recharge")
        self.assertEqual(kwargs["metadata"]["expert_id"], "8")
        self.assertEqual(kwargs["idempotency_key"], "expert_wallet_recharge:3:8:a1")

    @patch("billing.services.payment_service.is_configured", return_value=False)
    def test_requires_stripe(self, is_configured):
        with self.assertRaises(BillingError):
            create_wallet_recharge_payment_intent(
                amount="10", user_profile=SimpleNamespace(id=1), expert_profile=SimpleNamespace(id=2),
            )


def stripe_event(event_type, obj):
    return SimpleNamespace(type=event_type, data=SimpleNamespace(object=obj))


class StripeWebhookTests(DjangoTestCase):
    def setUp(self):
        self.expert, self.payer = make_parties()
        self.url = reverse("billing:stripe_webhook")

    def post(self):
        return self.client.post(self.url, data=b"{}", content_type="application/json", HTTP_STRIPE_SIGNATURE="t=1,v1=x")

    def succeeded_event(self):
        return stripe_event("payment_intent.succeeded", {
            "id": "pi_1",
            "amount": 50000,
            "currency": "inr",
            "metadata": {
                "payment_type": "expert_wallet_recharge",
                "client_id": str(self.payer.id),
                "expert_id": str(self.expert.id),
                "bonus_amount": "100.00",
            },
        })

    def test_recharge_is_credited_once(self):
        with patch("billing.views.construct_webhook_event", return_value=self.succeeded_event()):
            self.assertEqual(self.post().status_code, 200)
            self.assertEqual(self.post().status_code, 200)

        wallet = ExpertWallet.objects.get(user=self.payer, expert=self.expert, currency="INR")
        self.assertEqual(wallet.balance, Decimal("600.00"))
        self.assertEqual(wallet.real_balance, Decimal("500.00"))
        self.assertEqual(Payment.objects.get(stripe_payment_intent_id="pi_1").status, "succeeded")
        self.assertEqual(WalletTransaction.objects.filter(payment__stripe_payment_intent_id="pi_1").count(), 2)

    def test_refund_is_credited_once(self):
        with patch("billing.views.construct_webhook_event", return_value=self.succeeded_event()):
            self.post()
        refund = stripe_event("charge.refunded", {"payment_intent": "pi_1", "amount_refunded": 10000})
        with patch("billing.views.construct_webhook_event", return_value=refund):
            self.post()
            self.post()

        wallet = ExpertWallet.objects.get(user=self.payer, expert=self.expert, currency="INR")
        self.assertEqual(wallet.balance, Decimal("700.00"))
        self.assertEqual(WalletTransaction.objects.filter(type=TransactionType.REFUND).count(), 1)

    def test_missing_signature(self):
        response = self.client.post(self.url, data=b"{}", content_type="application/json")
        self.assertEqual(response.status_code, 400)


@override_settings(STREAM_WEBHOOK_SECRET="whsec")
class CallWebhookTests(DjangoTestCase):
    def setUp(self):
        self.expert, self.payer = make_parties()
        self.order = ConsultationOrder.objects.create(
            user=self.payer,
            expert=self.expert,
            expert_rate_per_minute=Decimal("5.00"),
            max_allowed_duration=600,
        )
        self.url = reverse("billing:call_webhook")

    def post(self, payload, secret="whsec"):
        body = json.dumps(payload).encode()
        signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return self.client.post(self.url, data=body, content_type="application/json", HTTP_X_SIGNATURE=signature)

    def test_rejects_bad_signature(self):
        response = self.post({"type": "call.ended", "call_cid": self.order.call_reference}, secret="wrong")
        self.assertEqual(response.status_code, 401)

    def test_join_events_connect_the_order(self):
        for party_id in (self.payer.party_id, self.expert.party_id):
            response = self.post({
                "type": "call.session_participant_joined",
                "call_cid": self.order.call_reference,
                "participant": {"user": {"id": party_id}},
                "created_at": "2025-03-01T10:00:00Z",
            })
            self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.CONNECTED)
        self.assertEqual(self.order.both_participants_joined_at, T0)

    @patch("billing.services.settlement_service.settle_call")
    def test_call_ended_settles(self, settle_call):
        settle_call.return_value = SettlementResult.completed(
            self.order.order_id, 60, Decimal("5.00"), Decimal("0.50"), Decimal("4.50"),
        )
        response = self.post({"type": "call.ended", "call_cid": self.order.call_reference})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "completed")
        settle_call.assert_called_once_with(self.order.call_reference)

    @patch("billing.services.settlement_service.settle_call")
    def test_participant_left_records_end_and_settles(self, settle_call):
        self.order.status = OrderStatus.CONNECTED
        self.order.save()
        settle_call.return_value = SettlementResult.skipped(self.order.order_id)

        response = self.post({
            "type": "call.session_participant_left",
            "call_cid": self.order.call_reference,
            "participant": {"user_id": self.payer.party_id},
            "created_at": "2025-03-01T10:05:00Z",
        })

        self.assertEqual(response.json()["status"], "skipped")
        self.order.refresh_from_db()
        self.assertEqual(self.order.end_time, T0 + timedelta(minutes=5))

    @patch("billing.services.settlement_service.settle_call")
    def test_other_events_are_ignored(self, settle_call):
        response = self.post({"type": "call.created", "call_cid": self.order.call_reference})
        self.assertEqual(response.json()["status"], "ignored")
        settle_call.assert_not_called()


class RecalculateChargeViewTests(DjangoTestCase):
    def setUp(self):
        self.url = reverse("billing:recalculate_charge")
        self.staff = CustomUser.objects.create_user(email="ops@example.com", password="pw-123456", is_staff=True)

    def test_staff_only(self):
        response = self.client.post(self.url, data={"call_cid": "x:y"}, content_type="application/json")
        self.assertEqual(response.status_code, 302)

    def test_requires_call_cid(self):
        self.client.force_login(self.staff)
        response = self.client.post(self.url, data={}, content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_unknown_call_is_reported(self):
        self.client.force_login(self.staff)
        response = self.client.post(
            self.url, data={"call_cid": "consultation_video:missing"}, content_type="application/json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["reason"], "not_found")
