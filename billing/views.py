"""
Billing views. Stripe status + webhook (wallet recharge), Stream call webhook and the staff
recalculate-charge trigger. Views only parse and dispatch; money logic lives in billing.services.
"""
import hashlib
import hmac
import json
import logging

from django.conf import settings
from django.contrib.admin.views.decorators import staff_member_required
from django.contrib.auth.decorators import login_required
from django.db import transaction
from django.http import HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from billing.services.stripe_service import check_api_ok, construct_webhook_event, is_configured

logger = logging.getLogger(__name__)

SETTLEMENT_EVENTS = ("call.ended", "call.session_ended", "call.session_participant_left")
JOIN_EVENT = "call.session_participant_joined"


def _json_body(request):
    try:
        return json.loads(request.body or b"{}")
    except (ValueError, UnicodeDecodeError):
        return None


@staff_member_required
def stripe_status(request):
    """
    GET /api/billing/stripe-status/
    Staff-only. Returns JSON: stripe_configured, api_ok (optional Stripe API check).
    """
    return JsonResponse({
        "stripe_configured": is_configured(),
        "api_ok": check_api_ok() if is_configured() else False,
    })


@login_required
@require_http_methods(["POST"])
def create_wallet_recharge(request):
    """
    POST /api/billing/wallet-recharge/
    Body: {"expert_id": int, "amount": "499.00", "currency": "INR", "attempt_id": "..."}
    Returns the PaymentIntent client secret; the webhook credits the wallet.
    """
    from accounts.models import ExpertProfile, UserProfile
    from billing.services.payment_service import BillingError, create_wallet_recharge_payment_intent

    data = _json_body(request)
    if data is None:
        return JsonResponse({"success": False, "error": "Invalid JSON"}, status=400)
    try:
        user_profile = request.user.user_profile
    except UserProfile.DoesNotExist:
        return JsonResponse({"success": False, "error": "Only customers can recharge a wallet."}, status=403)
    try:
        expert_profile = ExpertProfile.objects.get(id=int(data.get("expert_id")))
    except (TypeError, ValueError, ExpertProfile.DoesNotExist):
        return JsonResponse({"success": False, "error": "Expert not found."}, status=404)

    try:
        result = create_wallet_recharge_payment_intent(
            amount=data.get("amount"),
            user_profile=user_profile,
            expert_profile=expert_profile,
            currency=data.get("currency") or settings.SETTLEMENT_DEFAULT_CURRENCY,
            attempt_id=data.get("attempt_id"),
        )
    except BillingError as e:
        return JsonResponse({"success": False, "error": e.message}, status=400)
    except ArithmeticError:
        return JsonResponse({"success": False, "error": "Invalid amount."}, status=400)

    return JsonResponse({
        "success": True,
        "payment_intent_id": result["payment_intent_id"],
        "client_secret": result["client_secret"],
        "amount": str(result["amount"]),
        "currency": result["currency"],
    })


@csrf_exempt
@require_http_methods(["POST"])
def stripe_webhook(request):
    """
    POST /api/billing/stripe-webhook/
    Stripe webhook endpoint. Verifies signature, handles payment_intent.succeeded,
    payment_intent.payment_failed and charge.refunded. Idempotent per PaymentIntent id.
    """
    import stripe

    payload = request.body
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")
    if not sig_header:
        logger.warning("stripe_webhook: missing Stripe-Signature header")
        return HttpResponse(status=400)

    try:
        event = construct_webhook_event(payload, sig_header)
    except ValueError as e:
        logger.warning("stripe_webhook: invalid payload or missing secret %s", e)
        return HttpResponse(status=400)
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe_webhook: signature verification failed %s", e)
        return HttpResponse(status=400)

    if event.type == "payment_intent.succeeded":
        _handle_payment_intent_succeeded(event.data.object)
    elif event.type == "payment_intent.payment_failed":
        _handle_payment_intent_failed(event.data.object)
    elif event.type == "charge.refunded":
        _handle_charge_refunded(event.data.object)

    return HttpResponse(status=200)


def _recharge_parties(metadata, pi_id):
    from accounts.models import ExpertProfile, UserProfile

    try:
        client = UserProfile.objects.get(id=int(metadata.get("client_id")))
        expert = ExpertProfile.objects.get(id=int(metadata.get("expert_id")))
    except (TypeError, ValueError, UserProfile.DoesNotExist, ExpertProfile.DoesNotExist):
        logger.warning(
            "stripe_webhook: recharge parties not found client_id=%s expert_id=%s pi=%s",
            metadata.get("client_id"), metadata.get("expert_id"), pi_id,
        )
        return None, None
    return client, expert


def _handle_payment_intent_succeeded(obj):
    """Record the Payment and credit the wallet once per PaymentIntent."""
    from billing.models import Payment
    from billing.services.payment_service import from_minor_units
    from billing.services.pricing import round_money
    from billing.services.wallet_service import WalletError, recharge_wallet

    pi_id = obj.get("id")
    if not pi_id:
        return
    metadata = obj.get("metadata") or {}
    if metadata.get("payment_type") != Payment.TYPE_WALLET_RECHARGE:
        logger.info("stripe_webhook: ignoring payment_type=%s pi=%s", metadata.get("payment_type"), pi_id)
        return
    client, expert = _recharge_parties(metadata, pi_id)
    if client is None:
        return

    amount = from_minor_units(obj.get("amount"))
    currency = (obj.get("currency") or "").upper()
    bonus = round_money(metadata.get("bonus_amount") or 0)

    with transaction.atomic():
        payment, _ = Payment.objects.select_for_update().get_or_create(
            stripe_payment_intent_id=pi_id,
            defaults={
                "payment_type": Payment.TYPE_WALLET_RECHARGE,
                "expert": expert,
                "client": client,
                "amount": amount,
                "bonus_amount": bonus,
                "currency": currency,
                "status": "processing",
            },
        )
        if payment.status == "succeeded":
            logger.info("stripe_webhook: duplicate payment_intent.succeeded pi=%s, already credited", pi_id)
            return
        payment.expert = expert
        payment.client = client
        payment.amount = amount
        payment.bonus_amount = bonus
        payment.currency = currency
        payment.status = "succeeded"
        payment.save()
        try:
            recharge_wallet(client, expert, currency, amount, bonus_amount=bonus, payment=payment)
        except WalletError as e:
            logger.error("stripe_webhook: wallet recharge rejected pi=%s: %s", pi_id, e)
            raise
    logger.info("stripe_webhook: expert_wallet_recharge credited pi=%s amount=%s bonus=%s", pi_id, amount, bonus)


def _handle_payment_intent_failed(obj):
    """Create or update Payment row for failed PaymentIntent. Idempotent."""
    from billing.models import Payment
    from billing.services.payment_service import from_minor_units

    pi_id = obj.get("id")
    if not pi_id:
        return
    metadata = obj.get("metadata") or {}
    if metadata.get("payment_type") != Payment.TYPE_WALLET_RECHARGE:
        return
    client, expert = _recharge_parties(metadata, pi_id)
    Payment.objects.update_or_create(
        stripe_payment_intent_id=pi_id,
        defaults={
            "payment_type": Payment.TYPE_WALLET_RECHARGE,
            "expert": expert,
            "client": client,
            "amount": from_minor_units(obj.get("amount")),
            "currency": (obj.get("currency") or "").upper(),
            "status": "failed",
        },
    )
    logger.info("stripe_webhook: Payment expert_wallet_recharge failed pi=%s", pi_id)


def _handle_charge_refunded(charge_obj):
    """On Stripe refund: mark Payment refunded and credit the refunded amount back as REFUND (once)."""
    from billing.models import Payment
    from billing.services.payment_service import from_minor_units
    from billing.services.wallet_service import refund_to_wallet

    pi_id = charge_obj.get("payment_intent")
    if isinstance(pi_id, dict):
        pi_id = pi_id.get("id")
    if not pi_id:
        return
    amount_refunded = from_minor_units(charge_obj.get("amount_refunded"))

    with transaction.atomic():
        payment = Payment.objects.select_for_update().filter(stripe_payment_intent_id=pi_id).first()
        if not payment:
            logger.warning("stripe_webhook: charge.refunded for unknown pi=%s", pi_id)
            return
        if payment.status == "refunded":
            logger.info("stripe_webhook: duplicate charge.refunded pi=%s", pi_id)
            return
        payment.status = "refunded"
        payment.save(update_fields=["status", "updated_at"])
        if payment.client and payment.expert and amount_refunded > 0:
            refund_to_wallet(
                payment.client,
                payment.expert,
                payment.currency,
                amount_refunded,
                payment=payment,
                description=f"Refund {pi_id}",
            )
    logger.info("stripe_webhook: charge.refunded pi=%s amount=%s", pi_id, amount_refunded)


def verify_stream_signature(body: bytes, signature: str, secret: str) -> bool:
    """Stream signs webhook bodies with HMAC-SHA256 (hex) using the API secret."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


@csrf_exempt
@require_http_methods(["POST"])
def call_webhook(request):
    """
    POST /api/billing/call-webhook/
    Stream video webhook. Joins move orders to CONNECTED; call end / participant left settles.
    Always answers 200 with the settlement status once the signature is valid, so Stream does
    not retry results that a retry cannot change.
    """
    from consultations.services.order_service import (
        CallReferenceError,
        find_order_by_call_reference,
        record_participant_joined,
        record_participant_left,
    )
    from consultations.presence import InvalidIntervalError, parse_timestamp
    from billing.services.settlement_service import settle_call

    secret = getattr(settings, "STREAM_WEBHOOK_SECRET", "") or getattr(settings, "STREAM_API_SECRET", "")
    signature = request.META.get("HTTP_X_SIGNATURE", "")
    if not verify_stream_signature(request.body, signature, secret):
        logger.warning("call_webhook: invalid or missing X-Signature")
        return JsonResponse({"success": False, "error": "Invalid signature"}, status=401)

    data = _json_body(request)
    if data is None:
        return JsonResponse({"success": False, "error": "Invalid JSON"}, status=400)

    event_type = data.get("type") or ""
    call_cid = data.get("call_cid") or (data.get("call") or {}).get("cid") or ""
    if event_type != JOIN_EVENT and event_type not in SETTLEMENT_EVENTS:
        return JsonResponse({"success": True, "status": "ignored", "event": event_type})
    if not call_cid:
        logger.warning("call_webhook: %s without call_cid", event_type)
        return JsonResponse({"success": False, "error": "Missing call_cid"}, status=400)

    participant = data.get("participant") or {}
    party_id = (participant.get("user") or {}).get("id") or participant.get("user_id")
    if party_id and event_type in (JOIN_EVENT, "call.session_participant_left"):
        try:
            order = find_order_by_call_reference(call_cid)
        except CallReferenceError as e:
            return JsonResponse({"success": False, "error": str(e)}, status=400)
        if order is not None:
            try:
                at = parse_timestamp(data.get("created_at")) if data.get("created_at") else None
            except InvalidIntervalError:
                at = None
            if event_type == JOIN_EVENT:
                order = record_participant_joined(order, party_id, joined_at=at)
                return JsonResponse({"success": True, "status": "recorded", "order_status": order.status})
            record_participant_left(order, party_id, left_at=at)

    if event_type == JOIN_EVENT:
        return JsonResponse({"success": True, "status": "ignored", "event": event_type})

    result = settle_call(call_cid)
    logger.info("call_webhook: %s call=%s settlement=%s", event_type, call_cid, result.status)
    return JsonResponse(result.to_dict())


@csrf_exempt
@staff_member_required
@require_http_methods(["POST"])
def recalculate_charge(request):
    """
    POST /api/billing/recalculate-charge/
    Staff-only manual trigger. Body: {"call_cid": "consultation_video:<order_id>"}.
    """
    from billing.services.settlement_service import REASON_UNEXPECTED, STATUS_ERROR, settle_call

    data = _json_body(request)
    if data is None:
        return JsonResponse({"success": False, "error": "Invalid JSON"}, status=400)
    call_cid = data.get("call_cid") or data.get("callCid") or ""
    if not call_cid:
        return JsonResponse({"success": False, "error": "call_cid is required"}, status=400)

    result = settle_call(call_cid)
    status = 400 if result.status == STATUS_ERROR and result.reason != REASON_UNEXPECTED else 200
    return JsonResponse(result.to_dict(), status=status)
