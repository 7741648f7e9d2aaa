import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from payments.integrations import razorpay
from storefront.exceptions import ConflictError
from .models import Order
from .services import Transition, capture_order, fail_order, record_webhook_payload
from .utils import coerce_amount

logger = logging.getLogger(__name__)

CAPTURE_EVENTS = {"payment.captured", "order.paid"}
FAILURE_EVENTS = {"payment.failed"}


def _ack(status: str):
    # 200 stops the gateway from redelivering
    return JsonResponse({"status": status})


def _reject():
    return JsonResponse({"message": "Invalid webhook"}, status=400)


def _entity(event: dict, name: str) -> dict:
    return ((event.get("payload") or {}).get(name) or {}).get("entity") or {}


@csrf_exempt
@require_POST
def gateway_webhook(request):
    signature = request.headers.get("X-Razorpay-Signature", "")
    if not signature:
        logger.warning("Security: webhook without signature from %s", request.META.get("REMOTE_ADDR"))
        return _reject()

    raw = request.body
    if not razorpay.verify_webhook_signature(raw, signature):
        logger.warning("Security: invalid webhook signature from %s", request.META.get("REMOTE_ADDR"))
        return _reject()

    try:
        event = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.warning("Signed webhook with undecodable body")
        return _reject()
    if not isinstance(event, dict):
        return _reject()

    event_id = request.headers.get("X-Razorpay-Event-Id", "")
    kind = str(event.get("event") or "")
    if kind not in CAPTURE_EVENTS and kind not in FAILURE_EVENTS:
        logger.info("Webhook %s (%s) acknowledged without action", kind or "-", event_id or "-")
        return _ack("ignored")

    payment = _entity(event, "payment")
    gw_order_id = payment.get("order_id") or _entity(event, "order").get("id") or ""
    gw_payment_id = payment.get("id") or ""
    if not gw_order_id:
        logger.warning("Webhook %s (%s) missing gateway order id", kind, event_id or "-")
        return _ack("ignored")

    order = Order.objects.filter(gateway_order_id=gw_order_id).first()
    if order is None:
        # unknown or purged order; acknowledge so delivery is not retried forever
        logger.warning("Webhook %s (%s) for unknown gateway order %s", kind, event_id or "-", gw_order_id)
        return _ack("ignored")

    try:
        if kind in CAPTURE_EVENTS:
            if not gw_payment_id:
                logger.warning("Webhook %s (%s) for order %s missing payment id", kind, event_id or "-", order.order_id)
                return _ack("ignored")
            result = capture_order(
                order, gw_payment_id, source="webhook",
                amount=coerce_amount(payment.get("amount")), event_id=event_id,
            )
        else:
            reason = payment.get("error_description") or payment.get("error_code") or "payment failed"
            result = fail_order(order, source="webhook", payment_id=gw_payment_id, reason=reason, event_id=event_id)
    except ConflictError:
        return _ack("conflict")
    finally:
        record_webhook_payload(order, event)

    return _ack("processed" if result is Transition.APPLIED else "duplicate")
