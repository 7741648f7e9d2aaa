import logging
from dataclasses import dataclass
from enum import Enum

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from catalog.services import commit_stock, get_product
from payments.integrations import razorpay
from storefront.exceptions import (
    ConflictError, NotFoundError, SignatureError, UpstreamError, UpstreamTimeout, ValidationError,
)
from .emails import send_order_confirmation
from .models import Order, OrderItem
from .utils import generate_order_id

logger = logging.getLogger(__name__)

MAX_AUDIT_ENTRIES = 50


@dataclass(frozen=True)
class BuyerInfo:
    name: str
    email: str
    phone: str = ""


@dataclass(frozen=True)
class CartLine:
    product_id: str
    qty: int


class Transition(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"


# ---------- Order intake ----------

def _merge_lines(items) -> list:
    merged = {}
    for line in items:
        merged[line.product_id] = merged.get(line.product_id, 0) + line.qty
    return [CartLine(product_id=pid, qty=qty) for pid, qty in merged.items()]


def hydrate_items(items) -> tuple:
    """Price the cart from the catalog. Returns (lines, amount in minor units).

    Stock is checked here but only committed when the order is captured.
    """
    if not items:
        raise ValidationError("Cart is empty")
    lines = []
    for line in _merge_lines(items):
        product = get_product(line.product_id)
        if product.currency != settings.ORDER_CURRENCY:
            raise ValidationError(f"Product {product.product_id} is not sold in {settings.ORDER_CURRENCY}")
        if line.qty > product.stock:
            raise ConflictError(
                f"Insufficient stock for {product.title}",
                product_id=product.product_id, available=product.stock,
            )
        lines.append({
            "product_id": product.product_id,
            "title": product.title,
            "qty": line.qty,
            "price": product.price,
        })
    amount = sum(l["qty"] * l["price"] for l in lines)
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    return lines, amount


def create_order(buyer: BuyerInfo, items, *, customer=None) -> dict:
    lines, amount = hydrate_items(items)
    currency = settings.ORDER_CURRENCY
    order_id = generate_order_id()

    # Mint the remote order before writing anything locally, so a gateway
    # failure leaves no payable row behind.
    try:
        remote = razorpay.create_remote_order(
            amount=amount, currency=currency, receipt=order_id, notes={"order_id": order_id},
        )
    except razorpay.GatewayTimeout as e:
        logger.error("Gateway order creation timed out for %s: %s", order_id, e)
        raise UpstreamTimeout("Payment gateway timed out, please retry") from e
    except razorpay.GatewayError as e:
        logger.error("Gateway order creation failed for %s: %s", order_id, e)
        raise UpstreamError("Payment gateway unavailable, please retry") from e

    with transaction.atomic():
        order = Order.objects.create(
            order_id=order_id,
            customer=customer,
            buyer_name=buyer.name,
            buyer_email=buyer.email,
            buyer_phone=buyer.phone or "",
            amount=amount,
            currency=currency,
            status=Order.Status.CREATED,
            gateway_order_id=remote["id"],
        )
        OrderItem.objects.bulk_create([OrderItem(order=order, **line) for line in lines])

    logger.info("Order %s created: gateway order %s, amount %s %s", order_id, order.gateway_order_id, amount, currency)
    return {
        "orderId": order.order_id,
        "gatewayOrderId": order.gateway_order_id,
        "amount": order.amount,
        "currency": order.currency,
        "gatewayPublicKey": settings.RAZORPAY_KEY_ID,
    }


# ---------- State machine ----------

def _audit(order_pk, key: str, entry: dict) -> None:
    """Append an audit entry to the order metadata under a row lock."""
    with transaction.atomic():
        locked = Order.objects.select_for_update().get(pk=order_pk)
        meta = locked.metadata or {}
        entries = list(meta.get(key) or [])
        entries.append({**entry, "at": timezone.now().isoformat()})
        meta[key] = entries[-MAX_AUDIT_ENTRIES:]
        locked.metadata = meta
        locked.save(update_fields=["metadata", "updated_at"])


def record_webhook_payload(order: Order, event: dict) -> None:
    with transaction.atomic():
        locked = Order.objects.select_for_update().get(pk=order.pk)
        meta = locked.metadata or {}
        meta["last_webhook"] = event
        locked.metadata = meta
        locked.save(update_fields=["metadata", "updated_at"])


def _notify(order_pk) -> None:
    send_order_confirmation(order=Order.objects.get(pk=order_pk))


def _settle_existing(order: Order, target: str, payment_id: str, source: str, event_id: str) -> Transition:
    """The conditional update lost: the order was already terminal.

    Same target (and, for captures, the same payment) is a replay; anything
    else is a conflict that must never overwrite what is stored.
    """
    entry = {"source": source, "target": target, "paymentId": payment_id, "eventId": event_id}
    same_payment = target == Order.Status.FAILED or order.gateway_payment_id == payment_id
    if order.status == target and same_payment:
        _audit(order.pk, "events", {**entry, "outcome": "duplicate"})
        logger.info("Duplicate %s for order %s via %s ignored", target, order.order_id, source)
        return Transition.DUPLICATE

    _audit(order.pk, "anomalies", {**entry, "status": order.status, "storedPaymentId": order.gateway_payment_id})
    logger.error(
        "Conflicting %s for order %s via %s: status=%s stored payment=%s incoming payment=%s",
        target, order.order_id, source, order.status, order.gateway_payment_id or "-", payment_id or "-",
    )
    if target == Order.Status.CAPTURED and order.status == Order.Status.FAILED:
        # a retry succeeded after an earlier attempt was reported failed
        logger.error(
            "Payment %s was captured for failed order %s: refund it at the gateway "
            "or capture the order manually from the admin",
            payment_id or "-", order.order_id,
        )
    raise ConflictError(f"Order {order.order_id} is already {order.status}", status=order.status)


def capture_order(order: Order, payment_id: str, *, source: str, signature: str = "",
                  amount=None, event_id: str = "") -> Transition:
    """Move ``order`` from created to captured exactly once.

    The status flip is a single conditional UPDATE; only the caller whose
    update matched commits stock and schedules the confirmation email.
    ``order`` is refreshed from the database before returning.
    """
    if amount is not None and amount != order.amount:
        _audit(order.pk, "anomalies", {
            "source": source, "target": Order.Status.CAPTURED, "paymentId": payment_id,
            "eventId": event_id, "amount": amount, "storedAmount": order.amount,
        })
        logger.error("Capture for order %s via %s carries amount %s, expected %s", order.order_id, source, amount, order.amount)
        raise ConflictError(f"Captured amount does not match order {order.order_id}")

    now = timezone.now()
    with transaction.atomic():
        won = Order.objects.filter(pk=order.pk, status=Order.Status.CREATED).update(
            status=Order.Status.CAPTURED,
            gateway_payment_id=payment_id,
            gateway_signature=signature,
            captured_via=source,
            captured_at=now,
            updated_at=now,
        )
        if won:
            oversold = [
                {"productId": item.product_id, "qty": item.qty}
                for item in order.items.all()
                if not commit_stock(item.product_id, item.qty)
            ]
            if oversold:
                _audit(order.pk, "oversold", {"lines": oversold})
            _audit(order.pk, "events", {
                "source": source, "target": Order.Status.CAPTURED, "paymentId": payment_id,
                "eventId": event_id, "outcome": "applied",
            })
            order_pk = order.pk
            transaction.on_commit(lambda: _notify(order_pk))

    order.refresh_from_db()
    if won:
        logger.info("Order %s captured via %s (payment %s)", order.order_id, source, payment_id)
        return Transition.APPLIED
    return _settle_existing(order, Order.Status.CAPTURED, payment_id, source, event_id)


def fail_order(order: Order, *, source: str, payment_id: str = "", reason: str = "",
               event_id: str = "") -> Transition:
    now = timezone.now()
    with transaction.atomic():
        won = Order.objects.filter(pk=order.pk, status=Order.Status.CREATED).update(
            status=Order.Status.FAILED,
            failure_reason=(reason or "")[:255],
            failed_at=now,
            updated_at=now,
        )
        if won:
            _audit(order.pk, "events", {
                "source": source, "target": Order.Status.FAILED, "paymentId": payment_id,
                "eventId": event_id, "outcome": "applied",
            })

    order.refresh_from_db()
    if won:
        logger.warning("Order %s failed via %s: %s", order.order_id, source, reason or "-")
        return Transition.APPLIED
    return _settle_existing(order, Order.Status.FAILED, payment_id, source, event_id)


# ---------- Payment confirmation ----------

def verify_payment(order_id: str, gateway_order_id: str, gateway_payment_id: str, signature: str) -> dict:
    """Confirm a checkout callback from the browser.

    Nothing is written unless the signature checks out against the gateway
    order id we stored at creation.
    """
    order = Order.objects.filter(order_id=order_id).first()
    if order is None:
        raise NotFoundError("Order not found", order_id=order_id)

    if order.gateway_order_id != gateway_order_id:
        logger.warning(
            "Security: gateway order mismatch for order %s (stored=%s supplied=%s)",
            order.order_id, order.gateway_order_id, gateway_order_id,
        )
        raise SignatureError("Payment verification failed")

    if not razorpay.verify_checkout_signature(gateway_order_id, gateway_payment_id, signature):
        logger.warning("Security: invalid checkout signature for order %s payment %s", order.order_id, gateway_payment_id)
        raise SignatureError("Payment verification failed")

    result = capture_order(order, gateway_payment_id, source="checkout", signature=signature)
    return {
        "orderId": order.order_id,
        "status": order.status,
        "duplicate": result is Transition.DUPLICATE,
    }


def serialize_order(order: Order) -> dict:
    return {
        "orderId": order.order_id,
        "status": order.status,
        "amount": order.amount,
        "currency": order.currency,
        "gatewayOrderId": order.gateway_order_id,
        "gatewayPaymentId": order.gateway_payment_id or None,
        "items": [
            {"productId": i.product_id, "title": i.title, "qty": i.qty, "price": i.price}
            for i in order.items.all()
        ],
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "capturedAt": order.captured_at.isoformat() if order.captured_at else None,
    }
