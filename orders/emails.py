import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

from .utils import format_minor_units

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    raw = getattr(settings, "ORDERS_ADMIN_EMAILS", "") or ""
    emails = [e.strip() for e in raw.split(",") if e and e.strip()]
    # Deduplicate while preserving order
    seen = set()
    uniq: List[str] = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def send_order_confirmation(*, order) -> None:
    """Send a receipt to the buyer and a notification to admins for a captured order.

    Runs after the capture commits. Failures are logged, never raised: the
    capture is already final.
    """
    context = {
        "order": order,
        "items": list(order.items.all()),
        "total": format_minor_units(order.amount, order.currency),
    }
    from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None)

    try:
        subject = f"Order confirmed: {order.order_id}"
        text = render_to_string("emails/order_confirmation.txt", context)
        html = render_to_string("emails/order_confirmation.html", context)
        msg = EmailMultiAlternatives(subject, text, from_email, [order.buyer_email])
        msg.attach_alternative(html, "text/html")
        msg.send(fail_silently=_fail_silently())
    except Exception:
        logger.exception("Failed to send order confirmation to %s", order.buyer_email)

    try:
        admins = _admin_recipients()
        if admins:
            subject = f"New order: {order.order_id} - {context['total']} ({order.captured_via})"
            text = render_to_string("emails/order_notification_admin.txt", context)
            EmailMultiAlternatives(subject, text, from_email, admins).send(fail_silently=_fail_silently())
    except Exception:
        logger.exception("Failed to send admin order notification for %s", order.order_id)
