import json
import logging

from django.http import JsonResponse
from django.middleware.csrf import CsrfViewMiddleware
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from storefront.exceptions import StorefrontError, ValidationError
from .forms import parse_create_order, parse_verify_payment
from .models import Order
from .services import create_order, serialize_order, verify_payment

logger = logging.getLogger(__name__)

PAGE_SIZE = 10


def _json_body(request):
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")
    return body


def _csrf_failure(request):
    """Run the CSRF check for a csrf_exempt view; None when it passes.

    Guest checkout stays open to API clients, but a request riding on a
    session cookie must carry the token before it is linked to that account.
    """
    check = CsrfViewMiddleware(lambda r: None)
    check.process_request(request)
    return check.process_view(request, None, (), {})


def _error(request, exc: StorefrontError):
    payload = {"message": exc.message, "requestId": getattr(request, "request_id", None)}
    if "errors" in exc.details:
        payload["errors"] = exc.details["errors"]
    resp = JsonResponse(payload, status=exc.status_code)
    if exc.status_code >= 500:
        resp["Retry-After"] = "5"
    return resp


@csrf_exempt
@require_POST
def create_order_view(request):
    customer = None
    if request.user.is_authenticated:
        if _csrf_failure(request) is not None:
            logger.warning("Security: order creation without CSRF token for user %s", request.user.pk)
            return JsonResponse(
                {"message": "CSRF verification failed", "requestId": getattr(request, "request_id", None)},
                status=403,
            )
        customer = request.user
    try:
        buyer, items = parse_create_order(_json_body(request))
        result = create_order(buyer, items, customer=customer)
    except StorefrontError as e:
        logger.info("Order creation rejected (%s): %s", e.status_code, e.message)
        return _error(request, e)
    return JsonResponse(result, status=201)


@csrf_exempt
@require_POST
def verify_payment_view(request):
    try:
        data = parse_verify_payment(_json_body(request))
        result = verify_payment(
            data["order_id"], data["gateway_order_id"], data["gateway_payment_id"], data["signature"],
        )
    except StorefrontError as e:
        # the UI re-polls order status; a webhook may still capture the order
        return _error(request, e)
    return JsonResponse(result, status=200)


@require_GET
def order_status_view(request, order_id: str):
    order = Order.objects.filter(order_id=order_id).prefetch_related("items").first()
    if order is None:
        return JsonResponse({"message": "Order not found", "requestId": getattr(request, "request_id", None)}, status=404)
    return JsonResponse(serialize_order(order))


@require_GET
def my_orders_view(request):
    """List previous orders of the signed-in customer."""
    if not request.user.is_authenticated:
        return JsonResponse({"message": "Authentication required"}, status=401)
    qs = Order.objects.filter(customer=request.user).prefetch_related("items").order_by("-created_at")

    # Very light pagination
    try:
        page = int(request.GET.get("page", "1"))
        if page < 1: page = 1
    except ValueError:
        page = 1
    start = (page - 1) * PAGE_SIZE
    end = start + PAGE_SIZE
    total = qs.count()
    return JsonResponse({
        "orders": [serialize_order(o) for o in qs[start:end]],
        "page": page,
        "hasNext": end < total,
        "hasPrev": start > 0,
        "total": total,
    })
