from django.http import JsonResponse
from django.views.decorators.http import require_GET

from storefront.exceptions import NotFoundError
from .services import get_product, list_products, serialize


@require_GET
def product_list(request):
    return JsonResponse({"items": list_products()})


@require_GET
def product_detail(request, product_id: str):
    try:
        product = get_product(product_id)
    except NotFoundError as e:
        return JsonResponse({"message": e.message, "requestId": getattr(request, "request_id", None)}, status=404)
    return JsonResponse(serialize(product))
