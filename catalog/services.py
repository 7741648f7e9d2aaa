import logging

from django.core.cache import caches
from django.db import transaction
from django.db.models import F

from storefront.exceptions import NotFoundError
from .models import Product

logger = logging.getLogger(__name__)

LISTING_KEY = "catalog:listing"


def _cache():
    return caches["catalog"]


def get_product(product_id: str) -> Product:
    """Authoritative price/stock lookup. Never served from the cache."""
    product = Product.objects.filter(product_id=product_id, active=True).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} unavailable", product_id=product_id)
    return product


def commit_stock(product_id: str, qty: int) -> bool:
    """Decrement stock by ``qty`` only if at least ``qty`` is left.

    Single conditional UPDATE, so concurrent captures cannot drive stock
    negative. Returns False when the shortfall prevented the decrement.
    """
    updated = Product.objects.filter(product_id=product_id, stock__gte=qty).update(stock=F("stock") - qty)
    if updated:
        # after commit, or a concurrent read could re-cache the old stock
        transaction.on_commit(invalidate_listing)
        return True
    logger.warning("Stock shortfall committing %s x %s", qty, product_id)
    return False


def serialize(product: Product) -> dict:
    return {
        "productId": product.product_id,
        "title": product.title,
        "description": product.description,
        "price": product.price,
        "currency": product.currency,
        "inStock": product.stock > 0,
    }


def list_products() -> list:
    data = _cache().get(LISTING_KEY)
    if data is None:
        data = [serialize(p) for p in Product.objects.filter(active=True)]
        _cache().set(LISTING_KEY, data)
    return data


def invalidate_listing() -> None:
    _cache().delete(LISTING_KEY)
