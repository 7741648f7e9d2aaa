from django.core.cache import caches
from django.db import transaction
from django.test import TestCase

from storefront.exceptions import NotFoundError
from .models import Product
from .services import commit_stock, get_product, list_products


class GetProductTests(TestCase):
    def setUp(self):
        Product.objects.create(product_id="candle-1", title="Lavender Candle", price=49900, stock=5)
        Product.objects.create(product_id="retired", title="Old Candle", price=100, stock=5, active=False)

    def test_returns_active_product(self):
        self.assertEqual(get_product("candle-1").price, 49900)

    def test_inactive_product_is_not_found(self):
        with self.assertRaises(NotFoundError):
            get_product("retired")

    def test_missing_product_is_not_found(self):
        with self.assertRaises(NotFoundError):
            get_product("nope")


class CommitStockTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(product_id="candle-1", title="Lavender Candle", price=49900, stock=3)

    def test_decrements_when_enough_stock(self):
        self.assertTrue(commit_stock("candle-1", 2))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 1)

    def test_shortfall_leaves_stock_untouched(self):
        with self.assertLogs("catalog.services", level="WARNING"):
            self.assertFalse(commit_stock("candle-1", 4))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 3)


class ListingCacheTests(TestCase):
    def setUp(self):
        caches["catalog"].clear()
        self.product = Product.objects.create(product_id="candle-1", title="Lavender Candle", price=49900, stock=1)

    def test_listing_is_cached_until_product_changes(self):
        self.assertEqual(list_products()[0]["price"], 49900)
        with self.assertNumQueries(0):
            list_products()

        self.product.price = 59900
        with self.captureOnCommitCallbacks(execute=True):
            self.product.save()
        self.assertEqual(list_products()[0]["price"], 59900)

    def test_stock_commit_invalidates_listing(self):
        self.assertTrue(list_products()[0]["inStock"])
        with self.captureOnCommitCallbacks(execute=True):
            commit_stock("candle-1", 1)
        self.assertFalse(list_products()[0]["inStock"])

    def test_listing_is_not_invalidated_before_commit(self):
        list_products()
        with self.captureOnCommitCallbacks() as callbacks:
            commit_stock("candle-1", 1)
            # a read inside the open transaction still sees the cached copy
            self.assertTrue(list_products()[0]["inStock"])
        self.assertEqual(len(callbacks), 1)
        callbacks[0]()
        self.assertFalse(list_products()[0]["inStock"])

    def test_rolled_back_commit_keeps_listing(self):
        list_products()
        with self.captureOnCommitCallbacks() as callbacks:
            try:
                with transaction.atomic():
                    commit_stock("candle-1", 1)
                    raise RuntimeError("capture aborted")
            except RuntimeError:
                pass
        self.assertEqual(callbacks, [])
        self.assertTrue(list_products()[0]["inStock"])

    def test_inactive_products_are_hidden(self):
        Product.objects.create(product_id="retired", title="Old", price=100, active=False)
        ids = [p["productId"] for p in list_products()]
        self.assertEqual(ids, ["candle-1"])

    def test_detail_endpoint(self):
        resp = self.client.get("/products/candle-1")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["productId"], "candle-1")
        self.assertEqual(self.client.get("/products/missing").status_code, 404)
