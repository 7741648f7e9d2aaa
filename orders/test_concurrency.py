import hashlib
import hmac
import json
import threading
from unittest.mock import patch

from django.core import mail
from django.db import connection
from django.test import Client, TransactionTestCase

from catalog.models import Product
from storefront.exceptions import ConflictError
from .models import Order
from .services import BuyerInfo, CartLine, Transition, capture_order, create_order


class ConcurrentCaptureTests(TransactionTestCase):
    """Several deliveries of the same payment arriving at once, each on its own connection."""

    workers = 4

    def setUp(self):
        self.candle = Product.objects.create(product_id="candle-1", title="Lavender Candle", price=49900, stock=5)
        with patch("payments.integrations.razorpay.create_remote_order", return_value={"id": "order_race"}):
            result = create_order(BuyerInfo(name="Jane", email="jane@example.com"), [CartLine("candle-1", 2)])
        self.order_pk = Order.objects.get(order_id=result["orderId"]).pk

    def _race(self, calls):
        barrier = threading.Barrier(len(calls))
        results, errors = [], []

        def run(fn):
            try:
                barrier.wait(timeout=10)
                results.append(fn())
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=run, args=(fn,)) for fn in calls]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        return results, errors

    def _capture(self, payment_id, source):
        return lambda: capture_order(Order.objects.get(pk=self.order_pk), payment_id, source=source)

    def test_same_payment_is_applied_once(self):
        sources = ["checkout", "webhook", "webhook", "reconcile"]
        results, errors = self._race([self._capture("pay_1", s) for s in sources[:self.workers]])

        self.assertEqual(errors, [])
        self.assertEqual(results.count(Transition.APPLIED), 1)
        self.assertEqual(results.count(Transition.DUPLICATE), self.workers - 1)
        order = Order.objects.get(pk=self.order_pk)
        self.assertEqual(order.status, Order.Status.CAPTURED)
        self.assertEqual(len(order.metadata["events"]), self.workers)
        self.candle.refresh_from_db()
        self.assertEqual(self.candle.stock, 3)
        self.assertEqual(len([m for m in mail.outbox if "jane@example.com" in m.to]), 1)

    def test_competing_payments_leave_one_winner(self):
        calls = [self._capture(f"pay_{n}", "webhook") for n in range(self.workers)]
        with self.assertLogs("orders.services", level="ERROR"):
            results, errors = self._race(calls)

        self.assertEqual(results, [Transition.APPLIED])
        self.assertEqual(len(errors), self.workers - 1)
        self.assertTrue(all(isinstance(e, ConflictError) for e in errors))
        order = Order.objects.get(pk=self.order_pk)
        self.assertEqual(len(order.metadata["anomalies"]), self.workers - 1)
        self.assertNotIn(order.gateway_payment_id, [a["paymentId"] for a in order.metadata["anomalies"]])
        self.candle.refresh_from_db()
        self.assertEqual(self.candle.stock, 3)

    def test_redelivered_webhooks_all_acknowledged(self):
        body = json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_race", "amount": 99800}}},
        }).encode()
        signature = hmac.new(b"test-webhook-secret", body, hashlib.sha256).hexdigest()

        def deliver():
            resp = Client().post(
                "/webhook/gateway", data=body, content_type="application/json",
                HTTP_X_RAZORPAY_SIGNATURE=signature,
            )
            return resp.status_code, resp.json()["status"]

        results, errors = self._race([deliver] * self.workers)

        self.assertEqual(errors, [])
        self.assertEqual([code for code, _ in results], [200] * self.workers)
        self.assertEqual(sorted(status for _, status in results), ["duplicate"] * (self.workers - 1) + ["processed"])
        self.candle.refresh_from_db()
        self.assertEqual(self.candle.stock, 3)
