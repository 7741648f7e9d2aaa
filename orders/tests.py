import hashlib
import hmac
import json
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.management import call_command
from django.test import Client, TestCase
from django.utils import timezone

from catalog.models import Product
from payments.integrations.razorpay import GatewayError, GatewayTimeout
from storefront.exceptions import ConflictError, NotFoundError, SignatureError, UpstreamError
from .models import Order, OrderItem
from .services import BuyerInfo, CartLine, Transition, capture_order, create_order, fail_order, verify_payment

BUYER = BuyerInfo(name="Jane Doe", email="jane@example.com", phone="+919999999999")


def checkout_signature(gateway_order_id, payment_id, secret="test-key-secret"):
    return hmac.new(secret.encode(), f"{gateway_order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def remote_order(gateway_order_id="order_test"):
    return patch(
        "payments.integrations.razorpay.create_remote_order",
        return_value={"id": gateway_order_id, "status": "created"},
    )


class OrderFixtureMixin:
    def setUp(self):
        self.candle = Product.objects.create(product_id="candle-1", title="Lavender Candle", price=49900, stock=5)
        self.soap = Product.objects.create(product_id="soap-1", title="Rose Soap", price=15000, stock=1)

    def make_order(self, gateway_order_id="order_test", qty=2):
        with remote_order(gateway_order_id):
            result = create_order(BUYER, [CartLine("candle-1", qty)])
        return Order.objects.get(order_id=result["orderId"])


class CreateOrderTests(OrderFixtureMixin, TestCase):
    def test_amount_is_computed_from_catalog_prices(self):
        with remote_order() as gw:
            result = create_order(BUYER, [CartLine("candle-1", 2)])

        self.assertEqual(result["amount"], 99800)
        self.assertEqual(result["currency"], "INR")
        self.assertEqual(result["gatewayOrderId"], "order_test")
        self.assertEqual(result["gatewayPublicKey"], "rzp_test_key")
        gw.assert_called_once()
        self.assertEqual(gw.call_args.kwargs["amount"], 99800)
        self.assertEqual(gw.call_args.kwargs["receipt"], result["orderId"])

        order = Order.objects.get(order_id=result["orderId"])
        self.assertEqual(order.status, Order.Status.CREATED)
        self.assertEqual(order.amount, sum(i.line_total for i in order.items.all()))

    def test_stock_is_checked_but_not_decremented(self):
        self.make_order()
        self.candle.refresh_from_db()
        self.assertEqual(self.candle.stock, 5)

    def test_duplicate_lines_are_merged(self):
        with remote_order():
            result = create_order(BUYER, [CartLine("candle-1", 1), CartLine("soap-1", 1), CartLine("candle-1", 1)])
        self.assertEqual(result["amount"], 2 * 49900 + 15000)
        self.assertEqual(OrderItem.objects.filter(product_id="candle-1").get().qty, 2)

    def test_unknown_product(self):
        with remote_order() as gw, self.assertRaises(NotFoundError):
            create_order(BUYER, [CartLine("ghost", 1)])
        gw.assert_not_called()

    def test_insufficient_stock(self):
        with remote_order() as gw, self.assertRaises(ConflictError):
            create_order(BUYER, [CartLine("soap-1", 2)])
        gw.assert_not_called()
        self.assertFalse(Order.objects.exists())

    def test_gateway_failure_leaves_no_order(self):
        with patch("payments.integrations.razorpay.create_remote_order", side_effect=GatewayError("down")):
            with self.assertRaises(UpstreamError) as cm:
                create_order(BUYER, [CartLine("candle-1", 1)])
        self.assertEqual(cm.exception.status_code, 502)
        self.assertFalse(Order.objects.exists())

    def test_gateway_timeout_maps_to_504(self):
        with patch("payments.integrations.razorpay.create_remote_order", side_effect=GatewayTimeout("slow")):
            with self.assertRaises(UpstreamError) as cm:
                create_order(BUYER, [CartLine("candle-1", 1)])
        self.assertEqual(cm.exception.status_code, 504)
        self.assertFalse(Order.objects.exists())


class CreateOrderViewTests(OrderFixtureMixin, TestCase):
    def _post(self, payload):
        return self.client.post("/orders/create", data=json.dumps(payload), content_type="application/json")

    def test_client_price_is_ignored(self):
        with remote_order():
            resp = self._post({
                "buyerInfo": {"name": "Jane", "email": "jane@example.com"},
                "items": [{"productId": "candle-1", "qty": 2, "price": 1}],
                "amount": 1,
            })
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["amount"], 99800)

    def test_empty_cart_is_rejected(self):
        resp = self._post({"buyerInfo": {"name": "Jane", "email": "jane@example.com"}, "items": []})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("items", resp.json()["errors"])

    def test_invalid_email_is_rejected(self):
        resp = self._post({"buyerInfo": {"name": "Jane", "email": "nope"}, "items": [{"productId": "candle-1", "qty": 1}]})
        self.assertEqual(resp.status_code, 400)

    def test_zero_quantity_is_rejected(self):
        resp = self._post({"buyerInfo": {"name": "Jane", "email": "jane@example.com"}, "items": [{"productId": "candle-1", "qty": 0}]})
        self.assertEqual(resp.status_code, 400)

    def test_error_statuses(self):
        buyer = {"name": "Jane", "email": "jane@example.com"}
        self.assertEqual(self._post({"buyerInfo": buyer, "items": [{"productId": "ghost", "qty": 1}]}).status_code, 404)
        self.assertEqual(self._post({"buyerInfo": buyer, "items": [{"productId": "soap-1", "qty": 3}]}).status_code, 409)
        with patch("payments.integrations.razorpay.create_remote_order", side_effect=GatewayError("down")):
            resp = self._post({"buyerInfo": buyer, "items": [{"productId": "candle-1", "qty": 1}]})
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp["Retry-After"], "5")

    def test_malformed_json(self):
        resp = self.client.post("/orders/create", data="{", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_signed_in_customer_is_linked(self):
        user = get_user_model().objects.create_user("jane", "jane@example.com", "pw-12345")
        self.client.force_login(user)
        with remote_order():
            resp = self._post({"buyerInfo": {"name": "Jane", "email": "jane@example.com"}, "items": [{"productId": "candle-1", "qty": 1}]})
        self.assertEqual(Order.objects.get(order_id=resp.json()["orderId"]).customer, user)


class CreateOrderCsrfTests(OrderFixtureMixin, TestCase):
    payload = {"buyerInfo": {"name": "Jane", "email": "jane@example.com"}, "items": [{"productId": "candle-1", "qty": 1}]}

    def setUp(self):
        super().setUp()
        self.client = Client(enforce_csrf_checks=True)
        self.user = get_user_model().objects.create_user("jane", "jane@example.com", "pw-12345")

    def _post(self, **extra):
        return self.client.post("/orders/create", data=json.dumps(self.payload), content_type="application/json", **extra)

    def test_session_request_without_token_is_refused(self):
        self.client.force_login(self.user)
        with remote_order() as gw:
            resp = self._post()
        self.assertEqual(resp.status_code, 403)
        gw.assert_not_called()
        self.assertFalse(Order.objects.exists())

    def test_guest_checkout_needs_no_token(self):
        with remote_order():
            resp = self._post()
        self.assertEqual(resp.status_code, 201)
        self.assertIsNone(Order.objects.get(order_id=resp.json()["orderId"]).customer)

    def test_session_request_with_token_is_linked(self):
        self.client.force_login(self.user)
        token = "a" * 32
        self.client.cookies[settings.CSRF_COOKIE_NAME] = token
        with remote_order():
            resp = self._post(HTTP_X_CSRFTOKEN=token)
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(Order.objects.get(order_id=resp.json()["orderId"]).customer, self.user)


class VerifyPaymentTests(OrderFixtureMixin, TestCase):
    def test_candle_scenario(self):
        order = self.make_order()
        self.assertEqual(order.amount, 99800)

        with self.captureOnCommitCallbacks(execute=True):
            result = verify_payment(order.order_id, "order_test", "pay_1", checkout_signature("order_test", "pay_1"))

        self.assertEqual(result, {"orderId": order.order_id, "status": "captured", "duplicate": False})
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CAPTURED)
        self.assertEqual(order.gateway_payment_id, "pay_1")
        self.assertEqual(order.captured_via, "checkout")
        self.candle.refresh_from_db()
        self.assertEqual(self.candle.stock, 3)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["jane@example.com"])

    def test_second_identical_call_is_idempotent(self):
        order = self.make_order()
        sig = checkout_signature("order_test", "pay_1")
        with self.captureOnCommitCallbacks(execute=True):
            verify_payment(order.order_id, "order_test", "pay_1", sig)
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            result = verify_payment(order.order_id, "order_test", "pay_1", sig)

        self.assertEqual(result["status"], "captured")
        self.assertTrue(result["duplicate"])
        self.assertEqual(callbacks, [])
        self.candle.refresh_from_db()
        self.assertEqual(self.candle.stock, 3)
        self.assertEqual(len(mail.outbox), 1)

    def test_tampered_signature_never_transitions(self):
        order = self.make_order()
        good = checkout_signature("order_test", "pay_1")
        for sig in (good[:-1] + ("0" if good[-1] != "0" else "1"), "", "deadbeef",
                    checkout_signature("order_test", "pay_2"),
                    checkout_signature("order_test", "pay_1", secret="wrong")):
            with self.assertRaises(SignatureError):
                verify_payment(order.order_id, "order_test", "pay_1", sig)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CREATED)
        self.assertEqual(order.gateway_payment_id, "")

    def test_gateway_order_mismatch_is_rejected(self):
        order = self.make_order()
        other = self.make_order(gateway_order_id="order_other")
        # a valid signature, but for a different order
        sig = checkout_signature("order_other", "pay_1")
        with self.assertLogs("orders.services", level="WARNING"), self.assertRaises(SignatureError):
            verify_payment(order.order_id, "order_other", "pay_1", sig)
        order.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CREATED)
        self.assertEqual(other.status, Order.Status.CREATED)

    def test_unknown_order(self):
        with self.assertRaises(NotFoundError):
            verify_payment("ORDMISSING", "order_test", "pay_1", checkout_signature("order_test", "pay_1"))

    def test_different_payment_after_capture_is_conflict(self):
        order = self.make_order()
        verify_payment(order.order_id, "order_test", "pay_1", checkout_signature("order_test", "pay_1"))
        with self.assertRaises(ConflictError):
            verify_payment(order.order_id, "order_test", "pay_2", checkout_signature("order_test", "pay_2"))
        order.refresh_from_db()
        self.assertEqual(order.gateway_payment_id, "pay_1")
        self.assertEqual(len(order.metadata["anomalies"]), 1)

    def test_failed_order_cannot_be_captured(self):
        order = self.make_order()
        fail_order(order, source="webhook", payment_id="pay_0", reason="card declined")
        with self.assertRaises(ConflictError):
            verify_payment(order.order_id, "order_test", "pay_1", checkout_signature("order_test", "pay_1"))
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.FAILED)

    def test_view_status_codes(self):
        order = self.make_order()

        def post(**overrides):
            body = {
                "orderId": order.order_id, "gatewayOrderId": "order_test",
                "gatewayPaymentId": "pay_1", "signature": checkout_signature("order_test", "pay_1"),
            }
            body.update(overrides)
            return self.client.post("/orders/verify", data=json.dumps(body), content_type="application/json")

        self.assertEqual(post(signature="bad").status_code, 401)
        self.assertEqual(post(orderId="").status_code, 400)
        self.assertEqual(post(orderId="ORDMISSING").status_code, 404)
        resp = post()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "captured")
        self.assertEqual(post().status_code, 200)
        resp = post(gatewayPaymentId="pay_2", signature=checkout_signature("order_test", "pay_2"))
        self.assertEqual(resp.status_code, 409)


class StateMachineTests(OrderFixtureMixin, TestCase):
    def test_capture_then_fail_is_conflict(self):
        order = self.make_order()
        self.assertIs(capture_order(order, "pay_1", source="webhook"), Transition.APPLIED)
        with self.assertRaises(ConflictError):
            fail_order(order, source="webhook", payment_id="pay_1", reason="late failure")
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CAPTURED)

    def test_repeat_failure_is_duplicate(self):
        order = self.make_order()
        self.assertIs(fail_order(order, source="webhook", reason="declined"), Transition.APPLIED)
        self.assertIs(fail_order(order, source="webhook", reason="declined"), Transition.DUPLICATE)
        order.refresh_from_db()
        self.assertEqual(order.failure_reason, "declined")
        self.assertEqual([e["outcome"] for e in order.metadata["events"]], ["applied", "duplicate"])

    def test_amount_mismatch_is_refused(self):
        order = self.make_order()
        with self.assertRaises(ConflictError):
            capture_order(order, "pay_1", source="webhook", amount=100)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CREATED)

    def test_capture_on_failed_order_asks_for_refund(self):
        order = self.make_order()
        fail_order(order, source="webhook", reason="declined")
        with self.assertLogs("orders.services", level="ERROR") as logs:
            with self.assertRaises(ConflictError):
                capture_order(order, "pay_retry", source="checkout")
        self.assertIn("refund", logs.output[-1])
        self.assertIn("pay_retry", logs.output[-1])
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.FAILED)
        self.candle.refresh_from_db()
        self.assertEqual(self.candle.stock, 5)

    def test_stale_instance_still_converges(self):
        order = self.make_order()
        stale = Order.objects.get(pk=order.pk)
        capture_order(order, "pay_1", source="checkout")
        self.assertIs(capture_order(stale, "pay_1", source="webhook"), Transition.DUPLICATE)
        self.candle.refresh_from_db()
        self.assertEqual(self.candle.stock, 3)

    def test_oversold_capture_is_recorded(self):
        order = self.make_order(qty=5)
        Product.objects.filter(pk=self.candle.pk).update(stock=1)
        self.assertIs(capture_order(order, "pay_1", source="checkout"), Transition.APPLIED)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CAPTURED)
        self.assertEqual(order.metadata["oversold"][0]["lines"], [{"productId": "candle-1", "qty": 5}])
        self.candle.refresh_from_db()
        self.assertEqual(self.candle.stock, 1)

    def test_status_is_always_one_of_three(self):
        order = self.make_order()
        for step in (
            lambda: capture_order(order, "pay_1", source="webhook"),
            lambda: fail_order(order, source="webhook"),
            lambda: capture_order(order, "pay_2", source="checkout"),
            lambda: capture_order(order, "pay_1", source="checkout"),
        ):
            try:
                step()
            except ConflictError:
                pass
            order.refresh_from_db()
            self.assertIn(order.status, {"created", "captured", "failed"})
        self.assertEqual(order.status, "captured")


class OrderStatusViewTests(OrderFixtureMixin, TestCase):
    def test_status_document(self):
        order = self.make_order()
        resp = self.client.get(f"/orders/{order.order_id}")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "created")
        self.assertEqual(body["items"], [{"productId": "candle-1", "title": "Lavender Candle", "qty": 2, "price": 49900}])
        self.assertEqual(self.client.get("/orders/ORDMISSING").status_code, 404)

    def test_my_orders_requires_sign_in(self):
        self.assertEqual(self.client.get("/orders/mine").status_code, 401)

    def test_my_orders_lists_own_orders(self):
        user = get_user_model().objects.create_user("jane", "jane@example.com", "pw-12345")
        mine = self.make_order()
        mine.customer = user
        mine.save(update_fields=["customer"])
        self.make_order(gateway_order_id="order_other")
        self.client.force_login(user)
        body = self.client.get("/orders/mine").json()
        self.assertEqual([o["orderId"] for o in body["orders"]], [mine.order_id])
        self.assertFalse(body["hasNext"])


class ReconcilePendingOrdersTests(OrderFixtureMixin, TestCase):
    def _age(self, order, **delta):
        Order.objects.filter(pk=order.pk).update(created_at=timezone.now() - timedelta(**delta))

    def test_captures_paid_order(self):
        order = self.make_order()
        self._age(order, minutes=30)
        payments = [{"id": "pay_9", "status": "captured", "amount": 99800}]
        out = StringIO()
        with patch("orders.management.commands.reconcile_pending_orders.fetch_order_payments", return_value=payments):
            call_command("reconcile_pending_orders", "--sleep", "0", stdout=out)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CAPTURED)
        self.assertEqual(order.captured_via, "reconcile")
        self.assertIn("captured 1", out.getvalue())

    def test_expires_unpaid_order(self):
        order = self.make_order()
        self._age(order, hours=30)
        payments = [{"id": "pay_9", "status": "failed"}]
        with patch("orders.management.commands.reconcile_pending_orders.fetch_order_payments", return_value=payments):
            call_command("reconcile_pending_orders", "--sleep", "0", "--expire-after-hours", "24", stdout=StringIO())
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.FAILED)

    def test_gateway_error_does_not_stop_run(self):
        first = self.make_order()
        second = self.make_order(gateway_order_id="order_other")
        self._age(first, minutes=30)
        self._age(second, minutes=20)

        def fake(gateway_order_id):
            if gateway_order_id == "order_test":
                raise GatewayError("down")
            return [{"id": "pay_2", "status": "captured", "amount": 99800}]

        with patch("orders.management.commands.reconcile_pending_orders.fetch_order_payments", side_effect=fake):
            call_command("reconcile_pending_orders", "--sleep", "0", stdout=StringIO())
        first.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(first.status, Order.Status.CREATED)
        self.assertEqual(second.status, Order.Status.CAPTURED)

    def test_fractional_amount_is_not_captured(self):
        order = self.make_order()
        self._age(order, minutes=30)
        payments = [{"id": "pay_9", "status": "captured", "amount": 998.0}]
        with patch("orders.management.commands.reconcile_pending_orders.fetch_order_payments", return_value=payments):
            call_command("reconcile_pending_orders", "--sleep", "0", stdout=StringIO())
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CREATED)
        self.assertEqual(order.metadata["anomalies"][-1]["amount"], 998)
