import hashlib
import hmac
import json
from unittest.mock import patch

from django.core import mail
from django.test import TestCase, override_settings
from django.urls import reverse

from catalog.models import Product
from .models import Order
from .services import BuyerInfo, CartLine, create_order, verify_payment


def _sign(body: bytes, secret: str = "test-webhook-secret") -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _event(kind, gateway_order_id="order_test", payment_id="pay_1", amount=99800, **entity):
    return {
        "entity": "event",
        "event": kind,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": gateway_order_id,
                    "amount": amount,
                    "currency": "INR",
                    **entity,
                }
            }
        },
    }


class GatewayWebhookTests(TestCase):
    def setUp(self):
        self.candle = Product.objects.create(product_id="candle-1", title="Lavender Candle", price=49900, stock=5)
        with patch("payments.integrations.razorpay.create_remote_order", return_value={"id": "order_test"}):
            result = create_order(BuyerInfo(name="Jane", email="jane@example.com"), [CartLine("candle-1", 2)])
        self.order = Order.objects.get(order_id=result["orderId"])

    def _post(self, payload, signature=None, event_id="evt_1"):
        body = json.dumps(payload).encode() if not isinstance(payload, bytes) else payload
        headers = {"HTTP_X_RAZORPAY_EVENT_ID": event_id}
        if signature is not False:
            headers["HTTP_X_RAZORPAY_SIGNATURE"] = signature or _sign(body)
        return self.client.post(
            reverse("gateway_webhook"), data=body, content_type="application/json", **headers,
        )

    def _stock(self):
        self.candle.refresh_from_db()
        return self.candle.stock

    def test_capture_event_captures_order(self):
        with self.captureOnCommitCallbacks(execute=True):
            resp = self._post(_event("payment.captured"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "processed"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CAPTURED)
        self.assertEqual(self.order.gateway_payment_id, "pay_1")
        self.assertEqual(self.order.captured_via, "webhook")
        self.assertEqual(self._stock(), 3)
        self.assertEqual(len(mail.outbox), 1)

    def test_order_paid_event_captures_order(self):
        resp = self._post(_event("order.paid"))
        self.assertEqual(resp.json(), {"status": "processed"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CAPTURED)

    def test_duplicate_delivery_is_side_effect_free(self):
        self._post(_event("payment.captured"))
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            resp = self._post(_event("payment.captured"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "duplicate"})
        self.assertEqual(callbacks, [])
        self.assertEqual(self._stock(), 3)

    def test_webhook_after_checkout_confirmation_converges(self):
        sig = hmac.new(b"test-key-secret", b"order_test|pay_1", hashlib.sha256).hexdigest()
        verify_payment(self.order.order_id, "order_test", "pay_1", sig)
        self.order.refresh_from_db()
        before = (self.order.amount, list(self.order.items.values_list("product_id", "qty", "price")))

        resp = self._post(_event("payment.captured"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "duplicate"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.captured_via, "checkout")
        self.assertEqual((self.order.amount, list(self.order.items.values_list("product_id", "qty", "price"))), before)
        self.assertEqual(self._stock(), 3)

    def test_checkout_confirmation_after_webhook_is_duplicate(self):
        self._post(_event("payment.captured"))
        sig = hmac.new(b"test-key-secret", b"order_test|pay_1", hashlib.sha256).hexdigest()
        result = verify_payment(self.order.order_id, "order_test", "pay_1", sig)
        self.assertEqual(result["status"], "captured")
        self.assertTrue(result["duplicate"])
        self.assertEqual(self._stock(), 3)

    def test_different_payment_on_captured_order_is_conflict(self):
        self._post(_event("payment.captured"))
        with self.assertLogs("orders.services", level="ERROR"):
            resp = self._post(_event("payment.captured", payment_id="pay_2"), event_id="evt_2")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "conflict"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.gateway_payment_id, "pay_1")
        anomaly = self.order.metadata["anomalies"][-1]
        self.assertEqual(anomaly["paymentId"], "pay_2")
        self.assertEqual(anomaly["eventId"], "evt_2")
        self.assertEqual(self._stock(), 3)

    def test_amount_mismatch_is_not_captured(self):
        resp = self._post(_event("payment.captured", amount=100))
        self.assertEqual(resp.json(), {"status": "conflict"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CREATED)

    def test_float_amount_mismatch_is_not_captured(self):
        resp = self._post(_event("payment.captured", amount=100.0))
        self.assertEqual(resp.json(), {"status": "conflict"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CREATED)
        self.assertEqual(self._stock(), 5)

    def test_string_amount_is_not_captured(self):
        resp = self._post(_event("payment.captured", amount="99800"))
        self.assertEqual(resp.json(), {"status": "conflict"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CREATED)

    def test_whole_float_amount_matches(self):
        resp = self._post(_event("payment.captured", amount=99800.0))
        self.assertEqual(resp.json(), {"status": "processed"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CAPTURED)

    def test_capture_after_failure_tells_admin_to_refund(self):
        self._post(_event("payment.failed", payment_id="pay_0"))
        with self.assertLogs("orders.services", level="ERROR") as logs:
            resp = self._post(_event("payment.captured", payment_id="pay_1"), event_id="evt_2")
        self.assertEqual(resp.json(), {"status": "conflict"})
        self.assertTrue(any("refund" in line and "pay_1" in line for line in logs.output))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.FAILED)
        self.assertEqual(self.order.metadata["anomalies"][-1]["paymentId"], "pay_1")

    def test_failure_event_fails_order(self):
        resp = self._post(_event("payment.failed", error_description="Card declined"))
        self.assertEqual(resp.json(), {"status": "processed"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.FAILED)
        self.assertEqual(self.order.failure_reason, "Card declined")
        self.assertEqual(self._stock(), 5)

    def test_failure_after_capture_does_not_touch_order(self):
        self._post(_event("payment.captured"))
        resp = self._post(_event("payment.failed", payment_id="pay_0"))
        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CAPTURED)

    def test_invalid_signature_is_rejected(self):
        resp = self._post(_event("payment.captured"), signature="0" * 64)
        self.assertEqual(resp.status_code, 400)
        self.assertNotIn("secret", resp.content.decode())
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CREATED)

    def test_payment_secret_signature_is_rejected(self):
        body = json.dumps(_event("payment.captured")).encode()
        resp = self._post(body, signature=_sign(body, "test-key-secret"))
        self.assertEqual(resp.status_code, 400)

    def test_missing_signature_is_rejected(self):
        resp = self._post(_event("payment.captured"), signature=False)
        self.assertEqual(resp.status_code, 400)

    @override_settings(RAZORPAY_WEBHOOK_SECRET="")
    def test_unconfigured_secret_rejects(self):
        body = json.dumps(_event("payment.captured")).encode()
        resp = self._post(body, signature=_sign(body, ""))
        self.assertEqual(resp.status_code, 400)

    def test_signed_garbage_body_is_rejected(self):
        resp = self._post(b"not json")
        self.assertEqual(resp.status_code, 400)

    def test_unknown_order_is_acknowledged(self):
        resp = self._post(_event("payment.captured", gateway_order_id="order_gone"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ignored"})

    def test_unhandled_event_is_acknowledged(self):
        resp = self._post(_event("payment.authorized"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ignored"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CREATED)

    def test_get_is_not_allowed(self):
        self.assertEqual(self.client.get(reverse("gateway_webhook")).status_code, 405)

    def test_last_payload_is_kept(self):
        self._post(_event("payment.captured"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.metadata["last_webhook"]["event"], "payment.captured")
