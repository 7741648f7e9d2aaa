import hashlib
import hmac
import json
from unittest.mock import patch

import requests
from django.test import SimpleTestCase, override_settings

from .integrations import razorpay


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text or json.dumps(data)

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class SignatureHelperTests(SimpleTestCase):
    def test_validates_checkout_signature(self):
        sig = _sign("order_123|pay_123", "test-key-secret")
        self.assertTrue(razorpay.verify_checkout_signature("order_123", "pay_123", sig))

    def test_rejects_checkout_signature_for_other_payment(self):
        sig = _sign("order_123|pay_123", "test-key-secret")
        self.assertFalse(razorpay.verify_checkout_signature("order_123", "pay_999", sig))

    def test_checkout_signature_is_not_valid_for_webhooks(self):
        body = json.dumps({"id": "evt_1"})
        sig = _sign(body, "test-key-secret")
        self.assertFalse(razorpay.verify_webhook_signature(body.encode(), sig))

    def test_validates_webhook_payload(self):
        body = json.dumps({"id": "evt_1"})
        sig = _sign(body, "test-webhook-secret")
        self.assertTrue(razorpay.verify_webhook_signature(body.encode(), sig))

    @override_settings(RAZORPAY_WEBHOOK_SECRET="")
    def test_missing_webhook_secret_rejects_everything(self):
        body = "{}"
        with self.assertLogs("payments.integrations.razorpay", level="ERROR"):
            self.assertFalse(razorpay.verify_webhook_signature(body.encode(), _sign(body, "")))

    def test_empty_signature_rejected(self):
        self.assertFalse(razorpay.verify_signature("a|b", "", "secret"))


class CreateRemoteOrderTests(SimpleTestCase):
    def test_posts_amount_in_minor_units_with_timeout(self):
        resp = FakeResponse(200, {"id": "order_abc", "amount": 99800, "status": "created"})
        with patch("payments.integrations.razorpay.requests.request", return_value=resp) as req:
            data = razorpay.create_remote_order(amount=99800, currency="INR", receipt="ORD1")

        self.assertEqual(data["id"], "order_abc")
        method, url = req.call_args.args
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("/orders"))
        kwargs = req.call_args.kwargs
        self.assertEqual(kwargs["json"]["amount"], 99800)
        self.assertEqual(kwargs["json"]["receipt"], "ORD1")
        self.assertEqual(kwargs["auth"], ("rzp_test_key", "test-key-secret"))
        self.assertIn("timeout", kwargs)

    def test_timeout_raises_gateway_timeout(self):
        with patch("payments.integrations.razorpay.requests.request", side_effect=requests.Timeout("slow")):
            with self.assertRaises(razorpay.GatewayTimeout):
                razorpay.create_remote_order(amount=100, currency="INR", receipt="ORD1")

    def test_non_2xx_raises_without_leaking_secret(self):
        resp = FakeResponse(401, {"error": {"code": "BAD_REQUEST_ERROR"}})
        with patch("payments.integrations.razorpay.requests.request", return_value=resp):
            with self.assertRaises(razorpay.GatewayError) as cm:
                razorpay.create_remote_order(amount=100, currency="INR", receipt="ORD1")
        self.assertIn("RAZORPAY_KEY_ID", str(cm.exception))
        self.assertNotIn("test-key-secret", str(cm.exception))

    @override_settings(RAZORPAY_KEY_SECRET="")
    def test_unconfigured_gateway_raises(self):
        with patch("payments.integrations.razorpay.requests.request") as req:
            with self.assertRaises(razorpay.GatewayError):
                razorpay.create_remote_order(amount=100, currency="INR", receipt="ORD1")
        req.assert_not_called()

    def test_rejects_non_integer_amount(self):
        with self.assertRaises(razorpay.GatewayError):
            razorpay.create_remote_order(amount=998.0, currency="INR", receipt="ORD1")


class FetchOrderPaymentsTests(SimpleTestCase):
    def test_returns_items(self):
        resp = FakeResponse(200, {"count": 1, "items": [{"id": "pay_1", "status": "captured"}]})
        with patch("payments.integrations.razorpay.requests.request", return_value=resp) as req:
            items = razorpay.fetch_order_payments("order_abc")
        self.assertEqual(items, [{"id": "pay_1", "status": "captured"}])
        self.assertTrue(req.call_args.args[1].endswith("/orders/order_abc/payments"))
