import hmac, hashlib, json, logging
import requests
from requests import RequestException, Timeout
from django.conf import settings

logger = logging.getLogger(__name__)

COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


class GatewayError(Exception): pass

class GatewayTimeout(GatewayError): pass


def is_configured() -> bool:
    return bool(settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET)


def _auth() -> tuple:
    if not is_configured():
        raise GatewayError("Missing RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET")
    return (settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)


def _url(path: str) -> str:
    return settings.RAZORPAY_BASE_URL.rstrip("/") + path


def _hint(status_code: int) -> str:
    if status_code == 401: return "Check RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET."
    if status_code == 400: return "Bad request: amount/currency/receipt."
    if status_code >= 500: return f"Gateway error {status_code}."
    return f"HTTP {status_code}"


def _send(method: str, path: str, **kwargs) -> dict:
    try:
        resp = requests.request(
            method, _url(path), auth=_auth(), headers=COMMON_HEADERS,
            timeout=settings.RAZORPAY_TIMEOUT, **kwargs
        )
    except Timeout as e:
        raise GatewayTimeout(f"Gateway request timed out: {e}")
    except RequestException as e:
        raise GatewayError(f"Gateway request failed: {e}")
    try: data = resp.json()
    except ValueError: data = {"raw": resp.text}
    if 200 <= resp.status_code < 300:
        return data
    raise GatewayError(f"{method} {path} failed: {_hint(resp.status_code)} Response: {json.dumps(data)[:800]}")


def create_remote_order(*, amount: int, currency: str, receipt: str, notes: dict | None = None) -> dict:
    """Mint a gateway order for ``amount`` minor units.

    ``receipt`` is our own order id; the gateway echoes it back on the order
    entity, which makes orphaned remote orders traceable. Returns the gateway
    order entity; its ``id`` is the gateway order id.
    """
    if not isinstance(amount, int) or amount <= 0:
        raise GatewayError("Amount must be a positive integer in minor units")
    payload = {
        "amount": amount,
        "currency": currency,
        "receipt": receipt,
        "payment_capture": 1,
    }
    if notes:
        payload["notes"] = notes
    data = _send("POST", "/orders", json=payload)
    if not data.get("id"):
        raise GatewayError(f"Gateway order response missing id: {json.dumps(data)[:800]}")
    logger.info("Gateway order %s minted for receipt=%s amount=%s", data["id"], receipt, amount)
    return data


def fetch_order_payments(gateway_order_id: str) -> list:
    """Payments attempted against a gateway order, newest first."""
    data = _send("GET", f"/orders/{gateway_order_id}/payments")
    return data.get("items") or []


def verify_signature(payload, signature: str, secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 ``signature`` over ``payload``."""
    if not secret or not signature:
        return False
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def checkout_signature_payload(gateway_order_id: str, gateway_payment_id: str) -> str:
    return f"{gateway_order_id}|{gateway_payment_id}"


def verify_checkout_signature(gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
    secret = settings.RAZORPAY_KEY_SECRET
    if not secret:
        logger.error("RAZORPAY_KEY_SECRET missing; cannot verify checkout signature")
        return False
    return verify_signature(checkout_signature_payload(gateway_order_id, gateway_payment_id), signature, secret)


def verify_webhook_signature(raw_body: bytes, signature: str) -> bool:
    secret = settings.RAZORPAY_WEBHOOK_SECRET
    if not secret:
        logger.error("RAZORPAY_WEBHOOK_SECRET missing; cannot verify webhook signature")
        return False
    return verify_signature(raw_body, signature, secret)
