from django import forms

from storefront import exceptions
from .services import BuyerInfo, CartLine

MAX_CART_LINES = 50


class BuyerForm(forms.Form):
    name = forms.CharField(max_length=128)
    email = forms.EmailField()
    phone = forms.CharField(max_length=20, required=False)


class CartItemForm(forms.Form):
    # any client-supplied price is deliberately not a field
    product_id = forms.CharField(max_length=64)
    qty = forms.IntegerField(min_value=1, max_value=100)


class VerifyPaymentForm(forms.Form):
    order_id = forms.CharField(max_length=40)
    gateway_order_id = forms.CharField(max_length=64)
    gateway_payment_id = forms.CharField(max_length=64)
    signature = forms.CharField(max_length=128)


def _invalid(message, errors):
    return exceptions.ValidationError(message, errors=errors)


def parse_create_order(body: dict) -> tuple:
    """Validate a create-order request body into (BuyerInfo, [CartLine])."""
    buyer_data = body.get("buyerInfo") or body.get("user") or {}
    if not isinstance(buyer_data, dict):
        raise _invalid("Invalid buyer info", {"buyerInfo": ["Expected an object."]})
    buyer_form = BuyerForm(data=buyer_data)
    if not buyer_form.is_valid():
        raise _invalid("Invalid buyer info", {"buyerInfo": buyer_form.errors.get_json_data()})

    raw_items = body.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise _invalid("Cart is empty", {"items": ["At least one item is required."]})
    if len(raw_items) > MAX_CART_LINES:
        raise _invalid("Too many items", {"items": [f"At most {MAX_CART_LINES} lines."]})

    lines = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise _invalid("Invalid item", {f"items[{idx}]": ["Expected an object."]})
        form = CartItemForm(data={"product_id": raw.get("productId"), "qty": raw.get("qty")})
        if not form.is_valid():
            raise _invalid("Invalid item", {f"items[{idx}]": form.errors.get_json_data()})
        lines.append(CartLine(product_id=form.cleaned_data["product_id"], qty=form.cleaned_data["qty"]))

    cd = buyer_form.cleaned_data
    buyer = BuyerInfo(name=cd["name"].strip(), email=cd["email"].strip().lower(), phone=(cd.get("phone") or "").strip())
    return buyer, lines


def parse_verify_payment(body: dict) -> dict:
    form = VerifyPaymentForm(data={
        "order_id": body.get("orderId"),
        "gateway_order_id": body.get("gatewayOrderId"),
        "gateway_payment_id": body.get("gatewayPaymentId"),
        "signature": body.get("signature"),
    })
    if not form.is_valid():
        raise _invalid("Invalid payment confirmation", form.errors.get_json_data())
    return form.cleaned_data
