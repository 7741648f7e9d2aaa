from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models


class Order(models.Model):
    class Status(models.TextChoices):
        CREATED = "created", "Created"
        CAPTURED = "captured", "Captured"
        FAILED = "failed", "Failed"

    TERMINAL = (Status.CAPTURED, Status.FAILED)

    order_id = models.CharField(max_length=40, unique=True)  # also the gateway receipt
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True,
        on_delete=models.SET_NULL, related_name="orders",
    )
    buyer_name = models.CharField(max_length=128)
    buyer_email = models.EmailField()
    buyer_phone = models.CharField(max_length=20, blank=True, default="")

    amount = models.PositiveIntegerField(validators=[MinValueValidator(1)])  # minor units
    currency = models.CharField(max_length=8, default="INR")
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.CREATED, db_index=True)

    gateway_order_id = models.CharField(max_length=64, unique=True)
    gateway_payment_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    gateway_signature = models.CharField(max_length=128, blank=True, default="")
    captured_via = models.CharField(max_length=16, blank=True, default="")
    failure_reason = models.CharField(max_length=255, blank=True, default="")

    # audit trail: events, anomalies, oversold lines, last webhook payload
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    captured_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("-created_at",)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL

    def __str__(self):
        return f"{self.order_id} ({self.status})"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product_id = models.CharField(max_length=64)
    title = models.CharField(max_length=200)
    qty = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price = models.PositiveIntegerField()  # unit price at order creation, minor units

    @property
    def line_total(self) -> int:
        return self.qty * self.price

    def __str__(self):
        return f"{self.qty} x {self.product_id}"
