import time
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from orders.models import Order
from orders.services import capture_order, fail_order
from orders.utils import coerce_amount
from payments.integrations.razorpay import fetch_order_payments, GatewayError
from storefront.exceptions import ConflictError


class Command(BaseCommand):
    help = "Ask the gateway about orders still in 'created' and capture or expire them"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=15)
        parser.add_argument(
            "--expire-after-hours", type=int, default=0,
            help="Fail orders with no captured payment after this many hours (0=never)",
        )

    def handle(self, *args, **opts):
        now = timezone.now()
        cutoff = now - timedelta(minutes=opts["older_than_minutes"])
        expire_before = now - timedelta(hours=opts["expire_after_hours"]) if opts["expire_after_hours"] > 0 else None
        qs = Order.objects.filter(status=Order.Status.CREATED, created_at__lt=cutoff).order_by("created_at")[:opts["max"]]

        orders = list(qs)
        if not orders:
            self.stdout.write(self.style.SUCCESS("No pending orders to reconcile."))
            return

        captured = expired = 0
        for o in orders:
            try:
                payments = fetch_order_payments(o.gateway_order_id)
            except GatewayError as e:
                self.stdout.write(self.style.WARNING(f"{o.order_id}: {e}"))
                continue

            paid = next((p for p in payments if p.get("status") == "captured"), None)
            try:
                if paid:
                    capture_order(o, paid["id"], source="reconcile", amount=coerce_amount(paid.get("amount")))
                    captured += 1
                    self.stdout.write(self.style.SUCCESS(f"{o.order_id} -> {o.status} ({paid['id']})"))
                elif expire_before and o.created_at < expire_before:
                    fail_order(o, source="reconcile", reason="expired without captured payment")
                    expired += 1
                    self.stdout.write(f"{o.order_id} -> {o.status} (expired)")
                else:
                    self.stdout.write(f"{o.order_id}: still pending ({len(payments)} attempts)")
            except ConflictError as e:
                self.stdout.write(self.style.ERROR(f"{o.order_id}: {e}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(
            f"Checked {len(orders)}, captured {captured}, expired {expired}."
        ))
