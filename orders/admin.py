from django.contrib import admin

from .models import Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ("product_id", "title", "qty", "price")
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_id", "status", "amount", "currency", "buyer_email", "captured_via", "created_at")
    search_fields = ("order_id", "gateway_order_id", "gateway_payment_id", "buyer_email")
    list_filter = ("status", "captured_via", "currency", "created_at")
    # financial and gateway fields are owned by the payment flow
    readonly_fields = (
        "order_id", "amount", "currency", "status", "gateway_order_id", "gateway_payment_id",
        "gateway_signature", "captured_via", "failure_reason", "metadata",
        "created_at", "updated_at", "captured_at", "failed_at",
    )
    inlines = [OrderItemInline]
    ordering = ("-created_at",)
