from django.contrib import admin

from .models import Product


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("product_id", "title", "price", "currency", "stock", "active", "updated_at")
    search_fields = ("product_id", "title")
    list_filter = ("active", "currency")
