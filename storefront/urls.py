from django.contrib import admin
from django.urls import include, path

from orders import webhook
from storefront import views

urlpatterns = [
    path("admin/", admin.site.urls),
    path("products/", include("catalog.urls")),
    path("orders/", include("orders.urls")),
    path("webhook/gateway", webhook.gateway_webhook, name="gateway_webhook"),
    path("health/live", views.liveness, name="liveness"),
    path("health/ready", views.readiness, name="readiness"),
]

handler404 = "storefront.views.error_404_view"
handler500 = "storefront.views.server_error"
