from django.urls import path

from . import views

app_name = "orders"
urlpatterns = [
    path("create", views.create_order_view, name="create"),
    path("verify", views.verify_payment_view, name="verify"),
    path("mine", views.my_orders_view, name="mine"),
    path("<str:order_id>", views.order_status_view, name="status"),
]
