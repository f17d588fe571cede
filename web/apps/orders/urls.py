from django.urls import path

from .views import (
    AdminBulkStatusView,
    AdminCancelItemsView,
    AdminOrderStatusView,
    CustomerCancelOrderView,
    OrderDetailView,
)

app_name = "orders"

urlpatterns = [
    path("user/orders/<str:order_id>/cancel/", CustomerCancelOrderView.as_view(), name="customer-cancel"),
    path("orders/bulk-status/", AdminBulkStatusView.as_view(), name="bulk-status"),
    path("orders/<str:order_id>/", OrderDetailView.as_view(), name="order-detail"),
    path("orders/<str:order_id>/cancel-items/", AdminCancelItemsView.as_view(), name="cancel-items"),
    path("orders/<str:order_id>/status/", AdminOrderStatusView.as_view(), name="order-status"),
]
