from django.urls import path

from .views import (
    AdminOrderStatusView,
    AdminOrdersView,
    CheckoutConfigView,
    CreateCheckoutSessionView,
    OrderCancelView,
    OrderDetailView,
    OrderReturnView,
    OrdersCollectionView,
    PaymentWebhookView,
    RetryPaymentView,
    VerifyPaymentView,
)

app_name = "orders"

urlpatterns = [
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),  # GET mine / POST COD
    path("orders/<uuid:oid>/", OrderDetailView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/cancel/", OrderCancelView.as_view(), name="orders-cancel"),
    path("orders/<uuid:oid>/return/", OrderReturnView.as_view(), name="orders-return"),
    path("orders/<uuid:oid>/retry-payment/", RetryPaymentView.as_view(), name="orders-retry-payment"),
    path("checkout/create-session/", CreateCheckoutSessionView.as_view(), name="checkout-create-session"),
    path("checkout/verify-payment/", VerifyPaymentView.as_view(), name="checkout-verify-payment"),
    path("checkout/config/", CheckoutConfigView.as_view(), name="checkout-config"),
    path("admin/orders/", AdminOrdersView.as_view(), name="admin-orders"),
    path("admin/orders/<uuid:oid>/status/", AdminOrderStatusView.as_view(), name="admin-orders-status"),
    path("webhooks/payment/", PaymentWebhookView.as_view(), name="payment-webhook"),
]
