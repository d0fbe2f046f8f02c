from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("kpay/initiate", views.kpay_initiate, name="kpay_initiate"),
    path("kpay/status", views.kpay_status, name="kpay_status"),
    path("kpay/finalize", views.kpay_finalize, name="kpay_finalize"),
    path("timeout", views.payment_timeout, name="payment_timeout"),
    path("retry", views.payment_retry, name="payment_retry"),
    path("order/<str:order_id>", views.order_payments, name="order_payments"),
    # Accepts the payment id or its reference
    path("<str:payment_id>", views.payment_detail, name="payment_detail"),
]
