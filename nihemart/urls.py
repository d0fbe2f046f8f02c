from django.contrib import admin
from django.urls import include, path

from payments import webhook

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/payments/", include("payments.urls")),
    path("api/webhooks/kpay", webhook.kpay_webhook, name="kpay_webhook"),
]
