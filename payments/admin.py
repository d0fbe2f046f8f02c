from django.contrib import admin
from .models import Payment

@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("reference", "status", "amount", "currency", "payment_method", "order", "client_timeout", "created_at")
    search_fields = ("reference", "gateway_transaction_id", "gateway_mom_transaction_id", "customer_email", "customer_phone")
    list_filter = ("status", "payment_method", "client_timeout", "created_at")
    readonly_fields = ("created_at", "updated_at", "completed_at", "receipt_sent_at", "gateway_response", "gateway_webhook_data")
