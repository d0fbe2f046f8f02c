from django.contrib import admin
from .models import Order

@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "status", "total", "payment_status", "is_paid", "created_at", "updated_at")
    search_fields = ("id", "customer_email", "customer_phone")
    list_filter = ("status", "payment_status", "is_paid", "created_at")
    readonly_fields = ("created_at", "updated_at")
