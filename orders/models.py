import uuid

from django.db import models


def _new_order_id() -> str:
    return uuid.uuid4().hex


class Order(models.Model):
    """Storefront order row. Owned by order-management code; the payment
    core only reads it and touches ``payment_status``/``is_paid``."""

    STATUS_PENDING = "pending"

    id = models.CharField(max_length=64, primary_key=True, default=_new_order_id)
    total = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=32, default=STATUS_PENDING, db_index=True)
    payment_status = models.CharField(max_length=16, blank=True, default="")
    is_paid = models.BooleanField(default=False)

    customer_email = models.EmailField(blank=True, default="")
    customer_phone = models.CharField(max_length=20, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.id} ({self.status})"
