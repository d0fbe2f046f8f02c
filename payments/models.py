import uuid

from django.db import models
from django.utils import timezone

from .integrations.kpay import CURRENCY, PAYMENT_METHODS, extract_checkout_url

PAYMENT_METHOD_CHOICES = [(m.value, cfg.name) for m, cfg in PAYMENT_METHODS.items()]


class Payment(models.Model):
    STATUS_PENDING = "pending"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"
    STATUS_SUCCESSFUL = "successful"  # legacy synonym of completed
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_FAILED, "Failed"),
        (STATUS_SUCCESSFUL, "Successful (legacy)"),
    ]
    SUCCESS_STATUSES = (STATUS_COMPLETED, STATUS_SUCCESSFUL)
    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_SUCCESSFUL, STATUS_FAILED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reference = models.CharField(max_length=64, unique=True)
    order = models.ForeignKey(
        "orders.Order", null=True, blank=True, on_delete=models.PROTECT, related_name="payments"
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default=CURRENCY)
    payment_method = models.CharField(max_length=32, choices=PAYMENT_METHOD_CHOICES)

    customer_name = models.CharField(max_length=128, blank=True, default="")
    customer_email = models.EmailField(blank=True, default="")
    customer_phone = models.CharField(max_length=20, blank=True, default="")

    gateway_transaction_id = models.CharField(max_length=64, blank=True, null=True, db_index=True)
    gateway_auth_key = models.CharField(max_length=128, blank=True, null=True)
    gateway_return_code = models.IntegerField(blank=True, null=True)
    gateway_response = models.JSONField(blank=True, null=True)
    gateway_mom_transaction_id = models.CharField(max_length=64, blank=True, null=True)
    gateway_pay_account = models.CharField(max_length=64, blank=True, null=True)
    gateway_webhook_data = models.JSONField(blank=True, null=True)

    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    failure_reason = models.TextField(blank=True, null=True)

    client_timeout = models.BooleanField(default=False)
    client_timeout_reason = models.CharField(max_length=255, blank=True, default="")

    receipt_sent_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        db_table = "payments"
        ordering = ("-created_at",)

    @property
    def is_successful(self) -> bool:
        return self.status in self.SUCCESS_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def normalized_status(self) -> str:
        return self.STATUS_COMPLETED if self.status == self.STATUS_SUCCESSFUL else self.status

    @property
    def checkout_url(self):
        return extract_checkout_url(self.gateway_response)

    def as_dict(self) -> dict:
        return {
            "id": str(self.id),
            "order_id": self.order_id,
            "reference": self.reference,
            "amount": str(self.amount),
            "currency": self.currency,
            "payment_method": self.payment_method,
            "status": self.status,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "kpay_transaction_id": self.gateway_transaction_id,
            "kpay_return_code": self.gateway_return_code,
            "kpay_mom_transaction_id": self.gateway_mom_transaction_id,
            "kpay_response": self.gateway_response,
            "failure_reason": self.failure_reason,
            "client_timeout": self.client_timeout,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __str__(self):
        return f"{self.reference} {self.status} {self.currency} {self.amount}"
