# payments/store.py
import logging
import uuid
from datetime import timedelta
from typing import Optional, Tuple

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from orders.models import Order
from .models import Payment

logger = logging.getLogger(__name__)

IN_FLIGHT_WINDOW = timedelta(minutes=5)


def find_by_id(payment_id) -> Optional[Payment]:
    if not payment_id:
        return None
    try:
        pk = uuid.UUID(str(payment_id))
    except ValueError:
        return None
    return Payment.objects.filter(pk=pk).first()


def find_by_reference(reference) -> Optional[Payment]:
    if not reference:
        return None
    return Payment.objects.filter(reference=str(reference)).first()


def find_by_transaction_id(transaction_id) -> Optional[Payment]:
    if not transaction_id:
        return None
    return Payment.objects.filter(gateway_transaction_id=str(transaction_id)).order_by("-created_at").first()


def find(*, payment_id=None, transaction_id=None, reference=None) -> Optional[Payment]:
    """Lookup by the first identifier given: id, then transaction id, then reference."""
    if payment_id:
        return find_by_id(payment_id)
    if transaction_id:
        return find_by_transaction_id(transaction_id)
    return find_by_reference(reference)


def find_pending_for_order(order_id) -> Optional[Payment]:
    """Most recent pending attempt for an order that the client has not abandoned."""
    return (
        Payment.objects.filter(order_id=order_id, status=Payment.STATUS_PENDING, client_timeout=False)
        .order_by("-created_at")
        .first()
    )


def is_in_flight(payment: Optional[Payment], now=None) -> bool:
    if payment is None or payment.client_timeout or payment.status != Payment.STATUS_PENDING:
        return False
    now = now or timezone.now()
    return now - payment.created_at < IN_FLIGHT_WINDOW


def has_successful_payment(order_id) -> bool:
    return Payment.objects.filter(order_id=order_id, status__in=Payment.SUCCESS_STATUSES).exists()


def create_or_fetch(**fields) -> Tuple[Payment, bool]:
    """Insert a payment row; if the reference is already taken, return the
    existing row instead. Returns ``(payment, created)``."""
    try:
        with transaction.atomic():
            return Payment.objects.create(**fields), True
    except IntegrityError:
        existing = find_by_reference(fields.get("reference"))
        if existing is None:
            raise
        logger.warning("Payment insert conflicted on reference=%s, reusing id=%s", existing.reference, existing.pk)
        return existing, False


def update_fields(payment: Payment, **fields) -> Payment:
    """Absolute write of ``fields`` on the row; mirrors them on ``payment``."""
    fields.setdefault("updated_at", timezone.now())
    Payment.objects.filter(pk=payment.pk).update(**fields)
    for name, value in fields.items():
        setattr(payment, name, value)
    return payment


def try_update_fields(payment: Payment, **fields) -> bool:
    """Best-effort variant of :func:`update_fields` for bookkeeping writes."""
    try:
        update_fields(payment, **fields)
        return True
    except DatabaseError:
        logger.exception("Failed to update payment %s with %s", payment.pk, sorted(fields))
        return False


def propagate_to_order(payment: Payment, outcome: str) -> bool:
    """Reflect a terminal payment outcome on its order (payment flags only)."""
    if not payment.order_id:
        logger.info("Payment %s is %s with no linked order; skipping order update", payment.pk, outcome)
        return False
    if outcome == Payment.STATUS_COMPLETED:
        values = {"payment_status": "paid", "is_paid": True}
    elif outcome == Payment.STATUS_FAILED:
        values = {"payment_status": "failed"}
    else:
        return False
    try:
        Order.objects.filter(pk=payment.order_id).update(updated_at=timezone.now(), **values)
    except DatabaseError:
        logger.exception("Failed to update order %s payment_status after payment %s", payment.order_id, payment.pk)
        return False
    logger.info("Order %s payment_status -> %s (payment %s)", payment.order_id, values["payment_status"], payment.pk)
    return True


def claim_receipt(payment: Payment) -> bool:
    """Mark the receipt as sent; True only for the caller that flipped it."""
    claimed = Payment.objects.filter(pk=payment.pk, receipt_sent_at__isnull=True).update(
        receipt_sent_at=timezone.now()
    )
    return bool(claimed)
