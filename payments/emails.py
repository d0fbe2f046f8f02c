import logging
from typing import List, Optional

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _admin_recipients() -> List[str]:
    # PAYMENTS_ADMIN_EMAILS is comma-separated; falls back to the sender addresses
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", "") or ",".join(
        filter(None, [getattr(settings, "EMAIL_HOST_USER", ""), getattr(settings, "DEFAULT_FROM_EMAIL", "")])
    )
    by_key = {}
    for address in raw.split(","):
        address = address.strip()
        if address:
            by_key.setdefault(address.lower(), address)
    return list(by_key.values())


def _receipt_context(payment) -> dict:
    return {
        "store_name": getattr(settings, "STORE_NAME", "Nihemart"),
        "payment_id": str(payment.pk),
        "reference": payment.reference,
        "order_id": payment.order_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "payment_method": payment.get_payment_method_display(),
        "transaction_id": payment.gateway_transaction_id or "",
        "customer_name": payment.customer_name,
        "customer_email": payment.customer_email,
        "customer_phone": payment.customer_phone,
    }


def _send(subject: str, template: str, context: dict, to: List[str], html_template: Optional[str] = None) -> None:
    sender = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
    msg = EmailMultiAlternatives(subject, render_to_string(template, context), sender, to)
    if html_template:
        msg.attach_alternative(render_to_string(html_template, context), "text/html")
    msg.send(fail_silently=getattr(settings, "EMAIL_FAIL_SILENTLY", True))


def send_payment_confirmation(*, payment) -> None:
    """Receipt to the customer plus a notification to admins for a completed
    payment. Send failures are logged, not raised."""
    context = _receipt_context(payment)
    amount = f"{payment.currency} {payment.amount}"

    if payment.customer_email:
        try:
            _send(
                f"Payment received: {payment.reference} - {amount}",
                "emails/payment_receipt_customer.txt",
                context,
                [payment.customer_email],
                html_template="emails/payment_receipt_customer.html",
            )
        except Exception:
            logger.exception("Failed to send payment receipt to %s", payment.customer_email)

    admins = _admin_recipients()
    if admins:
        try:
            _send(
                f"New payment: {payment.reference} - {amount} ({payment.status})",
                "emails/payment_notification_admin.txt",
                context,
                admins,
            )
        except Exception:
            logger.exception("Failed to send payment admin notification for %s", payment.reference)
