# payments/services.py
"""Payment initiation and status reconciliation against KPay.

Every public function returns the JSON-ready response body on success and
raises a :class:`~payments.exceptions.PaymentError` otherwise; views only
translate between HTTP and these calls.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from orders.models import Order
from . import store
from .emails import send_payment_confirmation
from .exceptions import (
    AlreadyPaid, AmountMismatch, GatewayRejected, GatewayUnavailable, InvalidOrderState,
    NotCompleted, OrderNotFound, PaymentInProgress, PaymentNotFound, ServiceMisconfigured,
    StoreUpdateFailed, UnsupportedPaymentMethod, ValidationFailed,
)
from .integrations.kpay import (
    CURRENCY, RETCODE_NOT_FOUND, KPayClient, KPayConfigError, KPayError, KPayResponse,
    format_phone_number, get_error_message, is_supported_method, parse_webhook_payload,
)
from .models import Payment
from .utils import build_kpay_client, generate_reference, guest_email

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")

FRIENDLY_ERRORS = {
    607: "Mobile money transaction failed. Please check your balance.",
    608: "This payment reference was already used. Please try again.",
    609: "This payment method is not supported. Please try a different method.",
}


@dataclass
class InitiationRequest:
    amount: Decimal
    payment_method: str
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    order_id: Optional[str] = None
    redirect_url: str = ""
    cart: Any = None
    client_reference: Optional[str] = None
    client_payment_id: Optional[str] = None

    @classmethod
    def from_body(cls, body: dict) -> "InitiationRequest":
        if body.get("amount") in (None, "") or not body.get("paymentMethod"):
            raise ValidationFailed("Amount and payment method are required")
        if not body.get("orderId") and body.get("cart") is None:
            raise ValidationFailed("Either orderId or cart snapshot is required")
        if not is_supported_method(body["paymentMethod"]):
            raise UnsupportedPaymentMethod("Invalid payment method")
        try:
            amount = Decimal(str(body["amount"]))
        except (InvalidOperation, ValueError):
            raise ValidationFailed("Invalid amount")
        if not amount.is_finite() or amount <= 0:
            raise ValidationFailed("Amount must be greater than 0")
        return cls(
            amount=amount,
            payment_method=str(body["paymentMethod"]),
            customer_name=str(body.get("customerName") or ""),
            customer_email=str(body.get("customerEmail") or ""),
            customer_phone=str(body.get("customerPhone") or ""),
            order_id=str(body["orderId"]) if body.get("orderId") else None,
            redirect_url=str(body.get("redirectUrl") or ""),
            cart=body.get("cart"),
            client_reference=str(body["clientReference"]).strip() if body.get("clientReference") else None,
            client_payment_id=str(body["clientPaymentId"]) if body.get("clientPaymentId") else None,
        )


def gateway_client() -> KPayClient:
    try:
        return build_kpay_client()
    except KPayConfigError as e:
        logger.error("KPay service initialization failed: %s", e)
        raise ServiceMisconfigured("Payment service unavailable") from e


# ---------- initiation ----------

def _load_payable_order(req: InitiationRequest) -> Order:
    order = Order.objects.filter(pk=req.order_id).first()
    if order is None:
        raise OrderNotFound("Order not found")
    if order.status != Order.STATUS_PENDING:
        raise InvalidOrderState("Order cannot be paid - invalid status")
    if abs(req.amount - order.total) > AMOUNT_TOLERANCE:
        raise AmountMismatch("Amount mismatch with order total")
    if store.has_successful_payment(order.pk):
        raise AlreadyPaid("Order already paid")
    pending = store.find_pending_for_order(order.pk)
    if store.is_in_flight(pending):
        raise PaymentInProgress(
            "A payment is already in progress. Please wait or try again after it times out.",
            pending.pk,
        )
    return order


def _resolve_reusable(req: InitiationRequest, generated_reference: str):
    """Returns ``(payment_or_None, reference_for_new_row)``."""
    existing = None
    if req.client_payment_id:
        existing = store.find_by_id(req.client_payment_id)
    if existing is None and req.client_reference:
        existing = store.find_by_reference(req.client_reference)
    if existing is None:
        existing = store.find_by_reference(generated_reference)

    if existing is None:
        return None, req.client_reference or generated_reference

    if existing.payment_method and existing.payment_method != req.payment_method:
        logger.info(
            "Existing payment %s uses %s, requested %s; creating a new payment instead of reusing",
            existing.pk, existing.payment_method, req.payment_method,
        )
        return None, generated_reference
    if existing.status == Payment.STATUS_FAILED:
        logger.info("Existing payment %s already failed; starting a new attempt", existing.pk)
        return None, generated_reference
    if (existing.order_id or None) != req.order_id:
        logger.info(
            "Existing payment %s belongs to order %s, request is for %s; not reusing",
            existing.pk, existing.order_id, req.order_id,
        )
        return None, generated_reference
    return existing, existing.reference


def _completed_payload(payment: Payment) -> dict:
    return {
        "success": True,
        "paymentId": str(payment.pk),
        "transactionId": payment.gateway_transaction_id,
        "reference": payment.reference,
        "checkoutUrl": payment.checkout_url,
        "status": payment.status,
        "message": "Using existing completed payment",
    }


def _start_gateway_session(payment: Payment, req: InitiationRequest, order: Optional[Order],
                           client: KPayClient, base_url: str, phone: str, *, reused: bool) -> dict:
    store_name = getattr(settings, "STORE_NAME", "Nihemart")
    # The gateway always returns the customer to our status page, never to checkout
    redirect_to = f"{base_url}/payment/{payment.pk}"
    try:
        resp = client.initiate(
            amount=req.amount,
            reference=payment.reference,
            payment_method=req.payment_method,
            customer_name=req.customer_name,
            customer_email=req.customer_email,
            customer_phone=phone,
            customer_number=(order.customer_phone if order is not None and order.customer_phone else phone),
            details=f"Order from {store_name} - {payment.reference}",
            redirect_url=redirect_to,
            logo_url=settings.KPAY.get("LOGO_URL") or f"{base_url}/logo.png",
        )
    except Exception as e:
        logger.exception("KPay payment initiation failed for payment %s", payment.pk)
        store.try_update_fields(payment, status=Payment.STATUS_FAILED, failure_reason=str(e) or "Unknown error")
        raise GatewayUnavailable("Failed to initiate payment with gateway", technicalError=str(e)) from e

    fields = {
        "gateway_transaction_id": resp.tid,
        "gateway_auth_key": resp.authkey,
        "gateway_return_code": resp.retcode,
        "gateway_response": resp.raw,
    }
    if reused:
        fields.update(status=Payment.STATUS_PENDING, failure_reason=None)
        if not payment.order_id:
            fields["amount"] = req.amount
    store.try_update_fields(payment, **fields)
    logger.info("KPay response for payment %s: tid=%s retcode=%s", payment.pk, resp.tid, resp.retcode)

    if not resp.accepted:
        error_message = get_error_message(resp.retcode)
        store.try_update_fields(payment, status=Payment.STATUS_FAILED, failure_reason=error_message)
        raise GatewayRejected(
            FRIENDLY_ERRORS.get(resp.retcode, error_message),
            errorCode=resp.retcode,
            technicalError=error_message,
        )

    return {
        "success": True,
        "paymentId": str(payment.pk),
        "transactionId": resp.tid,
        "reference": payment.reference,
        "checkoutUrl": resp.checkout_url,
        "kpayResponse": resp.raw,
        "status": Payment.STATUS_PENDING,
        "message": (
            "Reused existing payment row and re-initiated gateway session" if reused
            else "Payment initiated successfully"
        ),
    }


def initiate_payment(req: InitiationRequest, *, base_url: str, client: Optional[KPayClient] = None) -> dict:
    logger.info(
        "KPay payment initiation order=%s amount=%s method=%s", req.order_id, req.amount, req.payment_method
    )
    if not req.customer_email:
        req.customer_email = guest_email(req.customer_phone)
        logger.info("Payment initiation missing email, using fallback %s", req.customer_email)
    if not req.redirect_url:
        req.redirect_url = f"{base_url}/checkout?payment=success"

    order = _load_payable_order(req) if req.order_id else None
    if client is None:
        client = gateway_client()

    phone = format_phone_number(req.customer_phone)
    existing, reference = _resolve_reusable(req, generate_reference())

    if existing is not None:
        logger.info("Found existing payment %s (%s, %s)", existing.pk, existing.reference, existing.status)
        if existing.is_successful:
            return _completed_payload(existing)
        return _start_gateway_session(existing, req, order, client, base_url, phone, reused=True)

    payment, created = store.create_or_fetch(
        reference=reference,
        order=order,
        amount=req.amount.quantize(AMOUNT_TOLERANCE),
        currency=CURRENCY,
        payment_method=req.payment_method,
        status=Payment.STATUS_PENDING,
        customer_name=req.customer_name,
        customer_email=req.customer_email,
        customer_phone=phone,
    )
    logger.info("Payment record ready id=%s reference=%s created=%s", payment.pk, payment.reference, created)
    if not created and (payment.order_id or None) != req.order_id:
        logger.warning("Reference %s already belongs to payment %s for another order", reference, payment.pk)
        raise ValidationFailed("Payment reference already in use")
    if not created and payment.is_successful:
        return _completed_payload(payment)
    return _start_gateway_session(payment, req, order, client, base_url, phone, reused=not created)


# ---------- reconciliation ----------

def _send_receipt(payment: Payment) -> None:
    if not getattr(settings, "PAYMENTS_SEND_RECEIPTS", True):
        return
    try:
        claimed = store.claim_receipt(payment)
    except DatabaseError:
        logger.exception("Failed to mark receipt for payment %s", payment.pk)
        return
    if claimed:
        transaction.on_commit(lambda: send_payment_confirmation(payment=payment))


def apply_outcome(payment: Payment, outcome: Optional[str], *, tid=None, mom_transaction_id=None,
                  description=None, extra_fields=None) -> bool:
    """Move ``payment`` to ``outcome`` and propagate it to the order.

    Returns True when the row was written. A pending outcome on a pending
    row is a no-op.
    """
    fields = dict(extra_fields or {})
    if outcome == Payment.STATUS_COMPLETED:
        fields.update(status=Payment.STATUS_COMPLETED, completed_at=timezone.now())
        if mom_transaction_id:
            fields["gateway_mom_transaction_id"] = mom_transaction_id
    elif outcome == Payment.STATUS_FAILED:
        fields.update(status=Payment.STATUS_FAILED, failure_reason=description or "Payment failed")
    elif outcome == Payment.STATUS_PENDING:
        if payment.status == Payment.STATUS_PENDING:
            return False
        fields["status"] = Payment.STATUS_PENDING
    else:
        return False
    if tid and outcome != Payment.STATUS_PENDING and str(tid) != (payment.gateway_transaction_id or ""):
        fields["gateway_transaction_id"] = str(tid)

    previous = payment.status
    try:
        store.update_fields(payment, **fields)
    except DatabaseError as e:
        logger.exception("Failed to update payment %s to %s", payment.pk, outcome)
        raise StoreUpdateFailed("Failed to update payment status") from e
    logger.info("Payment %s status %s -> %s", payment.pk, previous, payment.status)

    if outcome in (Payment.STATUS_COMPLETED, Payment.STATUS_FAILED):
        store.propagate_to_order(payment, outcome)
    if outcome == Payment.STATUS_COMPLETED:
        _send_receipt(payment)
    return True


def _kpay_status(resp: KPayResponse) -> dict:
    return {
        "statusId": resp.statusid,
        "statusDescription": resp.statusdesc,
        "returnCode": resp.retcode,
        "momTransactionId": resp.momtransactionid,
    }


def _status_payload(payment: Payment, message: str, **extra) -> dict:
    return {
        "success": True,
        "paymentId": str(payment.pk),
        "orderId": payment.order_id or None,
        "status": payment.status,
        "amount": payment.amount,
        "currency": payment.currency,
        "reference": payment.reference,
        "transactionId": payment.gateway_transaction_id,
        "checkoutUrl": payment.checkout_url,
        "message": message,
        "needsUpdate": False,
        **extra,
    }


def check_payment_status(*, payment_id=None, transaction_id=None, reference=None,
                         client: Optional[KPayClient] = None) -> dict:
    if not (payment_id or transaction_id or reference):
        raise ValidationFailed("Payment ID, transaction ID, or reference is required")

    payment = store.find(payment_id=payment_id, transaction_id=transaction_id, reference=reference)
    if payment is None:
        # Soft miss so polling clients keep retrying
        return {
            "success": False,
            "message": "Payment not found",
            "status": "unknown",
            "paymentId": None,
            "reference": reference or None,
        }

    if payment.is_terminal:
        return _status_payload(payment, f"Payment is {payment.status}")

    if client is None:
        client = gateway_client()

    try:
        resp = client.check_status(
            transaction_id=transaction_id or payment.gateway_transaction_id or None,
            reference=reference or payment.reference or None,
        )
    except KPayError as e:
        logger.warning("KPay status check failed for payment %s: %s", payment.pk, e)
        return _status_payload(
            payment,
            "Unable to check with payment gateway, showing last known status",
            error="Failed to check status with payment gateway",
        )

    outcome = resp.outcome
    if outcome is None and resp.retcode == RETCODE_NOT_FOUND:
        logger.warning(
            "Transaction not found in KPay for payment %s (tid=%s, reference=%s)",
            payment.pk, payment.gateway_transaction_id, payment.reference,
        )
        return _status_payload(
            payment,
            "Transaction not found in payment gateway",
            error="Transaction not found in KPay system",
            kpayStatus=_kpay_status(resp),
        )

    changed = apply_outcome(
        payment, outcome,
        tid=resp.tid,
        mom_transaction_id=resp.momtransactionid,
        description=resp.statusdesc,
        extra_fields={"gateway_response": resp.raw},
    )
    return _status_payload(
        payment,
        resp.statusdesc or f"Payment is {payment.status}",
        needsUpdate=changed,
        kpayStatus=_kpay_status(resp),
    )


def handle_webhook(payload) -> dict:
    try:
        event = parse_webhook_payload(payload)
    except KPayError as e:
        logger.warning("Invalid KPay webhook payload: %s", e)
        raise ValidationFailed("Invalid webhook payload")

    logger.info(
        "KPay webhook tid=%s refid=%s statusid=%s statusdesc=%s",
        event.transaction_id, event.reference, event.statusid, event.statusdesc,
    )
    payment = store.find_by_reference(event.reference) or store.find_by_transaction_id(event.transaction_id)
    if payment is None:
        logger.warning("Payment not found for webhook refid=%s tid=%s", event.reference, event.transaction_id)
        raise PaymentNotFound("Payment not found")

    if payment.is_terminal:
        logger.info("Webhook for terminal payment %s (%s) ignored", payment.pk, payment.status)
        return {
            "success": True,
            "message": f"Payment already {payment.normalized_status}",
            "paymentId": str(payment.pk),
            "status": payment.status,
        }

    fields = {
        "gateway_webhook_data": payload,
        "gateway_mom_transaction_id": event.momtransactionid or payment.gateway_mom_transaction_id,
    }
    if event.payaccount:
        fields["gateway_pay_account"] = event.payaccount
    if event.transaction_id and not payment.gateway_transaction_id:
        fields["gateway_transaction_id"] = event.transaction_id
    try:
        store.update_fields(payment, **fields)
    except DatabaseError as e:
        logger.exception("Failed to store webhook data on payment %s", payment.pk)
        raise StoreUpdateFailed("Failed to update payment") from e

    apply_outcome(
        payment, event.outcome,
        mom_transaction_id=event.momtransactionid,
        description=event.statusdesc,
    )
    return {
        "success": True,
        "message": "Webhook processed successfully",
        "paymentId": str(payment.pk),
        "status": payment.status,
    }


def finalize_payment(*, reference=None, transaction_id=None, client: Optional[KPayClient] = None) -> dict:
    """Confirm a session payment (no order yet) so the client may create its order."""
    if not reference and not transaction_id:
        raise ValidationFailed("reference or transactionId required")

    payment = store.find_by_reference(reference) or store.find_by_transaction_id(transaction_id)
    if payment is None:
        raise PaymentNotFound("Payment not found")

    if payment.order_id:
        return {"success": True, "paymentId": str(payment.pk), "orderId": payment.order_id}

    if payment.status == Payment.STATUS_FAILED:
        raise NotCompleted("Payment not yet completed", status=payment.status)

    if not payment.is_successful:
        try:
            client = client or gateway_client()
            resp = client.check_status(
                transaction_id=payment.gateway_transaction_id or None,
                reference=payment.reference,
            )
        except (KPayError, ServiceMisconfigured) as e:
            logger.warning("KPay reconciliation failed in finalize for payment %s: %s", payment.pk, e)
            return {
                "success": True,
                "paymentId": str(payment.pk),
                "status": payment.status,
                "canCreateOrder": False,
                "message": "Unable to check with payment gateway, showing last known status",
            }
        if resp.outcome != Payment.STATUS_COMPLETED:
            raise NotCompleted("Payment not yet completed", status=payment.status)
        apply_outcome(
            payment, Payment.STATUS_COMPLETED,
            tid=resp.tid,
            mom_transaction_id=resp.momtransactionid,
            extra_fields={"gateway_response": resp.raw},
        )

    completed = payment.is_successful
    return {
        "success": True,
        "paymentId": str(payment.pk),
        "status": payment.status,
        "canCreateOrder": completed and not payment.order_id,
        "message": "Payment completed." if completed else "Payment is not completed yet",
    }


# ---------- client escape hatch / reads ----------

def mark_client_timeout(payment_id, reason=None) -> dict:
    if not payment_id:
        raise ValidationFailed("Payment ID is required")
    payment = store.find_by_id(payment_id)
    if payment is None:
        raise PaymentNotFound("Payment not found")

    if payment.status != Payment.STATUS_PENDING:
        logger.info("Payment timeout ignored for %s: status is %s", payment.pk, payment.status)
        return {
            "success": True,
            "message": f"Payment status is {payment.status}, timeout ignored.",
            "status": payment.status,
        }

    try:
        store.update_fields(
            payment,
            client_timeout=True,
            client_timeout_reason=(reason or "Client-side timeout after 5 minutes")[:255],
        )
    except DatabaseError as e:
        logger.exception("Failed to update payment timeout flag for %s", payment.pk)
        raise StoreUpdateFailed("Failed to update payment timeout") from e
    logger.info("Payment %s marked with client timeout (order=%s)", payment.pk, payment.order_id)

    # A webhook may have completed it meanwhile; return the fresh row
    payment.refresh_from_db()
    return {
        "success": True,
        "message": "Payment timeout recorded. Order remains available for retry.",
        "status": payment.status,
        "payment": payment.as_dict(),
    }


def get_payment(payment_id) -> dict:
    payment = store.find_by_id(payment_id) or store.find_by_reference(payment_id)
    if payment is None:
        raise PaymentNotFound("Payment not found")
    return payment.as_dict()


def list_order_payments(order_id, client: Optional[KPayClient] = None) -> list:
    payments = list(Payment.objects.filter(order_id=order_id).order_by("-created_at"))
    pending = [p for p in payments if p.status == Payment.STATUS_PENDING and p.gateway_transaction_id]
    if pending:
        try:
            client = client or gateway_client()
        except ServiceMisconfigured:
            client = None
    if pending and client is not None:
        for p in pending:
            try:
                result = check_payment_status(payment_id=p.pk, client=client)
            except StoreUpdateFailed as e:
                logger.warning("Failed to refresh status for payment %s: %s", p.pk, e)
                continue
            if result.get("needsUpdate"):
                p.refresh_from_db()
    return [p.as_dict() for p in payments]
