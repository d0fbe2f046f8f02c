import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from . import services
from .exceptions import PaymentError
from .utils import public_base_url

logger = logging.getLogger(__name__)


def _json_body(request):
    try:
        body = json.loads(request.body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _invalid_json():
    return JsonResponse({"success": False, "error": "Invalid JSON body"}, status=400)


def _run(label, fn, *args, **kwargs):
    """Call a service function and turn its outcome into a JsonResponse."""
    try:
        result = fn(*args, **kwargs)
    except PaymentError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)
    except Exception:
        logger.exception("%s failed", label)
        return JsonResponse({"success": False, "error": "Internal server error"}, status=500)
    return JsonResponse(result, safe=False)


@csrf_exempt
@require_POST
def kpay_initiate(request):
    body = _json_body(request)
    if body is None:
        return _invalid_json()
    try:
        req = services.InitiationRequest.from_body(body)
    except PaymentError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)
    return _run("KPay payment initiation", services.initiate_payment, req, base_url=public_base_url(request))


@csrf_exempt
@require_http_methods(["GET", "POST"])
def kpay_status(request):
    if request.method == "GET":
        body = {
            "paymentId": request.GET.get("paymentId"),
            "transactionId": request.GET.get("transactionId"),
            "reference": request.GET.get("reference"),
        }
    else:
        body = _json_body(request)
        if body is None:
            return _invalid_json()
    return _run(
        "KPay status check",
        services.check_payment_status,
        payment_id=body.get("paymentId"),
        transaction_id=body.get("transactionId"),
        reference=body.get("reference"),
    )


@csrf_exempt
@require_POST
def kpay_finalize(request):
    body = _json_body(request)
    if body is None:
        return _invalid_json()
    return _run(
        "KPay finalize",
        services.finalize_payment,
        reference=body.get("reference"),
        transaction_id=body.get("transactionId"),
    )


@csrf_exempt
@require_POST
def payment_timeout(request):
    body = _json_body(request)
    if body is None:
        return _invalid_json()
    return _run("Payment timeout", services.mark_client_timeout, body.get("paymentId"), body.get("reason"))


@require_GET
def payment_detail(request, payment_id):
    return _run("Payment lookup", services.get_payment, payment_id)


@require_GET
def order_payments(request, order_id):
    try:
        payments = services.list_order_payments(order_id)
    except PaymentError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)
    except Exception:
        logger.exception("Listing payments for order %s failed", order_id)
        return JsonResponse({"success": False, "error": "Internal server error"}, status=500)
    return JsonResponse({"success": True, "orderId": order_id, "payments": payments})


@csrf_exempt
@require_POST
def payment_retry(request):
    """New attempt for an existing order; same checks as initiation."""
    body = _json_body(request)
    if body is None:
        return _invalid_json()
    if not body.get("orderId") or body.get("amount") in (None, "") or not body.get("paymentMethod"):
        return JsonResponse({"success": False, "error": "Missing required fields"}, status=400)
    body.pop("cart", None)
    try:
        req = services.InitiationRequest.from_body(body)
    except PaymentError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)
    return _run("Payment retry", services.initiate_payment, req, base_url=public_base_url(request))
