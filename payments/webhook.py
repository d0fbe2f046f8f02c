import json
import logging

from django.conf import settings
from django.http import HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt

from .exceptions import PaymentError
from .services import handle_webhook

logger = logging.getLogger(__name__)


def _check_custom_header(request) -> bool:
    """True when no shared header is configured, or the request carries it."""
    key = settings.KPAY.get("WEBHOOK_HEADER_KEY")
    val = settings.KPAY.get("WEBHOOK_HEADER_VALUE")
    if not key or not val:
        return True
    return request.headers.get(key) == val


@csrf_exempt
def kpay_webhook(request):
    if request.method != "POST":
        return HttpResponse("POST only", status=405)

    if not _check_custom_header(request):
        logger.warning("KPay webhook rejected: missing or wrong shared header")
        return HttpResponse("Unauthorized", status=401)

    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return JsonResponse({"success": False, "error": "Invalid JSON"}, status=400)

    try:
        result = handle_webhook(payload)
    except PaymentError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)
    except Exception:
        logger.exception("KPay webhook processing failed")
        return JsonResponse({"success": False, "error": "Internal server error"}, status=500)
    return JsonResponse(result)
