"""KPay (esicia) payment gateway client.

Leaf module: no Django imports. Configuration is passed in as a
:class:`KPayConfig`; callers build it from settings.
"""
import base64
import enum
import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, NamedTuple, Optional

import requests
from requests import RequestException

logger = logging.getLogger(__name__)

CURRENCY = "RWF"

STATUS_SUCCESS = "01"
STATUS_PROCESSING = "02"
STATUS_AMBIGUOUS = "03"
RETCODE_OK = 0
RETCODE_NOT_FOUND = 611

CHECKOUT_URL_KEYS = ("url", "redirecturl", "redirectUrl")


class KPayError(Exception): pass
class KPayConfigError(KPayError): pass
class UnsupportedMethod(KPayError): pass


class KPayHTTPError(KPayError):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP error! status: {status_code} - body: {body}")


# Bank / channel codes from the KPay integration guide
class BankCode:
    MTN_MOMO = "63510"
    AIRTEL_MONEY = "63514"
    VISA_MASTERCARD = "000"
    SPENN = "63502"


class PaymentMethod(str, enum.Enum):
    MTN_MOMO = "mtn_momo"
    AIRTEL_MONEY = "airtel_money"
    VISA_CARD = "visa_card"
    MASTERCARD = "mastercard"
    SPENN = "spenn"


class MethodConfig(NamedTuple):
    code: str
    name: str
    bank_id: str


PAYMENT_METHODS = {
    PaymentMethod.MTN_MOMO: MethodConfig("momo", "MTN Mobile Money", BankCode.MTN_MOMO),
    PaymentMethod.AIRTEL_MONEY: MethodConfig("momo", "Airtel Money", BankCode.AIRTEL_MONEY),
    PaymentMethod.VISA_CARD: MethodConfig("cc", "Visa Card", BankCode.VISA_MASTERCARD),
    PaymentMethod.MASTERCARD: MethodConfig("cc", "MasterCard", BankCode.VISA_MASTERCARD),
    PaymentMethod.SPENN: MethodConfig("spenn", "SPENN", BankCode.SPENN),
}

ERROR_MESSAGES = {
    0: "No error. Transaction being processed",
    401: "Missing authentication header",
    500: "Non HTTPS request",
    600: "Invalid username / password combination",
    601: "Invalid remote user",
    602: "Location / IP not whitelisted",
    603: "Empty parameter - missing required parameters",
    604: "Unknown retailer",
    605: "Retailer not enabled",
    606: "Error processing",
    607: "Failed mobile money transaction",
    608: "Used ref id - error uniqueness",
    609: "Unknown Payment method",
    610: "Unknown or not enabled Financial institution",
    611: "Transaction not found",
}


def resolve_method(value) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise UnsupportedMethod(f"Unsupported payment method: {value}")


def is_supported_method(value) -> bool:
    try:
        PaymentMethod(value)
    except ValueError:
        return False
    return True


def get_error_message(retcode) -> str:
    try:
        code = int(retcode)
    except (TypeError, ValueError):
        return f"Unknown error (code: {retcode})"
    return ERROR_MESSAGES.get(code, f"Unknown error (code: {code})")


def format_phone_number(phone: str) -> str:
    """Best-effort conversion to the 07XXXXXXXX form KPay expects."""
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if re.fullmatch(r"07\d{8}", cleaned):
        return cleaned
    for prefix in ("+250", "250"):
        if cleaned.startswith(prefix):
            digits = cleaned[len(prefix):]
            if len(digits) == 9 and digits.startswith("7"):
                return f"0{digits}"
    if len(cleaned) == 9 and cleaned.startswith("7"):
        return f"0{cleaned}"
    return cleaned


def extract_checkout_url(payload) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in CHECKOUT_URL_KEYS:
        raw = payload.get(key)
        if isinstance(raw, str) and raw.strip():
            return raw.strip()
    return None


def normalize_status_id(statusid) -> str:
    return str(statusid if statusid is not None else "").zfill(2)


def classify_status(statusid, statusdesc) -> Optional[str]:
    """Map a gateway status to ``completed``/``pending``/``failed``.

    ``03`` is shared by failures and some still-processing payments
    (Airtel); only the description tells them apart. Returns ``None`` for
    codes that say nothing about the payment outcome.
    """
    sid = normalize_status_id(statusid)
    if sid == STATUS_SUCCESS:
        return "completed"
    if sid == STATUS_PROCESSING:
        return "pending"
    if sid == STATUS_AMBIGUOUS:
        if "pending" in str(statusdesc or "").lower():
            return "pending"
        return "failed"
    return None


def _parse_retcode(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _str_or_none(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass
class KPayResponse:
    raw: dict
    tid: Optional[str] = None
    refid: Optional[str] = None
    authkey: Optional[str] = None
    retcode: Optional[int] = None
    reply: Optional[str] = None
    success: Optional[int] = None
    statusid: Optional[str] = None
    statusdesc: Optional[str] = None
    momtransactionid: Optional[str] = None
    checkout_url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload) -> "KPayResponse":
        if not isinstance(payload, dict):
            payload = {"raw": payload}
        statusid = payload.get("statusid")
        return cls(
            raw=payload,
            tid=_str_or_none(payload.get("tid")),
            refid=_str_or_none(payload.get("refid")),
            authkey=_str_or_none(payload.get("authkey")),
            retcode=_parse_retcode(payload.get("retcode")),
            reply=_str_or_none(payload.get("reply")),
            success=_parse_retcode(payload.get("success")),
            statusid=normalize_status_id(statusid) if statusid not in (None, "") else None,
            statusdesc=_str_or_none(payload.get("statusdesc")),
            momtransactionid=_str_or_none(payload.get("momtransactionid")),
            checkout_url=extract_checkout_url(payload),
        )

    @property
    def accepted(self) -> bool:
        return self.retcode == RETCODE_OK

    @property
    def outcome(self) -> Optional[str]:
        return classify_status(self.statusid, self.statusdesc)


class WebhookEvent(NamedTuple):
    transaction_id: str
    reference: str
    statusid: str
    statusdesc: str
    momtransactionid: Optional[str]
    payaccount: Optional[str]

    @property
    def outcome(self) -> Optional[str]:
        return classify_status(self.statusid, self.statusdesc)


def parse_webhook_payload(payload) -> WebhookEvent:
    """Validate a gateway callback body; raise ``KPayError`` if malformed."""
    if not isinstance(payload, dict):
        raise KPayError("Invalid webhook payload")
    for key in ("tid", "refid", "statusid", "statusdesc"):
        value = payload.get(key)
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise KPayError(f"Invalid webhook payload: {key} missing")
    return WebhookEvent(
        transaction_id=str(payload["tid"]),
        reference=str(payload["refid"]),
        statusid=normalize_status_id(payload["statusid"]),
        statusdesc=str(payload["statusdesc"]),
        momtransactionid=_str_or_none(payload.get("momtransactionid")),
        payaccount=_str_or_none(payload.get("payaccount")),
    )


def mask(value: str) -> str:
    if not value:
        return "<NOT SET>"
    if len(value) <= 4:
        return "****"
    return f"{value[:2]}{'*' * (len(value) - 4)}{value[-2:]}"


@dataclass
class KPayConfig:
    username: str
    password: str
    retailer_id: str
    base_url: str = "https://pay.esicia.com"
    live_base_url: str = "https://pay.esicia.rw"
    environment: str = "sandbox"
    webhook_url: str = ""
    logo_url: str = ""
    timeout: float = 15.0
    max_attempts: int = 3

    def __post_init__(self):
        missing = [name for name, value in (
            ("username", self.username),
            ("password", self.password),
            ("retailer_id", self.retailer_id),
        ) if not value]
        if missing:
            raise KPayConfigError(
                f"KPay configuration is incomplete, missing: {', '.join(missing)}"
            )
        if self.environment not in ("sandbox", "live"):
            raise KPayConfigError(f"Unknown KPay environment: {self.environment}")

    @classmethod
    def from_mapping(cls, data: dict) -> "KPayConfig":
        return cls(
            username=data.get("USERNAME", ""),
            password=data.get("PASSWORD", ""),
            retailer_id=data.get("RETAILER_ID", ""),
            base_url=data.get("BASE_URL") or "https://pay.esicia.com",
            live_base_url=data.get("LIVE_BASE_URL") or "https://pay.esicia.rw",
            environment=(data.get("ENVIRONMENT") or "sandbox").lower(),
            webhook_url=data.get("WEBHOOK_URL", ""),
            logo_url=data.get("LOGO_URL", ""),
            timeout=float(data.get("TIMEOUT", 15)),
            max_attempts=int(data.get("MAX_ATTEMPTS", 3)),
        )

    @property
    def api_url(self) -> str:
        return self.live_base_url if self.environment == "live" else self.base_url

    @property
    def alternate_url(self) -> str:
        return self.base_url if self.api_url == self.live_base_url else self.live_base_url


class KPayClient:
    def __init__(self, config: KPayConfig):
        self.config = config

    def _headers(self) -> dict:
        raw = f"{self.config.username}:{self.config.password}"
        return {
            "Authorization": f"Basic {base64.b64encode(raw.encode('utf-8')).decode('utf-8')}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _post(self, body: dict) -> dict:
        """POST ``body`` with timeout, retries and a one-time fallback to the
        alternate base URL on DNS/connect/timeout failures."""
        url = self.config.api_url
        alternate = self.config.alternate_url
        switched = False
        last_err: Optional[Exception] = None
        attempts = max(1, self.config.max_attempts)

        for attempt in range(1, attempts + 1):
            try:
                resp = requests.post(url, headers=self._headers(), json=body, timeout=self.config.timeout)
                if not 200 <= resp.status_code < 300:
                    logger.error("KPay HTTP error response: status=%s body=%s", resp.status_code, resp.text[:800])
                    raise KPayHTTPError(resp.status_code, resp.text[:800])
                try:
                    return resp.json()
                except ValueError:
                    raise KPayError(f"Invalid JSON from gateway: {resp.text[:200]}")
            except (requests.ConnectionError, requests.Timeout) as e:
                last_err = e
                logger.warning("KPay request attempt %s failed url=%s: %s", attempt, url, e)
                if not switched and alternate and alternate != url:
                    logger.info("KPay: attempting alternate API URL due to network error: %s", alternate)
                    url = alternate
                    switched = True
                    if attempt < attempts:
                        time.sleep(0.25 * attempt)
                    continue
            except (KPayError, RequestException) as e:
                last_err = e
                logger.warning("KPay request attempt %s failed url=%s: %s", attempt, url, e)
            if attempt < attempts:
                time.sleep(0.15 * attempt)

        raise last_err or KPayError("KPay request failed after retries")

    def initiate(self, *, amount, reference: str, payment_method, customer_name: str,
                 customer_email: str, customer_phone: str, customer_number: str = "",
                 details: str = "", redirect_url: str, logo_url: str = "") -> KPayResponse:
        method = resolve_method(payment_method)
        method_cfg = PAYMENT_METHODS[method]
        body = {
            "action": "pay",
            "msisdn": customer_phone,
            "email": customer_email,
            "details": details or f"Payment {reference}",
            "refid": reference,
            "amount": _amount_value(amount),
            "currency": CURRENCY,
            "cname": customer_name,
            "cnumber": customer_number or customer_phone,
            "pmethod": method_cfg.code,
            "retailerid": self.config.retailer_id,
            "returl": self.config.webhook_url,
            "redirecturl": redirect_url,
            "bankid": method_cfg.bank_id,
            "logourl": logo_url or self.config.logo_url,
        }
        logger.info(
            "KPay payment request refid=%s method=%s bankid=%s pmethod=%s amount=%s",
            reference, method.value, method_cfg.bank_id, method_cfg.code, body["amount"],
        )
        try:
            data = self._post(body)
        except KPayError as e:
            raise KPayError(f"KPay request failed: {e}") from e
        except RequestException as e:
            raise KPayError(f"KPay request failed: {e}") from e

        result = KPayResponse.from_payload(data)
        logger.info("KPay payment initiated refid=%s tid=%s retcode=%s", reference, result.tid, result.retcode)
        return result

    def check_status(self, *, transaction_id: Optional[str] = None, reference: Optional[str] = None) -> KPayResponse:
        if not transaction_id and not reference:
            raise KPayError("Either transaction ID or order reference is required")
        body: dict[str, Any] = {"action": "checkstatus"}
        if transaction_id:
            body["tid"] = transaction_id
        if reference:
            body["refid"] = reference
        try:
            data = self._post(body)
        except (KPayError, RequestException) as e:
            raise KPayError(f"Failed to check payment status: {e}") from e

        result = KPayResponse.from_payload(data)
        logger.info(
            "KPay status tid=%s refid=%s statusid=%s statusdesc=%s retcode=%s",
            transaction_id, reference, result.statusid, result.statusdesc, result.retcode,
        )
        return result

    def describe(self) -> dict:
        return {
            "environment": self.config.environment,
            "effectiveApiUrl": self.config.api_url,
            "username": mask(self.config.username),
            "retailerId": mask(self.config.retailer_id),
        }


def _amount_value(amount):
    q = Decimal(str(amount)).quantize(Decimal("0.01"))
    if q == q.to_integral_value():
        return int(q)
    return float(q)
