import re
import secrets
import time

from django.conf import settings

from .integrations.kpay import KPayClient, KPayConfig


def generate_reference(prefix=None):
    # e.g. NIHEMART_1718000000000_004217
    prefix = prefix or settings.KPAY.get("REFERENCE_PREFIX") or "NIHEMART"
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.randbelow(1_000_000):06d}"


def guest_email(phone: str | None) -> str:
    domain = getattr(settings, "GUEST_EMAIL_DOMAIN", "nihemart.rw")
    digits = re.sub(r"\D", "", phone or "")
    if digits:
        return f"guest-{digits}@{domain}"
    return f"guest-{int(time.time() * 1000)}@{domain}"


def public_base_url(request=None) -> str:
    base = getattr(settings, "PUBLIC_BASE_URL", "") or ""
    if not base and request is not None:
        base = request.build_absolute_uri("/")
    return base.rstrip("/")


def build_kpay_client() -> KPayClient:
    """Client from ``settings.KPAY``; raises ``KPayConfigError`` if incomplete."""
    return KPayClient(KPayConfig.from_mapping(settings.KPAY))
