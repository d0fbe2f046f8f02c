from urllib.parse import urlparse

from django.conf import settings
from django.core.management.base import BaseCommand

from payments.integrations.kpay import mask


def _environment(cfg: dict) -> str:
    return (cfg.get("ENVIRONMENT") or "sandbox").lower()


def _effective_url(cfg: dict) -> str:
    key = "LIVE_BASE_URL" if _environment(cfg) == "live" else "BASE_URL"
    return cfg.get(key) or ""


def collect_warnings(cfg: dict) -> list:
    warnings = []
    environment = _environment(cfg)
    effective_url = _effective_url(cfg)
    webhook_url = cfg.get("WEBHOOK_URL") or ""
    if environment == "sandbox":
        warnings.append("Using sandbox environment")
    if environment == "live" and "sandbox" in effective_url.lower():
        warnings.append("Live environment configured with a sandbox base URL")
    for key in ("USERNAME", "PASSWORD", "RETAILER_ID"):
        if not cfg.get(key):
            warnings.append(f"KPAY {key} is not set")
    host = urlparse(webhook_url).hostname or ""
    if not webhook_url:
        warnings.append("Webhook URL is not set")
    elif host in ("localhost", "127.0.0.1"):
        warnings.append("Webhook URL points to localhost; the gateway cannot reach it")
    elif not webhook_url.startswith("https://"):
        warnings.append("Webhook URL is not HTTPS")
    return warnings


class Command(BaseCommand):
    help = "Show the effective KPay configuration with credentials masked"

    def handle(self, *args, **opts):
        cfg = settings.KPAY
        rows = [
            ("Environment", _environment(cfg)),
            ("Effective API URL", _effective_url(cfg) or "<NOT SET>"),
            ("Username", mask(cfg.get("USERNAME", ""))),
            ("Password", mask(cfg.get("PASSWORD", ""))),
            ("Retailer ID", mask(cfg.get("RETAILER_ID", ""))),
            ("Webhook URL", cfg.get("WEBHOOK_URL") or "<NOT SET>"),
        ]
        for label, value in rows:
            self.stdout.write(f"{label}: {value}")

        warnings = collect_warnings(cfg)
        for w in warnings:
            self.stdout.write(self.style.WARNING(f"WARNING: {w}"))
        if not warnings:
            self.stdout.write(self.style.SUCCESS("KPay configuration looks good."))
