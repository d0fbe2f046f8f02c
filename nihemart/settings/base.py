from pathlib import Path
import os

import dj_database_url
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "insecure-dev-key")
DEBUG = os.getenv("DJANGO_DEBUG", "false").lower() in ("1", "true", "yes")
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "orders",
    "payments",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "nihemart.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "nihemart.wsgi.application"

DATABASES = {
    "default": dj_database_url.config(default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}")
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "Africa/Kigali"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Public origin of the storefront; used for gateway redirect/logo URLs.
# Empty -> derived from the incoming request.
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "")
STORE_NAME = os.getenv("STORE_NAME", "Nihemart")
GUEST_EMAIL_DOMAIN = os.getenv("GUEST_EMAIL_DOMAIN", "nihemart.rw")

# Email
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = os.getenv("EMAIL_USE_TLS", "true").lower() in ("1", "true", "yes")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "noreply@nihemart.rw")
EMAIL_FAIL_SILENTLY = os.getenv("EMAIL_FAIL_SILENTLY", "true").lower() in ("1", "true", "yes")
PAYMENTS_ADMIN_EMAILS = os.getenv("PAYMENTS_ADMIN_EMAILS", "")
PAYMENTS_SEND_RECEIPTS = os.getenv("PAYMENTS_SEND_RECEIPTS", "true").lower() in ("1", "true", "yes")

# KPay gateway
KPAY = {
    "ENVIRONMENT": os.getenv("KPAY_ENVIRONMENT", "sandbox"),
    "BASE_URL": os.getenv("KPAY_BASE_URL", "https://pay.esicia.com"),
    "LIVE_BASE_URL": os.getenv("KPAY_LIVE_BASE_URL", "https://pay.esicia.rw"),
    "USERNAME": os.getenv("KPAY_USERNAME", ""),
    "PASSWORD": os.getenv("KPAY_PASSWORD", ""),
    "RETAILER_ID": os.getenv("KPAY_RETAILER_ID", ""),
    "WEBHOOK_URL": os.getenv("KPAY_WEBHOOK_URL", "https://nihemart.rw/api/webhooks/kpay"),
    "LOGO_URL": os.getenv("KPAY_LOGO_URL", ""),
    "TIMEOUT": float(os.getenv("KPAY_TIMEOUT", "15")),
    "MAX_ATTEMPTS": int(os.getenv("KPAY_MAX_ATTEMPTS", "3")),
    "REFERENCE_PREFIX": os.getenv("KPAY_REFERENCE_PREFIX", "NIHEMART"),
    # Optional shared-secret header sent by the gateway on webhook calls
    "WEBHOOK_HEADER_KEY": os.getenv("KPAY_WEBHOOK_HEADER_KEY", ""),
    "WEBHOOK_HEADER_VALUE": os.getenv("KPAY_WEBHOOK_HEADER_VALUE", ""),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "payments": {
            "handlers": ["console"],
            "level": os.getenv("PAYMENTS_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
