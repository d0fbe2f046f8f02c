from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

PUBLIC_BASE_URL = "https://shop.example.rw"

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

KPAY = {
    **KPAY,
    "ENVIRONMENT": "sandbox",
    "BASE_URL": "https://pay.sandbox.example",
    "LIVE_BASE_URL": "https://pay.live.example",
    "USERNAME": "test-user",
    "PASSWORD": "test-pass",
    "RETAILER_ID": "RT01",
    "WEBHOOK_URL": "https://shop.example.rw/api/webhooks/kpay",
    "LOGO_URL": "",
    "WEBHOOK_HEADER_KEY": "",
    "WEBHOOK_HEADER_VALUE": "",
}
