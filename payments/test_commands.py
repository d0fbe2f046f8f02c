from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

from django.conf import settings
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone

from .integrations.kpay import KPayResponse
from .management.commands.check_kpay_config import collect_warnings
from .models import Payment


class CheckKPayConfigTests(TestCase):
    def test_output_masks_credentials(self):
        out = StringIO()
        call_command("check_kpay_config", stdout=out)
        text = out.getvalue()
        self.assertIn("Environment: sandbox", text)
        self.assertIn("Password: te*****ss", text)
        self.assertNotIn("test-pass", text)
        self.assertIn("Using sandbox environment", text)

    def test_warnings(self):
        cfg = {
            "ENVIRONMENT": "live",
            "LIVE_BASE_URL": "https://sandbox.pay.example",
            "USERNAME": "u",
            "PASSWORD": "",
            "RETAILER_ID": "r",
            "WEBHOOK_URL": "http://localhost:8000/api/webhooks/kpay",
        }
        warnings = collect_warnings(cfg)
        self.assertIn("Live environment configured with a sandbox base URL", warnings)
        self.assertIn("KPAY PASSWORD is not set", warnings)
        self.assertTrue(any("localhost" in w for w in warnings))

        cfg["WEBHOOK_URL"] = "http://shop.example.rw/api/webhooks/kpay"
        self.assertIn("Webhook URL is not HTTPS", collect_warnings(cfg))

    @override_settings(KPAY={**settings.KPAY, "ENVIRONMENT": "live"})
    def test_clean_live_config(self):
        out = StringIO()
        call_command("check_kpay_config", stdout=out)
        self.assertIn("KPay configuration looks good.", out.getvalue())


class ReconcileKPayPaymentsTests(TestCase):
    def test_nothing_to_do(self):
        out = StringIO()
        call_command("reconcile_kpay_payments", stdout=out)
        self.assertIn("No pending payments to reconcile.", out.getvalue())

    def test_pending_payments_are_reconciled(self):
        old = Payment.objects.create(
            reference="NIHEMART_1_000200",
            amount=Decimal("800.00"),
            payment_method="mtn_momo",
            gateway_transaction_id="T200",
            created_at=timezone.now() - timedelta(minutes=10),
        )
        fresh = Payment.objects.create(
            reference="NIHEMART_1_000201",
            amount=Decimal("800.00"),
            payment_method="mtn_momo",
        )
        client = Mock()
        client.check_status.return_value = KPayResponse.from_payload(
            {"statusid": "01", "statusdesc": "Successfully processed", "retcode": 0}
        )
        out = StringIO()
        with patch("payments.services.build_kpay_client", return_value=client):
            call_command("reconcile_kpay_payments", "--sleep", "0", "--older-than-minutes", "5", stdout=out)

        self.assertIn("Updated NIHEMART_1_000200 -> completed", out.getvalue())
        old.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(old.status, Payment.STATUS_COMPLETED)
        self.assertEqual(fresh.status, Payment.STATUS_PENDING)
        client.check_status.assert_called_once()
