import base64
from decimal import Decimal
from unittest.mock import patch

import requests
from django.test import SimpleTestCase, override_settings
from django.conf import settings

from .integrations import kpay
from .integrations.kpay import KPayConfig, KPayConfigError, KPayError
from .utils import build_kpay_client, generate_reference, guest_email


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _initiate(client, **overrides):
    params = dict(
        amount=Decimal("5000"),
        reference="NIHEMART_1_000001",
        payment_method="mtn_momo",
        customer_name="Alice",
        customer_email="alice@example.com",
        customer_phone="0788123456",
        redirect_url="https://shop.example.rw/payment/abc",
    )
    params.update(overrides)
    return client.initiate(**params)


class KPayClientRequestTests(SimpleTestCase):
    def test_initiate_sends_basic_auth_and_method_codes(self):
        ok = FakeResponse(200, {"tid": "T1", "refid": "NIHEMART_1_000001", "retcode": 0, "url": "https://checkout.example/x"})
        with patch("payments.integrations.kpay.requests.post", return_value=ok) as post:
            resp = _initiate(build_kpay_client())

        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://pay.sandbox.example")
        expected = base64.b64encode(b"test-user:test-pass").decode("utf-8")
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], f"Basic {expected}")
        self.assertEqual(post.call_args.kwargs["timeout"], 15.0)
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["action"], "pay")
        self.assertEqual(body["bankid"], "63510")
        self.assertEqual(body["pmethod"], "momo")
        self.assertEqual(body["currency"], "RWF")
        self.assertEqual(body["amount"], 5000)
        self.assertEqual(body["retailerid"], "RT01")
        self.assertEqual(body["returl"], "https://shop.example.rw/api/webhooks/kpay")
        self.assertTrue(resp.accepted)
        self.assertEqual(resp.tid, "T1")
        self.assertEqual(resp.checkout_url, "https://checkout.example/x")

    def test_card_methods_share_bank_id(self):
        ok = FakeResponse(200, {"retcode": 0})
        with patch("payments.integrations.kpay.requests.post", return_value=ok) as post:
            _initiate(build_kpay_client(), payment_method="visa_card")
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["pmethod"], "cc")
        self.assertEqual(body["bankid"], "000")

    def test_network_error_switches_to_alternate_url_once(self):
        ok = FakeResponse(200, {"retcode": 0, "tid": "T2"})
        with patch("payments.integrations.kpay.requests.post",
                   side_effect=[requests.ConnectionError("dns failure"), ok]) as post, \
                patch("payments.integrations.kpay.time.sleep") as sleep:
            resp = _initiate(build_kpay_client())

        self.assertEqual(resp.tid, "T2")
        self.assertEqual(post.call_count, 2)
        self.assertEqual(post.call_args_list[0].args[0], "https://pay.sandbox.example")
        self.assertEqual(post.call_args_list[1].args[0], "https://pay.live.example")
        sleep.assert_called_once_with(0.25)

    def test_alternate_url_is_tried_only_once(self):
        errors = [requests.Timeout("t1"), requests.Timeout("t2"), requests.Timeout("t3")]
        with patch("payments.integrations.kpay.requests.post", side_effect=errors) as post, \
                patch("payments.integrations.kpay.time.sleep"):
            with self.assertRaises(KPayError):
                _initiate(build_kpay_client())

        urls = [c.args[0] for c in post.call_args_list]
        self.assertEqual(urls, ["https://pay.sandbox.example", "https://pay.live.example", "https://pay.live.example"])

    def test_http_error_is_retried_then_raised(self):
        with patch("payments.integrations.kpay.requests.post",
                   return_value=FakeResponse(500, text="boom")) as post, \
                patch("payments.integrations.kpay.time.sleep") as sleep:
            with self.assertRaisesMessage(KPayError, "HTTP error! status: 500 - body: boom"):
                _initiate(build_kpay_client())

        self.assertEqual(post.call_count, 3)
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [0.15, 0.3])

    def test_check_status_requires_an_identifier(self):
        with self.assertRaises(KPayError):
            build_kpay_client().check_status()

    def test_check_status_sends_both_identifiers(self):
        ok = FakeResponse(200, {"statusid": "01", "statusdesc": "Successfully processed", "retcode": 0})
        with patch("payments.integrations.kpay.requests.post", return_value=ok) as post:
            resp = build_kpay_client().check_status(transaction_id="T1", reference="R1")

        self.assertEqual(post.call_args.kwargs["json"], {"action": "checkstatus", "tid": "T1", "refid": "R1"})
        self.assertEqual(resp.outcome, "completed")

    @override_settings(KPAY={**settings.KPAY, "ENVIRONMENT": "live"})
    def test_live_environment_uses_live_url(self):
        with patch("payments.integrations.kpay.requests.post", return_value=FakeResponse(200, {"retcode": 0})) as post:
            _initiate(build_kpay_client())
        self.assertEqual(post.call_args.args[0], "https://pay.live.example")


class KPayHelperTests(SimpleTestCase):
    def test_classify_status(self):
        self.assertEqual(kpay.classify_status("01", ""), "completed")
        self.assertEqual(kpay.classify_status(1, ""), "completed")
        self.assertEqual(kpay.classify_status("02", "Processing"), "pending")
        self.assertEqual(kpay.classify_status("03", "Pending approval"), "pending")
        self.assertEqual(kpay.classify_status("03", "Insufficient funds"), "failed")
        self.assertIsNone(kpay.classify_status("05", "whatever"))

    def test_error_messages(self):
        self.assertEqual(kpay.get_error_message(611), "Transaction not found")
        self.assertEqual(kpay.get_error_message("609"), "Unknown Payment method")
        self.assertEqual(kpay.get_error_message(999), "Unknown error (code: 999)")

    def test_format_phone_number(self):
        self.assertEqual(kpay.format_phone_number("+250 788 123 456"), "0788123456")
        self.assertEqual(kpay.format_phone_number("250788123456"), "0788123456")
        self.assertEqual(kpay.format_phone_number("788123456"), "0788123456")
        self.assertEqual(kpay.format_phone_number("0788123456"), "0788123456")

    def test_unsupported_method(self):
        self.assertFalse(kpay.is_supported_method("paypal"))
        with self.assertRaisesMessage(KPayError, "Unsupported payment method: paypal"):
            kpay.resolve_method("paypal")

    def test_webhook_payload_requires_status_fields(self):
        with self.assertRaises(KPayError):
            kpay.parse_webhook_payload({"tid": "T1", "refid": "R1", "statusdesc": "ok"})
        with self.assertRaises(KPayError):
            kpay.parse_webhook_payload({"tid": "T1", "refid": "R1", "statusid": True, "statusdesc": "ok"})
        event = kpay.parse_webhook_payload({"tid": 5, "refid": "R1", "statusid": 1, "statusdesc": "ok"})
        self.assertEqual(event.transaction_id, "5")
        self.assertEqual(event.statusid, "01")
        self.assertEqual(event.outcome, "completed")

    def test_checkout_url_keys(self):
        self.assertEqual(kpay.extract_checkout_url({"redirecturl": "https://a"}), "https://a")
        self.assertEqual(kpay.extract_checkout_url({"redirectUrl": " https://b "}), "https://b")
        self.assertIsNone(kpay.extract_checkout_url({"url": ""}))

    def test_mask(self):
        self.assertEqual(kpay.mask(""), "<NOT SET>")
        self.assertEqual(kpay.mask("abcd"), "****")
        self.assertEqual(kpay.mask("test-pass"), "te*****ss")

    def test_config_requires_credentials(self):
        with self.assertRaisesMessage(KPayConfigError, "password"):
            KPayConfig(username="u", password="", retailer_id="r")
        with self.assertRaises(KPayConfigError):
            KPayConfig(username="u", password="p", retailer_id="r", environment="staging")


class UtilsTests(SimpleTestCase):
    def test_generate_reference_shape(self):
        ref = generate_reference()
        prefix, millis, suffix = ref.split("_")
        self.assertEqual(prefix, "NIHEMART")
        self.assertTrue(millis.isdigit())
        self.assertEqual(len(suffix), 6)

    def test_guest_email(self):
        self.assertEqual(guest_email("+250788123456"), "guest-250788123456@nihemart.rw")
        self.assertTrue(guest_email("").startswith("guest-"))
