import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock, patch

from django.conf import settings
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from orders.models import Order
from . import store
from .integrations.kpay import KPayError, KPayResponse
from .models import Payment
from .tests import FakeResponse


def gateway(**initiate_payload):
    client = Mock()
    payload = {"tid": "T1", "refid": "ignored", "retcode": 0, "url": "https://checkout.example/pay"}
    payload.update(initiate_payload)
    client.initiate.return_value = KPayResponse.from_payload(payload)
    return client


class InitiatePaymentTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(total=Decimal("5000.00"), customer_phone="0788000111")

    def _post(self, payload):
        return self.client.post(
            reverse("payments:kpay_initiate"),
            data=json.dumps(payload),
            content_type="application/json",
        )

    def _body(self, **overrides):
        body = {
            "orderId": self.order.pk,
            "amount": 5000,
            "customerName": "Alice",
            "customerEmail": "alice@example.com",
            "customerPhone": "+250788123456",
            "paymentMethod": "mtn_momo",
        }
        body.update(overrides)
        return body

    def _payment(self, **fields):
        values = {
            "reference": "REF_EXISTING",
            "amount": Decimal("5000.00"),
            "payment_method": "mtn_momo",
            "status": Payment.STATUS_PENDING,
        }
        values.update(fields)
        return Payment.objects.create(**values)

    # ---------- validation ----------

    def test_invalid_json(self):
        resp = self.client.post(reverse("payments:kpay_initiate"), data="{nope", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_amount_and_method_required(self):
        resp = self._post(self._body(paymentMethod=""))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Amount and payment method are required")

    def test_order_or_cart_required(self):
        resp = self._post(self._body(orderId=None))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Either orderId or cart snapshot is required")

    def test_invalid_method(self):
        resp = self._post(self._body(paymentMethod="paypal"))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Invalid payment method")

    def test_amount_must_be_positive(self):
        resp = self._post(self._body(amount=-5))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Amount must be greater than 0")

    def test_order_not_found(self):
        resp = self._post(self._body(orderId="missing"))
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"], "Order not found")

    def test_order_must_be_pending(self):
        Order.objects.filter(pk=self.order.pk).update(status="shipped")
        resp = self._post(self._body())
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Order cannot be paid - invalid status")

    def test_amount_mismatch(self):
        resp = self._post(self._body(amount="5000.02"))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Amount mismatch with order total")

    def test_amount_within_tolerance_is_accepted(self):
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            resp = self._post(self._body(amount="5000.01"))
        self.assertEqual(resp.status_code, 200)

    def test_order_already_paid(self):
        self._payment(order=self.order, status=Payment.STATUS_COMPLETED)
        resp = self._post(self._body())
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Order already paid")

    def test_legacy_successful_counts_as_paid(self):
        self._payment(order=self.order, status=Payment.STATUS_SUCCESSFUL)
        resp = self._post(self._body())
        self.assertEqual(resp.json()["error"], "Order already paid")

    def test_recent_pending_payment_blocks_new_attempt(self):
        pending = self._payment(order=self.order)
        resp = self._post(self._body())
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["existingPaymentId"], str(pending.pk))
        self.assertEqual(Payment.objects.count(), 1)

    def test_stale_pending_payment_does_not_block(self):
        self._payment(order=self.order, created_at=timezone.now() - timedelta(minutes=6))
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            resp = self._post(self._body())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Payment.objects.count(), 2)

    def test_timed_out_pending_payment_does_not_block(self):
        self._payment(order=self.order, client_timeout=True)
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            resp = self._post(self._body())
        self.assertEqual(resp.status_code, 200)

    @override_settings(KPAY={**settings.KPAY, "USERNAME": ""})
    def test_missing_credentials_is_service_unavailable(self):
        resp = self._post(self._body())
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["error"], "Payment service unavailable")
        self.assertFalse(Payment.objects.exists())

    # ---------- gateway call ----------

    def test_success_creates_pending_row(self):
        client = gateway()
        with patch("payments.services.build_kpay_client", return_value=client):
            resp = self._post(self._body())

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        payment = Payment.objects.get()
        self.assertTrue(data["success"])
        self.assertEqual(data["paymentId"], str(payment.pk))
        self.assertEqual(data["transactionId"], "T1")
        self.assertEqual(data["checkoutUrl"], "https://checkout.example/pay")
        self.assertEqual(data["status"], "pending")
        self.assertTrue(payment.reference.startswith("NIHEMART_"))
        self.assertEqual(payment.order_id, self.order.pk)
        self.assertEqual(payment.gateway_transaction_id, "T1")
        self.assertEqual(payment.gateway_return_code, 0)
        self.assertEqual(payment.customer_phone, "0788123456")
        self.assertEqual(payment.status, Payment.STATUS_PENDING)

        kwargs = client.initiate.call_args.kwargs
        self.assertEqual(kwargs["reference"], payment.reference)
        self.assertEqual(kwargs["redirect_url"], f"https://shop.example.rw/payment/{payment.pk}")
        self.assertEqual(kwargs["customer_number"], "0788000111")
        self.assertEqual(kwargs["logo_url"], "https://shop.example.rw/logo.png")
        self.assertIn(payment.reference, kwargs["details"])

    def test_missing_email_uses_guest_address(self):
        client = gateway()
        with patch("payments.services.build_kpay_client", return_value=client):
            self._post(self._body(customerEmail=""))
        self.assertEqual(Payment.objects.get().customer_email, "guest-250788123456@nihemart.rw")
        self.assertEqual(client.initiate.call_args.kwargs["customer_email"], "guest-250788123456@nihemart.rw")

    def test_cart_checkout_without_order(self):
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            resp = self._post(self._body(orderId=None, amount=1200, cart=[{"sku": "A", "qty": 1}]))
        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(Payment.objects.get().order_id)

    def test_nonzero_retcode_marks_payment_failed(self):
        with patch("payments.services.build_kpay_client", return_value=gateway(retcode=609)):
            resp = self._post(self._body())

        self.assertEqual(resp.status_code, 400)
        data = resp.json()
        self.assertEqual(data["error"], "This payment method is not supported. Please try a different method.")
        self.assertEqual(data["errorCode"], 609)
        payment = Payment.objects.get()
        self.assertEqual(payment.status, Payment.STATUS_FAILED)
        self.assertEqual(payment.failure_reason, "Unknown Payment method")

    def test_gateway_exception_marks_payment_failed(self):
        client = Mock()
        client.initiate.side_effect = KPayError("KPay request failed: timed out")
        with patch("payments.services.build_kpay_client", return_value=client):
            with self.assertLogs("payments.services", level="ERROR"):
                resp = self._post(self._body())

        self.assertEqual(resp.status_code, 500)
        payment = Payment.objects.get()
        self.assertEqual(payment.status, Payment.STATUS_FAILED)
        self.assertEqual(payment.failure_reason, "KPay request failed: timed out")

    # ---------- reuse ----------

    def test_client_reference_reuses_pending_row(self):
        existing = self._payment(reference="CLIENTREF1", gateway_transaction_id="OLD")
        client = gateway(tid="T-NEW")
        with patch("payments.services.build_kpay_client", return_value=client):
            resp = self._post(self._body(orderId=None, cart=[{"sku": "A"}], clientReference="CLIENTREF1"))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["paymentId"], str(existing.pk))
        self.assertEqual(Payment.objects.count(), 1)
        self.assertEqual(client.initiate.call_args.kwargs["reference"], "CLIENTREF1")
        existing.refresh_from_db()
        self.assertEqual(existing.gateway_transaction_id, "T-NEW")

    def test_unknown_client_reference_becomes_new_reference(self):
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            self._post(self._body(clientReference="CLIENTREF2"))
        self.assertEqual(Payment.objects.get().reference, "CLIENTREF2")

    def test_method_mismatch_creates_new_row(self):
        self._payment(reference="CLIENTREF3", payment_method="airtel_money")
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            resp = self._post(self._body(orderId=None, cart=[{"sku": "A"}], clientReference="CLIENTREF3"))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Payment.objects.count(), 2)
        new = Payment.objects.get(pk=resp.json()["paymentId"])
        self.assertNotEqual(new.reference, "CLIENTREF3")
        self.assertEqual(new.payment_method, "mtn_momo")

    def test_failed_row_is_not_reused(self):
        failed = self._payment(reference="CLIENTREF4", status=Payment.STATUS_FAILED)
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            resp = self._post(self._body(orderId=None, cart=[{"sku": "A"}], clientPaymentId=str(failed.pk)))

        self.assertNotEqual(resp.json()["paymentId"], str(failed.pk))
        failed.refresh_from_db()
        self.assertEqual(failed.status, Payment.STATUS_FAILED)

    def test_completed_row_is_returned_without_gateway_call(self):
        done = self._payment(reference="CLIENTREF5", status=Payment.STATUS_COMPLETED)
        client = gateway()
        with patch("payments.services.build_kpay_client", return_value=client):
            resp = self._post(self._body(orderId=None, cart=[{"sku": "A"}], clientPaymentId=str(done.pk)))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Using existing completed payment")
        client.initiate.assert_not_called()

    def test_in_flight_window_boundaries(self):
        self._payment(order=self.order, created_at=timezone.now() - timedelta(minutes=3))
        resp = self._post(self._body())
        self.assertEqual(resp.status_code, 409)

    def test_sub_cent_difference_is_tolerated(self):
        Order.objects.filter(pk=self.order.pk).update(total=Decimal("10000.00"))
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            resp = self._post(self._body(amount="10000.009"))
        self.assertEqual(resp.status_code, 200)


class ReferenceConflictTests(TestCase):
    def test_create_or_fetch_returns_existing_row(self):
        existing = Payment.objects.create(reference="DUP_REF", amount=Decimal("10"), payment_method="mtn_momo")
        with self.assertLogs("payments.store", level="WARNING"):
            payment, created = store.create_or_fetch(
                reference="DUP_REF", amount=Decimal("10"), payment_method="mtn_momo"
            )
        self.assertFalse(created)
        self.assertEqual(payment.pk, existing.pk)
        self.assertEqual(Payment.objects.count(), 1)


class MtnMomoEndToEndTests(TestCase):
    def test_mtn_momo_checkout(self):
        order = Order.objects.create(total=Decimal("15000.00"))
        ok = FakeResponse(200, {"tid": "KP-1", "refid": "x", "retcode": 0, "redirecturl": "https://pay.sandbox.example/c/1"})
        with patch("payments.integrations.kpay.requests.post", return_value=ok) as post:
            resp = self.client.post(
                reverse("payments:kpay_initiate"),
                data=json.dumps({
                    "orderId": order.pk,
                    "amount": 15000,
                    "customerName": "Eric",
                    "customerEmail": "eric@example.com",
                    "customerPhone": "0788123456",
                    "paymentMethod": "mtn_momo",
                }),
                content_type="application/json",
            )

        data = resp.json()
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(data["success"])
        self.assertEqual(data["status"], "pending")
        self.assertEqual(data["checkoutUrl"], "https://pay.sandbox.example/c/1")
        self.assertRegex(data["reference"], r"^NIHEMART_\d+_\d{6}$")
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["bankid"], "63510")
        self.assertEqual(body["refid"], data["reference"])
        self.assertEqual(body["amount"], 15000)


class ReuseAcrossOrdersTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(total=Decimal("5000.00"))
        self.order_payment = Payment.objects.create(
            reference="ORDER_ROW_1",
            order=self.order,
            amount=Decimal("5000.00"),
            payment_method="mtn_momo",
            created_at=timezone.now() - timedelta(minutes=1),
        )

    def _post(self, payload):
        return self.client.post(
            reverse("payments:kpay_initiate"),
            data=json.dumps(payload),
            content_type="application/json",
        )

    def test_cart_request_cannot_take_over_order_payment(self):
        client = gateway(tid="T-CART")
        with patch("payments.services.build_kpay_client", return_value=client):
            resp = self._post({
                "amount": 1,
                "cart": [{"sku": "A", "qty": 1}],
                "paymentMethod": "mtn_momo",
                "customerPhone": "0788123456",
                "clientPaymentId": str(self.order_payment.pk),
            })

        self.assertEqual(resp.status_code, 200)
        self.assertNotEqual(resp.json()["paymentId"], str(self.order_payment.pk))
        self.assertEqual(Payment.objects.count(), 2)
        self.order_payment.refresh_from_db()
        self.assertEqual(self.order_payment.amount, Decimal("5000.00"))
        self.assertEqual(self.order_payment.order_id, self.order.pk)
        self.assertIsNone(self.order_payment.gateway_transaction_id)

    def test_cart_request_by_reference_cannot_take_over_order_payment(self):
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            resp = self._post({
                "amount": 1,
                "cart": [],
                "paymentMethod": "mtn_momo",
                "clientReference": "ORDER_ROW_1",
            })

        self.assertEqual(resp.status_code, 200)
        new = Payment.objects.get(pk=resp.json()["paymentId"])
        self.assertNotEqual(new.reference, "ORDER_ROW_1")
        self.assertIsNone(new.order_id)

    def test_order_row_reuse_keeps_its_amount(self):
        Payment.objects.filter(pk=self.order_payment.pk).update(created_at=timezone.now() - timedelta(minutes=10))
        client = gateway()
        with patch("payments.services.build_kpay_client", return_value=client):
            resp = self._post({
                "orderId": self.order.pk,
                "amount": "5000.01",
                "paymentMethod": "mtn_momo",
                "clientPaymentId": str(self.order_payment.pk),
            })

        self.assertEqual(resp.json()["paymentId"], str(self.order_payment.pk))
        self.order_payment.refresh_from_db()
        self.assertEqual(self.order_payment.amount, Decimal("5000.00"))


class CartSnapshotTests(TestCase):
    def test_empty_cart_snapshot_is_accepted(self):
        with patch("payments.services.build_kpay_client", return_value=gateway()):
            resp = self.client.post(
                reverse("payments:kpay_initiate"),
                data=json.dumps({"amount": 300, "cart": [], "paymentMethod": "spenn"}),
                content_type="application/json",
            )
        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(Payment.objects.get().order_id)


class RetryPaymentTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(total=Decimal("2000.00"))

    def _post(self, payload):
        return self.client.post(
            reverse("payments:payment_retry"),
            data=json.dumps(payload),
            content_type="application/json",
        )

    def test_order_id_required(self):
        resp = self._post({"amount": 2000, "paymentMethod": "mtn_momo", "cart": []})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Missing required fields")

    def test_retry_after_failed_attempt(self):
        Payment.objects.create(
            reference="FAILED_1", order=self.order, amount=Decimal("2000.00"),
            payment_method="mtn_momo", status=Payment.STATUS_FAILED,
        )
        with patch("payments.services.build_kpay_client", return_value=gateway(tid="T-RETRY")):
            resp = self._post({"orderId": self.order.pk, "amount": 2000, "paymentMethod": "airtel_money"})

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["transactionId"], "T-RETRY")
        new = Payment.objects.get(pk=data["paymentId"])
        self.assertEqual(new.order_id, self.order.pk)
        self.assertEqual(new.payment_method, "airtel_money")

    def test_retry_blocked_while_payment_in_progress(self):
        pending = Payment.objects.create(
            reference="PENDING_1", order=self.order, amount=Decimal("2000.00"), payment_method="mtn_momo",
        )
        resp = self._post({"orderId": self.order.pk, "amount": 2000, "paymentMethod": "mtn_momo"})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["existingPaymentId"], str(pending.pk))
