import time
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from payments import services
from payments.exceptions import PaymentError
from payments.models import Payment

class Command(BaseCommand):
    help = "Poll KPay status for pending payments and update local rows"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=1)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timezone.timedelta(minutes=opts["older_than_minutes"])
        qs = (
            Payment.objects.filter(status=Payment.STATUS_PENDING, created_at__lt=cutoff)
            .order_by("created_at")[:opts["max"]]
        )
        payments = list(qs)
        if not payments:
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        try:
            client = services.gateway_client()
        except PaymentError as e:
            raise CommandError(e.message)
        for p in payments:
            try:
                result = services.check_payment_status(payment_id=p.pk, client=client)
            except PaymentError as e:
                self.stdout.write(self.style.WARNING(f"{p.reference}: {e.message}"))
            else:
                if result.get("error"):
                    self.stdout.write(self.style.WARNING(f"{p.reference}: {result['error']}"))
                elif result.get("needsUpdate"):
                    self.stdout.write(self.style.SUCCESS(f"Updated {p.reference} -> {result['status']}"))
                else:
                    self.stdout.write(f"{p.reference}: still {result['status']}")
            if opts["sleep"]:
                time.sleep(opts["sleep"])
