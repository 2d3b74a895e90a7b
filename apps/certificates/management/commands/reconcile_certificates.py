from django.core.management.base import BaseCommand

from apps.certificates.ledger import reconcile
from apps.certificates.models import CertificateBalance
from apps.certificates.settlement import (
    META_REDEEM_CODE,
    META_REDEEM_DEDUCTED,
    SETTLEMENT_STATUSES,
    SettlementOutcome,
    settle_order,
)
from apps.checkout.models import Order


class Command(BaseCommand):
    help = "Compare recorded balances with their transaction history and retry failed settlements."

    def add_arguments(self, parser):
        parser.add_argument("--code", help="Only check this certificate code.")
        parser.add_argument(
            "--retry-failed",
            action="store_true",
            help="Retry deductions for paid orders whose certificate was never deducted.",
        )

    def handle(self, *args, **options):
        if options["retry_failed"]:
            self._retry_failed()

        queryset = CertificateBalance.objects.order_by("cert_code")
        if options.get("code"):
            queryset = queryset.filter(cert_code=options["code"].strip().upper())

        checked = 0
        mismatched = 0
        for balance in queryset:
            result = reconcile(balance.cert_code)
            checked += 1
            if result.discrepancy:
                mismatched += 1
                self.stdout.write(
                    self.style.WARNING(
                        f"{result.cert_code}: recorded {result.remaining}, "
                        f"history says {result.computed_remaining} (spent {result.spent} of {result.original})"
                    )
                )

        self.stdout.write(self.style.SUCCESS(f"Checked certificates: {checked}, discrepancies: {mismatched}"))

    def _retry_failed(self):
        pending = Order.objects.filter(status__in=SETTLEMENT_STATUSES, **{f"meta__{META_REDEEM_CODE}__isnull": False})
        retried = 0
        for order in pending:
            if order.get_meta(META_REDEEM_DEDUCTED):
                continue
            outcome = settle_order(order.pk)
            retried += 1
            style = self.style.SUCCESS if outcome == SettlementOutcome.DEDUCTED else self.style.WARNING
            self.stdout.write(style(f"Order {order.pk}: {outcome.value}"))
        self.stdout.write(self.style.SUCCESS(f"Settlements retried: {retried}"))
