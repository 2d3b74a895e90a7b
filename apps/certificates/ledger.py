"""Read-side views over certificate activity for staff review."""

from dataclasses import dataclass, field

from apps.audit.models import AuditAction
from apps.audit.services import audit_entity_ids
from apps.certificates.codec import CertificateCodec, normalize_code
from apps.certificates.config import get_certificate_config
from apps.certificates.models import CertificateBalance
from apps.certificates.resolver import extract_amount, extract_serial
from apps.certificates.services import find_balance, get_balance_by_serial, list_manual_transactions
from apps.certificates.settlement import META_REDEEM_AMOUNT, META_REDEEM_CODE
from apps.checkout.models import Order
from apps.common.money import ZERO, format_money, to_money
from apps.records.store import InboundRecordStore

MISSING_CODE = "(missing)"


@dataclass
class LedgerTransaction:
    kind: str
    reference: str
    created_at: object
    items: list = field(default_factory=list)
    items_total: object = ZERO
    applied_amount: object = ZERO

    @property
    def items_summary(self):
        return "; ".join(f"{item['name']} × {item['qty']} ({format_money(item['total'])})" for item in self.items)


@dataclass
class Reconciliation:
    cert_code: str
    original: object
    spent: object
    computed_remaining: object
    remaining: object

    @property
    def discrepancy(self):
        return self.computed_remaining != self.remaining


@dataclass
class LedgerRow:
    cert_code: str
    serial_raw: int
    original_amount: object
    remaining_amount: object
    updated_at: object
    external_record_id: object = None
    materialized: bool = True


def _applied_amount(order, cert_code):
    if order.get_meta(META_REDEEM_CODE) == cert_code:
        return to_money(order.get_meta(META_REDEEM_AMOUNT))
    return to_money(sum((-fee.amount for fee in order.fees.all() if f"({cert_code.lower()})" in fee.label.lower()), ZERO))


def _order_transaction(order, cert_code):
    items = [{"name": item.name, "qty": item.qty, "total": to_money(item.total)} for item in order.items.all()]
    return LedgerTransaction(
        kind="order",
        reference=str(order.id),
        created_at=order.created_at,
        items=items,
        items_total=to_money(sum((item["total"] for item in items), ZERO)),
        applied_amount=_applied_amount(order, cert_code),
    )


def _manual_transaction(manual):
    items = [{"name": line.name, "qty": 1, "total": to_money(line.price)} for line in manual.lines.all()]
    return LedgerTransaction(
        kind="manual",
        reference=str(manual.id),
        created_at=manual.created_at,
        items=items,
        items_total=to_money(manual.items_total),
        applied_amount=to_money(manual.items_total),
    )


def _orders_for(cert_code, serial):
    base = Order.objects.prefetch_related("items", "fees")
    orders = {}
    for order in base.filter(**{f"meta__{META_REDEEM_CODE}": cert_code}):
        orders[order.id] = order
    for order in base.filter(fees__label__icontains=f"({cert_code})").distinct():
        orders.setdefault(order.id, order)
    if serial > 0:
        audited_ids = audit_entity_ids(
            action=AuditAction.CERTIFICATE_DEDUCT,
            entity_type="gift_certificate",
            entity_id=serial,
            payload_key="order_id",
        )
        if audited_ids:
            for order in base.filter(pk__in=audited_ids):
                orders.setdefault(order.id, order)
    return orders.values()


def transactions_for(code, codec=None):
    """Checkout and manual charges against ``code``, newest first."""
    codec = codec or CertificateCodec()
    balance = find_balance(code, codec=codec)
    if balance is not None:
        cert_code, serial = balance.cert_code, balance.serial_raw
    else:
        cert_code = codec.canonicalize(code) or normalize_code(code)
        serial = codec.to_serial(code)
    if not cert_code:
        return []

    entries = [_order_transaction(order, cert_code) for order in _orders_for(cert_code, serial)]
    entries.extend(_manual_transaction(manual) for manual in list_manual_transactions(cert_code, codec=codec))
    entries.sort(key=lambda entry: entry.created_at, reverse=True)
    return entries


def reconcile(code, codec=None, transactions=None):
    codec = codec or CertificateCodec()
    balance = find_balance(code, codec=codec)
    if balance is None:
        return None
    if transactions is None:
        transactions = transactions_for(balance.cert_code, codec=codec)
    spent = to_money(sum((entry.items_total for entry in transactions), ZERO))
    return Reconciliation(
        cert_code=balance.cert_code,
        original=balance.original_amount,
        spent=spent,
        computed_remaining=to_money(balance.original_amount - spent),
        remaining=balance.remaining_amount,
    )


def list_ledger(config=None, store=None):
    """Balance rows plus archive certificates that were never redeemed."""
    config = config or get_certificate_config()
    store = store or InboundRecordStore()
    codec = CertificateCodec(config)

    balances = CertificateBalance.objects.order_by("-updated_at")[: config.ledger_limit]
    rows = [
        LedgerRow(
            cert_code=balance.cert_code,
            serial_raw=balance.serial_raw,
            original_amount=balance.original_amount,
            remaining_amount=balance.remaining_amount,
            updated_at=balance.updated_at,
            external_record_id=balance.external_record_id,
        )
        for balance in balances
    ]
    seen = {row.cert_code for row in rows}
    materialized = set(CertificateBalance.objects.values_list("cert_code", flat=True))

    for record in store.iter_records():
        serial = extract_serial(record)
        cert_code = codec.to_code(serial) if serial > 0 else ""
        if cert_code and (cert_code in materialized or cert_code in seen):
            continue
        amount = extract_amount(record)
        rows.append(
            LedgerRow(
                cert_code=cert_code or MISSING_CODE,
                serial_raw=serial,
                original_amount=amount,
                remaining_amount=amount,
                updated_at=record.created_at,
                external_record_id=record.id,
                materialized=False,
            )
        )
        if cert_code:
            seen.add(cert_code)
    return rows


def list_external_serials(config=None, store=None):
    """Every serial in the archive, including unpublished records."""
    config = config or get_certificate_config()
    store = store or InboundRecordStore()
    codec = CertificateCodec(config)

    rows = []
    seen = set()
    for record in store.iter_records(include_unpublished=True):
        serial = extract_serial(record)
        if serial <= 0:
            continue
        cert_code = codec.to_code(serial)
        if cert_code in seen:
            continue
        seen.add(cert_code)
        balance = get_balance_by_serial(serial)
        rows.append(
            {
                "cert_code": cert_code,
                "serial_raw": serial,
                "amount": extract_amount(record),
                "remaining_amount": balance.remaining_amount if balance is not None else None,
                "record_id": record.id,
                "created_at": record.created_at,
            }
        )
    return rows
