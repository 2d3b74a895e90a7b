import logging
from collections import namedtuple

from django.db import DatabaseError, transaction
from django.db.models import F, Value
from django.db.models.functions import Greatest, Least
from django.utils import timezone

from apps.audit.models import AuditAction
from apps.audit.services import record_audit
from apps.certificates.codec import CertificateCodec, normalize_code
from apps.certificates.exceptions import BalancePersistenceError, CertificateNotFound, InvalidManualTransaction
from apps.certificates.models import CertificateBalance, ManualTransaction, ManualTransactionLine
from apps.certificates.resolver import ExternalRecordResolver
from apps.common.money import MAX_MONEY, MONEY_FIELD, ZERO, fits_money_field, to_money

logger = logging.getLogger(__name__)

Resolution = namedtuple("Resolution", ["balance", "searched"])
LineItem = namedtuple("LineItem", ["name", "price"])


def get_balance(code):
    code = normalize_code(code)
    if not code:
        return None
    return CertificateBalance.objects.filter(cert_code=code).first()


def get_balance_by_serial(serial):
    if not serial or int(serial) <= 0:
        return None
    return CertificateBalance.objects.filter(serial_raw=int(serial)).order_by("created_at").first()


def find_balance(code, codec=None):
    """Existing balance for ``code`` as entered or in canonical form; never creates."""
    codec = codec or CertificateCodec()
    balance = get_balance(code)
    if balance is not None:
        return balance
    canonical = codec.canonicalize(code)
    return get_balance(canonical) if canonical else None


def create_balance(**fields):
    fields["cert_code"] = normalize_code(fields.get("cert_code"))
    for name in ("original_amount", "remaining_amount"):
        if name in fields and not fits_money_field(fields[name]):
            raise BalancePersistenceError(f"{name} {fields[name]} is out of range for {fields['cert_code']}.")
    try:
        with transaction.atomic():
            return CertificateBalance.objects.create(**fields)
    except DatabaseError as exc:
        raise BalancePersistenceError(f"Could not create balance {fields['cert_code']}.") from exc


def set_remaining(code, new_remaining, order=None):
    """Persist ``new_remaining`` clamped to ``[0, original_amount]``."""
    amount = min(max(to_money(new_remaining), ZERO), MAX_MONEY)
    updates = {
        "remaining_amount": Least(Value(amount, output_field=MONEY_FIELD), F("original_amount")),
        "updated_at": timezone.now(),
    }
    if order is not None:
        updates["last_order"] = order
    updated = CertificateBalance.objects.filter(cert_code=normalize_code(code)).update(**updates)
    return updated > 0


def deduct(code, amount, order=None):
    """Subtract ``amount`` in one UPDATE so concurrent deductions cannot overdraw."""
    amount = to_money(amount)
    if amount <= 0:
        return False
    amount = min(amount, MAX_MONEY)
    updates = {
        "remaining_amount": Greatest(
            F("remaining_amount") - Value(amount, output_field=MONEY_FIELD),
            Value(ZERO, output_field=MONEY_FIELD),
        ),
        "updated_at": timezone.now(),
    }
    if order is not None:
        updates["last_order"] = order
    updated = CertificateBalance.objects.filter(cert_code=normalize_code(code)).update(**updates)
    return updated > 0


def resolve_or_create(entered_code, config=None, resolver=None):
    """Return the balance for ``entered_code``, creating it from the archive on first use.

    Safe to call repeatedly: a row that already exists under the entered or
    canonical code is returned as is, and an insert that loses a race against
    a concurrent first use re-reads the winner's row.
    """
    codec = CertificateCodec(config)
    code = codec.normalize(entered_code)
    if not code:
        return Resolution(None, [])

    balance = get_balance(code)
    if balance is not None:
        return Resolution(balance, [])

    serial = codec.to_serial(code)
    if serial <= 0:
        return Resolution(None, [])

    canonical = codec.to_code(serial)
    balance = get_balance(canonical)
    if balance is not None:
        return Resolution(balance, [])

    searched = codec.candidates(serial, code)
    resolver = resolver or ExternalRecordResolver(codec=codec)
    record = resolver.find_record_by_serial(serial, code)
    if record is None:
        logger.info("Gift certificate not found in archive", extra={"cert_code": canonical, "searched": searched})
        return Resolution(None, searched)

    amount = resolver.extract_amount(record)
    if amount <= 0:
        logger.warning(
            "Archive record has no gift amount",
            extra={"cert_code": canonical, "record_id": str(record.id)},
        )
        return Resolution(None, searched)
    if not fits_money_field(amount):
        logger.warning(
            "Archive gift amount out of range",
            extra={"cert_code": canonical, "record_id": str(record.id), "amount": str(amount)},
        )
        return Resolution(None, searched)

    try:
        balance = create_balance(
            cert_code=canonical,
            serial_raw=serial,
            original_amount=amount,
            remaining_amount=amount,
            external_record_id=record.id,
        )
    except BalancePersistenceError:
        balance = get_balance(canonical)
        if balance is None:
            logger.error("Gift certificate balance insert failed", extra={"cert_code": canonical, "amount": str(amount)})
            return Resolution(None, searched)
        return Resolution(balance, [])

    logger.info(
        "Gift certificate balance created",
        extra={"cert_code": canonical, "amount": str(amount), "record_id": str(record.id)},
    )
    return Resolution(balance, [])


def clean_line_items(items):
    lines = []
    for item in items or []:
        if isinstance(item, dict):
            name, price = item.get("name"), item.get("price")
        elif isinstance(item, (tuple, list)) and len(item) == 2:
            name, price = item
        else:
            continue
        name = str(name or "").strip()
        price = to_money(price)
        if not name or price <= 0:
            continue
        lines.append(LineItem(name=name, price=price))
    return lines


def list_manual_transactions(code, codec=None):
    balance = find_balance(code, codec=codec)
    cert_code = balance.cert_code if balance else normalize_code(code)
    return list(ManualTransaction.objects.filter(cert_code=cert_code).prefetch_related("lines").order_by("-created_at"))


def add_manual_transaction(code, items, actor=None, codec=None):
    lines = clean_line_items(items)
    items_total = to_money(sum((line.price for line in lines), ZERO))
    if not lines or items_total <= 0 or not fits_money_field(items_total):
        raise InvalidManualTransaction()

    balance = find_balance(code, codec=codec)
    if balance is None:
        raise CertificateNotFound(cert_code=normalize_code(code))

    created_by = actor if actor is not None and getattr(actor, "is_authenticated", False) else None
    with transaction.atomic():
        balance = CertificateBalance.objects.select_for_update().get(pk=balance.pk)
        manual = ManualTransaction.objects.create(
            balance=balance,
            cert_code=balance.cert_code,
            serial_raw=balance.serial_raw,
            items_total=items_total,
            created_by=created_by,
        )
        ManualTransactionLine.objects.bulk_create(
            [
                ManualTransactionLine(transaction=manual, position=position, name=line.name, price=line.price)
                for position, line in enumerate(lines)
            ]
        )
        if not deduct(balance.cert_code, items_total):
            raise BalancePersistenceError(f"Could not deduct {items_total} from {balance.cert_code}.")
        balance.refresh_from_db(fields=["remaining_amount", "updated_at"])
        record_audit(
            actor=created_by,
            action=AuditAction.CERTIFICATE_MANUAL,
            entity_type="gift_certificate",
            entity_id=balance.serial_raw,
            payload={
                "cert_code": balance.cert_code,
                "manual_transaction_id": str(manual.id),
                "items_total": str(items_total),
                "remaining": str(balance.remaining_amount),
            },
        )

    logger.info(
        "Manual gift certificate transaction recorded",
        extra={"cert_code": balance.cert_code, "items_total": str(items_total), "remaining": str(balance.remaining_amount)},
    )
    return manual
