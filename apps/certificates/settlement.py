"""Turn a shopper's applied certificate into a one-time deduction on payment."""

import enum
import logging
from importlib import import_module

from django.conf import settings
from django.db import DatabaseError, transaction

from apps.audit.models import AuditAction
from apps.audit.services import record_audit
from apps.certificates.redemption import RedemptionSession
from apps.certificates.services import deduct, get_balance
from apps.checkout.models import Order, OrderStatus
from apps.common.money import ZERO, format_money, to_money

logger = logging.getLogger(__name__)

META_REDEEM_CODE = "gc_redeem_code"
META_REDEEM_AMOUNT = "gc_redeem_amount"
META_REDEEM_DEDUCTED = "gc_redeem_deducted"
META_SESSION_KEY = "gc_session_key"

SETTLEMENT_STATUSES = frozenset({OrderStatus.PROCESSING, OrderStatus.COMPLETED})


class SettlementOutcome(str, enum.Enum):
    DEDUCTED = "deducted"
    DUPLICATE = "duplicate"
    NOTHING_TO_SETTLE = "nothing_to_settle"
    FAILED = "failed"


def capture_redemption_intent(order, session):
    """Copy the applied code and amount onto a new order; returns True when written."""
    if session is None:
        return False
    redemption = RedemptionSession(session)
    code = redemption.applied_code
    amount = redemption.apply_amount
    if not code or amount is None or amount <= 0:
        return False
    order.set_meta(META_REDEEM_CODE, code)
    order.set_meta(META_REDEEM_AMOUNT, str(amount))
    session_key = getattr(session, "session_key", None)
    if session_key:
        order.set_meta(META_SESSION_KEY, session_key)
    return True


def clear_shopper_session(session_key):
    if not session_key:
        return False
    engine = import_module(settings.SESSION_ENGINE)
    store = engine.SessionStore(session_key=session_key)
    if not store.exists(session_key):
        return False
    RedemptionSession(store).remove()
    store.save()
    return True


def settle_order(order_id, actor=None):
    with transaction.atomic():
        order = Order.objects.select_for_update().get(pk=order_id)
        if order.get_meta(META_REDEEM_DEDUCTED):
            return SettlementOutcome.DUPLICATE

        code = order.get_meta(META_REDEEM_CODE)
        amount = to_money(order.get_meta(META_REDEEM_AMOUNT))
        if not code or amount <= 0:
            return SettlementOutcome.NOTHING_TO_SETTLE

        try:
            with transaction.atomic():
                deducted = deduct(code, amount, order=order)
        except DatabaseError:
            logger.exception(
                "Gift certificate deduction raised",
                extra={"cert_code": code, "amount": str(amount), "order_id": str(order.id)},
            )
            deducted = False

        if not deducted:
            order.add_note(f"Gift certificate: deduction FAILED for {code} amount {format_money(amount)}")
            logger.error(
                "Gift certificate deduction failed",
                extra={"cert_code": code, "amount": str(amount), "order_id": str(order.id)},
            )
            return SettlementOutcome.FAILED

        order.set_meta(META_REDEEM_DEDUCTED, True)
        order.save(update_fields=["meta", "updated_at"])
        order.add_note(f"Gift certificate: deducted {format_money(amount)} from {code}")

        balance = get_balance(code)
        record_audit(
            actor=actor,
            action=AuditAction.CERTIFICATE_DEDUCT,
            entity_type="gift_certificate",
            entity_id=balance.serial_raw,
            payload={
                "order_id": str(order.id),
                "cert_code": code,
                "amount": str(amount),
                "remaining": str(balance.remaining_amount),
            },
        )
        session_key = order.get_meta(META_SESSION_KEY) or order.session_key

    clear_shopper_session(session_key)
    logger.info(
        "Gift certificate deducted",
        extra={"cert_code": code, "amount": str(amount), "order_id": str(order_id)},
    )
    return SettlementOutcome.DEDUCTED


def remaining_balance_for_order(order):
    """Remaining balance of the certificate redeemed on ``order``, if any."""
    code = order.get_meta(META_REDEEM_CODE)
    if not code:
        return None
    balance = get_balance(code)
    if balance is None:
        return None
    return max(balance.remaining_amount, ZERO)
