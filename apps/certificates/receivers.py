import logging

from django.dispatch import receiver

from apps.certificates.redemption import RedemptionSession
from apps.certificates.settlement import SETTLEMENT_STATUSES, capture_redemption_intent, settle_order
from apps.checkout.signals import cart_calculate_fees, order_created, order_status_changed

logger = logging.getLogger(__name__)


@receiver(cart_calculate_fees, dispatch_uid="certificates.apply_discount")
def apply_discount(sender, cart, session=None, **kwargs):
    if session is None:
        return
    RedemptionSession(session).recompute_discount(cart)


@receiver(order_created, dispatch_uid="certificates.capture_intent")
def capture_intent(sender, order, session=None, **kwargs):
    capture_redemption_intent(order, session)


@receiver(order_status_changed, dispatch_uid="certificates.settle_on_payment")
def settle_on_payment(sender, order, old_status, new_status, actor=None, **kwargs):
    if new_status not in SETTLEMENT_STATUSES:
        return
    outcome = settle_order(order.pk, actor=actor)
    logger.debug(
        "Settlement handled status change",
        extra={"order_id": str(order.pk), "new_status": new_status, "outcome": outcome.value},
    )
