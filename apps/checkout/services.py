import logging

from django.db import transaction

from apps.audit.models import AuditAction
from apps.audit.services import record_audit
from apps.checkout.models import Order, OrderFee, OrderItem
from apps.checkout.signals import order_created

logger = logging.getLogger(__name__)


def create_order_from_cart(*, cart, session=None):
    cart.calculate_totals(session=session)

    with transaction.atomic():
        order = Order(
            session_key=getattr(session, "session_key", None) or "",
            subtotal=cart.contents_total,
            shipping_total=cart.shipping_total,
            tax_total=cart.tax_total,
            fee_total=cart.fee_total,
            total=cart.total,
        )
        order_created.send(sender=Order, order=order, session=session)
        order.save()

        OrderItem.objects.bulk_create(
            [
                OrderItem(
                    order=order,
                    position=position,
                    product_id=line.product_id,
                    variation_id=line.variation_id,
                    name=line.name,
                    qty=line.qty,
                    subtotal=line.line_total,
                    total=line.line_total,
                )
                for position, line in enumerate(cart.lines)
            ]
        )
        OrderFee.objects.bulk_create([OrderFee(order=order, label=fee.label, amount=fee.amount) for fee in cart.fees])

    logger.info("Order created from cart", extra={"order_id": str(order.id), "total": str(order.total)})
    return order


def change_order_status(*, order, status, actor=None):
    old_status = order.status
    changed = order.set_status(status, actor=actor)
    if changed:
        record_audit(
            actor=actor,
            action=AuditAction.ORDER_STATUS,
            entity_type="order",
            entity_id=order.id,
            payload={"from": old_status, "to": status},
        )
    return changed
