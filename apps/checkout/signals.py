from django.dispatch import Signal

# Sent while cart totals are recalculated. kwargs: cart, session
cart_calculate_fees = Signal()

# Sent once an order has been built from a cart and before it is saved. kwargs: order, session
order_created = Signal()

# Sent after an order status transition is persisted. kwargs: order, old_status, new_status, actor
order_status_changed = Signal()
