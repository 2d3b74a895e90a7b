from decimal import Decimal

from apps.checkout.signals import cart_calculate_fees
from apps.common.money import ZERO, to_money


class CartLine:
    def __init__(self, product_id, name, qty=1, unit_price=ZERO, variation_id=0):
        self.product_id = int(product_id)
        self.variation_id = int(variation_id or 0)
        self.name = name
        self.qty = int(qty)
        self.unit_price = to_money(unit_price)

    @property
    def line_total(self):
        return to_money(self.unit_price * self.qty)


class CartFee:
    def __init__(self, label, amount):
        self.label = label
        self.amount = to_money(amount)


class Cart:
    """Checkout cart as seen by fee hooks: contents, shipping, tax and injected fees."""

    def __init__(self, lines=None, shipping_total=ZERO, tax_total=ZERO):
        self.lines = list(lines or [])
        self.shipping_total = to_money(shipping_total)
        self.tax_total = to_money(tax_total)
        self.fees = []

    @classmethod
    def from_data(cls, data):
        lines = [CartLine(**line) for line in data.get("lines", [])]
        return cls(
            lines=lines,
            shipping_total=data.get("shipping_total", ZERO),
            tax_total=data.get("tax_total", ZERO),
        )

    @property
    def contents_total(self):
        return to_money(sum((line.line_total for line in self.lines), Decimal("0")))

    @property
    def fee_total(self):
        return to_money(sum((fee.amount for fee in self.fees), Decimal("0")))

    @property
    def total_before_fees(self):
        return to_money(self.contents_total + self.shipping_total + self.tax_total)

    @property
    def total(self):
        return max(to_money(self.total_before_fees + self.fee_total), ZERO)

    def add_fee(self, label, amount):
        fee = CartFee(label, amount)
        self.fees.append(fee)
        return fee

    def calculate_totals(self, session=None):
        self.fees = []
        cart_calculate_fees.send(sender=Cart, cart=self, session=session)
        return self.total
