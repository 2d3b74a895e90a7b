from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from django.db.models import DecimalField

TWOPLACES = Decimal("0.01")
ZERO = Decimal("0.00")
MONEY_FIELD = DecimalField(max_digits=10, decimal_places=2)
MAX_MONEY = Decimal(10) ** (MONEY_FIELD.max_digits - MONEY_FIELD.decimal_places) - TWOPLACES


def to_money(value):
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value)).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        return ZERO


def fits_money_field(amount):
    return -MAX_MONEY <= to_money(amount) <= MAX_MONEY


def format_money(amount):
    return f"${max(to_money(amount), ZERO):,.2f}"
