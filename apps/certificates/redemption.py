import logging

from apps.certificates.codec import normalize_code
from apps.certificates.config import get_certificate_config
from apps.certificates.exceptions import CertificateNotFound, InvalidCertificateInput, NoRemainingBalance
from apps.certificates.services import get_balance, resolve_or_create
from apps.common.money import ZERO, to_money

logger = logging.getLogger(__name__)

SESSION_APPLIED_CODE = "gc_applied_code"
SESSION_APPLY_AMOUNT = "gc_apply_amount"


def fee_label(code):
    return f"Gift Certificate ({code})"


class RedemptionSession:
    """The certificate a shopper has applied to their checkout.

    State lives in the shopper's session only. Nothing here touches the
    balance row; the committed deduction happens at settlement.
    """

    def __init__(self, session, config=None, resolver=None):
        self.session = session
        self.config = config or get_certificate_config()
        self.resolver = resolver

    @property
    def applied_code(self):
        return self.session.get(SESSION_APPLIED_CODE) or None

    @property
    def apply_amount(self):
        raw = self.session.get(SESSION_APPLY_AMOUNT)
        if raw in (None, ""):
            return None
        return to_money(raw)

    @property
    def is_applied(self):
        return self.applied_code is not None

    def apply(self, code, cart=None):
        if not normalize_code(code):
            raise InvalidCertificateInput()

        resolution = resolve_or_create(code, config=self.config, resolver=self.resolver)
        balance = resolution.balance
        if balance is None:
            raise CertificateNotFound(cert_code=normalize_code(code), searched=resolution.searched)
        if balance.remaining_amount <= 0:
            raise NoRemainingBalance(cert_code=balance.cert_code)

        self.session[SESSION_APPLIED_CODE] = balance.cert_code
        self.session.pop(SESSION_APPLY_AMOUNT, None)
        if cart is not None:
            cart.calculate_totals(session=self.session)
        logger.info("Gift certificate applied", extra={"cert_code": balance.cert_code})
        return balance

    def remove(self):
        self.session.pop(SESSION_APPLIED_CODE, None)
        self.session.pop(SESSION_APPLY_AMOUNT, None)

    def recompute_discount(self, cart):
        """Attach ``-min(remaining, cart total)`` as a fee; returns the amount applied."""
        code = self.applied_code
        if not code:
            return ZERO

        balance = get_balance(code)
        remaining = balance.remaining_amount if balance is not None else ZERO
        cart_total = cart.total_before_fees
        if remaining <= 0 or cart_total <= 0:
            self.session.pop(SESSION_APPLY_AMOUNT, None)
            return ZERO

        amount = to_money(min(remaining, cart_total))
        self.session[SESSION_APPLY_AMOUNT] = str(amount)
        cart.add_fee(fee_label(code), -amount)
        return amount
