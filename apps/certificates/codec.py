import re

from apps.certificates.config import get_certificate_config

WHITESPACE_RE = re.compile(r"\s+")
NON_DIGIT_RE = re.compile(r"\D+")


def normalize_code(value):
    return WHITESPACE_RE.sub("", str(value or "")).upper()


def digits_to_serial(value):
    digits = NON_DIGIT_RE.sub("", str(value or ""))
    return int(digits) if digits else 0


class CertificateCodec:
    """Converts between entered certificate text and canonical codes."""

    def __init__(self, config=None):
        self.config = config or get_certificate_config()

    @property
    def prefix(self):
        return self.config.prefix.upper()

    normalize = staticmethod(normalize_code)

    def to_serial(self, code):
        code = normalize_code(code)
        if self.prefix and code.startswith(self.prefix):
            code = code[len(self.prefix):]
        return digits_to_serial(code)

    def pad_serial(self, serial):
        return str(int(serial)).zfill(self.config.pad)

    def to_code(self, serial):
        return f"{self.prefix}{self.pad_serial(serial)}"

    def canonicalize(self, code):
        serial = self.to_serial(code)
        return self.to_code(serial) if serial > 0 else ""

    def candidates(self, serial, entered_code=""):
        """Identifier variants the archive may have stored for ``serial``."""
        if serial <= 0:
            return []
        variants = [str(serial), self.pad_serial(serial), self.to_code(serial), normalize_code(entered_code)]
        return [variant for variant in dict.fromkeys(variants) if variant]

    def is_gift_certificate_product(self, product_id, variation_id=0):
        return int(product_id or 0) in self.config.product_ids or int(variation_id or 0) in self.config.variation_ids

    def cart_has_gift_certificate(self, cart):
        return any(self.is_gift_certificate_product(line.product_id, line.variation_id) for line in cart.lines)

    def order_has_gift_certificate(self, order):
        return any(self.is_gift_certificate_product(item.product_id, item.variation_id) for item in order.items.all())
