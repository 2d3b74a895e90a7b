from dataclasses import dataclass

from django.conf import settings


@dataclass(frozen=True)
class CertificateConfig:
    prefix: str = "PBB-"
    pad: int = 5
    product_ids: frozenset = frozenset()
    variation_ids: frozenset = frozenset()
    expose_searched_serials: bool = False
    ledger_limit: int = 200
    display_fields: tuple = ()


def get_certificate_config():
    return CertificateConfig(
        prefix=settings.GIFT_CERT_PREFIX,
        pad=settings.GIFT_CERT_PAD,
        product_ids=frozenset(settings.GIFT_CERT_PRODUCT_IDS),
        variation_ids=frozenset(settings.GIFT_CERT_VARIATION_IDS),
        expose_searched_serials=settings.GIFT_CERT_EXPOSE_SEARCHED_SERIALS,
        ledger_limit=settings.GIFT_CERT_LEDGER_LIMIT,
        display_fields=tuple(settings.GIFT_CERT_DISPLAY_FIELDS),
    )
