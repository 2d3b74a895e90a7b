from rest_framework import status

from apps.common.exceptions import DomainError


class GiftCertificateError(DomainError):
    """Base class for certificate ledger errors."""

    code = "gift_certificate_error"
    default_message = "Gift certificate request failed."


class CertificateNotFound(GiftCertificateError):
    code = "certificate_not_found"
    default_message = "That gift certificate is not valid or has no remaining balance."
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, cert_code="", searched=None, message=None):
        super().__init__(message)
        self.cert_code = cert_code
        self.searched = list(searched or [])


class NoRemainingBalance(CertificateNotFound):
    code = "no_remaining_balance"


class InvalidCertificateInput(GiftCertificateError):
    code = "invalid_certificate"
    default_message = "Please enter a gift certificate number."


class InvalidManualTransaction(GiftCertificateError):
    code = "invalid_transaction"
    default_message = "Add at least one item with a name and a price greater than 0."


class BalancePersistenceError(GiftCertificateError):
    code = "persistence_failure"
    default_message = "The gift certificate balance could not be saved."
    status_code = status.HTTP_409_CONFLICT
