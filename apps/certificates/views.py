import logging

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.certificates.codec import CertificateCodec
from apps.certificates.config import get_certificate_config
from apps.certificates.exceptions import CertificateNotFound, GiftCertificateError
from apps.certificates.ledger import list_external_serials, list_ledger, reconcile, transactions_for
from apps.certificates.redemption import RedemptionSession
from apps.certificates.resolver import extract_field
from apps.certificates.serializers import (
    ApplyCodeSerializer,
    CertificateBalanceSerializer,
    ExternalSerialSerializer,
    LedgerRowSerializer,
    LedgerTransactionSerializer,
    ManualTransactionCreateSerializer,
    ManualTransactionSerializer,
    ReconciliationSerializer,
)
from apps.certificates.services import add_manual_transaction, find_balance, list_manual_transactions
from apps.common.exceptions import error_response
from apps.common.permissions import RolePermission, user_has_capability
from apps.records.store import InboundRecordStore

logger = logging.getLogger(__name__)


def can_see_search_diagnostics(user, config):
    if config.expose_searched_serials:
        return True
    if not user or not user.is_authenticated:
        return False
    return bool(user.is_staff) or user_has_capability(user, "certificates.diagnostics")


def certificate_error_response(exc, request, status_code=status.HTTP_400_BAD_REQUEST, config=None):
    config = config or get_certificate_config()
    fields = {}
    if isinstance(exc, CertificateNotFound) and exc.searched:
        logger.info("Gift certificate lookup missed", extra={"cert_code": exc.cert_code, "searched": exc.searched})
        if can_see_search_diagnostics(request.user, config):
            fields["searched"] = exc.searched
    return error_response(exc.code, exc.message, fields, status_code)


def get_balance_or_404(cert_code, codec=None):
    balance = find_balance(cert_code, codec=codec)
    if balance is None:
        raise CertificateNotFound(cert_code=cert_code, message=f"Gift certificate {cert_code} was not found.")
    return balance


class RedemptionView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        redemption = RedemptionSession(request.session)
        amount = redemption.apply_amount
        return Response({"code": redemption.applied_code, "apply_amount": str(amount) if amount is not None else None})


class RedemptionApplyView(APIView):
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = ApplyCodeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        config = get_certificate_config()
        redemption = RedemptionSession(request.session, config=config)
        try:
            balance = redemption.apply(serializer.validated_data["code"])
        except GiftCertificateError as exc:
            return certificate_error_response(exc, request, config=config)
        return Response({"code": balance.cert_code, "message": "Gift certificate applied."})


class RedemptionRemoveView(APIView):
    permission_classes = [AllowAny]

    def post(self, request):
        RedemptionSession(request.session).remove()
        return Response({"message": "Gift certificate removed."})


class GiftCertificateViewSet(viewsets.GenericViewSet):
    serializer_class = CertificateBalanceSerializer
    permission_classes = [RolePermission]
    lookup_field = "cert_code"
    lookup_value_regex = "[^/]+"
    capability_map = {
        "list": ["certificates.view"],
        "retrieve": ["certificates.view"],
        "transactions": ["certificates.view"],
        "external_serials": ["certificates.view"],
        "manual_transactions": ["certificates.manage"],
    }

    def list(self, request):
        rows = list_ledger(config=get_certificate_config())
        page = self.paginate_queryset(rows)
        if page is not None:
            return self.get_paginated_response(LedgerRowSerializer(page, many=True).data)
        return Response(LedgerRowSerializer(rows, many=True).data)

    def retrieve(self, request, cert_code=None):
        config = get_certificate_config()
        balance = get_balance_or_404(cert_code, codec=CertificateCodec(config))

        data = CertificateBalanceSerializer(balance).data
        record = InboundRecordStore().get(balance.external_record_id) if balance.external_record_id else None
        data["record_fields"] = {name: extract_field(record, name) for name in config.display_fields} if record else {}
        return Response(data)

    @action(detail=True, methods=["get"])
    def transactions(self, request, cert_code=None):
        balance = get_balance_or_404(cert_code)

        entries = transactions_for(balance.cert_code)
        reconciliation = reconcile(balance.cert_code, transactions=entries)
        return Response(
            {
                "balance": CertificateBalanceSerializer(balance).data,
                "transactions": LedgerTransactionSerializer(entries, many=True).data,
                "reconciliation": ReconciliationSerializer(reconciliation).data,
            }
        )

    @action(detail=True, methods=["get", "post"], url_path="manual-transactions")
    def manual_transactions(self, request, cert_code=None):
        if request.method == "GET":
            balance = get_balance_or_404(cert_code)
            manual = list_manual_transactions(balance.cert_code)
            return Response(ManualTransactionSerializer(manual, many=True).data)

        serializer = ManualTransactionCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        manual = add_manual_transaction(cert_code, serializer.validated_data["items"], actor=request.user)

        balance = manual.balance
        balance.refresh_from_db()
        data = ManualTransactionSerializer(manual).data
        data["remaining_amount"] = str(balance.remaining_amount)
        return Response(data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["get"], url_path="external-serials")
    def external_serials(self, request):
        rows = list_external_serials(config=get_certificate_config())
        return Response(ExternalSerialSerializer(rows, many=True).data)
