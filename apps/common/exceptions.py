import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Service-layer failure that the API renders as an error envelope."""

    code = "error"
    default_message = "Request failed."
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


def error_response(code, detail, fields=None, status_code=status.HTTP_400_BAD_REQUEST):
    return Response({"code": code, "detail": detail, "fields": fields or {}}, status=status_code)


def api_exception_handler(exc, context):
    if isinstance(exc, DomainError):
        if exc.status_code >= status.HTTP_409_CONFLICT:
            view = context.get("view")
            logger.error(
                "Request failed with %s",
                exc.code,
                extra={"view": type(view).__name__ if view else None, "detail": exc.message},
            )
        return error_response(exc.code, exc.message, status_code=exc.status_code)

    response = exception_handler(exc, context)
    if response is None:
        return response

    if isinstance(response.data, dict):
        detail = response.data.get("detail", "Request failed")
        fields = {k: v for k, v in response.data.items() if k != "detail"}
    else:
        detail = "Request failed"
        fields = {"non_field_errors": response.data} if isinstance(response.data, list) else {}

    response.data = {
        "code": getattr(exc, "default_code", "error"),
        "detail": detail,
        "fields": fields,
    }
    return response
