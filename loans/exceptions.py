import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class LoanLedgerError(Exception):
    """Base class for errors raised by the schedule engine and the ledger."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "ledger_error"
    default_message = "Loan ledger error."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(LoanLedgerError):
    code = "invalid"
    default_message = "Invalid loan input."


class NotFoundError(LoanLedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_message = "Not found."


class AlreadyPaidError(LoanLedgerError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_paid"
    default_message = "Installment is already paid."


class ConcurrentModificationError(LoanLedgerError):
    status_code = status.HTTP_409_CONFLICT
    code = "concurrent_modification"
    default_message = "Loan was modified concurrently, retry the operation."


def api_exception_handler(exc, context):
    if isinstance(exc, LoanLedgerError):
        if exc.status_code >= status.HTTP_409_CONFLICT:
            logger.warning("Rejected %s: %s", exc.code, exc.message)
        return Response({"detail": exc.message, "code": exc.code}, status=exc.status_code)
    return exception_handler(exc, context)
