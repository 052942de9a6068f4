"""
Utility modules for the points ledger.
"""
from .logging_config import setup_logging
from .clock import utcnow, to_naive_utc
from .errors import (
    ErrorCode,
    error_response,
    bad_request,
    internal_error,
    ledger_error_response
)
from .exceptions import (
    LedgerError,
    InvalidInputError,
    InvalidAmountError,
    InvalidCategoryError,
    InsufficientPointsError,
    BusyError,
    StorageFailureError
)
