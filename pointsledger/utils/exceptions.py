"""
Custom exceptions for points ledger business logic.

Every failure the engine reports is one of these. Raw storage-layer errors
are wrapped in StorageFailureError before they reach a caller.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    retryable = False

    def __init__(self, message: str, code: str = "LEDGER_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class InvalidInputError(LedgerError):
    """Invalid input data, rejected before any mutation."""

    def __init__(self, message: str, field: str = None, code: str = "INVALID_INPUT"):
        self.field = field
        super().__init__(message, code)


class InvalidAmountError(InvalidInputError):
    """Amount is missing, non-numeric or not positive."""

    def __init__(self, message: str = "Amount must be positive"):
        super().__init__(message, field="amount", code="INVALID_AMOUNT")


class InvalidCategoryError(InvalidInputError):
    """Purchase category has no configured rate."""

    def __init__(self, category):
        self.category = category
        super().__init__(
            f"Unknown purchase category: '{category}'",
            field="category",
            code="INVALID_CATEGORY"
        )


class InsufficientPointsError(LedgerError):
    """Not enough redeemable points for the operation."""

    def __init__(self, current: int, required: int):
        self.current = current
        self.required = required
        message = f"Insufficient points. Current: {current}, Required: {required}"
        super().__init__(message, "INSUFFICIENT_POINTS")


class BusyError(LedgerError):
    """The user's ledger is locked by another operation. Safe to retry."""

    retryable = True

    def __init__(self, user_id=None, message: str = None):
        self.user_id = user_id
        if message is None:
            message = f"Ledger for user {user_id} is busy, retry later"
        super().__init__(message, "BUSY")


class StorageFailureError(LedgerError):
    """Underlying storage failed; the atomic unit was rolled back."""

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(message, "STORAGE_FAILURE")
