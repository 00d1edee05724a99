"""
Exception hierarchy for receipt ingestion, storage and session handling.
"""


class ReceiptflowError(Exception):
    """Base class for all receiptflow errors."""
    pass


class ParseError(ReceiptflowError):
    """Pasted text is not valid JSON or not a recognised receipt payload."""
    pass


class ValidationError(ReceiptflowError):
    """A receipt is missing data required for persistence (its timestamp)."""
    pass


class StorageError(ReceiptflowError):
    """A document store read, write or delete failed."""

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class AuthError(ReceiptflowError):
    """Identity provider rejected a sign-up, log-in or log-out."""
    pass


class OperationInProgressError(ReceiptflowError):
    """A mutating operation was attempted while a bulk delete is running."""
    pass
