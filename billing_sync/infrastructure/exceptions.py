"""
Custom Exceptions for Billing Sync

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class BillingSyncError(Exception):
    """Base exception for all Billing Sync errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(BillingSyncError):
    """Raised when input validation fails."""
    status_code = 400


class WebhookSignatureError(BillingSyncError):
    """Webhook authenticity could not be established. Terminal, never retried."""
    status_code = 400


class MissingSignature(WebhookSignatureError):
    """Raised when the provider signature header is absent."""

    def __init__(self, message: str = "Missing stripe-signature header"):
        super().__init__(message)


class InvalidSignature(WebhookSignatureError):
    """Raised when the provider signature does not verify."""
    pass


class MalformedProviderData(BillingSyncError):
    """
    Raised when a provider payload cannot be turned into a valid record.

    Surfaced as HTTP 500 so the provider redelivers the event.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = repr(value)
        super().__init__(message, details, original_error)


class ProviderUnreachable(BillingSyncError):
    """Raised when the billing provider times out or cannot be reached."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class DatabaseError(BillingSyncError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class PersistenceFailure(DatabaseError):
    """Raised when a datastore write does not go through."""
    pass


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    status_code = 404


class ConfigurationError(BillingSyncError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)


class ForbiddenError(BillingSyncError):
    """Raised when the caller does not own the requested resource."""
    status_code = 403
