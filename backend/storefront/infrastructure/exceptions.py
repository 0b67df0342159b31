"""
Custom Exceptions for the Storefront Subscriptions backend

Hierarchical exception classes for proper error handling across layers.
Benign reconciliation outcomes (already active, payment not approved,
not found, duplicate detected) are returned as results, not raised.
"""

from typing import Optional, Dict, Any


class StorefrontError(Exception):
    """Base exception for all storefront backend errors."""

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


class ValidationError(StorefrontError):
    """Raised when input validation fails."""
    pass


class DatabaseError(StorefrontError):
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


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class LockTimeoutError(StorefrontError):
    """Raised when an activation is still running under another trigger's lock."""

    def __init__(self, message: str, subscription_id: Optional[str] = None):
        details = {}
        if subscription_id:
            details["subscription_id"] = subscription_id
        super().__init__(message, details)


class ProviderError(StorefrontError):
    """Raised when the payment provider API fails or returns a malformed body."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if status_code is not None:
            details["status_code"] = status_code
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Raised when the payment provider does not answer within the timeout."""
    pass


class CriticalActivationError(StorefrontError):
    """Raised when the lock-protected activation transition fails unexpectedly."""

    def __init__(
        self,
        message: str,
        subscription_id: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if subscription_id:
            details["subscription_id"] = subscription_id
        super().__init__(message, details, original_error)


class WebhookSignatureError(StorefrontError):
    """Raised when an inbound provider webhook fails signature verification."""
    pass


class ConfigurationError(StorefrontError):
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
