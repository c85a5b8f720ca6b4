"""
Exception hierarchy for the indexer.

Every error carries a stable ``code`` and a ``details`` dict. The API maps
validation errors to 400, not-found errors to 404 and everything else to a
generic 500.
"""

from typing import Any, Dict, Optional


class GMTeaException(Exception):
    """Base exception class for the GM Tea indexer."""
    
    code = "UNKNOWN_ERROR"
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(GMTeaException):
    code = "CONFIGURATION_ERROR"


class DatabaseError(GMTeaException):
    code = "DATABASE_ERROR"


class ProviderError(GMTeaException):
    """A ledger call failed, timed out or returned garbage. Retryable."""
    code = "PROVIDER_ERROR"


class DecodingError(GMTeaException):
    """A log matched a signature but its payload could not be decoded."""
    code = "DECODING_ERROR"


class ReconciliationError(GMTeaException):
    code = "RECONCILIATION_ERROR"


class SchedulerError(GMTeaException):
    code = "SCHEDULER_ERROR"


class ValidationError(GMTeaException):
    code = "VALIDATION_ERROR"


class NotFoundError(GMTeaException):
    code = "NOT_FOUND"


class UserNotFoundError(NotFoundError):
    def __init__(self, address: str):
        super().__init__(f"User not found: {address}", {"address": address})


class UnknownSourceError(ValidationError):
    """An admin operation named a source that is not configured."""
    
    def __init__(self, name: str, available: list):
        super().__init__(f"Unknown event source: {name}", {"source": name, "available": available})
