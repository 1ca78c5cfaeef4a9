"""Domain exceptions for diskstore.

Defines the base exception every diskstore error derives from, plus
validation failures raised before any backend is touched. An outer layer
(HTTP glue) maps them to responses using message, error_code and details.
"""

from typing import Any


class DiskStoreException(Exception):
    """Base exception for all diskstore errors.

    All custom exceptions should inherit from this class to allow
    consistent error handling and logging. Callers map these to
    responses using message, error_code, and details.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code.
        details: Additional error context (e.g. path, operation).
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            error_code: Optional machine-readable code; defaults to class name.
            details: Optional dict of extra context.
        """
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class ValidationException(DiskStoreException):
    """Raised when input validation fails (e.g. upload too large, bad expiry)."""

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize with message and optional field name.

        Args:
            message: Description of the validation failure.
            field: Optional field or attribute that failed validation.
        """
        details = {"field": field} if field else {}
        super().__init__(message, "VALIDATION_ERROR", details)
