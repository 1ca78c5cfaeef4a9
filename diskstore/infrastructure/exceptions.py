"""Infrastructure exceptions for storage operations.

Storage errors extend DiskStoreException so callers can map them to
responses consistently. Every backend raises the same class for the same
condition, so mapping logic is written once against this taxonomy.
"""

from typing import Any

from diskstore.domain.exceptions import DiskStoreException


class StorageException(DiskStoreException):
    """Base exception for storage operations."""


class StorageNotFoundError(StorageException):
    """File, object or directory not found in storage."""

    def __init__(self, file_path: str) -> None:
        super().__init__(
            f"File not found: {file_path}",
            "STORAGE_NOT_FOUND",
            {"file_path": file_path},
        )


class StorageNotSupportedError(StorageException):
    """Operation not supported by this storage backend."""

    def __init__(self, operation: str, backend: str, reason: str | None = None) -> None:
        details: dict[str, Any] = {"operation": operation, "backend": backend}
        message = f"Operation '{operation}' not supported by {backend} backend"
        if reason:
            details["reason"] = reason
            message = f"{message}: {reason}"
        super().__init__(message, "STORAGE_NOT_SUPPORTED", details)


class StorageReadOnlyError(StorageException):
    """Mutating call against a read-only disk."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            f"Disk is read-only; '{operation}' is not allowed",
            "STORAGE_READ_ONLY",
            {"operation": operation},
        )


class StorageTransportError(StorageException):
    """Authentication, connection or protocol failure (not a missing object)."""

    def __init__(self, file_path: str, operation: str, reason: str) -> None:
        super().__init__(
            f"Storage {operation} failed for {file_path}: {reason}",
            "STORAGE_TRANSPORT_ERROR",
            {"file_path": file_path, "operation": operation, "reason": reason},
        )


class StorageDirectoryDeleteError(StorageTransportError):
    """Prefix delete stopped part-way; some keys are still present."""

    def __init__(self, directory: str, deleted: int, failed: list[str]) -> None:
        super().__init__(directory, "delete_directory", f"{len(failed)} keys not deleted")
        self.error_code = "STORAGE_DIRECTORY_DELETE_ERROR"
        self.details.update({"deleted": deleted, "failed": failed})


class StoragePermissionError(StorageException):
    """Insufficient permissions for storage operation (e.g. path escapes root)."""

    def __init__(self, file_path: str, operation: str) -> None:
        super().__init__(
            f"Permission denied for {operation} on {file_path}",
            "STORAGE_PERMISSION_ERROR",
            {"file_path": file_path, "operation": operation},
        )


class StorageAmbiguousPathError(StorageException):
    """Name lookup matched more than one backend object."""

    def __init__(self, file_path: str, matches: int) -> None:
        super().__init__(
            f"Path is ambiguous: {file_path} matches {matches} objects",
            "STORAGE_AMBIGUOUS_PATH",
            {"file_path": file_path, "matches": matches},
        )


class DiskNotConfiguredError(StorageException):
    """Requested disk name is not in the registry."""

    def __init__(self, disk: str) -> None:
        super().__init__(
            f"Disk not found: {disk}",
            "DISK_NOT_CONFIGURED",
            {"disk": disk},
        )
