"""Domain layer: value objects, enums, and exceptions.

No dependencies on infrastructure. Used by application and
infrastructure layers.
"""

from diskstore.domain.enums import DriverName, Visibility
from diskstore.domain.exceptions import DiskStoreException, ValidationException
from diskstore.domain.value_objects import (
    ConnectionInfo,
    FileMetadata,
    StoredFile,
    TemporaryLink,
)

__all__ = [
    "ConnectionInfo",
    "DiskStoreException",
    "DriverName",
    "FileMetadata",
    "StoredFile",
    "TemporaryLink",
    "ValidationException",
    "Visibility",
]
