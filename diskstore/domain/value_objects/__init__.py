"""Domain value objects and shared value types."""

from diskstore.domain.value_objects.core import (
    ConnectionInfo,
    FileMetadata,
    StoredFile,
    TemporaryLink,
)

__all__ = [
    "FileMetadata",
    "ConnectionInfo",
    "TemporaryLink",
    "StoredFile",
]
