"""Application layer: disk registry and upload services.

Depends on domain types and the storage protocol; drivers are built by
the infrastructure factory.
"""

from diskstore.application.services import (
    FileStorageService,
    StorageDisk,
    UploadedFile,
    UploadService,
)

__all__ = [
    "FileStorageService",
    "StorageDisk",
    "UploadService",
    "UploadedFile",
]
