"""Application services: disk registry, upload validation and naming."""

from diskstore.application.services.file_storage_service import (
    FileStorageService,
    StorageDisk,
)
from diskstore.application.services.upload_service import (
    FileSizeValidator,
    FileTypeValidator,
    UploadedFile,
    UploadService,
    UploadValidator,
    original_filename,
    timestamp_filename,
    uuid_filename,
)

__all__ = [
    "FileSizeValidator",
    "FileStorageService",
    "FileTypeValidator",
    "StorageDisk",
    "UploadService",
    "UploadValidator",
    "UploadedFile",
    "original_filename",
    "timestamp_filename",
    "uuid_filename",
]
