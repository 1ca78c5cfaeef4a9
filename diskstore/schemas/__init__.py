"""Configuration schemas (pydantic)."""

from diskstore.schemas.disk_config import (
    BufferDiskConfig,
    DropboxDiskConfig,
    FTPDiskConfig,
    GoogleDriveDiskConfig,
    LocalDiskConfig,
    S3DiskConfig,
    ScopedDiskConfig,
    SFTPDiskConfig,
    StorageConfig,
    StorageDiskConfig,
)

__all__ = [
    "BufferDiskConfig",
    "DropboxDiskConfig",
    "FTPDiskConfig",
    "GoogleDriveDiskConfig",
    "LocalDiskConfig",
    "S3DiskConfig",
    "ScopedDiskConfig",
    "SFTPDiskConfig",
    "StorageConfig",
    "StorageDiskConfig",
]
