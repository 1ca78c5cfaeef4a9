"""Storage drivers: local, buffer, S3, FTP, SFTP, Dropbox and Google Drive.

StorageFactory builds a driver from one disk config. Backend modules are
loaded lazily inside StorageFactory.create_driver() so that only the SDKs
of configured backends are imported. Scoped and read-only wrappers accept
any driver, including another wrapper.

Every driver subclasses BaseStorageDriver and satisfies StorageProtocol.
"""

from diskstore.infrastructure.external.storage.base import BaseStorageDriver
from diskstore.infrastructure.external.storage.factory import StorageFactory
from diskstore.infrastructure.external.storage.protocol import StorageProtocol
from diskstore.infrastructure.external.storage.readonly_storage import (
    ReadOnlyStorageDriver,
)
from diskstore.infrastructure.external.storage.scoped_storage import (
    ScopedStorageDriver,
)
from diskstore.infrastructure.external.storage.temporary_links import (
    TemporaryLinkStore,
)

__all__ = [
    "BaseStorageDriver",
    "ReadOnlyStorageDriver",
    "ScopedStorageDriver",
    "StorageFactory",
    "StorageProtocol",
    "TemporaryLinkStore",
]
