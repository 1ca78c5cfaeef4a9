"""Storage driver factory: builds one driver from one disk config."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from diskstore.domain.enums import DriverName
from diskstore.infrastructure.external.storage.base import BaseStorageDriver
from diskstore.infrastructure.external.storage.readonly_storage import (
    ReadOnlyStorageDriver,
)
from diskstore.infrastructure.external.storage.temporary_links import (
    TemporaryLinkStore,
)
from diskstore.shared.telemetry.logging import get_logger

if TYPE_CHECKING:
    from diskstore.schemas.disk_config import StorageDiskConfig

logger = get_logger(__name__)

DiskResolver = Callable[[str], BaseStorageDriver]


def _build_local(config, resolve_disk, link_store) -> BaseStorageDriver:
    from diskstore.infrastructure.external.storage.local_storage import (
        LocalStorageDriver,
    )

    return LocalStorageDriver.from_config(config, link_store=link_store)


def _build_buffer(config, resolve_disk, link_store) -> BaseStorageDriver:
    from diskstore.infrastructure.external.storage.buffer_storage import (
        BufferStorageDriver,
    )

    return BufferStorageDriver()


def _build_s3(config, resolve_disk, link_store) -> BaseStorageDriver:
    from diskstore.infrastructure.external.storage.s3_storage import S3StorageDriver

    return S3StorageDriver.from_config(config)


def _build_ftp(config, resolve_disk, link_store) -> BaseStorageDriver:
    from diskstore.infrastructure.external.storage.ftp_storage import FTPStorageDriver

    return FTPStorageDriver.from_config(config)


def _build_sftp(config, resolve_disk, link_store) -> BaseStorageDriver:
    from diskstore.infrastructure.external.storage.sftp_storage import (
        SFTPStorageDriver,
    )

    return SFTPStorageDriver.from_config(config)


def _build_dropbox(config, resolve_disk, link_store) -> BaseStorageDriver:
    from diskstore.infrastructure.external.storage.dropbox_storage import (
        DropboxStorageDriver,
    )

    return DropboxStorageDriver.from_config(config)


def _build_gdrive(config, resolve_disk, link_store) -> BaseStorageDriver:
    from diskstore.infrastructure.external.storage.gdrive_storage import (
        GoogleDriveStorageDriver,
    )

    return GoogleDriveStorageDriver.from_config(config)


def _build_scoped(config, resolve_disk, link_store) -> BaseStorageDriver:
    from diskstore.infrastructure.external.storage.scoped_storage import (
        ScopedStorageDriver,
    )

    if resolve_disk is None:
        raise ValueError("Scoped disks need a resolver for the wrapped disk")
    return ScopedStorageDriver(resolve_disk(config.disk), config.prefix)


_BUILDERS: dict[DriverName, Callable[..., BaseStorageDriver]] = {
    DriverName.LOCAL: _build_local,
    DriverName.BUFFER: _build_buffer,
    DriverName.S3: _build_s3,
    DriverName.FTP: _build_ftp,
    DriverName.SFTP: _build_sftp,
    DriverName.DROPBOX: _build_dropbox,
    DriverName.GDRIVE: _build_gdrive,
    DriverName.SCOPED: _build_scoped,
}


class StorageFactory:
    """Factory for storage drivers based on disk configuration.

    Backend modules are imported lazily so that only the SDKs of configured
    backends are loaded.
    """

    @staticmethod
    def create_driver(
        config: "StorageDiskConfig",
        resolve_disk: DiskResolver | None = None,
        link_store: TemporaryLinkStore | None = None,
    ) -> BaseStorageDriver:
        """Create the driver for one disk.

        Args:
            config: Validated disk config (one variant of the tagged union).
            resolve_disk: Returns the driver of another disk by name (scoped disks).
            link_store: Token table shared by local disks.

        Returns:
            Driver, wrapped in ReadOnlyStorageDriver when config.read_only.

        Raises:
            ValueError: Unknown driver tag or scoped disk without a resolver.
        """
        try:
            builder = _BUILDERS[DriverName(config.driver)]
        except ValueError as e:
            raise ValueError(
                f"Unknown storage driver: {config.driver}. "
                f"Supported: {', '.join(d.value for d in DriverName)}"
            ) from e
        driver = builder(config, resolve_disk, link_store)
        if config.read_only:
            driver = ReadOnlyStorageDriver(driver)
        logger.debug("Built %s driver (read_only=%s)", config.driver, config.read_only)
        return driver
