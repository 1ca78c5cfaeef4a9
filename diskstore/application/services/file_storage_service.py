"""Disk registry: named disks, a default disk, and convenience forwarding."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from diskstore.domain.enums import DriverName, Visibility
from diskstore.domain.value_objects import ConnectionInfo, FileMetadata
from diskstore.infrastructure.exceptions import DiskNotConfiguredError
from diskstore.infrastructure.external.storage.base import BaseStorageDriver, Content
from diskstore.infrastructure.external.storage.factory import StorageFactory
from diskstore.infrastructure.external.storage.temporary_links import (
    TemporaryLinkStore,
)
from diskstore.schemas.disk_config import StorageConfig, StorageDiskConfig
from diskstore.shared.telemetry.logging import get_logger

if TYPE_CHECKING:
    from diskstore.core.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class StorageDisk:
    """A configured disk: its name, built driver and the config it came from."""

    name: str
    driver: BaseStorageDriver
    config: StorageDiskConfig


class FileStorageService:
    """Registry of named disks built from a StorageConfig.

    Scoped disks reference another disk by name and are resolved
    recursively; a reference cycle is rejected when the registry is built.
    All local disks share one TemporaryLinkStore, so any of them can issue
    a token that validate_temporary_token resolves.
    """

    def __init__(
        self,
        config: StorageConfig,
        link_store: TemporaryLinkStore | None = None,
    ) -> None:
        self.default_disk = config.default
        self.link_store = link_store or TemporaryLinkStore()
        self._configs: dict[str, StorageDiskConfig] = dict(config.disks)
        self._disks: dict[str, StorageDisk] = self._build(self._configs)
        logger.info(
            "Storage registry ready: %d disks, default=%s",
            len(self._disks),
            self.default_disk,
        )

    @classmethod
    async def create(
        cls,
        config_factory: Callable[[], Awaitable[StorageConfig]],
        link_store: TemporaryLinkStore | None = None,
    ) -> "FileStorageService":
        """Build the registry from an async config provider (secrets store, remote config)."""
        return cls(await config_factory(), link_store=link_store)

    @classmethod
    def from_settings(cls, settings: "Settings | None" = None) -> "FileStorageService":
        """Build the registry from STORAGE_CONFIG_PATH / STORAGE_DISKS.

        Args:
            settings: Package settings; if None, uses get_settings().
        """
        from diskstore.core.config import get_settings

        s = settings or get_settings()
        return cls(
            s.load_storage_config(),
            link_store=TemporaryLinkStore(device_header=s.temporary_link_device_header),
        )

    def _build(self, configs: dict[str, StorageDiskConfig]) -> dict[str, StorageDisk]:
        built: dict[str, StorageDisk] = {}

        def resolve(name: str, chain: tuple[str, ...]) -> BaseStorageDriver:
            if name in built:
                return built[name].driver
            if name in chain:
                raise ValueError(f"Scoped disk cycle: {' -> '.join((*chain, name))}")
            config = configs.get(name)
            if config is None:
                raise DiskNotConfiguredError(name)
            driver = StorageFactory.create_driver(
                config,
                resolve_disk=lambda ref: resolve(ref, (*chain, name)),
                link_store=self.link_store,
            )
            built[name] = StorageDisk(name=name, driver=driver, config=config)
            return driver

        for name in configs:
            resolve(name, ())
        return built

    @property
    def disk_names(self) -> list[str]:
        return list(self._disks)

    def disk(self, name: str | None = None) -> BaseStorageDriver:
        """Return the driver of a disk (the default disk when name is omitted).

        Raises:
            DiskNotConfiguredError: No disk with that name.
        """
        return self.get_disk(name).driver

    def get_disk(self, name: str | None = None) -> StorageDisk:
        disk_name = name or self.default_disk
        disk = self._disks.get(disk_name)
        if disk is None:
            raise DiskNotConfiguredError(disk_name)
        return disk

    def replace_disk(self, name: str, config: StorageDiskConfig) -> None:
        """Swap a disk's config wholesale and rebuild the registry.

        Scoped disks that reference the replaced disk are rebuilt against
        the new driver. On failure the previous registry stays in place.
        """
        configs = {**self._configs, name: config}
        disks = self._build(configs)
        self._configs = configs
        self._disks = disks
        logger.info("Replaced disk %s (driver=%s)", name, config.driver)

    # Convenience methods (default disk unless disk= is given)

    async def put(
        self,
        path: str,
        content: Content,
        visibility: Visibility | None = None,
        disk: str | None = None,
    ) -> None:
        await self.disk(disk).put(path, content, visibility)

    async def get(self, path: str, disk: str | None = None) -> bytes:
        return await self.disk(disk).get(path)

    async def delete(self, path: str, disk: str | None = None) -> None:
        await self.disk(disk).delete(path)

    async def exists(self, path: str, disk: str | None = None) -> bool:
        return await self.disk(disk).exists(path)

    async def copy(self, src: str, dest: str, disk: str | None = None) -> None:
        await self.disk(disk).copy(src, dest)

    async def move(self, src: str, dest: str, disk: str | None = None) -> None:
        await self.disk(disk).move(src, dest)

    async def list_files(
        self, directory: str = "", recursive: bool = True, disk: str | None = None
    ) -> list[str]:
        return await self.disk(disk).list_files(directory, recursive)

    async def list_directories(
        self, directory: str = "", recursive: bool = True, disk: str | None = None
    ) -> list[str]:
        return await self.disk(disk).list_directories(directory, recursive)

    def create_read_stream(self, path: str, disk: str | None = None) -> AsyncIterator[bytes]:
        return self.disk(disk).create_read_stream(path)

    async def make_directory(self, path: str, disk: str | None = None) -> None:
        await self.disk(disk).make_directory(path)

    async def delete_directory(self, path: str, disk: str | None = None) -> None:
        await self.disk(disk).delete_directory(path)

    async def get_metadata(self, path: str, disk: str | None = None) -> FileMetadata:
        return await self.disk(disk).get_metadata(path)

    async def url(self, path: str, disk: str | None = None) -> str:
        return await self.disk(disk).url(path)

    async def get_temporary_url(
        self,
        path: str,
        expires_in: int = 3600,
        ip: str | None = None,
        device_id: str | None = None,
        disk: str | None = None,
    ) -> str:
        return await self.disk(disk).get_temporary_url(
            path, expires_in, ip=ip, device_id=device_id
        )

    async def put_timed(
        self,
        path: str,
        content: Content,
        ttl: float | None = None,
        expires_at: datetime | None = None,
        visibility: Visibility | None = None,
        disk: str | None = None,
    ) -> None:
        await self.disk(disk).put_timed(
            path, content, ttl=ttl, expires_at=expires_at, visibility=visibility
        )

    async def delete_expired_files(self, disk: str | None = None) -> int:
        return await self.disk(disk).delete_expired_files()

    async def put_stream(
        self,
        path: str,
        chunks: AsyncIterator[bytes],
        visibility: Visibility | None = None,
        disk: str | None = None,
    ) -> None:
        await self.disk(disk).put_stream(path, chunks, visibility)

    async def delete_expired_files_everywhere(self) -> dict[str, int]:
        """Sweep every disk that supports it; returns deleted counts per disk.

        Scoped disks are skipped because their sweep is the wrapped disk's
        sweep. Read-only disks do not support the sweep.
        """
        counts: dict[str, int] = {}
        for name, disk in self._disks.items():
            if disk.config.driver == DriverName.SCOPED.value:
                continue
            if not disk.driver.supports("delete_expired_files"):
                continue
            counts[name] = await disk.driver.delete_expired_files()
        logger.info("Expired-file sweep finished: %s", counts)
        return counts

    def validate_temporary_token(
        self, token: str, connection: ConnectionInfo | None = None
    ) -> str | None:
        """Resolve a local temporary-link token to its path, or None."""
        return self.link_store.resolve(token, connection)
