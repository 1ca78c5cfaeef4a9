"""Wrapper that rejects every mutating operation."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime

from diskstore.domain.enums import Visibility
from diskstore.domain.value_objects import ConnectionInfo, FileMetadata
from diskstore.infrastructure.exceptions import StorageReadOnlyError
from diskstore.infrastructure.external.storage.base import BaseStorageDriver, Content

MUTATING_OPERATIONS = frozenset(
    {
        "put",
        "put_stream",
        "put_timed",
        "delete",
        "copy",
        "move",
        "append",
        "prepend",
        "make_directory",
        "delete_directory",
        "set_visibility",
        "delete_expired_files",
    }
)


class ReadOnlyStorageDriver(BaseStorageDriver):
    """Reads delegate unchanged; writes raise StorageReadOnlyError without delegating."""

    backend = "readonly"

    def __init__(self, driver: BaseStorageDriver) -> None:
        self.driver = driver

    def __repr__(self) -> str:
        return f"ReadOnlyStorageDriver({self.driver!r})"

    def supports(self, operation: str) -> bool:
        if operation in MUTATING_OPERATIONS:
            return False
        return self.driver.supports(operation)

    # Reads

    async def get(self, path: str) -> bytes:
        return await self.driver.get(path)

    async def exists(self, path: str) -> bool:
        return await self.driver.exists(path)

    async def list_files(self, directory: str = "", recursive: bool = True) -> list[str]:
        return await self.driver.list_files(directory, recursive)

    async def list_directories(
        self, directory: str = "", recursive: bool = True
    ) -> list[str]:
        return await self.driver.list_directories(directory, recursive)

    def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        return self.driver.create_read_stream(path)

    async def url(self, path: str) -> str:
        return await self.driver.url(path)

    async def get_temporary_url(
        self,
        path: str,
        expires_in: int = 3600,
        ip: str | None = None,
        device_id: str | None = None,
    ) -> str:
        return await self.driver.get_temporary_url(
            path, expires_in, ip=ip, device_id=device_id
        )

    def validate_temporary_token(
        self, token: str, connection: ConnectionInfo | None = None
    ) -> str | None:
        return self.driver.validate_temporary_token(token, connection)

    async def get_metadata(self, path: str) -> FileMetadata:
        return await self.driver.get_metadata(path)

    async def get_visibility(self, path: str) -> Visibility:
        return await self.driver.get_visibility(path)

    # Writes

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        raise StorageReadOnlyError("put")

    async def put_stream(
        self,
        path: str,
        chunks: AsyncIterator[bytes],
        visibility: Visibility | None = None,
    ) -> None:
        raise StorageReadOnlyError("put_stream")

    async def put_timed(
        self,
        path: str,
        content: Content,
        ttl: float | None = None,
        expires_at: datetime | None = None,
        visibility: Visibility | None = None,
    ) -> None:
        raise StorageReadOnlyError("put_timed")

    async def delete(self, path: str) -> None:
        raise StorageReadOnlyError("delete")

    async def copy(self, src: str, dest: str) -> None:
        raise StorageReadOnlyError("copy")

    async def move(self, src: str, dest: str) -> None:
        raise StorageReadOnlyError("move")

    async def append(self, path: str, content: Content) -> None:
        raise StorageReadOnlyError("append")

    async def prepend(self, path: str, content: Content) -> None:
        raise StorageReadOnlyError("prepend")

    async def make_directory(self, path: str) -> None:
        raise StorageReadOnlyError("make_directory")

    async def delete_directory(self, path: str) -> None:
        raise StorageReadOnlyError("delete_directory")

    async def set_visibility(self, path: str, visibility: Visibility) -> None:
        raise StorageReadOnlyError("set_visibility")

    async def delete_expired_files(self) -> int:
        raise StorageReadOnlyError("delete_expired_files")
