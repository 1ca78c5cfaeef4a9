"""Wrapper that confines any driver to a path prefix."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime

from diskstore.domain.enums import Visibility
from diskstore.domain.value_objects import ConnectionInfo, FileMetadata
from diskstore.infrastructure.exceptions import StoragePermissionError
from diskstore.infrastructure.external.storage.base import BaseStorageDriver, Content
from diskstore.shared.utils.paths import join_path, normalize_path, relative_to


class ScopedStorageDriver(BaseStorageDriver):
    """Prefix every path before delegating to the wrapped driver.

    Paths are normalized first, so ``..`` cannot climb out of the prefix.
    Listings come back relative to the requested directory, as usual.
    Errors from the wrapped driver pass through unchanged.
    """

    backend = "scoped"

    def __init__(self, driver: BaseStorageDriver, prefix: str) -> None:
        self.driver = driver
        self.prefix = normalize_path(prefix)

    def __repr__(self) -> str:
        return f"ScopedStorageDriver({self.driver!r}, prefix={self.prefix!r})"

    def supports(self, operation: str) -> bool:
        return self.driver.supports(operation)

    def _scoped(self, path: str) -> str:
        return join_path(self.prefix, self._normalize(path))

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        await self.driver.put(self._scoped(path), content, visibility)

    async def get(self, path: str) -> bytes:
        return await self.driver.get(self._scoped(path))

    async def delete(self, path: str) -> None:
        await self.driver.delete(self._scoped(path))

    async def exists(self, path: str) -> bool:
        return await self.driver.exists(self._scoped(path))

    async def copy(self, src: str, dest: str) -> None:
        await self.driver.copy(self._scoped(src), self._scoped(dest))

    async def move(self, src: str, dest: str) -> None:
        await self.driver.move(self._scoped(src), self._scoped(dest))

    async def list_files(self, directory: str = "", recursive: bool = True) -> list[str]:
        return await self.driver.list_files(self._scoped(directory), recursive)

    async def list_directories(
        self, directory: str = "", recursive: bool = True
    ) -> list[str]:
        return await self.driver.list_directories(self._scoped(directory), recursive)

    def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        return self.driver.create_read_stream(self._scoped(path))

    async def prepend(self, path: str, content: Content) -> None:
        await self.driver.prepend(self._scoped(path), content)

    async def append(self, path: str, content: Content) -> None:
        await self.driver.append(self._scoped(path), content)

    async def url(self, path: str) -> str:
        return await self.driver.url(self._scoped(path))

    async def get_temporary_url(
        self,
        path: str,
        expires_in: int = 3600,
        ip: str | None = None,
        device_id: str | None = None,
    ) -> str:
        return await self.driver.get_temporary_url(
            self._scoped(path), expires_in, ip=ip, device_id=device_id
        )

    def validate_temporary_token(
        self, token: str, connection: ConnectionInfo | None = None
    ) -> str | None:
        """Resolve through the wrapped driver; paths outside the prefix are rejected."""
        resolved = self.driver.validate_temporary_token(token, connection)
        if resolved is None:
            return None
        try:
            return relative_to(resolved, self.prefix)
        except ValueError:
            return None

    async def get_metadata(self, path: str) -> FileMetadata:
        metadata = await self.driver.get_metadata(self._scoped(path))
        return FileMetadata(
            path=self._normalize(path),
            size=metadata.size,
            mime_type=metadata.mime_type,
            last_modified=metadata.last_modified,
            visibility=metadata.visibility,
        )

    async def make_directory(self, path: str) -> None:
        await self.driver.make_directory(self._scoped(path))

    async def delete_directory(self, path: str) -> None:
        await self.driver.delete_directory(self._scoped(path))

    async def set_visibility(self, path: str, visibility: Visibility) -> None:
        await self.driver.set_visibility(self._scoped(path), visibility)

    async def get_visibility(self, path: str) -> Visibility:
        return await self.driver.get_visibility(self._scoped(path))

    async def put_timed(
        self,
        path: str,
        content: Content,
        ttl: float | None = None,
        expires_at: datetime | None = None,
        visibility: Visibility | None = None,
    ) -> None:
        await self.driver.put_timed(
            self._scoped(path), content, ttl=ttl, expires_at=expires_at, visibility=visibility
        )

    async def delete_expired_files(self) -> int:
        """Sweeps the whole wrapped disk, not just this prefix."""
        return await self.driver.delete_expired_files()

    async def put_stream(
        self,
        path: str,
        chunks: AsyncIterator[bytes],
        visibility: Visibility | None = None,
    ) -> None:
        await self.driver.put_stream(self._scoped(path), chunks, visibility)
