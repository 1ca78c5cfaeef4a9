"""Base class shared by every storage driver and wrapper.

Mandatory operations are abstract. Optional ones raise
StorageNotSupportedError and are tagged so ``supports()`` can report them
without calling. append/prepend/move/put_stream have generic fallbacks built
on the mandatory operations; drivers with a native primitive override them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any, ClassVar, TypeVar

from diskstore.domain.enums import Visibility
from diskstore.domain.value_objects import ConnectionInfo, FileMetadata
from diskstore.infrastructure.exceptions import (
    StorageNotFoundError,
    StorageNotSupportedError,
    StoragePermissionError,
)
from diskstore.shared.utils.paths import normalize_path

Content = bytes | str

_F = TypeVar("_F", bound=Callable[..., Any])


def optional_operation(func: _F) -> _F:
    """Mark a base method as an unsupported-by-default optional operation."""
    func.__unsupported__ = True  # type: ignore[attr-defined]
    return func


def to_bytes(content: Content) -> bytes:
    """Encode str content as UTF-8; pass bytes through."""
    if isinstance(content, str):
        return content.encode("utf-8")
    return bytes(content)


class BaseStorageDriver(ABC):
    """Common surface of all drivers. See StorageProtocol for the contract."""

    backend: ClassVar[str] = "base"
    CHUNK_SIZE: ClassVar[int] = 64 * 1024  # 64KB

    base_public_url: str | None = None

    def supports(self, operation: str) -> bool:
        """Return True if this driver implements the named operation."""
        method = getattr(self, operation, None)
        if method is None or not callable(method):
            return False
        return not getattr(method, "__unsupported__", False)

    def _normalize(self, path: str) -> str:
        """Normalized logical path; a path climbing above the root is a permission error."""
        try:
            return normalize_path(path)
        except ValueError as e:
            raise StoragePermissionError(path, "path_validation") from e

    def _not_supported(self, operation: str, reason: str | None = None) -> StorageNotSupportedError:
        return StorageNotSupportedError(operation, self.backend, reason)

    def _public_url(self, path: str) -> str:
        """Join base_public_url and path; unsupported when no base URL is set."""
        if not self.base_public_url:
            raise self._not_supported("url", "no public base URL configured")
        return f"{self.base_public_url.rstrip('/')}/{self._normalize(path)}"

    # Mandatory operations

    @abstractmethod
    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None: ...

    @abstractmethod
    async def get(self, path: str) -> bytes: ...

    @abstractmethod
    async def delete(self, path: str) -> None: ...

    @abstractmethod
    async def exists(self, path: str) -> bool: ...

    @abstractmethod
    async def copy(self, src: str, dest: str) -> None: ...

    @abstractmethod
    async def list_files(self, directory: str = "", recursive: bool = True) -> list[str]: ...

    @abstractmethod
    async def list_directories(
        self, directory: str = "", recursive: bool = True
    ) -> list[str]: ...

    @abstractmethod
    def create_read_stream(self, path: str) -> AsyncIterator[bytes]: ...

    async def move(self, src: str, dest: str) -> None:
        """Copy then delete src. Not atomic; drivers with rename override this."""
        await self.copy(src, dest)
        await self.delete(src)

    async def prepend(self, path: str, content: Content) -> None:
        """Read-modify-write. Concurrent writers on the same path can lose updates."""
        existing = await self._read_or_empty(path)
        await self.put(path, to_bytes(content) + existing)

    async def append(self, path: str, content: Content) -> None:
        """Read-modify-write. Concurrent writers on the same path can lose updates."""
        existing = await self._read_or_empty(path)
        await self.put(path, existing + to_bytes(content))

    async def _read_or_empty(self, path: str) -> bytes:
        try:
            return await self.get(path)
        except StorageNotFoundError:
            return b""

    # Optional operations

    @optional_operation
    async def url(self, path: str) -> str:
        raise self._not_supported("url")

    @optional_operation
    async def get_temporary_url(
        self,
        path: str,
        expires_in: int = 3600,
        ip: str | None = None,
        device_id: str | None = None,
    ) -> str:
        raise self._not_supported("get_temporary_url")

    @optional_operation
    def validate_temporary_token(
        self, token: str, connection: ConnectionInfo | None = None
    ) -> str | None:
        raise self._not_supported("validate_temporary_token")

    @optional_operation
    async def get_metadata(self, path: str) -> FileMetadata:
        raise self._not_supported("get_metadata")

    @optional_operation
    async def make_directory(self, path: str) -> None:
        raise self._not_supported("make_directory")

    @optional_operation
    async def delete_directory(self, path: str) -> None:
        raise self._not_supported("delete_directory")

    @optional_operation
    async def set_visibility(self, path: str, visibility: Visibility) -> None:
        raise self._not_supported("set_visibility")

    @optional_operation
    async def get_visibility(self, path: str) -> Visibility:
        raise self._not_supported("get_visibility")

    @optional_operation
    async def put_timed(
        self,
        path: str,
        content: Content,
        ttl: float | None = None,
        expires_at: datetime | None = None,
        visibility: Visibility | None = None,
    ) -> None:
        raise self._not_supported("put_timed")

    @optional_operation
    async def delete_expired_files(self) -> int:
        raise self._not_supported("delete_expired_files")

    async def put_stream(
        self,
        path: str,
        chunks: AsyncIterator[bytes],
        visibility: Visibility | None = None,
    ) -> None:
        """Buffer the whole stream in memory, then put.

        Memory use is the full object size. Local and S3 override this with
        real streaming; the remote-session and cloud-folder drivers keep it.
        """
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
        await self.put(path, bytes(buffer), visibility)
