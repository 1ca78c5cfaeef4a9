"""Storage driver protocol (DIP). Every backend and wrapper satisfies it.

Mandatory operations are implemented by every driver. Optional ones raise
StorageNotSupportedError on backends that lack them; use
``driver.supports(name)`` to ask up front instead of catching.
"""

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Protocol

from diskstore.domain.enums import Visibility
from diskstore.domain.value_objects import ConnectionInfo, FileMetadata

Content = bytes | str


class StorageProtocol(Protocol):
    """Protocol for storage backends (local, buffer, S3, FTP, SFTP, Dropbox, Google Drive)."""

    backend: str

    def supports(self, operation: str) -> bool:
        """Return True if this driver implements the named operation."""
        ...

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        """Write content, creating parent directories; overwrite unconditionally."""
        ...

    async def get(self, path: str) -> bytes:
        """Return full content. Raises StorageNotFoundError if absent."""
        ...

    async def delete(self, path: str) -> None:
        """Remove the object. Raises StorageNotFoundError if absent."""
        ...

    async def exists(self, path: str) -> bool:
        """Presence check; raises only for transport failures."""
        ...

    async def copy(self, src: str, dest: str) -> None:
        """Copy src to dest. Raises StorageNotFoundError if src absent."""
        ...

    async def move(self, src: str, dest: str) -> None:
        """Copy then delete src. Raises StorageNotFoundError if src absent."""
        ...

    async def list_files(self, directory: str = "", recursive: bool = True) -> list[str]:
        """Return file paths relative to directory."""
        ...

    async def list_directories(
        self, directory: str = "", recursive: bool = True
    ) -> list[str]:
        """Return directory paths relative to directory."""
        ...

    def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        """Lazy single-pass byte chunks; errors surface on iteration."""
        ...

    async def prepend(self, path: str, content: Content) -> None:
        """Read-modify-write; a missing file counts as empty."""
        ...

    async def append(self, path: str, content: Content) -> None:
        """Read-modify-write; a missing file counts as empty."""
        ...

    # Optional operations

    async def url(self, path: str) -> str:
        """Durable public URL when a public base URL is configured."""
        ...

    async def get_temporary_url(
        self,
        path: str,
        expires_in: int = 3600,
        ip: str | None = None,
        device_id: str | None = None,
    ) -> str:
        """Time-limited URL (local token or provider-signed)."""
        ...

    async def get_metadata(self, path: str) -> FileMetadata:
        """Fresh metadata from the backend."""
        ...

    async def make_directory(self, path: str) -> None:
        """Create a directory (recursively)."""
        ...

    async def delete_directory(self, path: str) -> None:
        """Delete a directory and everything under it."""
        ...

    async def set_visibility(self, path: str, visibility: Visibility) -> None:
        """Set public/private."""
        ...

    async def get_visibility(self, path: str) -> Visibility:
        """Get public/private."""
        ...

    async def put_timed(
        self,
        path: str,
        content: Content,
        ttl: float | None = None,
        expires_at: datetime | None = None,
        visibility: Visibility | None = None,
    ) -> None:
        """Put, then record an absolute expiry instant."""
        ...

    async def delete_expired_files(self) -> int:
        """Delete every object whose expiry is at or before now; return count."""
        ...

    async def put_stream(
        self,
        path: str,
        chunks: AsyncIterator[bytes],
        visibility: Visibility | None = None,
    ) -> None:
        """Store from an async byte iterator."""
        ...

    def validate_temporary_token(
        self, token: str, connection: ConnectionInfo | None = None
    ) -> str | None:
        """Resolve a local temporary-link token to its path, or None."""
        ...
