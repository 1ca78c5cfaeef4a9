"""In-memory storage for tests and ephemeral caching."""

from __future__ import annotations

import mimetypes
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace
from datetime import datetime

from diskstore.domain.enums import Visibility
from diskstore.domain.value_objects import FileMetadata
from diskstore.infrastructure.exceptions import StorageNotFoundError
from diskstore.infrastructure.external.storage.base import (
    BaseStorageDriver,
    Content,
    to_bytes,
)
from diskstore.infrastructure.external.storage.expirations import (
    is_due,
    resolve_expires_at,
)
from diskstore.shared.telemetry.logging import get_logger
from diskstore.shared.utils.datetime import utc_now, utc_now_ms
from diskstore.shared.utils.paths import relative_to

logger = get_logger(__name__)


@dataclass(frozen=True)
class _BufferEntry:
    content: bytes
    visibility: Visibility
    last_modified: datetime
    expires_at_ms: int | None = None


class BufferStorageDriver(BaseStorageDriver):
    """Dict-backed driver. Nothing survives the process.

    There are no real directories: list_directories is always empty,
    make_directory is a no-op and delete_directory removes every key under
    the prefix. New files default to private.
    """

    backend = "buffer"

    def __init__(self) -> None:
        self._files: dict[str, _BufferEntry] = {}

    def _entry(self, path: str) -> _BufferEntry:
        entry = self._files.get(self._normalize(path))
        if entry is None:
            raise StorageNotFoundError(path)
        return entry

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        key = self._normalize(path)
        previous = self._files.get(key)
        if visibility is None:
            visibility = previous.visibility if previous else Visibility.PRIVATE
        self._files[key] = _BufferEntry(
            content=to_bytes(content),
            visibility=visibility,
            last_modified=utc_now(),
            expires_at_ms=previous.expires_at_ms if previous else None,
        )

    async def get(self, path: str) -> bytes:
        return self._entry(path).content

    async def delete(self, path: str) -> None:
        key = self._normalize(path)
        if self._files.pop(key, None) is None:
            raise StorageNotFoundError(path)

    async def exists(self, path: str) -> bool:
        return self._normalize(path) in self._files

    async def copy(self, src: str, dest: str) -> None:
        """Copy content and visibility; the copy carries no expiry."""
        entry = self._entry(src)
        self._files[self._normalize(dest)] = replace(
            entry, last_modified=utc_now(), expires_at_ms=None
        )

    async def move(self, src: str, dest: str) -> None:
        """Rename the key; expiry travels with the file."""
        entry = self._entry(src)
        del self._files[self._normalize(src)]
        self._files[self._normalize(dest)] = entry

    async def list_files(self, directory: str = "", recursive: bool = True) -> list[str]:
        directory = self._normalize(directory)
        results = []
        for key in self._files:
            try:
                rel = relative_to(key, directory)
            except ValueError:
                continue
            if recursive or "/" not in rel:
                results.append(rel)
        return sorted(results)

    async def list_directories(
        self, directory: str = "", recursive: bool = True
    ) -> list[str]:
        self._normalize(directory)
        return []

    async def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        content = self._entry(path).content
        for start in range(0, len(content), self.CHUNK_SIZE):
            yield content[start : start + self.CHUNK_SIZE]

    async def get_metadata(self, path: str) -> FileMetadata:
        entry = self._entry(path)
        return FileMetadata(
            path=self._normalize(path),
            size=len(entry.content),
            mime_type=mimetypes.guess_type(path)[0],
            last_modified=entry.last_modified,
            visibility=entry.visibility,
        )

    async def make_directory(self, path: str) -> None:
        """No-op: directories are implicit in keys."""

    async def delete_directory(self, path: str) -> None:
        prefix = self._normalize(path)
        for key in [k for k in self._files if not prefix or k.startswith(prefix + "/")]:
            del self._files[key]

    async def set_visibility(self, path: str, visibility: Visibility) -> None:
        key = self._normalize(path)
        self._files[key] = replace(self._entry(path), visibility=visibility)

    async def get_visibility(self, path: str) -> Visibility:
        return self._entry(path).visibility

    async def put_timed(
        self,
        path: str,
        content: Content,
        ttl: float | None = None,
        expires_at: datetime | None = None,
        visibility: Visibility | None = None,
    ) -> None:
        expires_at_ms = resolve_expires_at(ttl, expires_at)
        await self.put(path, content, visibility)
        key = self._normalize(path)
        self._files[key] = replace(self._files[key], expires_at_ms=expires_at_ms)

    async def delete_expired_files(self) -> int:
        now = utc_now_ms()
        expired = [
            key
            for key, entry in self._files.items()
            if entry.expires_at_ms is not None and is_due(entry.expires_at_ms, now)
        ]
        for key in expired:
            del self._files[key]
        if expired:
            logger.info("Deleted %d expired in-memory files", len(expired))
        return len(expired)
