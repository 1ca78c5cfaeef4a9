"""Expiry bookkeeping for put_timed / delete_expired_files.

Expiry is always stored as absolute epoch milliseconds, resolved when the
file is written. Backends without object metadata keep a single JSON index
(path -> expires_at_ms) at their root; ExpirationIndex guards its
read-modify-write with one asyncio.Lock per driver instance.
"""

from __future__ import annotations

import asyncio
import json
from abc import abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import ClassVar

from diskstore.domain.enums import Visibility
from diskstore.domain.exceptions import ValidationException
from diskstore.infrastructure.exceptions import (
    StorageNotFoundError,
    StorageTransportError,
)
from diskstore.infrastructure.external.storage.base import BaseStorageDriver, Content
from diskstore.shared.telemetry.logging import get_logger
from diskstore.shared.utils.datetime import to_timestamp_ms, utc_now_ms
from diskstore.shared.utils.paths import join_path

logger = get_logger(__name__)


def resolve_expires_at(
    ttl: float | None = None,
    expires_at: datetime | None = None,
    now_ms: int | None = None,
) -> int:
    """Return the absolute expiry instant in epoch milliseconds.

    expires_at wins over ttl. Naive datetimes are UTC.

    Raises:
        ValidationException: Neither given, or ttl negative.
    """
    if expires_at is not None:
        return to_timestamp_ms(expires_at)
    if ttl is None:
        raise ValidationException("put_timed requires ttl or expires_at", field="ttl")
    if ttl < 0:
        raise ValidationException("ttl must be zero or positive", field="ttl")
    base = utc_now_ms() if now_ms is None else now_ms
    return base + int(ttl * 1000)


def is_due(expires_at_ms: int, now_ms: int) -> bool:
    """A record is due at or after its instant."""
    return expires_at_ms <= now_ms


class ExpirationIndex:
    """Centralized ``.{backend}-expirations.json`` index stored on the backend itself."""

    def __init__(self, driver: BaseStorageDriver, filename: str) -> None:
        self._driver = driver
        self.path = filename
        self._lock = asyncio.Lock()
        self._present = False

    async def _load(self) -> dict[str, int]:
        try:
            raw = await self._driver.get(self.path)
        except StorageNotFoundError:
            self._present = False
            return {}
        self._present = True
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StorageTransportError(self.path, "read_expirations", str(e)) from e
        if not isinstance(data, dict):
            raise StorageTransportError(self.path, "read_expirations", "index is not an object")
        return {str(k): int(v) for k, v in data.items()}

    async def _save(self, index: dict[str, int]) -> None:
        if not index and not self._present:
            return
        await self._driver.put(self.path, json.dumps(index, sort_keys=True))
        self._present = True

    async def entries(self) -> dict[str, int]:
        """Snapshot of the index."""
        async with self._lock:
            return await self._load()

    async def record(self, path: str, expires_at_ms: int) -> None:
        """Set the expiry of path."""
        async with self._lock:
            index = await self._load()
            index[path] = expires_at_ms
            await self._save(index)

    async def forget(self, path: str) -> None:
        """Drop the record of path if any."""
        async with self._lock:
            index = await self._load()
            if index.pop(path, None) is not None:
                await self._save(index)

    async def move(self, src: str, dest: str) -> None:
        """Carry the record of src over to dest; drop any stale record of dest."""
        async with self._lock:
            index = await self._load()
            expires_at_ms = index.pop(src, None)
            stale = index.pop(dest, None)
            if expires_at_ms is not None:
                index[dest] = expires_at_ms
            if expires_at_ms is not None or stale is not None:
                await self._save(index)

    async def sweep(
        self,
        delete: Callable[[str], Awaitable[None]],
        now_ms: int | None = None,
    ) -> int:
        """Delete every due path through ``delete`` and return how many were removed.

        Due entries are snapshotted under the lock and deleted outside it.
        Afterwards only records still holding the snapshotted value are
        removed, so a put_timed that raced the sweep keeps its new record.
        Objects already gone lose their record without being counted.
        Transport errors propagate after processed records are saved.
        """
        now = utc_now_ms() if now_ms is None else now_ms
        async with self._lock:
            due = {p: exp for p, exp in (await self._load()).items() if is_due(exp, now)}
        deleted: list[str] = []
        gone: list[str] = []
        try:
            for path in due:
                try:
                    await delete(path)
                    deleted.append(path)
                except StorageNotFoundError:
                    gone.append(path)
        finally:
            if deleted or gone:
                async with self._lock:
                    index = await self._load()
                    for path in deleted + gone:
                        if index.get(path) == due[path]:
                            del index[path]
                    await self._save(index)
        if gone:
            logger.info("Dropped %d expiration records for missing files", len(gone))
        return len(deleted)


class IndexedExpiryDriver(BaseStorageDriver):
    """Base for backends without object metadata (FTP, SFTP, Dropbox, Google Drive).

    Subclasses implement ``_delete_object``; ``delete`` also drops the
    expiry record so a later untimed file at the same path is not swept.
    The index file sits at the disk root and is hidden from listings.
    """

    EXPIRATIONS_FILE: ClassVar[str] = ".expirations.json"

    def __init__(self) -> None:
        self._expirations = ExpirationIndex(self, self.EXPIRATIONS_FILE)

    def _hide_index(self, directory: str, paths: list[str]) -> list[str]:
        if self._normalize(directory):
            return paths
        return [p for p in paths if join_path(directory, p) != self.EXPIRATIONS_FILE]

    @abstractmethod
    async def _delete_object(self, path: str) -> None:
        """Remove the object; raise StorageNotFoundError if absent."""

    async def delete(self, path: str) -> None:
        await self._delete_object(path)
        await self._expirations.forget(self._normalize(path))

    async def put_timed(
        self,
        path: str,
        content: Content,
        ttl: float | None = None,
        expires_at: datetime | None = None,
        visibility: Visibility | None = None,
    ) -> None:
        """Put, then record the expiry in the index."""
        expires_at_ms = resolve_expires_at(ttl, expires_at)
        await self.put(path, content, visibility)
        await self._expirations.record(self._normalize(path), expires_at_ms)

    async def delete_expired_files(self) -> int:
        deleted = await self._expirations.sweep(self._delete_object)
        if deleted:
            logger.info("Deleted %d expired files from %s", deleted, self.backend)
        return deleted
