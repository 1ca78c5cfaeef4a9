"""Local filesystem storage with path validation and atomic writes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import mimetypes
import os
import shutil
import stat
import tempfile
from collections.abc import AsyncIterator, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from diskstore.domain.enums import Visibility
from diskstore.domain.exceptions import ValidationException
from diskstore.domain.value_objects import ConnectionInfo, FileMetadata
from diskstore.infrastructure.exceptions import (
    StorageNotFoundError,
    StoragePermissionError,
    StorageTransportError,
)
from diskstore.infrastructure.external.storage.base import (
    BaseStorageDriver,
    Content,
    to_bytes,
)
from diskstore.infrastructure.external.storage.expirations import (
    is_due,
    resolve_expires_at,
)
from diskstore.infrastructure.external.storage.temporary_links import (
    TemporaryLinkStore,
)
from diskstore.schemas.disk_config import LocalDiskConfig
from diskstore.shared.telemetry.logging import get_logger
from diskstore.shared.utils.datetime import from_timestamp_utc, utc_now_ms

logger = get_logger(__name__)


class LocalStorageDriver(BaseStorageDriver):
    """Local filesystem storage with atomic writes and path traversal protection.

    Paths are validated against root. Writes go to a temp file in the target
    directory and are renamed over the final path. Visibility is simulated
    with mode bits (0644 public, 0600 private). Expiry is kept in a
    ``<file>.meta.json`` sidecar. Temporary URLs use in-memory tokens.
    """

    backend = "local"

    SIDECAR_SUFFIX = ".meta.json"
    TEMP_PREFIX = ".tmp_"
    PUBLIC_MODE = 0o644
    PRIVATE_MODE = 0o600

    def __init__(
        self,
        root: str,
        base_public_url: str | None = None,
        temporary_url_path: str = "/temp",
        link_store: TemporaryLinkStore | None = None,
    ) -> None:
        """Initialize local storage.

        Args:
            root: Base directory for all files; created if missing.
            base_public_url: Base URL files are served from (e.g. https://cdn.example.com).
            temporary_url_path: Path of the token-serving endpoint, appended to base_public_url.
            link_store: Token table for temporary URLs; a private one is created if omitted.
        """
        self.root = Path(root).resolve()
        self.base_public_url = base_public_url.rstrip("/") if base_public_url else None
        self.temporary_url_path = "/" + temporary_url_path.strip("/")
        self.link_store = link_store or TemporaryLinkStore()
        self.root.mkdir(parents=True, exist_ok=True, mode=0o750)

    @classmethod
    def from_config(
        cls, config: LocalDiskConfig, link_store: TemporaryLinkStore | None = None
    ) -> "LocalStorageDriver":
        return cls(
            root=config.root,
            base_public_url=config.base_public_url,
            temporary_url_path=config.temporary_url_path,
            link_store=link_store,
        )

    def _get_full_path(self, path: str) -> Path:
        """Resolve and validate path under root. Raises StoragePermissionError if traversal."""
        relative = self._normalize(path)
        full_path = (self.root / relative).resolve()
        try:
            full_path.relative_to(self.root)
        except ValueError as e:
            raise StoragePermissionError(path, "path_validation") from e
        return full_path

    def _sidecar(self, full_path: Path) -> Path:
        return full_path.with_name(full_path.name + self.SIDECAR_SUFFIX)

    def _is_internal(self, name: str) -> bool:
        return name.endswith(self.SIDECAR_SUFFIX) or name.startswith(self.TEMP_PREFIX)

    @contextlib.contextmanager
    def _errors(self, path: str, operation: str) -> Iterator[None]:
        """Translate OSError into the storage taxonomy."""
        try:
            yield
        except (FileNotFoundError, NotADirectoryError) as e:
            raise StorageNotFoundError(path) from e
        except OSError as e:
            raise StorageTransportError(path, operation, str(e)) from e

    def _mode_for(self, target: Path, visibility: Visibility | None) -> int:
        if visibility is not None:
            return self.PUBLIC_MODE if visibility == Visibility.PUBLIC else self.PRIVATE_MODE
        try:
            return stat.S_IMODE(target.stat().st_mode)
        except FileNotFoundError:
            return self.PUBLIC_MODE

    async def _atomic_write(
        self, target: Path, chunks: AsyncIterator[bytes] | bytes, mode: int
    ) -> int:
        """Write to a temp file beside target, then rename over it. Returns bytes written."""
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=target.parent,
            prefix=self.TEMP_PREFIX,
            suffix=target.suffix,
        )
        os.close(temp_fd)
        written = 0
        try:
            async with aiofiles.open(temp_path, "wb") as f:
                if isinstance(chunks, bytes):
                    await f.write(chunks)
                    written = len(chunks)
                else:
                    async for chunk in chunks:
                        await f.write(chunk)
                        written += len(chunk)
            os.chmod(temp_path, mode)
            await aiofiles.os.replace(temp_path, target)
        finally:
            if Path(temp_path).exists():
                os.unlink(temp_path)
        return written

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        """Write content atomically; parent directories are created."""
        target = self._get_full_path(path)
        with self._errors(path, "put"):
            await self._atomic_write(target, to_bytes(content), self._mode_for(target, visibility))

    async def put_stream(
        self,
        path: str,
        chunks: AsyncIterator[bytes],
        visibility: Visibility | None = None,
    ) -> None:
        """Stream chunks to a temp file, then rename; memory stays bounded."""
        target = self._get_full_path(path)
        with self._errors(path, "put_stream"):
            size = await self._atomic_write(target, chunks, self._mode_for(target, visibility))
        logger.debug("Streamed %d bytes to %s", size, path)

    async def get(self, path: str) -> bytes:
        file_path = self._get_full_path(path)
        with self._errors(path, "get"):
            async with aiofiles.open(file_path, "rb") as f:
                return await f.read()

    async def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        """Stream file content in CHUNK_SIZE pieces."""
        file_path = self._get_full_path(path)
        with self._errors(path, "create_read_stream"):
            async with aiofiles.open(file_path, "rb") as f:
                while True:
                    chunk = await f.read(self.CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk

    async def delete(self, path: str) -> None:
        """Delete file and its sidecar. Raises StorageNotFoundError if absent."""
        file_path = self._get_full_path(path)
        with self._errors(path, "delete"):
            await aiofiles.os.remove(file_path)
            sidecar = self._sidecar(file_path)
            if sidecar.exists():
                await aiofiles.os.remove(sidecar)

    async def exists(self, path: str) -> bool:
        """Return True if a regular file exists at path."""
        file_path = self._get_full_path(path)
        try:
            st = await aiofiles.os.stat(file_path)
        except (FileNotFoundError, NotADirectoryError):
            return False
        except OSError as e:
            raise StorageTransportError(path, "exists", str(e)) from e
        return stat.S_ISREG(st.st_mode)

    async def copy(self, src: str, dest: str) -> None:
        """Copy via temp file + rename so dest is never half-written."""
        src_path = self._get_full_path(src)
        dest_path = self._get_full_path(dest)
        if not await self.exists(src):
            raise StorageNotFoundError(src)
        with self._errors(dest, "copy"):
            await aiofiles.os.makedirs(dest_path.parent, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(
                dir=dest_path.parent, prefix=self.TEMP_PREFIX, suffix=dest_path.suffix
            )
            os.close(temp_fd)
            try:
                await asyncio.to_thread(shutil.copyfile, src_path, temp_path)
                await asyncio.to_thread(shutil.copymode, src_path, temp_path)
                await aiofiles.os.replace(temp_path, dest_path)
            finally:
                if Path(temp_path).exists():
                    os.unlink(temp_path)

    async def move(self, src: str, dest: str) -> None:
        """Atomic rename; the expiry sidecar travels with the file."""
        src_path = self._get_full_path(src)
        dest_path = self._get_full_path(dest)
        if not await self.exists(src):
            raise StorageNotFoundError(src)
        with self._errors(src, "move"):
            await aiofiles.os.makedirs(dest_path.parent, exist_ok=True)
            await aiofiles.os.replace(src_path, dest_path)
            src_sidecar, dest_sidecar = self._sidecar(src_path), self._sidecar(dest_path)
            if src_sidecar.exists():
                await aiofiles.os.replace(src_sidecar, dest_sidecar)
            elif dest_sidecar.exists():
                await aiofiles.os.remove(dest_sidecar)

    def _walk(self, base: Path, recursive: bool, directories: bool) -> list[str]:
        results: list[str] = []
        stack = [base]
        while stack:
            current = stack.pop()
            with os.scandir(current) as entries:
                for entry in entries:
                    rel = Path(entry.path).relative_to(base).as_posix()
                    if entry.is_dir(follow_symlinks=False):
                        if directories:
                            results.append(rel)
                        if recursive:
                            stack.append(Path(entry.path))
                    elif not directories and not self._is_internal(entry.name):
                        results.append(rel)
        return sorted(results)

    async def _list(self, directory: str, recursive: bool, directories: bool) -> list[str]:
        base = self._get_full_path(directory)
        if not base.is_dir():
            return []
        with self._errors(directory, "list"):
            return await asyncio.to_thread(self._walk, base, recursive, directories)

    async def list_files(self, directory: str = "", recursive: bool = True) -> list[str]:
        """Files under directory, relative to it. Sidecars and temp files are hidden."""
        return await self._list(directory, recursive, directories=False)

    async def list_directories(
        self, directory: str = "", recursive: bool = True
    ) -> list[str]:
        return await self._list(directory, recursive, directories=True)

    async def make_directory(self, path: str) -> None:
        dir_path = self._get_full_path(path)
        with self._errors(path, "make_directory"):
            await aiofiles.os.makedirs(dir_path, exist_ok=True)

    async def delete_directory(self, path: str) -> None:
        """Remove directory recursively. Missing directory is a no-op."""
        dir_path = self._get_full_path(path)
        if dir_path == self.root:
            raise StoragePermissionError(path, "delete_directory")
        if not dir_path.is_dir():
            return
        with self._errors(path, "delete_directory"):
            await asyncio.to_thread(shutil.rmtree, dir_path)

    async def set_visibility(self, path: str, visibility: Visibility) -> None:
        file_path = self._get_full_path(path)
        with self._errors(path, "set_visibility"):
            os.chmod(file_path, self._mode_for(file_path, visibility))

    async def get_visibility(self, path: str) -> Visibility:
        """0644 is public; any other mode reads as private."""
        file_path = self._get_full_path(path)
        with self._errors(path, "get_visibility"):
            st = await aiofiles.os.stat(file_path)
        return self._visibility_from_mode(st.st_mode)

    def _visibility_from_mode(self, mode: int) -> Visibility:
        if stat.S_IMODE(mode) == self.PUBLIC_MODE:
            return Visibility.PUBLIC
        return Visibility.PRIVATE

    async def get_metadata(self, path: str) -> FileMetadata:
        """Return size, guessed MIME type, mtime and visibility."""
        file_path = self._get_full_path(path)
        with self._errors(path, "get_metadata"):
            st = await aiofiles.os.stat(file_path)
        if not stat.S_ISREG(st.st_mode):
            raise StorageNotFoundError(path)
        return FileMetadata(
            path=self._normalize(path),
            size=st.st_size,
            mime_type=mimetypes.guess_type(file_path.name)[0],
            last_modified=from_timestamp_utc(st.st_mtime),
            visibility=self._visibility_from_mode(st.st_mode),
        )

    async def url(self, path: str) -> str:
        return self._public_url(path)

    async def get_temporary_url(
        self,
        path: str,
        expires_in: int = 3600,
        ip: str | None = None,
        device_id: str | None = None,
    ) -> str:
        """Return a token URL; optionally bound to a client IP and/or device id."""
        if expires_in <= 0:
            raise ValidationException("expires_in must be positive", field="expires_in")
        if not await self.exists(path):
            raise StorageNotFoundError(path)
        token = self.link_store.issue(self._normalize(path), expires_in, ip=ip, device_id=device_id)
        url_path = f"{self.temporary_url_path}?token={token}"
        return f"{self.base_public_url}{url_path}" if self.base_public_url else url_path

    def validate_temporary_token(
        self, token: str, connection: ConnectionInfo | None = None
    ) -> str | None:
        """Return the path a token grants, or None if invalid/expired/mismatched."""
        return self.link_store.resolve(token, connection)

    async def put_timed(
        self,
        path: str,
        content: Content,
        ttl: float | None = None,
        expires_at: datetime | None = None,
        visibility: Visibility | None = None,
    ) -> None:
        """Put, then write ``{"expires_at": <ms>}`` to the sidecar."""
        expires_at_ms = resolve_expires_at(ttl, expires_at)
        await self.put(path, content, visibility)
        file_path = self._get_full_path(path)
        payload = json.dumps({"expires_at": expires_at_ms}).encode("utf-8")
        with self._errors(path, "put_timed"):
            await self._atomic_write(self._sidecar(file_path), payload, 0o640)

    def _find_sidecars(self) -> list[Path]:
        found: list[Path] = []
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for name in filenames:
                if name.endswith(self.SIDECAR_SUFFIX):
                    found.append(Path(dirpath) / name)
        return found

    async def _read_sidecar(self, sidecar: Path) -> dict[str, Any]:
        async with aiofiles.open(sidecar, "r") as f:
            result = json.loads(await f.read())
        return result if isinstance(result, dict) else {}

    async def delete_expired_files(self) -> int:
        """Delete files whose sidecar expiry is at or before now. Returns count."""
        now = utc_now_ms()
        deleted = 0
        sidecars = await asyncio.to_thread(self._find_sidecars)
        for sidecar in sidecars:
            try:
                meta = await self._read_sidecar(sidecar)
            except FileNotFoundError:
                continue
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.warning("Skipping unreadable expiry sidecar %s", sidecar)
                continue
            expires_at_ms = meta.get("expires_at")
            if not isinstance(expires_at_ms, int) or not is_due(expires_at_ms, now):
                continue
            target = sidecar.with_name(sidecar.name[: -len(self.SIDECAR_SUFFIX)])
            rel = target.relative_to(self.root).as_posix()
            with self._errors(rel, "delete_expired_files"):
                if target.exists():
                    await aiofiles.os.remove(target)
                    deleted += 1
                if sidecar.exists():
                    await aiofiles.os.remove(sidecar)
        if deleted:
            logger.info("Deleted %d expired files under %s", deleted, self.root)
        return deleted
