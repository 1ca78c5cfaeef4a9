"""Dropbox storage over the official SDK (sync) via asyncio.to_thread."""

from __future__ import annotations

import asyncio
import mimetypes
from collections.abc import AsyncIterator, Callable
from typing import Any, TypeVar

import dropbox
from dropbox import files as dbx_files
from dropbox.exceptions import ApiError, DropboxException

from diskstore.domain.enums import Visibility
from diskstore.domain.value_objects import FileMetadata
from diskstore.infrastructure.exceptions import (
    StorageNotFoundError,
    StoragePermissionError,
    StorageTransportError,
)
from diskstore.infrastructure.external.storage.base import Content, to_bytes
from diskstore.infrastructure.external.storage.expirations import IndexedExpiryDriver
from diskstore.schemas.disk_config import DropboxDiskConfig
from diskstore.shared.telemetry.logging import get_logger
from diskstore.shared.utils.datetime import ensure_utc
from diskstore.shared.utils.paths import join_path, normalize_path

logger = get_logger(__name__)

_T = TypeVar("_T")

# Error union accessors that wrap a LookupError, in the order Dropbox uses them.
_LOOKUP_ACCESSORS = ("path", "path_lookup", "from_lookup")


def _lookup_error(error: Any) -> Any | None:
    for name in _LOOKUP_ACCESSORS:
        is_kind = getattr(error, f"is_{name}", None)
        if is_kind is not None and is_kind():
            return getattr(error, f"get_{name}")()
    return None


def is_not_found(e: ApiError) -> bool:
    """True if the API error is a path lookup that found nothing."""
    lookup = _lookup_error(e.error)
    return bool(lookup is not None and getattr(lookup, "is_not_found", lambda: False)())


def is_conflict(e: ApiError) -> bool:
    """True if the API error is a write conflict (something already at the path)."""
    for name in ("path", "to"):
        is_kind = getattr(e.error, f"is_{name}", None)
        if is_kind is not None and is_kind():
            write = getattr(e.error, f"get_{name}")()
            return bool(getattr(write, "is_conflict", lambda: False)())
    return False


class DropboxStorageDriver(IndexedExpiryDriver):
    """Dropbox storage, optionally rooted at a folder.

    Paths map to ``/{root}/{path}``. Uploads overwrite; parent folders are
    created by Dropbox itself. copy/move replace an existing destination.
    Visibility and temporary URLs are not supported.
    """

    backend = "dropbox"
    EXPIRATIONS_FILE = ".dropbox-expirations.json"

    def __init__(
        self,
        access_token: str | None = None,
        app_key: str | None = None,
        app_secret: str | None = None,
        refresh_token: str | None = None,
        root: str = "",
        timeout: float = 100.0,
        base_public_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        """Initialize the Dropbox client.

        Args:
            access_token: Short- or long-lived access token.
            app_key: App key, required with refresh_token.
            app_secret: App secret for refresh.
            refresh_token: Offline refresh token; the SDK refreshes access tokens.
            root: Folder every path is relative to.
            timeout: HTTP timeout in seconds.
            base_public_url: Base URL for url().
            client: Prebuilt dropbox.Dropbox (tests).
        """
        super().__init__()
        self.root = normalize_path(root)
        self.base_public_url = base_public_url
        self._client = client or dropbox.Dropbox(
            oauth2_access_token=access_token,
            oauth2_refresh_token=refresh_token,
            app_key=app_key,
            app_secret=app_secret,
            timeout=timeout,
        )

    @classmethod
    def from_config(cls, config: DropboxDiskConfig) -> "DropboxStorageDriver":
        return cls(
            access_token=config.access_token.get_secret_value() if config.access_token else None,
            app_key=config.app_key,
            app_secret=config.app_secret.get_secret_value() if config.app_secret else None,
            refresh_token=(
                config.refresh_token.get_secret_value() if config.refresh_token else None
            ),
            root=config.root,
            timeout=config.timeout,
            base_public_url=config.base_public_url,
        )

    def _dbx_path(self, path: str) -> str:
        """Dropbox path for a logical path; the account root is ""."""
        joined = join_path(self.root, self._normalize(path))
        return f"/{joined}" if joined else ""

    async def _call(self, path: str, operation: str, func: Callable[[], _T]) -> _T:
        """Run a blocking SDK call in a thread and map SDK errors."""
        try:
            return await asyncio.to_thread(func)
        except ApiError as e:
            if is_not_found(e):
                raise StorageNotFoundError(path) from e
            raise StorageTransportError(path, operation, str(e.error)) from e
        except (DropboxException, OSError) as e:
            raise StorageTransportError(path, operation, str(e)) from e

    def _is_file(self, dbx_path: str) -> bool:
        return isinstance(self._client.files_get_metadata(dbx_path), dbx_files.FileMetadata)

    def _relocate(self, relocate: Callable[..., Any], src_path: str, dest_path: str) -> None:
        """Copy or move server-side. A file already at dest is replaced only
        after the first attempt reports the conflict; a folder there is not.
        """
        try:
            relocate(src_path, dest_path, autorename=False)
        except ApiError as e:
            if not is_conflict(e) or not self._is_file(dest_path):
                raise
            self._client.files_delete_v2(dest_path)
            relocate(src_path, dest_path, autorename=False)

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        """Upload in overwrite mode; visibility is ignored."""
        data = to_bytes(content)
        target = self._dbx_path(path)
        await self._call(
            path,
            "put",
            lambda: self._client.files_upload(
                data, target, mode=dbx_files.WriteMode.overwrite, mute=True
            ),
        )

    async def get(self, path: str) -> bytes:
        target = self._dbx_path(path)

        def _download() -> bytes:
            _, response = self._client.files_download(target)
            try:
                return response.content
            finally:
                response.close()

        return await self._call(path, "get", _download)

    async def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        """Iterate the HTTP response body in CHUNK_SIZE pieces."""
        target = self._dbx_path(path)
        _, response = await self._call(
            path, "create_read_stream", lambda: self._client.files_download(target)
        )
        try:
            chunks = response.iter_content(chunk_size=self.CHUNK_SIZE)
            while True:
                chunk = await self._call(
                    path, "create_read_stream", lambda: next(chunks, b"")
                )
                if not chunk:
                    break
                yield chunk
        finally:
            response.close()

    async def _delete_object(self, path: str) -> None:
        """Delete a file. files_delete_v2 would also remove a folder recursively,
        so a folder at the path reads as absent.
        """
        target = self._dbx_path(path)

        def _delete() -> None:
            if not self._is_file(target):
                raise StorageNotFoundError(path)
            self._client.files_delete_v2(target)

        await self._call(path, "delete", _delete)

    async def exists(self, path: str) -> bool:
        """True only for files; folders at the path read as absent."""
        target = self._dbx_path(path)
        if not target:
            return False
        try:
            meta = await self._call(
                path, "exists", lambda: self._client.files_get_metadata(target)
            )
        except StorageNotFoundError:
            return False
        return isinstance(meta, dbx_files.FileMetadata)

    async def copy(self, src: str, dest: str) -> None:
        """Server-side copy; an existing destination is replaced."""
        src_path, dest_path = self._dbx_path(src), self._dbx_path(dest)
        await self._call(
            src, "copy", lambda: self._relocate(self._client.files_copy_v2, src_path, dest_path)
        )

    async def move(self, src: str, dest: str) -> None:
        """Server-side move; the expiry record follows the file."""
        src_path, dest_path = self._dbx_path(src), self._dbx_path(dest)
        await self._call(
            src, "move", lambda: self._relocate(self._client.files_move_v2, src_path, dest_path)
        )
        await self._expirations.move(self._normalize(src), self._normalize(dest))

    def _list_entries(self, base: str, recursive: bool) -> list[Any]:
        result = self._client.files_list_folder(base, recursive=recursive)
        entries = list(result.entries)
        while result.has_more:
            result = self._client.files_list_folder_continue(result.cursor)
            entries.extend(result.entries)
        return entries

    async def _list(self, directory: str, recursive: bool, kind: type) -> list[str]:
        base = self._dbx_path(directory)
        try:
            entries = await self._call(
                directory, "list", lambda: self._list_entries(base, recursive)
            )
        except StorageNotFoundError:
            return []
        results = []
        for entry in entries:
            if not isinstance(entry, kind):
                continue
            rel = entry.path_display[len(base) :].strip("/")
            if rel:
                results.append(rel)
        return self._hide_index(directory, sorted(results))

    async def list_files(self, directory: str = "", recursive: bool = True) -> list[str]:
        return await self._list(directory, recursive, dbx_files.FileMetadata)

    async def list_directories(
        self, directory: str = "", recursive: bool = True
    ) -> list[str]:
        return await self._list(directory, recursive, dbx_files.FolderMetadata)

    async def url(self, path: str) -> str:
        return self._public_url(path)

    async def get_metadata(self, path: str) -> FileMetadata:
        target = self._dbx_path(path)
        meta = await self._call(
            path, "get_metadata", lambda: self._client.files_get_metadata(target)
        )
        if not isinstance(meta, dbx_files.FileMetadata):
            raise StorageNotFoundError(path)
        return FileMetadata(
            path=self._normalize(path),
            size=meta.size,
            mime_type=mimetypes.guess_type(meta.name)[0],
            last_modified=ensure_utc(meta.server_modified),
        )

    async def make_directory(self, path: str) -> None:
        """Create the folder (and parents). An existing folder is fine."""
        target = self._dbx_path(path)
        if not target:
            return

        def _create() -> None:
            try:
                self._client.files_create_folder_v2(target)
            except ApiError as e:
                if not is_conflict(e):
                    raise

        await self._call(path, "make_directory", _create)

    async def delete_directory(self, path: str) -> None:
        """Delete the folder and its contents. Missing folder is a no-op."""
        target = self._dbx_path(path)
        if not self._normalize(path):
            raise StoragePermissionError(path, "delete_directory")
        try:
            await self._call(
                path, "delete_directory", lambda: self._client.files_delete_v2(target)
            )
        except StorageNotFoundError:
            logger.debug("Dropbox folder %s already absent", target)
