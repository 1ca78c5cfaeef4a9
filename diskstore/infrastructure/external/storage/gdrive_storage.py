"""Google Drive storage using a service account and the Drive v3 API."""

from __future__ import annotations

import asyncio
import mimetypes
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from io import BytesIO
from typing import Any, TypeVar

import google_auth_httplib2
import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload

from diskstore.domain.enums import Visibility
from diskstore.domain.value_objects import FileMetadata
from diskstore.infrastructure.exceptions import (
    StorageAmbiguousPathError,
    StorageNotFoundError,
    StoragePermissionError,
    StorageTransportError,
)
from diskstore.infrastructure.external.storage.base import Content, to_bytes
from diskstore.infrastructure.external.storage.expirations import IndexedExpiryDriver
from diskstore.schemas.disk_config import GoogleDriveDiskConfig
from diskstore.shared.telemetry.logging import get_logger
from diskstore.shared.utils.datetime import ensure_utc
from diskstore.shared.utils.paths import base_name, join_path, parent_path

logger = get_logger(__name__)

_T = TypeVar("_T")

FOLDER_MIME = "application/vnd.google-apps.folder"
DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive"]
FILE_FIELDS = "id,name,mimeType,size,modifiedTime,parents"


def _escape(name: str) -> str:
    return name.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveStorageDriver(IndexedExpiryDriver):
    """Drive folder addressed by path.

    Drive has no paths, only parent links, so every path is resolved one
    segment at a time from folder_id with a name query. A segment matching
    more than one object raises StorageAmbiguousPathError. Writes to an
    existing name update that file instead of creating a duplicate.
    Visibility is an ``anyone``/``reader`` permission.
    """

    backend = "gdrive"
    EXPIRATIONS_FILE = ".gdrive-expirations.json"
    DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1MB

    def __init__(
        self,
        folder_id: str,
        client_email: str | None = None,
        private_key: str | None = None,
        token_uri: str = "https://oauth2.googleapis.com/token",
        timeout: float = 60.0,
        base_public_url: str | None = None,
        service: Any | None = None,
    ) -> None:
        """Initialize Drive API client.

        Args:
            folder_id: Drive folder that is the disk root.
            client_email: Service account email.
            private_key: Service account PEM private key.
            token_uri: OAuth token endpoint.
            timeout: HTTP timeout in seconds per request.
            base_public_url: Base URL for url().
            service: Prebuilt Drive service resource (tests).
        """
        super().__init__()
        self.folder_id = folder_id
        self.timeout = timeout
        self.base_public_url = base_public_url
        self._credentials: service_account.Credentials | None = None
        if service is not None:
            self._service = service
            return
        self._credentials = service_account.Credentials.from_service_account_info(
            {
                "type": "service_account",
                "client_email": client_email,
                "private_key": private_key,
                "token_uri": token_uri,
            },
            scopes=DRIVE_SCOPES,
        )
        self._service = build(
            "drive", "v3", credentials=self._credentials, cache_discovery=False
        )

    @classmethod
    def from_config(cls, config: GoogleDriveDiskConfig) -> "GoogleDriveStorageDriver":
        return cls(
            folder_id=config.folder_id,
            client_email=config.client_email,
            private_key=config.private_key.get_secret_value(),
            token_uri=config.token_uri,
            timeout=config.timeout,
            base_public_url=config.base_public_url,
        )

    # Transport

    def _new_http(self) -> google_auth_httplib2.AuthorizedHttp | None:
        """Fresh authorized HTTP per request; httplib2 objects are not thread safe."""
        if self._credentials is None:
            return None
        return google_auth_httplib2.AuthorizedHttp(
            self._credentials, http=httplib2.Http(timeout=self.timeout)
        )

    def _execute(self, request: Any) -> Any:
        http = self._new_http()
        if http is None:
            return request.execute()
        return request.execute(http=http)

    async def _call(self, path: str, operation: str, func: Callable[[], _T]) -> _T:
        """Run blocking Drive calls in a thread and map API errors."""
        try:
            return await asyncio.to_thread(func)
        except HttpError as e:
            if e.resp.status == 404:
                raise StorageNotFoundError(path) from e
            raise StorageTransportError(path, operation, str(e)) from e
        except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as e:
            raise StorageTransportError(path, operation, str(e)) from e

    # Path resolution (sync; runs inside _call)

    def _children(
        self, parent_id: str, name: str | None = None, folder: bool | None = None
    ) -> list[dict[str, Any]]:
        clauses = [f"'{parent_id}' in parents", "trashed = false"]
        if name is not None:
            clauses.append(f"name = '{_escape(name)}'")
        if folder is True:
            clauses.append(f"mimeType = '{FOLDER_MIME}'")
        elif folder is False:
            clauses.append(f"mimeType != '{FOLDER_MIME}'")
        found: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            request = self._service.files().list(
                q=" and ".join(clauses),
                fields=f"nextPageToken, files({FILE_FIELDS})",
                pageSize=1000,
                pageToken=page_token,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            )
            result = self._execute(request)
            found.extend(result.get("files", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return found

    def _find_one(
        self, parent_id: str, name: str, folder: bool | None, path: str
    ) -> dict[str, Any] | None:
        matches = self._children(parent_id, name, folder)
        if len(matches) > 1:
            raise StorageAmbiguousPathError(path, len(matches))
        return matches[0] if matches else None

    def _create_folder(self, parent_id: str, name: str) -> str:
        request = self._service.files().create(
            body={"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]},
            fields="id",
            supportsAllDrives=True,
        )
        return self._execute(request)["id"]

    def _resolve_folder(self, path: str, create: bool = False) -> str:
        """Folder id for path, creating missing segments when create is set."""
        folder_id = self.folder_id
        walked = ""
        for segment in filter(None, self._normalize(path).split("/")):
            walked = join_path(walked, segment)
            found = self._find_one(folder_id, segment, True, walked)
            if found is not None:
                folder_id = found["id"]
            elif create:
                folder_id = self._create_folder(folder_id, segment)
                logger.debug("Created Drive folder %s", walked)
            else:
                raise StorageNotFoundError(walked)
        return folder_id

    def _resolve_file(self, path: str) -> dict[str, Any]:
        remote = self._normalize(path)
        if not remote:
            raise StorageNotFoundError(path)
        parent_id = self._resolve_folder(parent_path(remote))
        found = self._find_one(parent_id, base_name(remote), False, remote)
        if found is None:
            raise StorageNotFoundError(path)
        return found

    def _lookup_file(self, path: str, create_parent: bool) -> tuple[str, dict[str, Any] | None]:
        """(parent folder id, existing file or None) for a write target."""
        remote = self._normalize(path)
        parent_id = self._resolve_folder(parent_path(remote), create=create_parent)
        return parent_id, self._find_one(parent_id, base_name(remote), False, remote)

    def _upload(self, path: str, data: bytes) -> str:
        """Create or update the file at path; returns its id."""
        remote = self._normalize(path)
        parent_id, existing = self._lookup_file(remote, create_parent=True)
        media = MediaIoBaseUpload(
            BytesIO(data),
            mimetype=mimetypes.guess_type(remote)[0] or "application/octet-stream",
            resumable=False,
        )
        files = self._service.files()
        if existing is not None:
            request = files.update(
                fileId=existing["id"], media_body=media, fields="id", supportsAllDrives=True
            )
        else:
            request = files.create(
                body={"name": base_name(remote), "parents": [parent_id]},
                media_body=media,
                fields="id",
                supportsAllDrives=True,
            )
        return self._execute(request)["id"]

    def _download(self, file_id: str) -> bytes:
        return self._execute(
            self._service.files().get_media(fileId=file_id, supportsAllDrives=True)
        )

    def _delete_id(self, file_id: str) -> None:
        self._execute(self._service.files().delete(fileId=file_id, supportsAllDrives=True))

    def _permissions(self, file_id: str) -> list[dict[str, Any]]:
        request = self._service.permissions().list(
            fileId=file_id, fields="permissions(id,type,role)", supportsAllDrives=True
        )
        return self._execute(request).get("permissions", [])

    def _apply_visibility(self, file_id: str, visibility: Visibility) -> None:
        public = [p for p in self._permissions(file_id) if p.get("type") == "anyone"]
        permissions = self._service.permissions()
        if visibility == Visibility.PUBLIC:
            if not public:
                self._execute(
                    permissions.create(
                        fileId=file_id,
                        body={"type": "anyone", "role": "reader"},
                        supportsAllDrives=True,
                    )
                )
            return
        for permission in public:
            self._execute(
                permissions.delete(
                    fileId=file_id, permissionId=permission["id"], supportsAllDrives=True
                )
            )

    def _visibility_of(self, file_id: str) -> Visibility:
        if any(p.get("type") == "anyone" for p in self._permissions(file_id)):
            return Visibility.PUBLIC
        return Visibility.PRIVATE

    def _walk(self, directory: str, recursive: bool, directories: bool) -> list[str]:
        results: list[str] = []
        pending = [("", self._resolve_folder(directory))]
        while pending:
            rel_dir, folder_id = pending.pop()
            for child in self._children(folder_id):
                rel = join_path(rel_dir, child["name"])
                if child.get("mimeType") == FOLDER_MIME:
                    if directories:
                        results.append(rel)
                    if recursive:
                        pending.append((rel, child["id"]))
                elif not directories:
                    results.append(rel)
        return sorted(results)

    # Mandatory operations

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        """Create or replace content; missing parent folders are created."""
        data = to_bytes(content)

        def _put() -> None:
            file_id = self._upload(path, data)
            if visibility is not None:
                self._apply_visibility(file_id, visibility)

        await self._call(path, "put", _put)

    async def get(self, path: str) -> bytes:
        return await self._call(
            path, "get", lambda: self._download(self._resolve_file(path)["id"])
        )

    async def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        """Download in DOWNLOAD_CHUNK_SIZE ranges, yielding each as it arrives."""
        file = await self._call(path, "create_read_stream", lambda: self._resolve_file(path))
        request = self._service.files().get_media(fileId=file["id"], supportsAllDrives=True)
        http = self._new_http()
        if http is not None:
            request.http = http
        buffer = BytesIO()
        downloader = MediaIoBaseDownload(buffer, request, chunksize=self.DOWNLOAD_CHUNK_SIZE)
        done = False
        while not done:
            _, done = await self._call(path, "create_read_stream", downloader.next_chunk)
            chunk = buffer.getvalue()
            buffer.seek(0)
            buffer.truncate()
            if chunk:
                yield chunk

    async def _delete_object(self, path: str) -> None:
        await self._call(
            path, "delete", lambda: self._delete_id(self._resolve_file(path)["id"])
        )

    async def exists(self, path: str) -> bool:
        """True if at least one file matches; duplicates still count as present."""
        try:
            await self._call(path, "exists", lambda: self._resolve_file(path))
        except StorageNotFoundError:
            return False
        except StorageAmbiguousPathError:
            return True
        return True

    async def copy(self, src: str, dest: str) -> None:
        """files.copy, or a content update when dest already exists."""
        dest_remote = self._normalize(dest)

        def _copy() -> None:
            source = self._resolve_file(src)
            parent_id, existing = self._lookup_file(dest_remote, create_parent=True)
            if existing is not None:
                self._upload(dest_remote, self._download(source["id"]))
                return
            self._execute(
                self._service.files().copy(
                    fileId=source["id"],
                    body={"name": base_name(dest_remote), "parents": [parent_id]},
                    fields="id",
                    supportsAllDrives=True,
                )
            )

        await self._call(src, "copy", _copy)

    async def move(self, src: str, dest: str) -> None:
        """Reparent and rename, or update dest and delete src when dest exists."""
        dest_remote = self._normalize(dest)

        def _move() -> None:
            source = self._resolve_file(src)
            parent_id, existing = self._lookup_file(dest_remote, create_parent=True)
            if existing is not None:
                self._upload(dest_remote, self._download(source["id"]))
                self._delete_id(source["id"])
                return
            self._execute(
                self._service.files().update(
                    fileId=source["id"],
                    addParents=parent_id,
                    removeParents=",".join(source.get("parents", [])),
                    body={"name": base_name(dest_remote)},
                    fields="id",
                    supportsAllDrives=True,
                )
            )

        await self._call(src, "move", _move)
        await self._expirations.move(self._normalize(src), dest_remote)

    async def _list(self, directory: str, recursive: bool, directories: bool) -> list[str]:
        try:
            paths = await self._call(
                directory, "list", lambda: self._walk(directory, recursive, directories)
            )
        except StorageNotFoundError:
            return []
        return self._hide_index(directory, paths)

    async def list_files(self, directory: str = "", recursive: bool = True) -> list[str]:
        return await self._list(directory, recursive, directories=False)

    async def list_directories(
        self, directory: str = "", recursive: bool = True
    ) -> list[str]:
        return await self._list(directory, recursive, directories=True)

    # Optional operations

    async def url(self, path: str) -> str:
        return self._public_url(path)

    async def get_metadata(self, path: str) -> FileMetadata:
        def _metadata() -> tuple[dict[str, Any], Visibility]:
            file = self._resolve_file(path)
            return file, self._visibility_of(file["id"])

        file, visibility = await self._call(path, "get_metadata", _metadata)
        modified = file.get("modifiedTime")
        return FileMetadata(
            path=self._normalize(path),
            size=int(file.get("size", 0)),
            mime_type=file.get("mimeType"),
            last_modified=ensure_utc(datetime.fromisoformat(modified)) if modified else None,
            visibility=visibility,
        )

    async def make_directory(self, path: str) -> None:
        await self._call(
            path, "make_directory", lambda: self._resolve_folder(path, create=True)
        )

    async def delete_directory(self, path: str) -> None:
        """Delete the folder and its contents. Missing folder is a no-op."""
        if not self._normalize(path):
            raise StoragePermissionError(path, "delete_directory")
        try:
            await self._call(
                path,
                "delete_directory",
                lambda: self._delete_id(self._resolve_folder(path)),
            )
        except StorageNotFoundError:
            logger.debug("Drive folder %s already absent", path)

    async def set_visibility(self, path: str, visibility: Visibility) -> None:
        await self._call(
            path,
            "set_visibility",
            lambda: self._apply_visibility(self._resolve_file(path)["id"], visibility),
        )

    async def get_visibility(self, path: str) -> Visibility:
        return await self._call(
            path,
            "get_visibility",
            lambda: self._visibility_of(self._resolve_file(path)["id"]),
        )
