"""FTP / FTPS storage. One ftplib session per operation."""

from __future__ import annotations

import asyncio
import contextlib
import ftplib
import mimetypes
import posixpath
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import datetime
from io import BytesIO
from typing import Any, TypeVar

from diskstore.domain.enums import Visibility
from diskstore.domain.value_objects import FileMetadata
from diskstore.infrastructure.exceptions import (
    StorageDirectoryDeleteError,
    StorageNotFoundError,
    StoragePermissionError,
    StorageTransportError,
)
from diskstore.infrastructure.external.storage.base import Content, to_bytes
from diskstore.infrastructure.external.storage.expirations import IndexedExpiryDriver
from diskstore.schemas.disk_config import FTPDiskConfig
from diskstore.shared.telemetry.logging import get_logger
from diskstore.shared.utils.datetime import ensure_utc
from diskstore.shared.utils.paths import ancestors, join_path, parent_path

logger = get_logger(__name__)

_T = TypeVar("_T")

# Replies meaning "command not implemented", used to detect servers without MLSD.
_UNSUPPORTED_REPLIES = ("500", "501", "502", "504")


class FTPStorageDriver(IndexedExpiryDriver):
    """FTP storage; FTPS (explicit TLS, protected data channel) when secure.

    Every call opens a session, cds into root and quits on every exit path;
    sessions are never shared between calls. Uploads go to a temp name and
    are renamed into place. Visibility is not supported.
    """

    backend = "ftp"
    EXPIRATIONS_FILE = ".ftp-expirations.json"
    TEMP_PREFIX = ".tmp_"

    def __init__(
        self,
        host: str,
        port: int = 21,
        user: str = "anonymous",
        password: str = "",
        secure: bool = False,
        root: str = "",
        timeout: float = 30.0,
        base_public_url: str | None = None,
        ftp_factory: Callable[[], ftplib.FTP] | None = None,
    ) -> None:
        """Initialize FTP settings; no connection is opened here.

        Args:
            host: Server host name.
            port: Control port.
            user: Login name.
            password: Login password.
            secure: Use FTP_TLS and switch the data channel to TLS.
            root: Directory every path is relative to.
            timeout: Socket timeout in seconds.
            base_public_url: Base URL files are served from over HTTP.
            ftp_factory: Builds an unconnected ftplib client (tests).
        """
        super().__init__()
        self.host = host
        self.port = port
        self.user = user
        self._password = password
        self.secure = secure
        self.root = root
        self.timeout = timeout
        self.base_public_url = base_public_url
        self._ftp_factory = ftp_factory or (ftplib.FTP_TLS if secure else ftplib.FTP)

    @classmethod
    def from_config(cls, config: FTPDiskConfig) -> "FTPStorageDriver":
        return cls(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password.get_secret_value(),
            secure=config.secure,
            root=config.root,
            timeout=config.timeout,
            base_public_url=config.base_public_url,
        )

    # Sessions

    def _open(self) -> ftplib.FTP:
        ftp = self._ftp_factory()
        try:
            ftp.connect(self.host, self.port, timeout=self.timeout)
            ftp.login(self.user, self._password)
            if self.secure and isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
            if self.root:
                ftp.cwd(self.root)
        except BaseException:
            ftp.close()
            raise
        logger.debug("FTP session opened to %s:%s", self.host, self.port)
        return ftp

    def _close(self, ftp: ftplib.FTP) -> None:
        try:
            ftp.quit()
        except ftplib.all_errors:
            ftp.close()
        logger.debug("FTP session closed to %s:%s", self.host, self.port)

    @contextlib.contextmanager
    def _session(self) -> Iterator[ftplib.FTP]:
        ftp = self._open()
        try:
            yield ftp
        finally:
            self._close(ftp)

    @contextlib.contextmanager
    def _errors(self, path: str, operation: str) -> Iterator[None]:
        """Map ftplib errors: 550 is not found, anything else is transport."""
        try:
            yield
        except ftplib.error_perm as e:
            if str(e).startswith("550"):
                raise StorageNotFoundError(path) from e
            raise StorageTransportError(path, operation, str(e)) from e
        except ftplib.all_errors as e:
            raise StorageTransportError(path, operation, str(e)) from e

    async def _run(self, path: str, operation: str, func: Callable[[ftplib.FTP], _T]) -> _T:
        """Run func against a fresh session in a worker thread."""

        def _with_session() -> _T:
            with self._session() as ftp:
                return func(ftp)

        with self._errors(path, operation):
            return await asyncio.to_thread(_with_session)

    # Protocol helpers (run inside a session)

    def _make_dirs(self, ftp: ftplib.FTP, directory: str) -> None:
        for segment in ancestors(join_path(directory, "_")):
            try:
                ftp.mkd(segment)
            except ftplib.error_perm:
                # Already exists; a real failure surfaces on the next command.
                continue

    def _store(self, ftp: ftplib.FTP, remote: str, data: bytes) -> None:
        """Upload to a temp name in the target directory, then rename over remote."""
        directory = parent_path(remote)
        self._make_dirs(ftp, directory)
        temp = join_path(directory, f"{self.TEMP_PREFIX}{uuid.uuid4().hex}")
        ftp.storbinary(f"STOR {temp}", BytesIO(data))
        try:
            try:
                ftp.rename(temp, remote)
            except ftplib.error_perm:
                # Some servers refuse RNTO onto an existing file.
                ftp.delete(remote)
                ftp.rename(temp, remote)
        except ftplib.all_errors:
            with contextlib.suppress(*ftplib.all_errors):
                ftp.delete(temp)
            raise

    def _retrieve(self, ftp: ftplib.FTP, remote: str) -> bytes:
        buffer = BytesIO()
        ftp.retrbinary(f"RETR {remote}", buffer.write)
        return buffer.getvalue()

    def _entries(self, ftp: ftplib.FTP, directory: str) -> list[tuple[str, bool]]:
        """(name, is_dir) pairs in directory; MLSD with NLST + CWD fallback."""
        try:
            return [
                (name, facts.get("type") == "dir")
                for name, facts in ftp.mlsd(directory, facts=["type"])
                if facts.get("type") in ("file", "dir")
            ]
        except ftplib.error_perm as e:
            if not str(e).startswith(_UNSUPPORTED_REPLIES):
                raise
        logger.debug("MLSD unsupported on %s; falling back to NLST", self.host)
        home = ftp.pwd()
        names = ftp.nlst(directory) if directory else ftp.nlst()
        entries = []
        for raw in names:
            name = posixpath.basename(raw.rstrip("/"))
            if name in ("", ".", ".."):
                continue
            try:
                ftp.cwd(join_path(directory, name))
                is_dir = True
            except ftplib.error_perm:
                is_dir = False
            finally:
                ftp.cwd(home)
            entries.append((name, is_dir))
        return entries

    def _walk(
        self, ftp: ftplib.FTP, directory: str, recursive: bool, directories: bool
    ) -> list[str]:
        base = self._normalize(directory)
        results: list[str] = []
        pending = [""]
        while pending:
            rel_dir = pending.pop()
            for name, is_dir in self._entries(ftp, join_path(base, rel_dir)):
                rel = join_path(rel_dir, name)
                if is_dir:
                    if directories:
                        results.append(rel)
                    if recursive:
                        pending.append(rel)
                elif not directories and not name.startswith(self.TEMP_PREFIX):
                    results.append(rel)
        return sorted(results)

    def _is_directory(self, ftp: ftplib.FTP, directory: str) -> bool:
        home = ftp.pwd()
        try:
            ftp.cwd(directory)
        except ftplib.error_perm as e:
            if str(e).startswith("550"):
                return False
            raise
        ftp.cwd(home)
        return True

    def _remove_tree(self, ftp: ftplib.FTP, directory: str, removed: list[str]) -> None:
        for name, is_dir in self._entries(ftp, directory):
            child = join_path(directory, name)
            if is_dir:
                self._remove_tree(ftp, child, removed)
            else:
                ftp.delete(child)
                removed.append(child)
        ftp.rmd(directory)

    def _delete_tree(self, ftp: ftplib.FTP, directory: str) -> None:
        """Remove directory recursively; a missing top directory is a no-op.

        Any failure after the walk has started is a partial delete.
        """
        if not self._is_directory(ftp, directory):
            logger.debug("FTP directory %s already absent", directory)
            return
        removed: list[str] = []
        try:
            self._remove_tree(ftp, directory, removed)
        except ftplib.all_errors as e:
            logger.warning(
                "FTP delete of %s stopped after %d files: %s", directory, len(removed), e
            )
            raise StorageDirectoryDeleteError(directory, len(removed), [directory]) from e

    # Mandatory operations

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        """Upload content; visibility is ignored (FTP has no portable permission model)."""
        remote = self._normalize(path)
        data = to_bytes(content)
        await self._run(path, "put", lambda ftp: self._store(ftp, remote, data))

    async def get(self, path: str) -> bytes:
        remote = self._normalize(path)
        return await self._run(path, "get", lambda ftp: self._retrieve(ftp, remote))

    async def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        """Stream over one session held for the lifetime of the iterator."""
        remote = self._normalize(path)
        with self._errors(path, "create_read_stream"):
            ftp = await asyncio.to_thread(self._open)
        try:
            with self._errors(path, "create_read_stream"):

                def _start() -> Any:
                    ftp.voidcmd("TYPE I")
                    return ftp.transfercmd(f"RETR {remote}")

                conn = await asyncio.to_thread(_start)
                try:
                    while True:
                        chunk = await asyncio.to_thread(conn.recv, self.CHUNK_SIZE)
                        if not chunk:
                            break
                        yield chunk
                finally:
                    conn.close()
                await asyncio.to_thread(ftp.voidresp)
        finally:
            await asyncio.to_thread(self._close, ftp)

    async def _delete_object(self, path: str) -> None:
        remote = self._normalize(path)
        await self._run(path, "delete", lambda ftp: ftp.delete(remote))

    async def exists(self, path: str) -> bool:
        """Look the name up in its parent listing."""
        remote = self._normalize(path)
        name = posixpath.basename(remote)
        try:
            entries = await self._run(
                path, "exists", lambda ftp: self._entries(ftp, parent_path(remote))
            )
        except StorageNotFoundError:
            return False
        return (name, False) in entries

    async def copy(self, src: str, dest: str) -> None:
        """Download then upload in one session; FTP has no server-side copy."""
        src_remote, dest_remote = self._normalize(src), self._normalize(dest)

        def _copy(ftp: ftplib.FTP) -> None:
            data = self._retrieve(ftp, src_remote)
            self._store(ftp, dest_remote, data)

        await self._run(src, "copy", _copy)

    async def move(self, src: str, dest: str) -> None:
        """RNFR/RNTO; the expiry record follows the file."""
        src_remote, dest_remote = self._normalize(src), self._normalize(dest)

        def _rename(ftp: ftplib.FTP) -> None:
            self._make_dirs(ftp, parent_path(dest_remote))
            ftp.rename(src_remote, dest_remote)

        await self._run(src, "move", _rename)
        await self._expirations.move(src_remote, dest_remote)

    async def _list(self, directory: str, recursive: bool, directories: bool) -> list[str]:
        try:
            paths = await self._run(
                directory,
                "list",
                lambda ftp: self._walk(ftp, directory, recursive, directories),
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
        """SIZE and MDTM; MIME type guessed from the name."""
        remote = self._normalize(path)

        def _stat(ftp: ftplib.FTP) -> tuple[int, datetime | None]:
            ftp.voidcmd("TYPE I")
            size = ftp.size(remote)
            try:
                reply = ftp.voidcmd(f"MDTM {remote}")
                stamp = reply[4:].strip()[:14]
                modified = ensure_utc(datetime.strptime(stamp, "%Y%m%d%H%M%S"))
            except (ftplib.error_perm, ValueError):
                modified = None
            return size or 0, modified

        size, modified = await self._run(path, "get_metadata", _stat)
        return FileMetadata(
            path=remote,
            size=size,
            mime_type=mimetypes.guess_type(remote)[0],
            last_modified=modified,
        )

    async def make_directory(self, path: str) -> None:
        remote = self._normalize(path)
        await self._run(path, "make_directory", lambda ftp: self._make_dirs(ftp, remote))

    async def delete_directory(self, path: str) -> None:
        """Remove recursively. Missing directory is a no-op."""
        remote = self._normalize(path)
        if not remote:
            raise StoragePermissionError(path, "delete_directory")
        await self._run(path, "delete_directory", lambda ftp: self._delete_tree(ftp, remote))
