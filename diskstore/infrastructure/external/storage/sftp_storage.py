"""SFTP storage over paramiko. One SSH session per operation."""

from __future__ import annotations

import asyncio
import contextlib
import errno
import mimetypes
import stat
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from io import StringIO
from typing import TypeVar

import paramiko

from diskstore.domain.enums import Visibility
from diskstore.domain.value_objects import FileMetadata
from diskstore.infrastructure.exceptions import (
    StorageNotFoundError,
    StoragePermissionError,
    StorageTransportError,
)
from diskstore.infrastructure.external.storage.base import Content, to_bytes
from diskstore.infrastructure.external.storage.expirations import IndexedExpiryDriver
from diskstore.schemas.disk_config import SFTPDiskConfig
from diskstore.shared.telemetry.logging import get_logger
from diskstore.shared.utils.datetime import from_timestamp_utc
from diskstore.shared.utils.paths import ancestors, join_path, parent_path

logger = get_logger(__name__)

_T = TypeVar("_T")

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.RSAKey,
    paramiko.ECDSAKey,
    paramiko.Ed25519Key,
)


def load_private_key(pem: str, passphrase: str | None = None) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key of any supported type.

    Raises:
        ValueError: Key matches none of RSA, ECDSA, Ed25519.
    """
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(StringIO(pem), password=passphrase)
        except paramiko.SSHException:
            continue
    raise ValueError("Unsupported or invalid private key (expected RSA, ECDSA or Ed25519)")


class SFTPStorageDriver(IndexedExpiryDriver):
    """SFTP storage; visibility simulated with mode bits like local storage.

    Every call opens an SSH client and SFTP channel and closes both on every
    exit path. Unknown host keys are rejected unless allow_unknown_hosts.
    Uploads go to a temp name and are moved into place with posix-rename.
    """

    backend = "sftp"
    EXPIRATIONS_FILE = ".sftp-expirations.json"
    TEMP_PREFIX = ".tmp_"
    PUBLIC_MODE = 0o644
    PRIVATE_MODE = 0o600

    def __init__(
        self,
        host: str,
        username: str,
        port: int = 22,
        password: str | None = None,
        private_key: str | None = None,
        passphrase: str | None = None,
        known_hosts: str | None = None,
        allow_unknown_hosts: bool = False,
        root: str = "",
        timeout: float = 30.0,
        base_public_url: str | None = None,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
    ) -> None:
        """Initialize SFTP settings; no connection is opened here.

        Args:
            host: Server host name.
            username: SSH user.
            port: SSH port.
            password: Password authentication.
            private_key: PEM private key text (RSA, ECDSA or Ed25519).
            passphrase: Passphrase of an encrypted private key.
            known_hosts: Extra known_hosts file on top of the system one.
            allow_unknown_hosts: Accept and remember unknown host keys.
            root: Remote directory every path is relative to.
            timeout: Connect/auth/channel timeout in seconds.
            base_public_url: Base URL files are served from over HTTP.
            client_factory: Builds an unconnected SSHClient (tests).
        """
        super().__init__()
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self._pkey = load_private_key(private_key, passphrase) if private_key else None
        self.known_hosts = known_hosts
        self.allow_unknown_hosts = allow_unknown_hosts
        self.root = root
        self.timeout = timeout
        self.base_public_url = base_public_url
        self._client_factory = client_factory or paramiko.SSHClient

    @classmethod
    def from_config(cls, config: SFTPDiskConfig) -> "SFTPStorageDriver":
        return cls(
            host=config.host,
            port=config.port,
            username=config.username,
            password=config.password.get_secret_value() if config.password else None,
            private_key=config.private_key.get_secret_value() if config.private_key else None,
            passphrase=config.passphrase.get_secret_value() if config.passphrase else None,
            known_hosts=config.known_hosts,
            allow_unknown_hosts=config.allow_unknown_hosts,
            root=config.root,
            timeout=config.timeout,
            base_public_url=config.base_public_url,
        )

    # Sessions

    @contextlib.contextmanager
    def _session(self) -> Iterator[paramiko.SFTPClient]:
        client = self._client_factory()
        sftp: paramiko.SFTPClient | None = None
        try:
            client.load_system_host_keys()
            if self.known_hosts:
                client.load_host_keys(self.known_hosts)
            client.set_missing_host_key_policy(
                paramiko.AutoAddPolicy()
                if self.allow_unknown_hosts
                else paramiko.RejectPolicy()
            )
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self._password,
                pkey=self._pkey,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                look_for_keys=False,
                allow_agent=False,
            )
            sftp = client.open_sftp()
            sftp.get_channel().settimeout(self.timeout)
            if self.root:
                sftp.chdir(self.root)
            logger.debug("SFTP session opened to %s:%s", self.host, self.port)
            yield sftp
        finally:
            if sftp is not None:
                sftp.close()
            client.close()
            logger.debug("SFTP session closed to %s:%s", self.host, self.port)

    @contextlib.contextmanager
    def _errors(self, path: str, operation: str) -> Iterator[None]:
        """ENOENT is not found; SSH and other I/O failures are transport."""
        try:
            yield
        except FileNotFoundError as e:
            raise StorageNotFoundError(path) from e
        except (paramiko.SSHException, OSError) as e:
            if isinstance(e, OSError) and e.errno == errno.ENOENT:
                raise StorageNotFoundError(path) from e
            raise StorageTransportError(path, operation, str(e)) from e

    async def _run(
        self, path: str, operation: str, func: Callable[[paramiko.SFTPClient], _T]
    ) -> _T:
        """Run func against a fresh session in a worker thread."""

        def _with_session() -> _T:
            with self._session() as sftp:
                return func(sftp)

        with self._errors(path, operation):
            return await asyncio.to_thread(_with_session)

    # Protocol helpers (run inside a session)

    def _make_dirs(self, sftp: paramiko.SFTPClient, directory: str) -> None:
        for segment in ancestors(join_path(directory, "_")):
            try:
                sftp.stat(segment)
            except FileNotFoundError:
                sftp.mkdir(segment)

    def _mode_for(
        self, sftp: paramiko.SFTPClient, remote: str, visibility: Visibility | None
    ) -> int:
        if visibility is not None:
            return self.PUBLIC_MODE if visibility == Visibility.PUBLIC else self.PRIVATE_MODE
        try:
            return stat.S_IMODE(sftp.stat(remote).st_mode or self.PUBLIC_MODE)
        except FileNotFoundError:
            return self.PUBLIC_MODE

    def _store(
        self,
        sftp: paramiko.SFTPClient,
        remote: str,
        data: bytes,
        visibility: Visibility | None,
    ) -> None:
        directory = parent_path(remote)
        self._make_dirs(sftp, directory)
        mode = self._mode_for(sftp, remote, visibility)
        temp = join_path(directory, f"{self.TEMP_PREFIX}{uuid.uuid4().hex}")
        try:
            with sftp.open(temp, "wb") as f:
                f.write(data)
            sftp.chmod(temp, mode)
            sftp.posix_rename(temp, remote)
        except BaseException:
            with contextlib.suppress(OSError):
                sftp.remove(temp)
            raise

    def _retrieve(self, sftp: paramiko.SFTPClient, remote: str) -> bytes:
        with sftp.open(remote, "rb") as f:
            f.prefetch()
            return f.read()

    def _walk(
        self, sftp: paramiko.SFTPClient, directory: str, recursive: bool, directories: bool
    ) -> list[str]:
        base = self._normalize(directory)
        results: list[str] = []
        pending = [""]
        while pending:
            rel_dir = pending.pop()
            for attr in sftp.listdir_attr(join_path(base, rel_dir) or "."):
                rel = join_path(rel_dir, attr.filename)
                if stat.S_ISDIR(attr.st_mode or 0):
                    if directories:
                        results.append(rel)
                    if recursive:
                        pending.append(rel)
                elif not directories and not attr.filename.startswith(self.TEMP_PREFIX):
                    results.append(rel)
        return sorted(results)

    def _remove_tree(self, sftp: paramiko.SFTPClient, directory: str) -> None:
        for attr in sftp.listdir_attr(directory):
            child = join_path(directory, attr.filename)
            if stat.S_ISDIR(attr.st_mode or 0):
                self._remove_tree(sftp, child)
            else:
                sftp.remove(child)
        sftp.rmdir(directory)

    def _visibility_from_mode(self, mode: int | None) -> Visibility:
        if mode is not None and stat.S_IMODE(mode) == self.PUBLIC_MODE:
            return Visibility.PUBLIC
        return Visibility.PRIVATE

    # Mandatory operations

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        remote = self._normalize(path)
        data = to_bytes(content)
        await self._run(path, "put", lambda sftp: self._store(sftp, remote, data, visibility))

    async def get(self, path: str) -> bytes:
        remote = self._normalize(path)
        return await self._run(path, "get", lambda sftp: self._retrieve(sftp, remote))

    async def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        """Stream over one session held for the lifetime of the iterator."""
        remote = self._normalize(path)
        session = self._session()
        with self._errors(path, "create_read_stream"):
            sftp = await asyncio.to_thread(session.__enter__)
        try:
            with self._errors(path, "create_read_stream"):
                handle = await asyncio.to_thread(sftp.open, remote, "rb")
                try:
                    while True:
                        chunk = await asyncio.to_thread(handle.read, self.CHUNK_SIZE)
                        if not chunk:
                            break
                        yield chunk
                finally:
                    await asyncio.to_thread(handle.close)
        finally:
            await asyncio.to_thread(session.__exit__, None, None, None)

    async def _delete_object(self, path: str) -> None:
        remote = self._normalize(path)
        await self._run(path, "delete", lambda sftp: sftp.remove(remote))

    async def exists(self, path: str) -> bool:
        """Return True if a regular file exists at path."""
        remote = self._normalize(path)
        try:
            attrs = await self._run(path, "exists", lambda sftp: sftp.stat(remote))
        except StorageNotFoundError:
            return False
        return stat.S_ISREG(attrs.st_mode or 0)

    async def copy(self, src: str, dest: str) -> None:
        """Download then upload in one session; SFTP v3 has no server-side copy."""
        src_remote, dest_remote = self._normalize(src), self._normalize(dest)

        def _copy(sftp: paramiko.SFTPClient) -> None:
            data = self._retrieve(sftp, src_remote)
            self._store(sftp, dest_remote, data, None)

        await self._run(src, "copy", _copy)

    async def move(self, src: str, dest: str) -> None:
        """posix-rename; the expiry record follows the file."""
        src_remote, dest_remote = self._normalize(src), self._normalize(dest)

        def _rename(sftp: paramiko.SFTPClient) -> None:
            sftp.stat(src_remote)
            self._make_dirs(sftp, parent_path(dest_remote))
            sftp.posix_rename(src_remote, dest_remote)

        await self._run(src, "move", _rename)
        await self._expirations.move(src_remote, dest_remote)

    async def _list(self, directory: str, recursive: bool, directories: bool) -> list[str]:
        try:
            paths = await self._run(
                directory,
                "list",
                lambda sftp: self._walk(sftp, directory, recursive, directories),
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
        remote = self._normalize(path)
        attrs = await self._run(path, "get_metadata", lambda sftp: sftp.stat(remote))
        if not stat.S_ISREG(attrs.st_mode or 0):
            raise StorageNotFoundError(path)
        return FileMetadata(
            path=remote,
            size=attrs.st_size or 0,
            mime_type=mimetypes.guess_type(remote)[0],
            last_modified=from_timestamp_utc(attrs.st_mtime) if attrs.st_mtime else None,
            visibility=self._visibility_from_mode(attrs.st_mode),
        )

    async def make_directory(self, path: str) -> None:
        remote = self._normalize(path)
        await self._run(path, "make_directory", lambda sftp: self._make_dirs(sftp, remote))

    async def delete_directory(self, path: str) -> None:
        """Remove recursively. Missing directory is a no-op."""
        remote = self._normalize(path)
        if not remote:
            raise StoragePermissionError(path, "delete_directory")
        try:
            await self._run(
                path, "delete_directory", lambda sftp: self._remove_tree(sftp, remote)
            )
        except StorageNotFoundError:
            logger.debug("SFTP directory %s already absent", remote)

    async def set_visibility(self, path: str, visibility: Visibility) -> None:
        remote = self._normalize(path)
        mode = self.PUBLIC_MODE if visibility == Visibility.PUBLIC else self.PRIVATE_MODE
        await self._run(path, "set_visibility", lambda sftp: sftp.chmod(remote, mode))

    async def get_visibility(self, path: str) -> Visibility:
        """0644 is public; any other mode reads as private."""
        remote = self._normalize(path)
        attrs = await self._run(path, "get_visibility", lambda sftp: sftp.stat(remote))
        return self._visibility_from_mode(attrs.st_mode)
