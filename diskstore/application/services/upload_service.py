"""Upload glue: validate an incoming file, name it and store it on a disk.

Framework-agnostic: callers pass plain bytes (or an async byte iterator)
plus the client filename. Nothing here knows about HTTP requests.
"""

from __future__ import annotations

import mimetypes
import os
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass

from diskstore.application.services.file_storage_service import FileStorageService
from diskstore.domain.enums import Visibility
from diskstore.domain.exceptions import ValidationException
from diskstore.domain.value_objects import StoredFile
from diskstore.infrastructure.exceptions import StorageNotFoundError
from diskstore.shared.telemetry.logging import get_logger
from diskstore.shared.utils.datetime import utc_now_ms
from diskstore.shared.utils.paths import join_path

logger = get_logger(__name__)

FilenameStrategy = Callable[[str], str]


@dataclass(frozen=True)
class UploadedFile:
    """An uploaded file as received from the client."""

    filename: str
    content: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)


def _sanitize_filename(filename: str) -> str:
    """Strip path separators and dangerous characters from filename."""
    name = os.path.basename(filename.replace("\\", "/"))
    name = name.replace("\x00", "").strip(". ")
    if not name:
        raise ValidationException("Filename is empty or invalid after sanitization", field="filename")
    return name


def _extension(filename: str) -> str:
    """Lowercase extension without the dot, or ""."""
    return os.path.splitext(filename)[1].lstrip(".").lower()


# Filename strategies


def original_filename(filename: str) -> str:
    """Keep the client's name (sanitized basename)."""
    return _sanitize_filename(filename)


def uuid_filename(filename: str) -> str:
    """Random uuid4 hex plus the original extension."""
    ext = _extension(_sanitize_filename(filename))
    return f"{uuid.uuid4().hex}.{ext}" if ext else uuid.uuid4().hex


def timestamp_filename(filename: str) -> str:
    """Epoch milliseconds prefix plus the sanitized original name."""
    return f"{utc_now_ms()}_{_sanitize_filename(filename)}"


# Validators


class UploadValidator:
    """Hooks called before and during storing; defaults accept everything."""

    def validate_type(self, filename: str, content_type: str | None) -> None:
        """Called once before any byte is stored."""

    def validate_size(self, size: int, final: bool) -> None:
        """Called with the running size while streaming and once with final=True."""


class FileSizeValidator(UploadValidator):
    """Reject uploads outside [min_size, max_size] bytes."""

    def __init__(self, min_size: int | None = None, max_size: int | None = None) -> None:
        self.min_size = min_size
        self.max_size = max_size

    def validate_size(self, size: int, final: bool) -> None:
        if self.max_size is not None and size > self.max_size:
            raise ValidationException(
                f"File is too large. Maximum size is {self.max_size} bytes.", field="size"
            )
        if final and self.min_size is not None and size < self.min_size:
            raise ValidationException(
                f"File is too small. Minimum size is {self.min_size} bytes.", field="size"
            )


class FileTypeValidator(UploadValidator):
    """Allow-list of MIME types and/or extensions (extensions without the dot)."""

    def __init__(
        self,
        allowed_mime_types: Sequence[str] | None = None,
        allowed_extensions: Sequence[str] | None = None,
    ) -> None:
        self.allowed_mime_types = (
            {m.lower() for m in allowed_mime_types} if allowed_mime_types is not None else None
        )
        self.allowed_extensions = (
            {e.lower().lstrip(".") for e in allowed_extensions}
            if allowed_extensions is not None
            else None
        )

    def validate_type(self, filename: str, content_type: str | None) -> None:
        if self.allowed_mime_types is not None:
            if not content_type or content_type.lower() not in self.allowed_mime_types:
                raise ValidationException(
                    f"Invalid file type: {content_type}", field="content_type"
                )
        if self.allowed_extensions is not None:
            ext = _extension(filename)
            if not ext or ext not in self.allowed_extensions:
                raise ValidationException(
                    f"Invalid file extension: .{ext}", field="filename"
                )


class UploadService:
    """Single responsibility: validate, name and store uploaded files."""

    def __init__(
        self,
        storage: FileStorageService,
        filename_strategy: FilenameStrategy = uuid_filename,
        validators: Sequence[UploadValidator] = (),
    ) -> None:
        self.storage = storage
        self.filename_strategy = filename_strategy
        self.validators = list(validators)

    def _storage_path(
        self, filename: str, directory: str, strategy: FilenameStrategy | None
    ) -> str:
        return join_path(directory, (strategy or self.filename_strategy)(filename))

    def _validate_type(self, filename: str, content_type: str | None) -> None:
        for validator in self.validators:
            validator.validate_type(filename, content_type)

    def _validate_size(self, size: int, final: bool) -> None:
        for validator in self.validators:
            validator.validate_size(size, final)

    async def store(
        self,
        upload: UploadedFile,
        disk: str | None = None,
        directory: str = "",
        visibility: Visibility | None = None,
        filename_strategy: FilenameStrategy | None = None,
    ) -> StoredFile:
        """Validate and store an in-memory upload.

        Args:
            upload: File received from the client.
            disk: Target disk; default disk when None.
            directory: Directory under the disk root.
            visibility: Visibility to store with.
            filename_strategy: Overrides the service-wide strategy for this call.

        Raises:
            ValidationException: A validator rejected the file.
        """
        content_type = upload.content_type or mimetypes.guess_type(upload.filename)[0]
        self._validate_type(upload.filename, content_type)
        self._validate_size(upload.size, final=True)
        path = self._storage_path(upload.filename, directory, filename_strategy)
        await self.storage.put(path, upload.content, visibility=visibility, disk=disk)
        logger.debug("Stored upload %s as %s", upload.filename, path)
        return StoredFile(
            storage_path=path,
            disk=disk or self.storage.default_disk,
            filename=upload.filename,
            content_type=content_type,
            size=upload.size,
        )

    async def store_stream(
        self,
        chunks: AsyncIterator[bytes],
        filename: str,
        content_type: str | None = None,
        disk: str | None = None,
        directory: str = "",
        visibility: Visibility | None = None,
        filename_strategy: FilenameStrategy | None = None,
    ) -> StoredFile:
        """Validate and store a streamed upload.

        The size limit is enforced while streaming, so an oversized upload
        fails before it is fully written. A file below the minimum size is
        removed after the fact.
        """
        content_type = content_type or mimetypes.guess_type(filename)[0]
        self._validate_type(filename, content_type)
        path = self._storage_path(filename, directory, filename_strategy)
        size = 0

        async def _counted() -> AsyncIterator[bytes]:
            nonlocal size
            async for chunk in chunks:
                size += len(chunk)
                self._validate_size(size, final=False)
                yield chunk

        await self.storage.put_stream(path, _counted(), visibility=visibility, disk=disk)
        try:
            self._validate_size(size, final=True)
        except ValidationException:
            try:
                await self.storage.delete(path, disk=disk)
            except StorageNotFoundError:
                logger.debug("Rejected upload %s was already gone", path)
            raise
        return StoredFile(
            storage_path=path,
            disk=disk or self.storage.default_disk,
            filename=filename,
            content_type=content_type,
            size=size,
        )
