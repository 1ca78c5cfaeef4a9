"""UploadService unit tests: validation, naming and storing."""

import re

import pytest

from diskstore.application.services.file_storage_service import FileStorageService
from diskstore.application.services.upload_service import (
    FileSizeValidator,
    FileTypeValidator,
    UploadedFile,
    UploadService,
    original_filename,
    timestamp_filename,
    uuid_filename,
)
from diskstore.domain.enums import Visibility
from diskstore.domain.exceptions import ValidationException
from diskstore.schemas.disk_config import BufferDiskConfig, StorageConfig


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


@pytest.fixture
def storage() -> FileStorageService:
    return FileStorageService(
        StorageConfig(
            default="main", disks={"main": BufferDiskConfig(), "other": BufferDiskConfig()}
        )
    )


class TestFilenameStrategies:
    def test_original_strips_directories(self) -> None:
        assert original_filename("../../etc/passwd") == "passwd"
        assert original_filename("C:\\Users\\me\\photo.JPG") == "photo.JPG"

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValidationException):
            original_filename("../")

    def test_uuid_keeps_lowercase_extension(self) -> None:
        assert re.fullmatch(r"[0-9a-f]{32}\.jpg", uuid_filename("photo.JPG"))
        assert re.fullmatch(r"[0-9a-f]{32}", uuid_filename("README"))

    def test_timestamp_prefix(self) -> None:
        assert re.fullmatch(r"\d{13}_report\.pdf", timestamp_filename("report.pdf"))


class TestValidators:
    def test_size_limits(self) -> None:
        validator = FileSizeValidator(min_size=2, max_size=4)
        validator.validate_size(3, final=True)
        validator.validate_size(1, final=False)
        with pytest.raises(ValidationException, match="too large"):
            validator.validate_size(5, final=False)
        with pytest.raises(ValidationException, match="too small"):
            validator.validate_size(1, final=True)

    def test_type_allow_lists(self) -> None:
        validator = FileTypeValidator(
            allowed_mime_types=["image/png"], allowed_extensions=[".PNG"]
        )
        validator.validate_type("a.png", "IMAGE/PNG")
        with pytest.raises(ValidationException, match="Invalid file type"):
            validator.validate_type("a.png", "text/plain")
        with pytest.raises(ValidationException, match="Invalid file extension"):
            validator.validate_type("a.gif", "image/png")


class TestStore:
    @pytest.mark.asyncio
    async def test_store_uses_strategy_and_directory(self, storage) -> None:
        service = UploadService(storage, filename_strategy=original_filename)
        stored = await service.store(
            UploadedFile(filename="report.pdf", content=b"%PDF"),
            directory="docs",
            visibility=Visibility.PUBLIC,
        )
        assert stored.storage_path == "docs/report.pdf"
        assert stored.disk == "main"
        assert stored.content_type == "application/pdf"
        assert stored.size == 4
        assert await storage.get("docs/report.pdf") == b"%PDF"
        assert await storage.disk().get_visibility("docs/report.pdf") == Visibility.PUBLIC

    @pytest.mark.asyncio
    async def test_per_call_strategy_wins(self, storage) -> None:
        service = UploadService(storage, filename_strategy=uuid_filename)
        stored = await service.store(
            UploadedFile(filename="a.txt", content=b"x"),
            disk="other",
            filename_strategy=original_filename,
        )
        assert stored.storage_path == "a.txt"
        assert stored.disk == "other"
        assert await storage.exists("a.txt", disk="other") is True

    @pytest.mark.asyncio
    async def test_rejected_upload_not_stored(self, storage) -> None:
        service = UploadService(storage, validators=[FileSizeValidator(max_size=2)])
        with pytest.raises(ValidationException):
            await service.store(UploadedFile(filename="a.txt", content=b"abc"))
        assert await storage.list_files() == []

    @pytest.mark.asyncio
    async def test_client_content_type_preferred(self, storage) -> None:
        service = UploadService(
            storage, validators=[FileTypeValidator(allowed_mime_types=["image/webp"])]
        )
        stored = await service.store(
            UploadedFile(filename="a.bin", content=b"x", content_type="image/webp")
        )
        assert stored.content_type == "image/webp"


class TestStoreStream:
    @pytest.mark.asyncio
    async def test_stream_stored_with_size(self, storage) -> None:
        service = UploadService(storage, filename_strategy=original_filename)
        stored = await service.store_stream(_chunks(b"ab", b"cd"), "a.txt")
        assert stored.size == 4
        assert await storage.get("a.txt") == b"abcd"

    @pytest.mark.asyncio
    async def test_oversized_stream_fails_midway(self, storage) -> None:
        service = UploadService(
            storage, filename_strategy=original_filename, validators=[FileSizeValidator(max_size=3)]
        )
        with pytest.raises(ValidationException, match="too large"):
            await service.store_stream(_chunks(b"ab", b"cd"), "a.txt")
        assert await storage.exists("a.txt") is False

    @pytest.mark.asyncio
    async def test_undersized_stream_removed(self, storage) -> None:
        service = UploadService(
            storage, filename_strategy=original_filename, validators=[FileSizeValidator(min_size=10)]
        )
        with pytest.raises(ValidationException, match="too small"):
            await service.store_stream(_chunks(b"ab"), "a.txt")
        assert await storage.exists("a.txt") is False

    @pytest.mark.asyncio
    async def test_type_checked_before_any_byte(self, storage) -> None:
        consumed = []

        async def tracked():
            consumed.append(True)
            yield b"x"

        service = UploadService(storage, validators=[FileTypeValidator(allowed_extensions=["png"])])
        with pytest.raises(ValidationException):
            await service.store_stream(tracked(), "a.exe")
        assert consumed == []
