"""BufferStorageDriver unit tests: in-memory contract, visibility, timed files."""

from datetime import timedelta

import pytest

from diskstore.domain.enums import Visibility
from diskstore.domain.exceptions import ValidationException
from diskstore.infrastructure.exceptions import (
    StorageNotFoundError,
    StorageNotSupportedError,
    StoragePermissionError,
)
from diskstore.shared.utils.datetime import utc_now


@pytest.mark.asyncio
async def test_put_get_roundtrip_encodes_str_as_utf8(buffer_driver) -> None:
    await buffer_driver.put("notes/a.txt", "héllo")
    assert await buffer_driver.get("notes/a.txt") == "héllo".encode()


@pytest.mark.asyncio
async def test_get_missing_raises_not_found(buffer_driver) -> None:
    with pytest.raises(StorageNotFoundError) as exc_info:
        await buffer_driver.get("missing.txt")
    assert exc_info.value.error_code == "STORAGE_NOT_FOUND"


@pytest.mark.asyncio
async def test_delete_missing_raises_not_found(buffer_driver) -> None:
    with pytest.raises(StorageNotFoundError):
        await buffer_driver.delete("missing.txt")


@pytest.mark.asyncio
async def test_exists_reflects_put_and_delete(buffer_driver) -> None:
    await buffer_driver.put("a.txt", b"x")
    assert await buffer_driver.exists("a.txt") is True
    await buffer_driver.delete("a.txt")
    assert await buffer_driver.exists("a.txt") is False


@pytest.mark.asyncio
async def test_copy_then_original_unchanged(buffer_driver) -> None:
    await buffer_driver.put("a.txt", b"data")
    await buffer_driver.copy("a.txt", "b.txt")
    assert await buffer_driver.get("a.txt") == b"data"
    assert await buffer_driver.get("b.txt") == b"data"


@pytest.mark.asyncio
async def test_move_removes_source(buffer_driver) -> None:
    await buffer_driver.put("a.txt", b"data")
    await buffer_driver.move("a.txt", "dir/b.txt")
    assert await buffer_driver.exists("a.txt") is False
    assert await buffer_driver.get("dir/b.txt") == b"data"


@pytest.mark.asyncio
async def test_copy_missing_source_raises_not_found(buffer_driver) -> None:
    with pytest.raises(StorageNotFoundError):
        await buffer_driver.copy("nope.txt", "b.txt")


@pytest.mark.asyncio
async def test_append_and_prepend_treat_missing_as_empty(buffer_driver) -> None:
    await buffer_driver.append("log.txt", "b")
    await buffer_driver.append("log.txt", "c")
    await buffer_driver.prepend("log.txt", "a")
    assert await buffer_driver.get("log.txt") == b"abc"


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["../x", "a/../../x", ".."])
async def test_path_escaping_root_is_permission_error(buffer_driver, path) -> None:
    with pytest.raises(StoragePermissionError):
        await buffer_driver.get(path)
    with pytest.raises(StoragePermissionError):
        await buffer_driver.put(path, b"x")
    with pytest.raises(StoragePermissionError):
        await buffer_driver.list_files(path)
    assert await buffer_driver.list_files() == []


@pytest.mark.asyncio
async def test_list_files_relative_and_non_recursive(buffer_driver) -> None:
    for path in ("docs/a.txt", "docs/sub/b.txt", "other/c.txt"):
        await buffer_driver.put(path, b"x")
    assert await buffer_driver.list_files("docs") == ["a.txt", "sub/b.txt"]
    assert await buffer_driver.list_files("docs", recursive=False) == ["a.txt"]
    assert await buffer_driver.list_directories("docs") == []


@pytest.mark.asyncio
async def test_delete_directory_removes_keys_under_prefix_only(buffer_driver) -> None:
    await buffer_driver.put("docs/a.txt", b"x")
    await buffer_driver.put("docs-archive/b.txt", b"x")
    await buffer_driver.delete_directory("docs")
    assert await buffer_driver.list_files() == ["docs-archive/b.txt"]


@pytest.mark.asyncio
async def test_new_file_defaults_private_and_visibility_can_change(buffer_driver) -> None:
    await buffer_driver.put("a.txt", b"x")
    assert await buffer_driver.get_visibility("a.txt") == Visibility.PRIVATE
    await buffer_driver.set_visibility("a.txt", Visibility.PUBLIC)
    assert await buffer_driver.get_visibility("a.txt") == Visibility.PUBLIC
    await buffer_driver.put("a.txt", b"y")
    assert await buffer_driver.get_visibility("a.txt") == Visibility.PUBLIC


@pytest.mark.asyncio
async def test_get_metadata_reports_size_and_mime(buffer_driver) -> None:
    await buffer_driver.put("img/logo.png", b"12345", Visibility.PUBLIC)
    meta = await buffer_driver.get_metadata("img/logo.png")
    assert meta.size == 5
    assert meta.mime_type == "image/png"
    assert meta.visibility == Visibility.PUBLIC
    assert meta.last_modified is not None


@pytest.mark.asyncio
async def test_create_read_stream_yields_content(buffer_driver) -> None:
    await buffer_driver.put("big.bin", b"a" * (buffer_driver.CHUNK_SIZE + 10))
    chunks = [chunk async for chunk in buffer_driver.create_read_stream("big.bin")]
    assert len(chunks) == 2
    assert b"".join(chunks) == b"a" * (buffer_driver.CHUNK_SIZE + 10)


@pytest.mark.asyncio
async def test_create_read_stream_missing_fails_on_iteration(buffer_driver) -> None:
    stream = buffer_driver.create_read_stream("missing.bin")
    with pytest.raises(StorageNotFoundError):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_url_and_temporary_url_not_supported(buffer_driver) -> None:
    await buffer_driver.put("a.txt", b"x")
    assert buffer_driver.supports("url") is False
    assert buffer_driver.supports("get_temporary_url") is False
    with pytest.raises(StorageNotSupportedError):
        await buffer_driver.url("a.txt")
    with pytest.raises(StorageNotSupportedError):
        await buffer_driver.get_temporary_url("a.txt", 60)


@pytest.mark.asyncio
async def test_supports_reports_implemented_optional_operations(buffer_driver) -> None:
    assert buffer_driver.supports("put_timed") is True
    assert buffer_driver.supports("delete_expired_files") is True
    assert buffer_driver.supports("get_metadata") is True
    assert buffer_driver.supports("no_such_operation") is False


class TestBufferTimedFiles:
    """put_timed and delete_expired_files on the in-memory driver."""

    @pytest.mark.asyncio
    async def test_zero_ttl_is_due_immediately(self, buffer_driver) -> None:
        await buffer_driver.put_timed("tmp.txt", b"x", ttl=0)
        await buffer_driver.put("keep.txt", b"y")
        assert await buffer_driver.delete_expired_files() == 1
        assert await buffer_driver.list_files() == ["keep.txt"]

    @pytest.mark.asyncio
    async def test_future_expiry_is_kept(self, buffer_driver) -> None:
        await buffer_driver.put_timed("tmp.txt", b"x", ttl=3600)
        assert await buffer_driver.delete_expired_files() == 0
        assert await buffer_driver.exists("tmp.txt") is True

    @pytest.mark.asyncio
    async def test_expires_at_wins_over_ttl(self, buffer_driver) -> None:
        past = utc_now() - timedelta(minutes=1)
        await buffer_driver.put_timed("tmp.txt", b"x", ttl=3600, expires_at=past)
        assert await buffer_driver.delete_expired_files() == 1

    @pytest.mark.asyncio
    async def test_neither_ttl_nor_expires_at_rejected_before_write(self, buffer_driver) -> None:
        with pytest.raises(ValidationException):
            await buffer_driver.put_timed("tmp.txt", b"x")
        assert await buffer_driver.exists("tmp.txt") is False

    @pytest.mark.asyncio
    async def test_copy_does_not_carry_expiry(self, buffer_driver) -> None:
        await buffer_driver.put_timed("tmp.txt", b"x", ttl=0)
        await buffer_driver.copy("tmp.txt", "copy.txt")
        assert await buffer_driver.delete_expired_files() == 1
        assert await buffer_driver.list_files() == ["copy.txt"]
