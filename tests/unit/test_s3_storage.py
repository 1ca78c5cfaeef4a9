"""S3StorageDriver unit tests against a mocked boto3 client."""

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from diskstore.domain.enums import Visibility
from diskstore.domain.exceptions import ValidationException
from diskstore.infrastructure.exceptions import (
    StorageDirectoryDeleteError,
    StorageNotFoundError,
    StorageNotSupportedError,
    StoragePermissionError,
    StorageTransportError,
)
from diskstore.infrastructure.external.storage.s3_storage import (
    ALL_USERS_URI,
    S3StorageDriver,
)


def _client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def driver(client) -> S3StorageDriver:
    return S3StorageDriver(bucket="media", region="eu-west-1", client=client)


def _paginate(client: MagicMock, *pages: dict) -> None:
    paginator = MagicMock()
    paginator.paginate.return_value = list(pages)
    client.get_paginator.return_value = paginator


class TestS3Objects:
    @pytest.mark.asyncio
    async def test_path_escaping_root_is_permission_error(self, driver, client) -> None:
        with pytest.raises(StoragePermissionError):
            await driver.exists("../x")
        with pytest.raises(StoragePermissionError):
            await driver.copy("a.txt", "docs/../../b.txt")
        with pytest.raises(StoragePermissionError):
            await driver.list_files("..")
        client.head_object.assert_not_called()
        client.copy_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_put_sets_acl_and_content_type(self, driver, client) -> None:
        await driver.put("/img/logo.png", b"x", Visibility.PUBLIC)
        client.put_object.assert_called_once_with(
            Body=b"x",
            Bucket="media",
            Key="img/logo.png",
            ContentType="image/png",
            ACL="public-read",
        )

    @pytest.mark.asyncio
    async def test_put_without_visibility_omits_acl(self, driver, client) -> None:
        await driver.put("a.bin", "text")
        kwargs = client.put_object.call_args.kwargs
        assert "ACL" not in kwargs
        assert kwargs["Body"] == b"text"

    @pytest.mark.asyncio
    async def test_get_reads_body(self, driver, client) -> None:
        client.get_object.return_value = {"Body": io.BytesIO(b"content")}
        assert await driver.get("a.txt") == b"content"

    @pytest.mark.asyncio
    async def test_get_no_such_key_is_not_found(self, driver, client) -> None:
        client.get_object.side_effect = _client_error("NoSuchKey", "GetObject")
        with pytest.raises(StorageNotFoundError):
            await driver.get("a.txt")

    @pytest.mark.asyncio
    async def test_access_denied_is_transport_error(self, driver, client) -> None:
        client.get_object.side_effect = _client_error("AccessDenied", "GetObject")
        with pytest.raises(StorageTransportError) as exc_info:
            await driver.get("a.txt")
        assert exc_info.value.details["operation"] == "get"

    @pytest.mark.asyncio
    async def test_connection_failure_is_transport_error(self, driver, client) -> None:
        client.head_object.side_effect = EndpointConnectionError(endpoint_url="https://s3")
        with pytest.raises(StorageTransportError):
            await driver.exists("a.txt")

    @pytest.mark.asyncio
    async def test_exists(self, driver, client) -> None:
        client.head_object.return_value = {"ContentLength": 1}
        assert await driver.exists("a.txt") is True
        client.head_object.side_effect = _client_error("404")
        assert await driver.exists("a.txt") is False

    @pytest.mark.asyncio
    async def test_delete_missing_raises_before_delete_call(self, driver, client) -> None:
        client.head_object.side_effect = _client_error("404")
        with pytest.raises(StorageNotFoundError):
            await driver.delete("a.txt")
        client.delete_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_copy_is_server_side_without_tags(self, driver, client) -> None:
        await driver.copy("a.txt", "b.txt")
        client.copy_object.assert_called_once_with(
            Bucket="media",
            Key="b.txt",
            CopySource={"Bucket": "media", "Key": "a.txt"},
            TaggingDirective="REPLACE",
        )
        client.get_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_move_keeps_tags_then_deletes_source(self, driver, client) -> None:
        client.head_object.return_value = {}
        await driver.move("a.txt", "b.txt")
        assert client.copy_object.call_args.kwargs["TaggingDirective"] == "COPY"
        client.delete_object.assert_called_once_with(Bucket="media", Key="a.txt")

    @pytest.mark.asyncio
    async def test_create_read_stream_chunks_and_closes(self, driver, client) -> None:
        body = MagicMock()
        body.read.side_effect = [b"ab", b"cd", b""]
        client.get_object.return_value = {"Body": body}
        assert [c async for c in driver.create_read_stream("a.txt")] == [b"ab", b"cd"]
        body.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_get_metadata(self, driver, client) -> None:
        client.head_object.return_value = {"ContentLength": 3, "ContentType": "text/plain"}
        client.get_object_acl.return_value = {"Grants": []}
        meta = await driver.get_metadata("a.txt")
        assert meta.size == 3
        assert meta.mime_type == "text/plain"
        assert meta.visibility == Visibility.PRIVATE


class TestS3Listing:
    @pytest.mark.asyncio
    async def test_list_files_recursive_skips_markers(self, driver, client) -> None:
        _paginate(
            client,
            {"Contents": [{"Key": "docs/a.txt"}, {"Key": "docs/sub/"}]},
            {"Contents": [{"Key": "docs/sub/b.txt"}]},
        )
        assert await driver.list_files("docs") == ["a.txt", "sub/b.txt"]
        client.get_paginator.return_value.paginate.assert_called_once_with(
            Bucket="media", Prefix="docs/"
        )

    @pytest.mark.asyncio
    async def test_list_files_flat_uses_delimiter(self, driver, client) -> None:
        _paginate(client, {"Contents": [{"Key": "a.txt"}], "CommonPrefixes": [{"Prefix": "d/"}]})
        assert await driver.list_files(recursive=False) == ["a.txt"]
        client.get_paginator.return_value.paginate.assert_called_once_with(
            Bucket="media", Prefix="", Delimiter="/"
        )

    @pytest.mark.asyncio
    async def test_list_directories_recursive_from_ancestors(self, driver, client) -> None:
        _paginate(client, {"Contents": [{"Key": "a/b/c.txt"}, {"Key": "empty/"}]})
        assert await driver.list_directories() == ["a", "a/b", "empty"]

    @pytest.mark.asyncio
    async def test_list_directories_flat(self, driver, client) -> None:
        _paginate(client, {"CommonPrefixes": [{"Prefix": "docs/x/"}, {"Prefix": "docs/y/"}]})
        assert await driver.list_directories("docs", recursive=False) == ["x", "y"]

    @pytest.mark.asyncio
    async def test_make_directory_writes_marker(self, driver, client) -> None:
        await driver.make_directory("new/dir")
        client.put_object.assert_called_once_with(Bucket="media", Key="new/dir/", Body=b"")

    @pytest.mark.asyncio
    async def test_delete_directory_batches(self, driver, client) -> None:
        keys = [{"Key": f"d/{i}"} for i in range(1500)]
        _paginate(client, {"Contents": keys})
        client.delete_objects.return_value = {}
        await driver.delete_directory("d")
        assert client.delete_objects.call_count == 2
        first = client.delete_objects.call_args_list[0].kwargs["Delete"]
        assert len(first["Objects"]) == 1000
        assert first["Quiet"] is True

    @pytest.mark.asyncio
    async def test_delete_directory_reports_failed_keys(self, driver, client) -> None:
        _paginate(client, {"Contents": [{"Key": "d/a"}, {"Key": "d/b"}]})
        client.delete_objects.return_value = {"Errors": [{"Key": "d/b", "Code": "AccessDenied"}]}
        with pytest.raises(StorageDirectoryDeleteError) as exc_info:
            await driver.delete_directory("d")
        assert exc_info.value.details["failed"] == ["d/b"]
        assert exc_info.value.details["deleted"] == 1

    @pytest.mark.asyncio
    async def test_delete_root_rejected(self, driver, client) -> None:
        with pytest.raises(StoragePermissionError):
            await driver.delete_directory("/")
        client.delete_objects.assert_not_called()


class TestS3Urls:
    @pytest.mark.asyncio
    async def test_url_defaults_to_bucket_host(self, driver) -> None:
        assert await driver.url("/a/b.txt") == "https://media.s3.eu-west-1.amazonaws.com/a/b.txt"

    @pytest.mark.asyncio
    async def test_url_uses_cdn_then_endpoint(self, client) -> None:
        cdn = S3StorageDriver(bucket="m", cdn_base_url="https://cdn.example.com/", client=client)
        minio = S3StorageDriver(bucket="m", endpoint_url="http://minio:9000", client=client)
        assert await cdn.url("x.txt") == "https://cdn.example.com/x.txt"
        assert await minio.url("x.txt") == "http://minio:9000/m/x.txt"

    @pytest.mark.asyncio
    async def test_presigned_url(self, driver, client) -> None:
        client.head_object.return_value = {}
        client.generate_presigned_url.return_value = "https://signed"
        assert await driver.get_temporary_url("a.txt", 300) == "https://signed"
        client.generate_presigned_url.assert_called_once_with(
            "get_object", Params={"Bucket": "media", "Key": "a.txt"}, ExpiresIn=300
        )

    @pytest.mark.asyncio
    async def test_presign_missing_object_is_not_found(self, driver, client) -> None:
        client.head_object.side_effect = _client_error("404")
        with pytest.raises(StorageNotFoundError):
            await driver.get_temporary_url("a.txt", 300)

    @pytest.mark.asyncio
    async def test_ip_binding_rejected_before_any_call(self, driver, client) -> None:
        with pytest.raises(StorageNotSupportedError):
            await driver.get_temporary_url("a.txt", 300, ip="10.0.0.1")
        client.head_object.assert_not_called()
        client.generate_presigned_url.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expires_in", [0, 7 * 24 * 3600 + 1])
    async def test_expiry_out_of_range(self, driver, expires_in) -> None:
        with pytest.raises(ValidationException):
            await driver.get_temporary_url("a.txt", expires_in)


class TestS3Visibility:
    @pytest.mark.asyncio
    async def test_set_visibility_uses_object_acl(self, driver, client) -> None:
        await driver.set_visibility("a.txt", Visibility.PRIVATE)
        client.put_object_acl.assert_called_once_with(Bucket="media", Key="a.txt", ACL="private")

    @pytest.mark.asyncio
    async def test_all_users_read_is_public(self, driver, client) -> None:
        client.get_object_acl.return_value = {
            "Grants": [{"Grantee": {"Type": "Group", "URI": ALL_USERS_URI}, "Permission": "READ"}]
        }
        assert await driver.get_visibility("a.txt") == Visibility.PUBLIC


class TestS3TimedFiles:
    @pytest.mark.asyncio
    async def test_put_timed_tags_in_same_request(self, driver, client) -> None:
        await driver.put_timed("a.txt", b"x", ttl=60)
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Tagging"].startswith("expires-at=")
        client.put_object_tagging.assert_not_called()

    @pytest.mark.asyncio
    async def test_sweep_deletes_only_due_tagged_objects(self, driver, client) -> None:
        _paginate(client, {"Contents": [{"Key": "old"}, {"Key": "new"}, {"Key": "plain"}]})
        tags = {
            "old": {"TagSet": [{"Key": "expires-at", "Value": "1000"}]},
            "new": {"TagSet": [{"Key": "expires-at", "Value": str(10**15)}]},
            "plain": {"TagSet": []},
        }
        client.get_object_tagging.side_effect = lambda Bucket, Key: tags[Key]
        client.head_object.return_value = {}
        assert await driver.delete_expired_files() == 1
        client.delete_object.assert_called_once_with(Bucket="media", Key="old")


class TestS3Multipart:
    @staticmethod
    async def _chunks(*parts: bytes):
        for part in parts:
            yield part

    @pytest.mark.asyncio
    async def test_small_stream_is_single_put(self, driver, client) -> None:
        await driver.put_stream("a.bin", self._chunks(b"ab", b"cd"))
        assert client.put_object.call_args.kwargs["Body"] == b"abcd"
        client.create_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_large_stream_uses_multipart(self, driver, client) -> None:
        driver.MULTIPART_PART_SIZE = 4
        client.create_multipart_upload.return_value = {"UploadId": "u1"}
        client.upload_part.side_effect = [{"ETag": "e1"}, {"ETag": "e2"}]
        await driver.put_stream("a.bin", self._chunks(b"abc", b"def"))
        bodies = [c.kwargs["Body"] for c in client.upload_part.call_args_list]
        assert bodies == [b"abcd", b"ef"]
        client.complete_multipart_upload.assert_called_once_with(
            Bucket="media",
            Key="a.bin",
            UploadId="u1",
            MultipartUpload={
                "Parts": [{"ETag": "e1", "PartNumber": 1}, {"ETag": "e2", "PartNumber": 2}]
            },
        )

    @pytest.mark.asyncio
    async def test_failure_aborts_upload(self, driver, client) -> None:
        driver.MULTIPART_PART_SIZE = 2
        client.create_multipart_upload.return_value = {"UploadId": "u1"}
        client.upload_part.side_effect = _client_error("InternalError", "UploadPart")
        with pytest.raises(StorageTransportError):
            await driver.put_stream("a.bin", self._chunks(b"abcd"))
        client.abort_multipart_upload.assert_called_once_with(
            Bucket="media", Key="a.bin", UploadId="u1"
        )
        client.complete_multipart_upload.assert_not_called()
