"""S3-compatible object storage (AWS S3, MinIO, R2, Spaces) with ACLs and presigned URLs."""

from __future__ import annotations

import asyncio
import mimetypes
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any, TypeVar
from urllib.parse import urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from diskstore.domain.enums import Visibility
from diskstore.domain.exceptions import ValidationException
from diskstore.domain.value_objects import FileMetadata
from diskstore.infrastructure.exceptions import (
    StorageDirectoryDeleteError,
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
from diskstore.schemas.disk_config import S3DiskConfig
from diskstore.shared.telemetry.logging import get_logger
from diskstore.shared.utils.datetime import ensure_utc, utc_now_ms
from diskstore.shared.utils.paths import ancestors, relative_to

logger = get_logger(__name__)

_T = TypeVar("_T")

ALL_USERS_URI = "http://acs.amazonaws.com/groups/global/AllUsers"
EXPIRES_TAG = "expires-at"
NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def _is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in NOT_FOUND_CODES


class S3StorageDriver(BaseStorageDriver):
    """S3-compatible storage over one shared boto3 client.

    Uses boto3 (sync) via asyncio.to_thread for async API. Keys are the
    normalized logical paths. Visibility maps to the canned ACLs
    ``public-read`` / ``private``; expiry is the ``expires-at`` object tag.
    """

    backend = "s3"

    MULTIPART_PART_SIZE = 8 * 1024 * 1024  # 8MB, above the 5MB S3 minimum
    DELETE_BATCH_SIZE = 1000
    MAX_PRESIGN_SECONDS = 7 * 24 * 3600

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        cdn_base_url: str | None = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        client: Any | None = None,
    ) -> None:
        """Initialize S3 client.

        Args:
            bucket: Bucket name.
            region: AWS region.
            endpoint_url: Custom endpoint (MinIO/Spaces/R2).
            access_key_id: Optional; uses env/IAM if not set.
            secret_access_key: Optional.
            cdn_base_url: Base for url(); defaults to the bucket URL.
            connect_timeout: Seconds to wait for a connection.
            read_timeout: Seconds to wait for a response.
            client: Prebuilt boto3 S3 client (tests).
        """
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        if cdn_base_url:
            self.base_public_url = cdn_base_url.rstrip("/")
        elif endpoint_url:
            self.base_public_url = f"{endpoint_url.rstrip('/')}/{bucket}"
        else:
            self.base_public_url = f"https://{bucket}.s3.{region}.amazonaws.com"
        if client is not None:
            self._client = client
            return
        extra = {} if endpoint_url is None else {"endpoint_url": endpoint_url}
        self._client = boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
            **extra,
        )

    @classmethod
    def from_config(cls, config: S3DiskConfig) -> "S3StorageDriver":
        return cls(
            bucket=config.bucket,
            region=config.region,
            endpoint_url=config.endpoint_url,
            access_key_id=config.access_key_id,
            secret_access_key=(
                config.secret_access_key.get_secret_value()
                if config.secret_access_key
                else None
            ),
            cdn_base_url=config.cdn_base_url,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
        )

    async def _call(self, path: str, operation: str, func: Callable[[], _T]) -> _T:
        """Run a blocking client call in a thread and map botocore errors."""
        try:
            return await asyncio.to_thread(func)
        except ClientError as e:
            if _is_not_found(e):
                raise StorageNotFoundError(path) from e
            raise StorageTransportError(path, operation, str(e)) from e
        except BotoCoreError as e:
            raise StorageTransportError(path, operation, str(e)) from e

    def _head(self, key: str) -> dict[str, Any]:
        return self._client.head_object(Bucket=self.bucket, Key=key)

    def _put_args(
        self, key: str, visibility: Visibility | None, tagging: str | None = None
    ) -> dict[str, Any]:
        args: dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        content_type = mimetypes.guess_type(key)[0]
        if content_type:
            args["ContentType"] = content_type
        if visibility is not None:
            args["ACL"] = "public-read" if visibility == Visibility.PUBLIC else "private"
        if tagging:
            args["Tagging"] = tagging
        return args

    async def put(
        self, path: str, content: Content, visibility: Visibility | None = None
    ) -> None:
        """Whole-object replace. Without visibility the bucket default ACL applies."""
        key = self._normalize(path)
        body = to_bytes(content)
        await self._call(
            path,
            "put",
            lambda: self._client.put_object(Body=body, **self._put_args(key, visibility)),
        )

    async def get(self, path: str) -> bytes:
        key = self._normalize(path)

        def _get() -> bytes:
            resp = self._client.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()

        return await self._call(path, "get", _get)

    async def create_read_stream(self, path: str) -> AsyncIterator[bytes]:
        """Stream object content in CHUNK_SIZE reads from the response body."""
        key = self._normalize(path)
        resp = await self._call(
            path, "get", lambda: self._client.get_object(Bucket=self.bucket, Key=key)
        )
        body = resp["Body"]
        try:
            while True:
                chunk = await self._call(
                    path, "read", lambda: body.read(self.CHUNK_SIZE)
                )
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def delete(self, path: str) -> None:
        """HEAD then DELETE; S3 itself reports success for absent keys."""
        key = self._normalize(path)

        def _delete() -> None:
            self._head(key)
            self._client.delete_object(Bucket=self.bucket, Key=key)

        await self._call(path, "delete", _delete)

    async def exists(self, path: str) -> bool:
        """Return True if object exists."""
        key = self._normalize(path)
        try:
            await self._call(path, "exists", lambda: self._head(key))
        except StorageNotFoundError:
            return False
        return True

    async def _copy(self, src: str, dest: str, keep_tags: bool) -> None:
        src_key, dest_key = self._normalize(src), self._normalize(dest)

        def _copy_object() -> None:
            self._client.copy_object(
                Bucket=self.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.bucket, "Key": src_key},
                TaggingDirective="COPY" if keep_tags else "REPLACE",
            )

        await self._call(src, "copy", _copy_object)

    async def copy(self, src: str, dest: str) -> None:
        """Server-side copy_object. The copy carries no expiry tag."""
        await self._copy(src, dest, keep_tags=False)

    async def move(self, src: str, dest: str) -> None:
        """Server-side copy (tags kept) then delete src."""
        await self._copy(src, dest, keep_tags=True)
        await self.delete(src)

    def _list_keys(self, prefix: str, delimiter: bool) -> tuple[list[str], list[str]]:
        """Return (object keys, common prefixes) under prefix, all pages."""
        paginator = self._client.get_paginator("list_objects_v2")
        params: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
        if delimiter:
            params["Delimiter"] = "/"
        keys: list[str] = []
        prefixes: list[str] = []
        for page in paginator.paginate(**params):
            keys.extend(item["Key"] for item in page.get("Contents", []))
            prefixes.extend(cp["Prefix"] for cp in page.get("CommonPrefixes", []))
        return keys, prefixes

    def _prefix(self, directory: str) -> str:
        directory = self._normalize(directory)
        return f"{directory}/" if directory else ""

    async def list_files(self, directory: str = "", recursive: bool = True) -> list[str]:
        """Object keys under directory; ``prefix/`` directory markers are skipped."""
        prefix = self._prefix(directory)
        keys, _ = await self._call(
            directory, "list_files", lambda: self._list_keys(prefix, not recursive)
        )
        return sorted(relative_to(k, directory) for k in keys if not k.endswith("/"))

    async def list_directories(
        self, directory: str = "", recursive: bool = True
    ) -> list[str]:
        """Directories are derived from key prefixes and marker objects."""
        prefix = self._prefix(directory)
        keys, prefixes = await self._call(
            directory, "list_directories", lambda: self._list_keys(prefix, not recursive)
        )
        if not recursive:
            return sorted(relative_to(p.rstrip("/"), directory) for p in prefixes)
        found: set[str] = set()
        for key in keys:
            rel = relative_to(key, directory)
            if key.endswith("/"):
                found.add(rel)
            found.update(ancestors(rel))
        found.discard("")
        return sorted(found)

    async def get_metadata(self, path: str) -> FileMetadata:
        key = self._normalize(path)
        head = await self._call(path, "get_metadata", lambda: self._head(key))
        last_modified = head.get("LastModified")
        return FileMetadata(
            path=key,
            size=head.get("ContentLength", 0),
            mime_type=head.get("ContentType"),
            last_modified=ensure_utc(last_modified) if last_modified else None,
            visibility=await self.get_visibility(path),
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
        """Presigned GET URL. IP/device binding cannot be expressed in a presigned URL."""
        if ip is not None or device_id is not None:
            raise self._not_supported(
                "get_temporary_url", "presigned URLs cannot be bound to ip or device"
            )
        if not 0 < expires_in <= self.MAX_PRESIGN_SECONDS:
            raise ValidationException(
                f"expires_in must be between 1 and {self.MAX_PRESIGN_SECONDS}",
                field="expires_in",
            )
        key = self._normalize(path)

        def _presign() -> str:
            self._head(key)
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )

        return await self._call(path, "get_temporary_url", _presign)

    async def make_directory(self, path: str) -> None:
        """Write a zero-byte ``prefix/`` marker object."""
        marker = self._prefix(path)
        await self._call(
            path,
            "make_directory",
            lambda: self._client.put_object(Bucket=self.bucket, Key=marker, Body=b""),
        )

    async def delete_directory(self, path: str) -> None:
        """Batch-delete every key under the prefix.

        Raises:
            StorageDirectoryDeleteError: Some keys could not be deleted.
        """
        prefix = self._prefix(path)
        if not prefix:
            raise StoragePermissionError(path, "delete_directory")

        def _delete_all() -> tuple[int, list[str]]:
            keys, _ = self._list_keys(prefix, delimiter=False)
            deleted = 0
            failed: list[str] = []
            for start in range(0, len(keys), self.DELETE_BATCH_SIZE):
                batch = keys[start : start + self.DELETE_BATCH_SIZE]
                resp = self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
                errors = [err["Key"] for err in resp.get("Errors", [])]
                failed.extend(errors)
                deleted += len(batch) - len(errors)
            return deleted, failed

        deleted, failed = await self._call(path, "delete_directory", _delete_all)
        if failed:
            logger.warning(
                "Partial delete of s3://%s/%s: %d deleted, %d failed",
                self.bucket,
                prefix,
                deleted,
                len(failed),
            )
            raise StorageDirectoryDeleteError(path, deleted, failed)

    async def set_visibility(self, path: str, visibility: Visibility) -> None:
        key = self._normalize(path)
        acl = "public-read" if visibility == Visibility.PUBLIC else "private"
        await self._call(
            path,
            "set_visibility",
            lambda: self._client.put_object_acl(Bucket=self.bucket, Key=key, ACL=acl),
        )

    async def get_visibility(self, path: str) -> Visibility:
        """Public when the ACL grants AllUsers READ."""
        key = self._normalize(path)
        acl = await self._call(
            path,
            "get_visibility",
            lambda: self._client.get_object_acl(Bucket=self.bucket, Key=key),
        )
        for grant in acl.get("Grants", []):
            grantee = grant.get("Grantee", {})
            if grantee.get("URI") == ALL_USERS_URI and grant.get("Permission") in (
                "READ",
                "FULL_CONTROL",
            ):
                return Visibility.PUBLIC
        return Visibility.PRIVATE

    async def put_timed(
        self,
        path: str,
        content: Content,
        ttl: float | None = None,
        expires_at: datetime | None = None,
        visibility: Visibility | None = None,
    ) -> None:
        """Put with the ``expires-at`` tag in the same request."""
        expires_at_ms = resolve_expires_at(ttl, expires_at)
        key = self._normalize(path)
        body = to_bytes(content)
        tagging = urlencode({EXPIRES_TAG: str(expires_at_ms)})
        await self._call(
            path,
            "put_timed",
            lambda: self._client.put_object(
                Body=body, **self._put_args(key, visibility, tagging)
            ),
        )

    def _expires_at(self, key: str) -> int | None:
        tags = self._client.get_object_tagging(Bucket=self.bucket, Key=key)
        for tag in tags.get("TagSet", []):
            if tag.get("Key") == EXPIRES_TAG:
                try:
                    return int(tag["Value"])
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed %s tag on %s", EXPIRES_TAG, key)
        return None

    async def delete_expired_files(self) -> int:
        """Scan every key's tags and delete those due. Cost is one tag read per object."""
        now = utc_now_ms()
        keys, _ = await self._call(
            "", "delete_expired_files", lambda: self._list_keys("", delimiter=False)
        )
        deleted = 0
        for key in keys:
            if key.endswith("/"):
                continue
            try:
                expires_at_ms = await self._call(
                    key, "get_tagging", lambda k=key: self._expires_at(k)
                )
            except StorageNotFoundError:
                continue
            if expires_at_ms is None or not is_due(expires_at_ms, now):
                continue
            try:
                await self.delete(key)
                deleted += 1
            except StorageNotFoundError:
                continue
        if deleted:
            logger.info("Deleted %d expired objects from s3://%s", deleted, self.bucket)
        return deleted

    async def put_stream(
        self,
        path: str,
        chunks: AsyncIterator[bytes],
        visibility: Visibility | None = None,
    ) -> None:
        """Multipart upload once more than one part accumulates; aborted on error.

        Streams shorter than one part go through a single put_object.
        """
        key = self._normalize(path)
        buffer = bytearray()
        upload_id: str | None = None
        parts: list[dict[str, Any]] = []

        async def _flush(data: bytes) -> None:
            number = len(parts) + 1
            resp = await self._call(
                path,
                "upload_part",
                lambda: self._client.upload_part(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=number,
                    Body=data,
                ),
            )
            parts.append({"ETag": resp["ETag"], "PartNumber": number})

        try:
            async for chunk in chunks:
                buffer.extend(chunk)
                while len(buffer) >= self.MULTIPART_PART_SIZE:
                    if upload_id is None:
                        args = self._put_args(key, visibility)
                        resp = await self._call(
                            path,
                            "create_multipart_upload",
                            lambda: self._client.create_multipart_upload(**args),
                        )
                        upload_id = resp["UploadId"]
                    part = bytes(buffer[: self.MULTIPART_PART_SIZE])
                    del buffer[: self.MULTIPART_PART_SIZE]
                    await _flush(part)
            if upload_id is None:
                await self.put(path, bytes(buffer), visibility)
                return
            if buffer:
                await _flush(bytes(buffer))
            await self._call(
                path,
                "complete_multipart_upload",
                lambda: self._client.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                ),
            )
        except BaseException:
            if upload_id is not None:
                logger.warning("Aborting multipart upload of %s", key)
                try:
                    await self._call(
                        path,
                        "abort_multipart_upload",
                        lambda: self._client.abort_multipart_upload(
                            Bucket=self.bucket, Key=key, UploadId=upload_id
                        ),
                    )
                except StorageTransportError:
                    logger.warning("Abort failed; upload %s of %s left pending", upload_id, key)
            raise
