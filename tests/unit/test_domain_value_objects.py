"""Tests for domain value objects and enums."""

import dataclasses

import pytest

from diskstore.domain.enums import DriverName, Visibility
from diskstore.domain.value_objects import ConnectionInfo, FileMetadata, TemporaryLink


class TestVisibility:
    def test_values(self) -> None:
        assert Visibility.values() == ["public", "private"]

    def test_str_enum_compares_to_value(self) -> None:
        assert Visibility("public") is Visibility.PUBLIC
        assert Visibility.PRIVATE == "private"


class TestDriverName:
    def test_every_backend_has_a_tag(self) -> None:
        assert {d.value for d in DriverName} == {
            "local",
            "buffer",
            "s3",
            "ftp",
            "sftp",
            "dropbox",
            "gdrive",
            "scoped",
        }


class TestConnectionInfo:
    """ConnectionInfo.header: case-insensitive lookup."""

    def test_header_lookup_ignores_case(self) -> None:
        info = ConnectionInfo(remote_addr="127.0.0.1", headers={"X-Device-ID": "d1"})
        assert info.header("x-device-id") == "d1"
        assert info.header("X-DEVICE-ID") == "d1"

    def test_missing_header(self) -> None:
        assert ConnectionInfo().header("X-Device-ID") is None


class TestFrozen:
    def test_metadata_is_immutable(self) -> None:
        meta = FileMetadata(path="a.txt", size=1)
        with pytest.raises(dataclasses.FrozenInstanceError):
            meta.size = 2  # type: ignore[misc]

    def test_link_defaults(self) -> None:
        link = TemporaryLink(path="a.txt", expires_at_ms=1)
        assert link.ip is None
        assert link.device_id is None
