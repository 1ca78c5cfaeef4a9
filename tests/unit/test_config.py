"""Tests for Settings, disk config schemas and logging setup."""

import json
import logging

import pytest
from pydantic import ValidationError

from diskstore.core.config import Settings, get_settings
from diskstore.schemas.disk_config import (
    DropboxDiskConfig,
    LocalDiskConfig,
    S3DiskConfig,
    ScopedDiskConfig,
    SFTPDiskConfig,
    StorageConfig,
)
from diskstore.shared.telemetry.logging import get_logger, setup_logging


class TestSettings:
    def test_fallback_is_single_buffer_disk(self) -> None:
        config = Settings(_env_file=None).load_storage_config()
        assert config.default == "default"
        assert config.disks["default"].driver == "buffer"

    def test_config_file(self, tmp_path) -> None:
        path = tmp_path / "disks.json"
        path.write_text(
            json.dumps(
                {
                    "default": "local",
                    "disks": {
                        "local": {"driver": "local", "root": str(tmp_path / "files")},
                        "media": {"driver": "s3", "bucket": "media"},
                    },
                }
            )
        )
        config = Settings(_env_file=None, storage_config_path=str(path)).load_storage_config()
        assert isinstance(config.disks["local"], LocalDiskConfig)
        assert isinstance(config.disks["media"], S3DiskConfig)

    def test_default_override_applies_to_file(self, tmp_path) -> None:
        path = tmp_path / "disks.json"
        path.write_text(
            json.dumps({"default": "a", "disks": {"a": {"driver": "buffer"}, "b": {"driver": "buffer"}}})
        )
        settings = Settings(
            _env_file=None, storage_config_path=str(path), storage_default_disk="b"
        )
        assert settings.load_storage_config().default == "b"

    def test_env_inline_disks(self, monkeypatch) -> None:
        monkeypatch.setenv("STORAGE_DISKS", '{"mem": {"driver": "buffer"}}')
        monkeypatch.setenv("DEBUG", "true")
        settings = get_settings()
        assert settings.debug is True
        assert settings.load_storage_config().default == "mem"

    def test_both_sources_rejected(self, tmp_path) -> None:
        path = tmp_path / "disks.json"
        path.write_text("{}")
        with pytest.raises(ValidationError, match="not both"):
            Settings(
                _env_file=None,
                storage_config_path=str(path),
                storage_disks={"a": {"driver": "buffer"}},
            )

    def test_missing_config_file_rejected(self, tmp_path) -> None:
        with pytest.raises(ValidationError, match="does not point to a file"):
            Settings(_env_file=None, storage_config_path=str(tmp_path / "missing.json"))


class TestDiskConfigSchemas:
    def test_unknown_driver_tag_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StorageConfig.model_validate(
                {"default": "a", "disks": {"a": {"driver": "azure"}}}
            )

    def test_default_must_be_configured(self) -> None:
        with pytest.raises(ValidationError, match="Default disk"):
            StorageConfig.model_validate({"default": "x", "disks": {"a": {"driver": "buffer"}}})

    def test_scoped_reference_must_exist(self) -> None:
        with pytest.raises(ValidationError, match="unknown disk"):
            StorageConfig.model_validate(
                {"default": "s", "disks": {"s": {"driver": "scoped", "disk": "nope"}}}
            )

    def test_extra_fields_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LocalDiskConfig(root="/tmp", bucket="oops")

    def test_configs_are_frozen(self) -> None:
        config = ScopedDiskConfig(disk="main", prefix="a")
        with pytest.raises(ValidationError):
            config.prefix = "b"

    def test_sftp_requires_credentials(self) -> None:
        with pytest.raises(ValidationError, match="password"):
            SFTPDiskConfig(host="h", username="u")

    def test_dropbox_requires_token(self) -> None:
        with pytest.raises(ValidationError, match="access_token"):
            DropboxDiskConfig(refresh_token="r")
        assert DropboxDiskConfig(refresh_token="r", app_key="k").root == ""

    def test_secrets_hidden_in_repr(self) -> None:
        config = S3DiskConfig(bucket="b", secret_access_key="topsecret")
        assert "topsecret" not in repr(config)


class TestLogging:
    def test_setup_logging_uses_debug_flag(self, monkeypatch) -> None:
        monkeypatch.setenv("DEBUG", "true")
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        root.handlers = []
        try:
            setup_logging()
            assert root.level == logging.DEBUG
        finally:
            root.handlers = handlers
            root.setLevel(level)

    def test_get_logger_is_named(self) -> None:
        assert get_logger("diskstore.test").name == "diskstore.test"
