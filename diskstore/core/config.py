"""Package configuration (settings and environment).

Single source of truth for process-level configuration. Uses
pydantic-settings with .env support. Disk definitions are loaded either
from a JSON file (STORAGE_CONFIG_PATH) or inline JSON (STORAGE_DISKS);
both are validated into a StorageConfig on load.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from diskstore.schemas.disk_config import StorageConfig


class Settings(BaseSettings):
    """Settings loaded from environment and .env.

    Either storage_config_path or storage_disks may be set, not both. When
    neither is set, a single in-memory buffer disk named "default" is used.
    """

    # App
    app_name: str = "diskstore"
    debug: bool = False

    # Storage
    storage_config_path: str | None = None
    storage_disks: dict[str, dict[str, Any]] | None = None  # JSON in env
    storage_default_disk: str | None = None

    # Temporary links (local driver)
    temporary_link_device_header: str = "X-Device-ID"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_storage_source(self) -> "Settings":
        """Reject ambiguous storage sources and a default without inline disks."""
        if self.storage_config_path and self.storage_disks:
            raise ValueError(
                "Set either STORAGE_CONFIG_PATH or STORAGE_DISKS, not both."
            )
        if self.storage_config_path and not Path(self.storage_config_path).is_file():
            raise ValueError(
                f"STORAGE_CONFIG_PATH does not point to a file: {self.storage_config_path!r}"
            )
        return self

    def load_storage_config(self) -> StorageConfig:
        """Build the validated disk configuration.

        Returns:
            StorageConfig from the config file, inline disks, or the
            buffer-only fallback.

        Raises:
            ValueError: File is not valid JSON.
            pydantic.ValidationError: Disk definitions are invalid.
        """
        if self.storage_config_path:
            raw = json.loads(Path(self.storage_config_path).read_text(encoding="utf-8"))
            if self.storage_default_disk:
                raw["default"] = self.storage_default_disk
            return StorageConfig.model_validate(raw)
        if self.storage_disks:
            default = self.storage_default_disk or next(iter(self.storage_disks))
            return StorageConfig.model_validate(
                {"default": default, "disks": self.storage_disks}
            )
        return StorageConfig.model_validate(
            {"default": "default", "disks": {"default": {"driver": "buffer"}}}
        )


@lru_cache
def get_settings() -> Settings:
    """Return cached settings (single instance per process).

    Validation runs on first call, not at import time. In tests, call
    get_settings.cache_clear() before overriding env vars so the next
    get_settings() uses the new values.

    Returns:
        Loaded and validated Settings instance.
    """
    return Settings()
