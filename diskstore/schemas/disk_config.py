"""Disk configuration schemas.

One frozen pydantic model per backend, joined into a discriminated union on
the ``driver`` field. A config is immutable once its disk is built; to
change a backend, replace the disk entry.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


class DiskConfigBase(BaseModel):
    """Fields shared by every disk."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    read_only: bool = False


class LocalDiskConfig(DiskConfigBase):
    """Local filesystem rooted at ``root``."""

    driver: Literal["local"] = "local"
    root: str
    base_public_url: str | None = None
    temporary_url_path: str = "/temp"


class BufferDiskConfig(DiskConfigBase):
    """In-memory disk for tests and ephemeral caching."""

    driver: Literal["buffer"] = "buffer"


class S3DiskConfig(DiskConfigBase):
    """S3-compatible bucket (AWS S3, MinIO, R2, Spaces)."""

    driver: Literal["s3"] = "s3"
    bucket: str
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: SecretStr | None = None
    cdn_base_url: str | None = None
    connect_timeout: float = 10.0
    read_timeout: float = 60.0


class FTPDiskConfig(DiskConfigBase):
    """FTP or FTPS server; every operation opens its own session."""

    driver: Literal["ftp"] = "ftp"
    host: str
    port: int = 21
    user: str = "anonymous"
    password: SecretStr = SecretStr("")
    secure: bool = False
    root: str = ""
    timeout: float = 30.0
    base_public_url: str | None = None


class SFTPDiskConfig(DiskConfigBase):
    """SFTP server over SSH; every operation opens its own session."""

    driver: Literal["sftp"] = "sftp"
    host: str
    port: int = 22
    username: str
    password: SecretStr | None = None
    private_key: SecretStr | None = None  # PEM text
    passphrase: SecretStr | None = None
    known_hosts: str | None = None
    allow_unknown_hosts: bool = False
    root: str = ""
    timeout: float = 30.0
    base_public_url: str | None = None

    @model_validator(mode="after")
    def validate_credentials(self) -> "SFTPDiskConfig":
        """Require a password or a private key."""
        if self.password is None and self.private_key is None:
            raise ValueError("sftp disk requires 'password' or 'private_key'")
        return self


class DropboxDiskConfig(DiskConfigBase):
    """Dropbox account, optionally rooted at a folder path."""

    driver: Literal["dropbox"] = "dropbox"
    access_token: SecretStr | None = None
    app_key: str | None = None
    app_secret: SecretStr | None = None
    refresh_token: SecretStr | None = None
    root: str = ""
    timeout: float = 100.0
    base_public_url: str | None = None

    @model_validator(mode="after")
    def validate_credentials(self) -> "DropboxDiskConfig":
        """Require an access token or a refresh token with app key."""
        if self.access_token is None and not (self.refresh_token and self.app_key):
            raise ValueError(
                "dropbox disk requires 'access_token' or 'refresh_token' with 'app_key'"
            )
        return self


class GoogleDriveDiskConfig(DiskConfigBase):
    """Google Drive folder accessed with a service account."""

    driver: Literal["gdrive"] = "gdrive"
    client_email: str
    private_key: SecretStr
    folder_id: str
    token_uri: str = "https://oauth2.googleapis.com/token"
    timeout: float = 60.0
    base_public_url: str | None = None


class ScopedDiskConfig(DiskConfigBase):
    """Another disk (by name) restricted to paths under ``prefix``."""

    driver: Literal["scoped"] = "scoped"
    disk: str
    prefix: str = ""


StorageDiskConfig = Annotated[
    LocalDiskConfig
    | BufferDiskConfig
    | S3DiskConfig
    | FTPDiskConfig
    | SFTPDiskConfig
    | DropboxDiskConfig
    | GoogleDriveDiskConfig
    | ScopedDiskConfig,
    Field(discriminator="driver"),
]


class StorageConfig(BaseModel):
    """All configured disks plus the name of the default one."""

    model_config = ConfigDict(frozen=True)

    default: str
    disks: dict[str, StorageDiskConfig]

    @model_validator(mode="after")
    def validate_default_and_references(self) -> "StorageConfig":
        """Default must name a disk; scoped disks must reference known disks."""
        if self.default not in self.disks:
            raise ValueError(f"Default disk {self.default!r} is not configured")
        for name, disk in self.disks.items():
            if isinstance(disk, ScopedDiskConfig) and disk.disk not in self.disks:
                raise ValueError(
                    f"Scoped disk {name!r} references unknown disk {disk.disk!r}"
                )
        return self
