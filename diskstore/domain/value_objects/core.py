"""Domain value objects for diskstore.

Value objects are immutable types with no identity, only value. They are
produced fresh by drivers on every call and never cached.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from diskstore.domain.enums import Visibility


@dataclass(frozen=True)
class FileMetadata:
    """Metadata of one stored object as reported by its backend.

    Attributes:
        path: Logical path the caller used (not the backend key).
        size: Size in bytes.
        mime_type: MIME type when known.
        last_modified: UTC-aware modification time when the backend reports one.
        visibility: Public/private when the backend can tell.
    """

    path: str
    size: int
    mime_type: str | None = None
    last_modified: datetime | None = None
    visibility: Visibility | None = None


@dataclass(frozen=True)
class ConnectionInfo:
    """Inbound request data needed to validate a temporary link.

    The HTTP layer builds this from its own request object so that no
    framework type crosses into storage code.
    """

    remote_addr: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        """Return a header value by case-insensitive name, or None."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass(frozen=True)
class TemporaryLink:
    """Record behind one local temporary-link token.

    Lives only in process memory; a restart invalidates every link.
    """

    path: str
    expires_at_ms: int
    ip: str | None = None
    device_id: str | None = None


@dataclass(frozen=True)
class StoredFile:
    """Result of storing an upload: where it went and what it was."""

    storage_path: str
    disk: str
    filename: str
    content_type: str | None
    size: int
