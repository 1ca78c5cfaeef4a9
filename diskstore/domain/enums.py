"""Domain enumerations for diskstore.

Enums represent fixed sets of domain values (e.g. file visibility).
"""

from enum import Enum


class Visibility(str, Enum):
    """Access level of a stored object.

    Backends without native ACLs simulate it (file mode bits, in-memory flag).
    """

    PUBLIC = "public"
    PRIVATE = "private"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid visibility values as strings.

        Returns:
            List of enum value strings (e.g. for validation or serialization).
        """
        return [visibility.value for visibility in cls]


class DriverName(str, Enum):
    """Discriminant of a disk configuration; selects the backend driver."""

    LOCAL = "local"
    BUFFER = "buffer"
    S3 = "s3"
    FTP = "ftp"
    SFTP = "sftp"
    DROPBOX = "dropbox"
    GDRIVE = "gdrive"
    SCOPED = "scoped"
