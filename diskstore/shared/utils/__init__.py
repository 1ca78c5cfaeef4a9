"""Shared utilities: datetime and logical path helpers."""

from diskstore.shared.utils.datetime import (
    ensure_utc,
    from_timestamp_ms_utc,
    from_timestamp_utc,
    to_timestamp_ms,
    utc_now,
    utc_now_ms,
)
from diskstore.shared.utils.paths import (
    ancestors,
    base_name,
    join_path,
    normalize_path,
    parent_path,
    relative_to,
)

__all__ = [
    "utc_now",
    "utc_now_ms",
    "ensure_utc",
    "from_timestamp_utc",
    "from_timestamp_ms_utc",
    "to_timestamp_ms",
    "ancestors",
    "base_name",
    "join_path",
    "normalize_path",
    "parent_path",
    "relative_to",
]
