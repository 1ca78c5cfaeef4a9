"""Logical path helpers shared by every driver.

Logical paths are POSIX-style, relative, without leading slashes. Remote
sessions are already rooted (cwd into the configured root), so a path must
be normalized before it reaches any protocol call.
"""

import posixpath


def normalize_path(path: str) -> str:
    """Return the forward-slash relative form of path.

    Backslashes become slashes, leading slashes and "." segments are
    dropped, repeated slashes collapse. The root is "".

    Raises:
        ValueError: Path climbs above the root with "..".
    """
    cleaned = path.replace("\\", "/").strip()
    if not cleaned:
        return ""
    stripped = cleaned.lstrip("/")
    if not stripped:
        return ""
    normalized = posixpath.normpath(stripped)
    if normalized == ".":
        return ""
    if normalized == ".." or normalized.startswith("../"):
        raise ValueError(f"Path escapes storage root: {path!r}")
    return normalized


def join_path(*segments: str) -> str:
    """Join logical path segments, ignoring empty ones, and normalize."""
    parts = [s.replace("\\", "/").strip("/") for s in segments if s and s.strip("/")]
    return normalize_path("/".join(parts))


def parent_path(path: str) -> str:
    """Return the parent directory of a normalized path ("" for top level)."""
    parent = posixpath.dirname(normalize_path(path))
    return "" if parent == "." else parent


def base_name(path: str) -> str:
    """Return the last segment of a path."""
    return posixpath.basename(normalize_path(path))


def relative_to(path: str, directory: str) -> str:
    """Return path relative to directory; both are normalized first.

    Raises:
        ValueError: path is not inside directory.
    """
    path = normalize_path(path)
    directory = normalize_path(directory)
    if not directory:
        return path
    prefix = directory + "/"
    if not path.startswith(prefix):
        raise ValueError(f"{path!r} is not inside {directory!r}")
    return path[len(prefix):]


def ancestors(path: str) -> list[str]:
    """Return every proper ancestor directory of path, shallowest first.

    >>> ancestors("a/b/c.txt")
    ['a', 'a/b']
    """
    parts = normalize_path(path).split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]
