"""Process-local token table behind local temporary URLs.

Tokens are opaque random strings mapped to a TemporaryLink. Nothing is
persisted: a restart invalidates every outstanding link. Inject one store
per registry (or per test) rather than sharing a module-level table.
"""

from __future__ import annotations

import hmac
import secrets
import threading
import time
from collections.abc import Callable

from diskstore.domain.value_objects import ConnectionInfo, TemporaryLink
from diskstore.shared.telemetry.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DEVICE_HEADER = "X-Device-ID"


def _same(presented: str, expected: str) -> bool:
    """Constant-time equality; compare_digest only takes ASCII str, so compare UTF-8 bytes."""
    return hmac.compare_digest(
        presented.encode("utf-8", "surrogatepass"), expected.encode("utf-8", "surrogatepass")
    )


class TemporaryLinkStore:
    """In-memory token -> TemporaryLink table with lazy expiry eviction."""

    TOKEN_BYTES = 24

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        device_header: str = DEFAULT_DEVICE_HEADER,
    ) -> None:
        """Initialize an empty store.

        Args:
            clock: Returns current time in seconds since epoch (injectable for tests).
            device_header: Request header carrying the device id.
        """
        self._clock = clock
        self.device_header = device_header
        self._links: dict[str, TemporaryLink] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def __len__(self) -> int:
        return len(self._links)

    def issue(
        self,
        path: str,
        expires_in: float,
        ip: str | None = None,
        device_id: str | None = None,
    ) -> str:
        """Record a link for path and return its token."""
        token = secrets.token_hex(self.TOKEN_BYTES)
        link = TemporaryLink(
            path=path,
            expires_at_ms=self._now_ms() + int(expires_in * 1000),
            ip=ip,
            device_id=device_id,
        )
        with self._lock:
            self._links[token] = link
        return token

    def resolve(self, token: str, connection: ConnectionInfo | None = None) -> str | None:
        """Return the linked path if token is valid for this connection.

        Unknown, expired, IP-mismatched and device-mismatched tokens all
        return None; callers cannot tell which check failed. A link with
        constraints is invalid when no connection info is given.
        """
        with self._lock:
            link = self._links.get(token)
            if link is None:
                return None
            if self._now_ms() > link.expires_at_ms:
                del self._links[token]
                logger.debug("Evicted expired temporary link for %s", link.path)
                return None
        if link.ip is not None:
            if connection is None or connection.remote_addr is None:
                return None
            if not _same(connection.remote_addr, link.ip):
                return None
        if link.device_id is not None:
            presented = connection.header(self.device_header) if connection else None
            if presented is None or not _same(presented, link.device_id):
                return None
        return link.path

    def revoke(self, token: str) -> bool:
        """Drop a token. Returns True if it existed."""
        with self._lock:
            return self._links.pop(token, None) is not None

    def purge_expired(self) -> int:
        """Remove every expired link. Returns the number removed."""
        now = self._now_ms()
        with self._lock:
            expired = [t for t, link in self._links.items() if link.expires_at_ms < now]
            for token in expired:
                del self._links[token]
        return len(expired)
