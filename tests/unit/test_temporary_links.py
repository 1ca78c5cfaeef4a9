"""TemporaryLinkStore unit tests with an injected clock."""

from diskstore.domain.value_objects import ConnectionInfo
from diskstore.infrastructure.external.storage.temporary_links import TemporaryLinkStore


def test_issue_returns_unique_opaque_tokens(link_store) -> None:
    first = link_store.issue("a.txt", 60)
    second = link_store.issue("a.txt", 60)
    assert first != second
    assert "a.txt" not in first
    assert len(link_store) == 2


def test_unconstrained_token_resolves_without_connection(link_store) -> None:
    token = link_store.issue("a.txt", 60)
    assert link_store.resolve(token) == "a.txt"


def test_unknown_token_is_none(link_store) -> None:
    assert link_store.resolve("not-a-token") is None


def test_expired_token_is_evicted(link_store, clock) -> None:
    token = link_store.issue("a.txt", 60)
    clock.advance(60)
    assert link_store.resolve(token) == "a.txt"
    clock.advance(1)
    assert link_store.resolve(token) is None
    assert len(link_store) == 0


def test_ip_bound_token(link_store) -> None:
    token = link_store.issue("a.txt", 60, ip="192.0.2.7")
    assert link_store.resolve(token, ConnectionInfo(remote_addr="192.0.2.7")) == "a.txt"
    assert link_store.resolve(token, ConnectionInfo(remote_addr="192.0.2.8")) is None
    assert link_store.resolve(token, ConnectionInfo()) is None
    assert link_store.resolve(token) is None


def test_device_bound_token_reads_header_case_insensitively(link_store) -> None:
    token = link_store.issue("a.txt", 60, device_id="phone-1")
    assert link_store.resolve(token, ConnectionInfo(headers={"x-device-id": "phone-1"})) == "a.txt"
    assert link_store.resolve(token, ConnectionInfo(headers={"X-Device-ID": "phone-2"})) is None
    assert link_store.resolve(token, ConnectionInfo(headers={})) is None


def test_non_ascii_connection_values_do_not_match(link_store) -> None:
    token = link_store.issue("a.txt", 60, ip="192.0.2.7", device_id="phone-1")
    connection = ConnectionInfo(remote_addr="192.0.2.7", headers={"X-Device-ID": "téléphone"})
    assert link_store.resolve(token, connection) is None
    assert link_store.resolve(token, ConnectionInfo(remote_addr="é")) is None


def test_non_ascii_device_id_matches_itself(link_store) -> None:
    token = link_store.issue("a.txt", 60, device_id="téléphone")
    connection = ConnectionInfo(headers={"x-device-id": "téléphone"})
    assert link_store.resolve(token, connection) == "a.txt"


def test_custom_device_header(clock) -> None:
    store = TemporaryLinkStore(clock=clock, device_header="X-Client")
    token = store.issue("a.txt", 60, device_id="c1")
    assert store.resolve(token, ConnectionInfo(headers={"X-Client": "c1"})) == "a.txt"
    assert store.resolve(token, ConnectionInfo(headers={"X-Device-ID": "c1"})) is None


def test_revoke(link_store) -> None:
    token = link_store.issue("a.txt", 60)
    assert link_store.revoke(token) is True
    assert link_store.revoke(token) is False
    assert link_store.resolve(token) is None


def test_purge_expired_keeps_live_links(link_store, clock) -> None:
    short = link_store.issue("a.txt", 10)
    long = link_store.issue("b.txt", 100)
    clock.advance(50)
    assert link_store.purge_expired() == 1
    assert link_store.resolve(short) is None
    assert link_store.resolve(long) == "b.txt"


def test_stores_are_independent(clock) -> None:
    one = TemporaryLinkStore(clock=clock)
    two = TemporaryLinkStore(clock=clock)
    token = one.issue("a.txt", 60)
    assert two.resolve(token) is None
