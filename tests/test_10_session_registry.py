from __future__ import annotations

import pytest

from outback.errors import DuplicateSessionError, InvalidSessionKeyError
from outback.session_registry import SessionKey, SessionRegistry, SessionStatus


def test_session_key_name_joins_parts():
    key = SessionKey.from_parts("alice", 3)
    assert key.name == "alice_3"
    assert str(key) == "alice_3"
    assert key == SessionKey.from_parts(" alice ", "3")


@pytest.mark.parametrize(
    "user_id, challenge_num",
    [
        (None, "1"),
        ("", "1"),
        ("   ", "1"),
        ("alice", None),
        ("..", "1"),
        ("a/b", "1"),
        ("alice", "..\\x"),
        ("ali\x00ce", "1"),
        (True, "1"),
        ("alice", "5_x"),
    ],
)
def test_session_key_rejects_unusable_parts(user_id, challenge_num):
    with pytest.raises(InvalidSessionKeyError):
        SessionKey.from_parts(user_id, challenge_num)


def test_underscore_allowed_in_user_id_only():
    key = SessionKey.from_parts("u1_5", "x")
    assert key.name == "u1_5_x"

    with pytest.raises(InvalidSessionKeyError) as excinfo:
        SessionKey.from_parts("u1", "5_x")
    assert "challengeNum" in str(excinfo.value)
    # Distinct keys never share a directory name.
    assert SessionKey.from_parts("u1_5", "x").name != SessionKey.from_parts("u1", "5x").name


def test_open_creates_directory_and_empty_input(tmp_path):
    registry = SessionRegistry(tmp_path)
    key = SessionKey.from_parts("u1", "7")

    session = registry.open(key, "conn-a")
    try:
        assert session.directory == tmp_path / "u1_7"
        assert session.input_path.exists()
        assert session.input_path.stat().st_size == 0
        assert session.status is SessionStatus.INITIALIZING
        assert registry.lookup(key) is session
        assert key in registry
        assert len(registry) == 1
    finally:
        session.close()


def test_remove_is_idempotent(tmp_path):
    registry = SessionRegistry(tmp_path)
    key = SessionKey.from_parts("u1", "1")
    session = registry.open(key, "conn-a")

    assert registry.remove(key) is session
    assert registry.remove(key) is None
    assert registry.lookup(key) is None
    session.close()


@pytest.mark.parametrize("owned", [0, 1, 3])
def test_remove_all_owned_by_returns_only_that_connection(tmp_path, owned):
    registry = SessionRegistry(tmp_path)
    other = registry.open(SessionKey.from_parts("other", "1"), "conn-b")
    mine = [registry.open(SessionKey.from_parts("me", str(i)), "conn-a") for i in range(owned)]

    removed = registry.remove_all_owned_by("conn-a")

    assert sorted(s.key.name for s in removed) == sorted(s.key.name for s in mine)
    assert len(registry) == 1
    assert registry.lookup(other.key) is other
    assert registry.remove_all_owned_by("conn-a") == []
    for session in [other, *mine]:
        session.close()


def test_duplicate_start_replaces_by_default(tmp_path):
    registry = SessionRegistry(tmp_path)
    key = SessionKey.from_parts("u1", "1")
    first = registry.open(key, "conn-a")
    first.sink.append(b"old bytes")

    second = registry.open(key, "conn-b")

    assert first.status is SessionStatus.STOPPED
    assert first.sink.closed
    assert registry.lookup(key) is second
    assert second.connection_id == "conn-b"
    # The replacement truncates the capture file.
    assert second.input_path.stat().st_size == 0
    second.close()


def test_duplicate_start_rejected_when_configured(tmp_path):
    registry = SessionRegistry(tmp_path, duplicate_policy="reject")
    key = SessionKey.from_parts("u1", "1")
    first = registry.open(key, "conn-a")

    with pytest.raises(DuplicateSessionError):
        registry.open(key, "conn-b")

    assert registry.lookup(key) is first
    assert not first.sink.closed
    first.close()


def test_unknown_duplicate_policy_rejected(tmp_path):
    with pytest.raises(ValueError):
        SessionRegistry(tmp_path, duplicate_policy="queue")


def test_session_close_runs_once(tmp_path):
    registry = SessionRegistry(tmp_path)
    session = registry.open(SessionKey.from_parts("u1", "1"), "conn-a")

    assert session.close() is True
    assert session.close() is False
    assert not session.accepting_chunks


def test_snapshot_describes_sessions(tmp_path):
    registry = SessionRegistry(tmp_path)
    session = registry.open(SessionKey.from_parts("u1", "1"), "conn-a")
    session.sink.append(b"abc")

    (entry,) = registry.snapshot()

    assert entry["streamKey"] == "u1_1"
    assert entry["userId"] == "u1"
    assert entry["challengeNum"] == "1"
    assert entry["status"] == "initializing"
    assert entry["bytesWritten"] == 3
    assert entry["encoder"] is None
    session.close()
