"""
Session registry: the authoritative table of active capture sessions.

Each StreamSession owns exactly one ingest sink and at most one transcode
supervisor. Teardown always closes the sink before the encoder is signalled
so the container on disk is never cut short by an early SIGTERM.

All mutation happens on the event loop thread; there is no locking here and
the registry must not be shared across threads.
"""

from __future__ import annotations

import enum
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from outback.config import DUPLICATE_POLICIES
from outback.errors import DuplicateSessionError, InvalidSessionKeyError
from outback.ingest_sink import IngestSink
from outback.transcode_supervisor import TranscodeSupervisor


def _clean_part(label: str, value: object, forbidden: str = "") -> str:
    if value is None or isinstance(value, bool):
        raise InvalidSessionKeyError(f"{label} is required")
    text = str(value).strip()
    if not text:
        raise InvalidSessionKeyError(f"{label} is required")
    if text in {".", ".."} or any(ch in text for ch in ("/", "\\", "\x00")):
        raise InvalidSessionKeyError(f"{label} contains illegal characters: {text!r}")
    if any(ch in text for ch in forbidden):
        raise InvalidSessionKeyError(
            f"{label} must not contain {forbidden!r}, it separates the parts of the stream key: {text!r}"
        )
    return text


@dataclass(frozen=True)
class SessionKey:
    # The name joins both parts with "_"; challengeNum may not contain one,
    # so every name splits back into exactly one key on its last underscore.
    user_id: str
    challenge_num: str

    @classmethod
    def from_parts(cls, user_id: object, challenge_num: object) -> "SessionKey":
        return cls(
            _clean_part("userId", user_id),
            _clean_part("challengeNum", challenge_num, forbidden="_"),
        )

    @property
    def name(self) -> str:
        return f"{self.user_id}_{self.challenge_num}"

    def __str__(self) -> str:
        return self.name


class SessionStatus(str, enum.Enum):
    INITIALIZING = "initializing"
    ENCODING = "encoding"
    STOPPED = "stopped"


@dataclass
class StreamSession:
    key: SessionKey
    connection_id: str
    directory: Path
    input_path: Path
    sink: IngestSink
    created_at: float = field(default_factory=time.time)
    created_monotonic: float = field(default_factory=time.monotonic)
    supervisor: Optional[TranscodeSupervisor] = None
    status: SessionStatus = SessionStatus.INITIALIZING

    @property
    def accepting_chunks(self) -> bool:
        return self.status is not SessionStatus.STOPPED and not self.sink.closed

    def mark_encoding(self) -> None:
        if self.status is SessionStatus.INITIALIZING:
            self.status = SessionStatus.ENCODING

    def close(self) -> bool:
        """Flush the sink, then signal the encoder. Returns False if already closed."""
        if self.status is SessionStatus.STOPPED:
            return False
        self.status = SessionStatus.STOPPED
        self.sink.close()
        supervisor = self.supervisor
        if supervisor is not None:
            supervisor.stop()
        return True

    def describe(self) -> dict:
        supervisor = self.supervisor
        return {
            "streamKey": self.key.name,
            "userId": self.key.user_id,
            "challengeNum": self.key.challenge_num,
            "status": self.status.value,
            "connectionId": self.connection_id,
            "createdAt": self.created_at,
            "ageSec": round(time.monotonic() - self.created_monotonic, 3),
            "bytesWritten": self.sink.bytes_written,
            "encoder": supervisor.status() if supervisor is not None else None,
        }


class SessionRegistry:
    def __init__(
        self,
        recordings_root: Path,
        *,
        input_name: str = "input.webm",
        duplicate_policy: str = "replace",
    ):
        if duplicate_policy not in DUPLICATE_POLICIES:
            raise ValueError(f"duplicate_policy must be one of {DUPLICATE_POLICIES}")
        self.recordings_root = Path(recordings_root)
        self.input_name = input_name
        self.duplicate_policy = duplicate_policy
        self._sessions: dict[str, StreamSession] = {}
        self._log = logging.getLogger("session_registry")

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, SessionKey) and key.name in self._sessions

    def __iter__(self) -> Iterator[StreamSession]:
        return iter(list(self._sessions.values()))

    def session_dir(self, key: SessionKey) -> Path:
        return self.recordings_root / key.name

    def input_path(self, key: SessionKey) -> Path:
        return self.session_dir(key) / self.input_name

    def open(self, key: SessionKey, connection_id: str) -> StreamSession:
        existing = self._sessions.get(key.name)
        if existing is not None:
            if self.duplicate_policy == "reject":
                raise DuplicateSessionError(f"stream {key.name} is already active")
            self._log.warning(
                "Replacing active session %s (owner %s) with a new start from %s",
                key.name,
                existing.connection_id,
                connection_id,
            )
            del self._sessions[key.name]
            existing.close()

        directory = self.session_dir(key)
        os.makedirs(directory, exist_ok=True)
        input_path = directory / self.input_name
        session = StreamSession(
            key=key,
            connection_id=connection_id,
            directory=directory,
            input_path=input_path,
            sink=IngestSink(input_path),
        )
        self._sessions[key.name] = session
        return session

    def lookup(self, key: SessionKey) -> StreamSession | None:
        return self._sessions.get(key.name)

    def remove(self, key: SessionKey) -> StreamSession | None:
        return self._sessions.pop(key.name, None)

    def remove_all_owned_by(self, connection_id: str) -> list[StreamSession]:
        owned = [s for s in self._sessions.values() if s.connection_id == connection_id]
        for session in owned:
            del self._sessions[session.key.name]
        return owned

    def remove_all(self) -> list[StreamSession]:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        return sessions

    def snapshot(self) -> list[dict]:
        return [s.describe() for s in self._sessions.values()]
