"""
Stream controller (capture session orchestration).

Ties the session registry, the per-session ingest sink and the transcode
supervisor together. The web layer calls into a single controller instance:

- start_stream(): opens a session and schedules its encoder after warm-up.
- ingest_chunk(): appends a decoded chunk to the session's container.
- stop_stream(): closes the sink, then signals the encoder. No-op for
  unknown keys.
- disconnect(): tears down every session owned by a control connection.
- shutdown(): closes everything and waits for encoders to exit.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from outback import config as config_module
from outback import ffmpeg_io
from outback.errors import SessionNotFoundError, SinkClosedError
from outback.session_registry import SessionKey, SessionRegistry, StreamSession
from outback.transcode_supervisor import EncoderState, TranscodeSupervisor

CommandFactory = Callable[[StreamSession], Sequence[str]]


class StreamController:
    def __init__(
        self,
        cfg: Mapping[str, Any] | None = None,
        *,
        command_factory: CommandFactory | None = None,
    ):
        cfg = cfg if cfg is not None else config_module.get_cfg()
        self._log = logging.getLogger("stream_controller")
        self.paths_cfg = config_module.section(cfg, "paths")
        self.live_cfg = config_module.section(cfg, "live")
        self.ffmpeg_cfg = config_module.section(cfg, "ffmpeg")
        session_cfg = config_module.section(cfg, "session")

        self.recordings_root = Path(self.paths_cfg["recordings_dir"])
        os.makedirs(self.recordings_root, exist_ok=True)
        self.registry = SessionRegistry(
            self.recordings_root,
            input_name=self.live_cfg["input_name"],
            duplicate_policy=str(session_cfg["duplicate_policy"]).lower(),
        )
        self._command_factory = command_factory or self._default_command

    # --- Paths ---
    def session_dir(self, key: SessionKey) -> Path:
        return self.registry.session_dir(key)

    def input_path(self, key: SessionKey) -> Path:
        return self.registry.input_path(key)

    def playlist_path(self, key: SessionKey) -> Path:
        return self.session_dir(key) / self.live_cfg["playlist_name"]

    @property
    def segment_prefix(self) -> str:
        return self.live_cfg["segment_prefix"]

    # --- Session lifecycle ---
    def start_stream(self, user_id: object, challenge_num: object, connection_id: str) -> StreamSession:
        key = SessionKey.from_parts(user_id, challenge_num)
        session = self.registry.open(key, connection_id)
        self._clear_live_outputs(session.directory)

        def _is_active() -> bool:
            return self.registry.lookup(key) is session

        def _on_state(state: EncoderState) -> None:
            if state is EncoderState.RUNNING:
                session.mark_encoding()

        supervisor = TranscodeSupervisor(
            key.name,
            lambda: self._command_factory(session),
            warmup_sec=float(self.live_cfg["warmup_sec"]),
            restart_backoff_sec=float(self.live_cfg["restart_backoff_sec"]),
            max_restarts=int(self.live_cfg["max_restarts"]),
            created_at=session.created_monotonic,
            is_active=_is_active,
            on_state_change=_on_state,
        )
        session.supervisor = supervisor
        supervisor.start()
        self._log.info("Started stream %s for connection %s", key.name, connection_id)
        return session

    def ingest_chunk(self, user_id: object, challenge_num: object, data: bytes) -> int:
        key = SessionKey.from_parts(user_id, challenge_num)
        session = self.registry.lookup(key)
        if session is None:
            raise SessionNotFoundError(f"no active stream {key.name}")
        if not session.accepting_chunks:
            raise SinkClosedError(f"stream {key.name} is {session.status.value}")
        return session.sink.append(data)

    def stop_stream(self, user_id: object, challenge_num: object) -> bool:
        key = SessionKey.from_parts(user_id, challenge_num)
        session = self.registry.remove(key)
        if session is None:
            self._log.debug("Stop requested for inactive stream %s", key.name)
            return False
        self._teardown(session, reason="stop requested")
        return True

    def disconnect(self, connection_id: str) -> int:
        sessions = self.registry.remove_all_owned_by(connection_id)
        for session in sessions:
            self._teardown(session, reason=f"connection {connection_id} closed")
        return len(sessions)

    async def shutdown(self, timeout: float | None = None) -> None:
        if timeout is None:
            timeout = float(self.live_cfg["stop_timeout_sec"])
        sessions = self.registry.remove_all()
        for session in sessions:
            self._teardown(session, reason="server shutdown")
        for session in sessions:
            if session.supervisor is not None:
                await session.supervisor.aclose(timeout)

    # --- Status ---
    @property
    def active_count(self) -> int:
        return len(self.registry)

    def status(self) -> dict:
        return {
            "activeStreams": len(self.registry),
            "streams": self.registry.snapshot(),
        }

    # --- Internals ---
    def _teardown(self, session: StreamSession, *, reason: str) -> None:
        if session.close():
            self._log.info(
                "Stopped stream %s (%s, %d bytes ingested)",
                session.key.name,
                reason,
                session.sink.bytes_written,
            )

    def _clear_live_outputs(self, directory: Path) -> None:
        stale = [directory / self.live_cfg["playlist_name"]]
        stale.extend(directory.glob(f"{self.segment_prefix}_*.ts"))
        for path in stale:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                self._log.warning("Could not remove stale output %s: %s", path, exc)

    def _default_command(self, session: StreamSession) -> list[str]:
        ffmpeg = ffmpeg_io.resolve_ffmpeg(
            self.ffmpeg_cfg.get("path"), self.ffmpeg_cfg.get("search_paths") or ()
        )
        return ffmpeg_io.live_hls_command(
            ffmpeg or "ffmpeg", session.input_path, session.directory, self.live_cfg
        )
