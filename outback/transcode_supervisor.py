"""
Transcode supervisor: owns the ffmpeg process that turns one session's
growing ingest file into a live HLS playlist.

Lifecycle:
  NOT_STARTED -> STARTING (warm-up) -> RUNNING -> STOPPED
                                            \\-> RESTARTING -> RUNNING ...
                                            \\-> DEAD

- The first spawn waits for a warm-up delay measured from session creation;
  ffmpeg cannot probe a WebM container from an empty file.
- A failed exit while the session is still registered is retried after a
  fixed backoff, at most ``max_restarts`` times. After that the supervisor is
  DEAD; the playlist simply stops advancing.
- stop() never waits for the process. It signals SIGTERM, drops the handle
  and leaves reaping to the background task. aclose() is the awaiting
  variant used at shutdown.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
import time
from collections import deque
from typing import Callable, Deque, Optional, Sequence, Union

from outback.errors import EncoderSpawnError

CommandSource = Union[Sequence[str], Callable[[], Sequence[str]]]

# Pending supervision tasks; the event loop only keeps weak references.
_background_tasks: set[asyncio.Task] = set()


class EncoderState(str, enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    DEAD = "dead"

    @property
    def terminal(self) -> bool:
        return self in (EncoderState.STOPPED, EncoderState.DEAD)


class TranscodeSupervisor:
    def __init__(
        self,
        name: str,
        command: CommandSource,
        *,
        warmup_sec: float = 2.0,
        restart_backoff_sec: float = 2.0,
        max_restarts: int = 1,
        created_at: float | None = None,
        is_active: Callable[[], bool] | None = None,
        on_state_change: Callable[[EncoderState], None] | None = None,
        stderr_tail_lines: int = 20,
    ):
        self.name = name
        self._command = command
        self.warmup_sec = max(0.0, float(warmup_sec))
        self.restart_backoff_sec = max(0.0, float(restart_backoff_sec))
        self.max_restarts = max(0, int(max_restarts))
        self.created_at = time.monotonic() if created_at is None else created_at
        self._is_active = is_active or (lambda: True)
        self._on_state_change = on_state_change

        self._log = logging.getLogger("transcode_supervisor")
        self._state = EncoderState.NOT_STARTED
        self._task: Optional[asyncio.Task] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        # Process that was sent SIGTERM by stop(); aclose() reaps it.
        self._signalled_proc: Optional[asyncio.subprocess.Process] = None
        self._stopping = False
        self._sleeping = False
        self._stderr_tail: Deque[str] = deque(maxlen=max(1, stderr_tail_lines))
        self.restarts = 0
        self.spawn_count = 0
        self.last_returncode: int | None = None

    # --- Introspection ---
    @property
    def state(self) -> EncoderState:
        return self._state

    @property
    def pid(self) -> int | None:
        proc = self._proc
        return proc.pid if proc is not None else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def status(self) -> dict:
        return {
            "state": self._state.value,
            "pid": self.pid,
            "restarts": self.restarts,
            "spawn_count": self.spawn_count,
            "last_returncode": self.last_returncode,
        }

    # --- Control ---
    def start(self) -> None:
        if self._task is not None or self._state is not EncoderState.NOT_STARTED:
            return
        self._set_state(EncoderState.STARTING)
        task = asyncio.get_running_loop().create_task(
            self._supervise(), name=f"encoder-{self.name}"
        )
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        self._task = task

    def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        proc = self._proc
        self._proc = None
        if proc is not None and proc.returncode is None:
            self._log.info("Stopping encoder for %s (pid %s)", self.name, proc.pid)
            self._signalled_proc = proc
            self._signal(proc, signal.SIGTERM)
        elif self._sleeping and self._task is not None and not self._task.done():
            # Only waits are cancelled; a live spawn is signalled instead.
            self._task.cancel()
        self._set_state(EncoderState.STOPPED)

    async def aclose(self, timeout: float = 3.0) -> None:
        self.stop()
        await self._reap(self._signalled_proc, timeout)
        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), timeout)
            except asyncio.TimeoutError:
                self._log.warning(
                    "Supervision of %s did not finish in %.1fs; cancelled", self.name, timeout
                )
            # A spawn that was in flight during stop() may have produced a process since.
            await self._reap(self._signalled_proc, timeout)

    async def _reap(self, proc: asyncio.subprocess.Process | None, timeout: float) -> None:
        if proc is None or proc.returncode is not None:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout)
        except asyncio.TimeoutError:
            self._log.warning(
                "Encoder for %s did not exit after SIGTERM; sending SIGKILL", self.name
            )
            self._signal(proc, signal.SIGKILL)
            await proc.wait()

    # --- Internals ---
    def _set_state(self, state: EncoderState) -> None:
        if self._state is state or self._state.terminal:
            return
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                self._log.exception("State callback failed for %s", self.name)

    def _signal(self, proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass

    def _resolve_command(self) -> list[str]:
        command = self._command() if callable(self._command) else self._command
        return [str(part) for part in command]

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0 or self._stopping:
            return
        self._sleeping = True
        try:
            await asyncio.sleep(seconds)
        finally:
            self._sleeping = False

    async def _supervise(self) -> None:
        try:
            elapsed = time.monotonic() - self.created_at
            await self._sleep(self.warmup_sec - elapsed)
            while not self._stopping:
                try:
                    returncode: int | None = await self._run_once()
                except EncoderSpawnError as exc:
                    self._log.error("Encoder spawn failed for %s: %s", self.name, exc)
                    returncode = None
                if self._stopping:
                    break
                if returncode == 0:
                    self._log.info("Encoder finished for %s", self.name)
                    self._set_state(EncoderState.STOPPED)
                    break
                if not self._is_active():
                    self._log.info("Session %s no longer active; not restarting encoder", self.name)
                    self._set_state(EncoderState.STOPPED)
                    break
                if self.restarts >= self.max_restarts:
                    self._log.error(
                        "Encoder for %s failed (rc=%s) after %d restart(s); giving up. Last output:\n%s",
                        self.name,
                        returncode,
                        self.restarts,
                        self.stderr_tail or "<none>",
                    )
                    self._set_state(EncoderState.DEAD)
                    break
                self.restarts += 1
                self._log.warning(
                    "Encoder for %s failed (rc=%s); restart %d/%d in %.1fs",
                    self.name,
                    returncode,
                    self.restarts,
                    self.max_restarts,
                    self.restart_backoff_sec,
                )
                self._set_state(EncoderState.RESTARTING)
                await self._sleep(self.restart_backoff_sec)
                if not self._is_active():
                    self._set_state(EncoderState.STOPPED)
                    break
        except asyncio.CancelledError:
            if not self._stopping:
                raise
        except Exception:
            # Nothing from here may take the server down.
            self._log.exception("Encoder supervision crashed for %s", self.name)
            self._set_state(EncoderState.DEAD)
        finally:
            self._set_state(EncoderState.STOPPED)

    async def _run_once(self) -> int:
        cmd = self._resolve_command()
        self._log.info("Launching encoder for %s: %s", self.name, " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            raise EncoderSpawnError(f"{cmd[0] if cmd else '<empty>'}: {exc}") from exc

        self.spawn_count += 1
        self._stderr_tail.clear()
        if self._stopping:
            # stop() ran while the spawn was in flight.
            self._signalled_proc = proc
            self._signal(proc, signal.SIGTERM)
        else:
            self._proc = proc
            self._set_state(EncoderState.RUNNING)

        drain = asyncio.create_task(self._drain_stderr(proc))
        try:
            returncode = await proc.wait()
        except asyncio.CancelledError:
            self._signalled_proc = proc
            self._signal(proc, signal.SIGTERM)
            drain.cancel()
            raise
        try:
            await asyncio.wait_for(drain, timeout=1.0)
        except asyncio.TimeoutError:
            pass
        if self._proc is proc:
            self._proc = None
        self.last_returncode = returncode
        return returncode

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        stream = proc.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                self._log.debug("[%s] %s", self.name, text)
