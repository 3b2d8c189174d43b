"""
Timelapse job gate (single-flight, on-demand accelerated renditions).

A timelapse is a VOD HLS playlist rendered from a session's capture file at
a fixed speed-up. Requests are answered from one of four outcomes:

- SOURCE_MISSING: the capture file does not exist.
- IN_PROGRESS: a render for the key is already running. The caller is never
  queued behind it and should poll again.
- READY: the cached playlist is at least as new as the capture file, or a
  render started by this request finished within ``request_wait_sec``.
- FAILED: the render started by this request failed. The job record and
  any partial output are dropped so the next request starts over.

At most one render runs per key. A render that outlives the request wait
keeps running in the background; later requests see IN_PROGRESS and then
READY once the output is fresh.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

from outback import config as config_module
from outback import ffmpeg_io
from outback.errors import (
    EncoderRuntimeError,
    EncoderSpawnError,
    JobInProgressError,
    SourceMissingError,
    StreamingError,
)
from outback.session_registry import SessionKey

CommandFactory = Callable[[Path, Path], Sequence[str]]


class JobStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"


class ResultStatus(str, enum.Enum):
    READY = "ready"
    IN_PROGRESS = "in_progress"
    SOURCE_MISSING = "source_missing"
    FAILED = "failed"


@dataclass(frozen=True)
class TimelapseResult:
    status: ResultStatus
    path: Optional[Path] = None
    reason: str = ""
    error: Optional[StreamingError] = field(default=None, compare=False)

    @classmethod
    def ready(cls, path: Path) -> "TimelapseResult":
        return cls(ResultStatus.READY, path=path)

    @classmethod
    def in_progress(cls) -> "TimelapseResult":
        return cls(ResultStatus.IN_PROGRESS)

    @classmethod
    def source_missing(cls) -> "TimelapseResult":
        return cls(ResultStatus.SOURCE_MISSING, reason="Input file not found")

    @classmethod
    def failed(cls, reason: str, error: StreamingError | None = None) -> "TimelapseResult":
        return cls(ResultStatus.FAILED, reason=reason, error=error)

    def raise_for_status(self) -> Path:
        """Return the playlist path, or raise the error matching this outcome."""
        if self.status is ResultStatus.READY and self.path is not None:
            return self.path
        if self.status is ResultStatus.SOURCE_MISSING:
            raise SourceMissingError(self.reason)
        if self.status is ResultStatus.IN_PROGRESS:
            raise JobInProgressError("timelapse is still rendering")
        raise self.error or EncoderRuntimeError(self.reason or "timelapse generation failed")


@dataclass
class TimelapseJob:
    key: SessionKey
    output_path: Path
    status: JobStatus = JobStatus.IDLE
    task: Optional[asyncio.Task] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None


def _summarize_stderr(raw: bytes) -> str:
    lines = [l.strip() for l in raw.decode("utf-8", errors="replace").splitlines() if l.strip()]
    return "; ".join(lines[-3:])[:200]


class TimelapseGate:
    def __init__(
        self,
        recordings_root: Path,
        cfg: Mapping[str, Any] | None = None,
        *,
        command_factory: CommandFactory | None = None,
    ):
        cfg = cfg if cfg is not None else config_module.get_cfg()
        self.recordings_root = Path(recordings_root)
        self.timelapse_cfg = config_module.section(cfg, "timelapse")
        self.live_cfg = config_module.section(cfg, "live")
        self.ffmpeg_cfg = config_module.section(cfg, "ffmpeg")
        wait = self.timelapse_cfg.get("request_wait_sec")
        self.request_wait_sec: float | None = None if wait is None else float(wait)
        timeout = self.timelapse_cfg.get("timeout_sec")
        self.timeout_sec: float | None = None if timeout is None else float(timeout)
        self._command_factory = command_factory or self._default_command
        self._jobs: dict[str, TimelapseJob] = {}
        self._log = logging.getLogger("timelapse")

    # --- Paths ---
    def source_path(self, key: SessionKey) -> Path:
        return self.recordings_root / key.name / self.live_cfg["input_name"]

    def output_path(self, key: SessionKey) -> Path:
        return self.recordings_root / key.name / self.timelapse_cfg["playlist_name"]

    @property
    def segment_prefix(self) -> str:
        return self.timelapse_cfg["segment_prefix"]

    def job(self, key: SessionKey) -> TimelapseJob | None:
        return self._jobs.get(key.name)

    def status(self) -> list[dict]:
        return [
            {"streamKey": name, "status": job.status.value, "startedAt": job.started_at}
            for name, job in self._jobs.items()
        ]

    def is_fresh(self, key: SessionKey) -> bool:
        return self._is_fresh(self.source_path(key), self.output_path(key))

    @staticmethod
    def _is_fresh(source: Path, output: Path) -> bool:
        try:
            return output.stat().st_mtime >= source.stat().st_mtime
        except FileNotFoundError:
            return False

    # --- Requests ---
    async def request(self, key: SessionKey) -> TimelapseResult:
        source = self.source_path(key)
        if not source.exists():
            return TimelapseResult.source_missing()

        job = self._jobs.get(key.name)
        # Checked before freshness: a running render may already have
        # written a partial playlist.
        if job is not None and job.status is JobStatus.RUNNING:
            return TimelapseResult.in_progress()

        output = self.output_path(key)
        if self._is_fresh(source, output):
            return TimelapseResult.ready(output)

        job = TimelapseJob(key=key, output_path=output, status=JobStatus.RUNNING)
        self._jobs[key.name] = job
        task = asyncio.get_running_loop().create_task(
            self._render(job, source), name=f"timelapse-{key.name}"
        )
        job.task = task
        return await self._await_job(job, task)

    async def _await_job(self, job: TimelapseJob, task: asyncio.Task) -> TimelapseResult:
        wait = self.request_wait_sec
        if wait is not None and wait <= 0:
            return TimelapseResult.in_progress()
        try:
            return await asyncio.wait_for(asyncio.shield(task), wait)
        except asyncio.TimeoutError:
            self._log.info("Timelapse for %s still rendering; answering in-progress", job.key.name)
            return TimelapseResult.in_progress()

    async def shutdown(self) -> None:
        tasks = [job.task for job in self._jobs.values() if job.task is not None and not job.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- Rendering ---
    async def _render(self, job: TimelapseJob, source: Path) -> TimelapseResult:
        try:
            return await self._render_once(job, source)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Encoder failures must never leave a job stuck in RUNNING.
            self._log.exception("Unexpected timelapse error for %s", job.key.name)
            return self._fail(job, StreamingError(str(exc) or exc.__class__.__name__))

    async def _render_once(self, job: TimelapseJob, source: Path) -> TimelapseResult:
        name = job.key.name
        out_dir = job.output_path.parent
        self._clear_outputs(out_dir)
        cmd = [str(part) for part in self._command_factory(source, out_dir)]
        self._log.info("Generating timelapse for %s: %s", name, " ".join(cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            return self._fail(job, EncoderSpawnError(f"could not start encoder: {exc}"))

        try:
            if self.timeout_sec is not None:
                _, stderr = await asyncio.wait_for(proc.communicate(), self.timeout_sec)
            else:
                _, stderr = await proc.communicate()
        except asyncio.TimeoutError:
            await self._kill(proc)
            return self._fail(
                job, EncoderRuntimeError(f"timed out after {self.timeout_sec:.0f}s", proc.returncode)
            )
        except asyncio.CancelledError:
            await self._kill(proc)
            self._discard_outputs(job)
            self._forget(job)
            raise

        if proc.returncode != 0:
            tail = _summarize_stderr(stderr or b"")
            return self._fail(
                job,
                EncoderRuntimeError(
                    f"FFmpeg error: {tail or f'exit status {proc.returncode}'}",
                    proc.returncode,
                    tail,
                ),
            )
        if not job.output_path.exists():
            return self._fail(job, EncoderRuntimeError("encoder exited without writing a playlist", 0))

        job.status = JobStatus.DONE
        job.finished_at = time.time()
        self._log.info(
            "Timelapse generation completed for %s in %.1fs", name, job.finished_at - job.started_at
        )
        return TimelapseResult.ready(job.output_path)

    def _fail(self, job: TimelapseJob, exc: StreamingError) -> TimelapseResult:
        self._log.error("Timelapse generation failed for %s: %s", job.key.name, exc)
        self._discard_outputs(job)
        self._forget(job)
        return TimelapseResult.failed(str(exc), exc)

    def _forget(self, job: TimelapseJob) -> None:
        job.status = JobStatus.IDLE
        if self._jobs.get(job.key.name) is job:
            del self._jobs[job.key.name]

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()

    def _discard_outputs(self, job: TimelapseJob) -> None:
        # A partial playlist would otherwise pass the freshness check.
        try:
            job.output_path.unlink(missing_ok=True)
        except OSError as exc:
            self._log.warning(
                "Could not remove partial timelapse playlist %s: %s", job.output_path, exc
            )
        self._clear_outputs(job.output_path.parent)

    def _clear_outputs(self, directory: Path) -> None:
        for path in directory.glob(f"{self.segment_prefix}_*.ts"):
            try:
                path.unlink()
            except OSError as exc:
                self._log.warning("Could not remove stale timelapse segment %s: %s", path, exc)

    def _default_command(self, source: Path, out_dir: Path) -> list[str]:
        ffmpeg = ffmpeg_io.resolve_ffmpeg(
            self.ffmpeg_cfg.get("path"), self.ffmpeg_cfg.get("search_paths") or ()
        )
        return ffmpeg_io.timelapse_command(ffmpeg or "ffmpeg", source, out_dir, self.timelapse_cfg)
