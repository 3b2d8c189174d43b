"""Shared helpers for locating ffmpeg and building its command lines."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Iterable, Mapping

DEFAULT_SEARCH_PATHS = ("/usr/bin/ffmpeg", "/usr/local/bin/ffmpeg", "/bin/ffmpeg")
DEFAULT_LOG_LEVEL = "warning"

_log = logging.getLogger("ffmpeg_io")


def resolve_ffmpeg(
    configured: str | None = None,
    search_paths: Iterable[str] = DEFAULT_SEARCH_PATHS,
) -> str | None:
    """Return the ffmpeg binary to use, or ``None`` when none can be found.

    An explicitly configured path wins, then the usual install locations
    (Alpine and Debian images put it in ``/usr/bin``), then ``$PATH``.
    """
    if configured:
        return configured
    for candidate in search_paths:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return shutil.which("ffmpeg")


def verify_ffmpeg(path: str, timeout: float = 2.0) -> bool:
    """Run ``ffmpeg -version`` once so a broken install shows up at startup."""
    try:
        result = subprocess.run(
            [path, "-version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        _log.error("ffmpeg binary at %s is not usable: %s", path, exc)
        return False
    if result.returncode != 0:
        _log.error("ffmpeg -version exited with %s", result.returncode)
        return False
    first_line = result.stdout.decode("utf-8", errors="replace").splitlines()[:1]
    _log.info("ffmpeg is accessible: %s", first_line[0] if first_line else path)
    return True


def atempo_chain(factor: float, max_ratio: float = 2.0) -> list[float]:
    """Split ``factor`` into ``atempo`` stages that each stay within bounds.

    A single ``atempo`` instance only accepts ratios in
    ``[1 / max_ratio, max_ratio]``; the product of the returned stages equals
    ``factor``.
    """
    if factor <= 0:
        raise ValueError("factor must be positive")
    if max_ratio <= 1:
        raise ValueError("max_ratio must be greater than 1")
    stages: list[float] = []
    remaining = float(factor)
    min_ratio = 1.0 / max_ratio
    while remaining > max_ratio:
        stages.append(max_ratio)
        remaining /= max_ratio
    while remaining < min_ratio:
        stages.append(min_ratio)
        remaining /= min_ratio
    if not stages or abs(remaining - 1.0) > 1e-9:
        stages.append(remaining)
    return stages


def _fmt(value: float) -> str:
    return f"{value:.6g}"


def atempo_filter(factor: float, max_ratio: float = 2.0) -> str:
    return ",".join(f"atempo={_fmt(stage)}" for stage in atempo_chain(factor, max_ratio))


def live_hls_command(
    ffmpeg: str,
    input_path: Path,
    out_dir: Path,
    live_cfg: Mapping[str, Any],
) -> list[str]:
    """Command turning a growing WebM file into an event-type HLS playlist.

    Options placed before ``-i`` apply to the input; ``-follow`` keeps the
    file protocol reading past the current end of a file still being written.
    """
    segment_name = f"{live_cfg['segment_prefix']}_%03d.ts"
    cmd = [
        ffmpeg,
        "-hide_banner",
        "-nostats",
        "-loglevel", DEFAULT_LOG_LEVEL,
        "-y",
        "-fflags", "+genpts+discardcorrupt",
        "-flags", "low_delay",
        "-strict", "experimental",
        "-analyzeduration", str(live_cfg["analyzeduration"]),
        "-probesize", str(live_cfg["probesize"]),
    ]
    if live_cfg.get("follow_input"):
        cmd.extend(["-follow", "1"])
    cmd.extend(
        [
            "-i", str(input_path),
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-tune", "zerolatency",
            "-c:a", "aac",
            "-f", "hls",
            "-hls_time", str(live_cfg["segment_time"]),
            "-hls_list_size", str(live_cfg["list_size"]),
            "-hls_flags", "delete_segments+append_list",
            "-hls_segment_filename", str(out_dir / segment_name),
            "-hls_playlist_type", "event",
            "-start_number", "0",
            str(out_dir / live_cfg["playlist_name"]),
        ]
    )
    return cmd


def timelapse_command(
    ffmpeg: str,
    input_path: Path,
    out_dir: Path,
    timelapse_cfg: Mapping[str, Any],
) -> list[str]:
    """Command rendering a sped-up VOD playlist from a capture file."""
    factor = float(timelapse_cfg["factor"])
    segment_name = f"{timelapse_cfg['segment_prefix']}_%03d.ts"
    return [
        ffmpeg,
        "-hide_banner",
        "-nostats",
        "-loglevel", DEFAULT_LOG_LEVEL,
        "-y",
        "-fflags", "+genpts",
        "-i", str(input_path),
        "-vf", f"setpts=PTS/{_fmt(factor)}",
        "-af", atempo_filter(factor, float(timelapse_cfg["max_tempo_ratio"])),
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-c:a", "aac",
        "-f", "hls",
        "-hls_time", str(timelapse_cfg["segment_time"]),
        "-hls_list_size", "0",
        "-hls_segment_filename", str(out_dir / segment_name),
        "-hls_playlist_type", "vod",
        str(out_dir / timelapse_cfg["playlist_name"]),
    ]
