from __future__ import annotations

import math
from pathlib import Path

import pytest

from outback import config as config_module
from outback import ffmpeg_io


def _live_cfg(**overrides):
    cfg = config_module.section({}, "live")
    cfg.update(overrides)
    return cfg


def _timelapse_cfg(**overrides):
    cfg = config_module.section({}, "timelapse")
    cfg.update(overrides)
    return cfg


@pytest.mark.parametrize("factor", [60, 30, 2, 1.5, 0.25, 100])
def test_atempo_chain_multiplies_to_factor(factor):
    stages = ffmpeg_io.atempo_chain(factor)

    assert math.isclose(math.prod(stages), factor, rel_tol=1e-9)
    assert all(0.5 <= stage <= 2.0 for stage in stages)


def test_atempo_chain_for_sixty():
    assert ffmpeg_io.atempo_chain(60) == [2.0, 2.0, 2.0, 2.0, 2.0, 1.875]
    assert ffmpeg_io.atempo_filter(60) == (
        "atempo=2,atempo=2,atempo=2,atempo=2,atempo=2,atempo=1.875"
    )


def test_atempo_chain_identity_keeps_one_stage():
    assert ffmpeg_io.atempo_chain(1) == [1.0]


@pytest.mark.parametrize("factor, max_ratio", [(0, 2.0), (-1, 2.0), (60, 1.0)])
def test_atempo_chain_rejects_bad_input(factor, max_ratio):
    with pytest.raises(ValueError):
        ffmpeg_io.atempo_chain(factor, max_ratio)


def test_live_command_layout(tmp_path):
    cmd = ffmpeg_io.live_hls_command("ffmpeg", tmp_path / "input.webm", tmp_path, _live_cfg())

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-i") + 1] == str(tmp_path / "input.webm")
    # Probe limits are input options and must precede -i.
    assert cmd.index("-analyzeduration") < cmd.index("-i")
    assert cmd.index("-probesize") < cmd.index("-i")
    assert cmd[cmd.index("-hls_time") + 1] == "2"
    assert cmd[cmd.index("-hls_list_size") + 1] == "5"
    assert cmd[cmd.index("-hls_flags") + 1] == "delete_segments+append_list"
    assert cmd[cmd.index("-hls_playlist_type") + 1] == "event"
    assert cmd[cmd.index("-hls_segment_filename") + 1] == str(tmp_path / "segment_%03d.ts")
    assert cmd[-1] == str(tmp_path / "playlist.m3u8")
    assert "-follow" not in cmd


def test_live_command_follow_input(tmp_path):
    cmd = ffmpeg_io.live_hls_command(
        "/usr/bin/ffmpeg", tmp_path / "input.webm", tmp_path, _live_cfg(follow_input=True)
    )

    follow = cmd.index("-follow")
    assert cmd[follow + 1] == "1"
    assert follow < cmd.index("-i")


def test_timelapse_command_layout(tmp_path):
    cmd = ffmpeg_io.timelapse_command("ffmpeg", tmp_path / "input.webm", tmp_path, _timelapse_cfg())

    assert cmd[cmd.index("-vf") + 1] == "setpts=PTS/60"
    assert cmd[cmd.index("-af") + 1].count("atempo=") == 6
    assert cmd[cmd.index("-hls_playlist_type") + 1] == "vod"
    assert cmd[cmd.index("-hls_list_size") + 1] == "0"
    assert cmd[cmd.index("-hls_segment_filename") + 1] == str(tmp_path / "timelapse_segment_%03d.ts")
    assert cmd[-1] == str(tmp_path / "timelapse.m3u8")


def test_resolve_ffmpeg_prefers_configured_path():
    assert ffmpeg_io.resolve_ffmpeg("/opt/ffmpeg/bin/ffmpeg", ()) == "/opt/ffmpeg/bin/ffmpeg"


def test_resolve_ffmpeg_uses_first_executable_candidate(tmp_path, monkeypatch):
    missing = tmp_path / "missing"
    binary = tmp_path / "ffmpeg"
    binary.write_text("#!/bin/sh\n")
    binary.chmod(0o755)
    monkeypatch.setattr(ffmpeg_io.shutil, "which", lambda _: None)

    assert ffmpeg_io.resolve_ffmpeg(None, [str(missing), str(binary)]) == str(binary)
    assert ffmpeg_io.resolve_ffmpeg(None, [str(missing)]) is None


def test_verify_ffmpeg_reports_unusable_binary(tmp_path, caplog):
    assert ffmpeg_io.verify_ffmpeg(str(Path(tmp_path) / "nope")) is False
    assert any("not usable" in r.getMessage() for r in caplog.records)
