"""Tests covering config file discovery and environment variable overrides."""

from __future__ import annotations

from pathlib import Path

from outback import config as config_module

_ENV_KEYS = (
    "PORT",
    "HOST",
    "RECORDINGS_DIR",
    "FFMPEG_PATH",
    "LOG_LEVEL",
    "ACCESS_LOG",
    "LIVE_WARMUP_SEC",
    "LIVE_RESTART_BACKOFF_SEC",
    "LIVE_MAX_RESTARTS",
    "LIVE_FOLLOW_INPUT",
    "TIMELAPSE_REQUEST_WAIT_SEC",
    "SESSION_DUPLICATE_POLICY",
)


def _reset_config_state(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


def test_file_values_merge_over_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("server:\n  port: 4100\nlive:\n  warmup_sec: 5\n")
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("OUTBACK_CONFIG", str(config_path))

    cfg = config_module.get_cfg()

    assert cfg["server"]["port"] == 4100
    assert cfg["server"]["host"] == "0.0.0.0"
    assert cfg["live"]["warmup_sec"] == 5
    assert cfg["live"]["segment_time"] == 2
    assert config_module.active_config_path() == config_path.resolve()
    assert config_module.search_paths()[0] == config_path.resolve()


def test_env_overrides_file(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("server:\n  port: 4100\nsession:\n  duplicate_policy: replace\n")
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("OUTBACK_CONFIG", str(config_path))
    monkeypatch.setenv("PORT", "5000")
    monkeypatch.setenv("RECORDINGS_DIR", str(tmp_path / "rec"))
    monkeypatch.setenv("FFMPEG_PATH", "/opt/ffmpeg")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LIVE_MAX_RESTARTS", "-3")
    monkeypatch.setenv("LIVE_FOLLOW_INPUT", "yes")
    monkeypatch.setenv("TIMELAPSE_REQUEST_WAIT_SEC", "0")
    monkeypatch.setenv("SESSION_DUPLICATE_POLICY", "Reject")

    cfg = config_module.get_cfg()

    assert cfg["server"]["port"] == 5000
    assert cfg["paths"]["recordings_dir"] == str(tmp_path / "rec")
    assert cfg["ffmpeg"]["path"] == "/opt/ffmpeg"
    assert cfg["logging"]["level"] == "DEBUG"
    assert cfg["live"]["max_restarts"] == 0
    assert cfg["live"]["follow_input"] is True
    assert cfg["timelapse"]["request_wait_sec"] == 0.0
    assert cfg["session"]["duplicate_policy"] == "reject"


def test_invalid_env_values_are_ignored(monkeypatch, tmp_path: Path, caplog) -> None:
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("OUTBACK_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("PORT", "not-a-port")
    monkeypatch.setenv("SESSION_DUPLICATE_POLICY", "queue")

    cfg = config_module.get_cfg()

    assert cfg["server"]["port"] == 3000
    assert cfg["session"]["duplicate_policy"] == "replace"
    assert any("PORT" in r.getMessage() for r in caplog.records)


def test_malformed_yaml_falls_back_to_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("server: [unclosed\n")
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("OUTBACK_CONFIG", str(config_path))

    cfg = config_module.get_cfg()

    assert cfg["server"]["port"] == 3000


def test_reload_picks_up_changes(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("server:\n  port: 4100\n")
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("OUTBACK_CONFIG", str(config_path))

    assert config_module.get_cfg()["server"]["port"] == 4100
    config_path.write_text("server:\n  port: 4200\n")
    assert config_module.get_cfg()["server"]["port"] == 4100
    assert config_module.reload_cfg()["server"]["port"] == 4200


def test_section_fills_missing_keys() -> None:
    live = config_module.section({"live": {"warmup_sec": 0}}, "live")

    assert live["warmup_sec"] == 0
    assert live["playlist_name"] == "playlist.m3u8"
    assert config_module.section({}, "timelapse")["factor"] == 60
