#!/usr/bin/env python3
"""
Unified configuration loader for the streaming server.

Load order (first found wins):
  1) OUTBACK_CONFIG (env, absolute or relative to CWD)
  2) /etc/outback/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

DUPLICATE_POLICIES = ("replace", "reject")

_DEFAULTS: Dict[str, Any] = {
    "server": {
        "host": "0.0.0.0",
        "port": 3000,
        "access_log": False,
        "cors_origin": "*",
        "service_name": "outback-streaming",
        "ws_max_msg_size": 16 * 1024 * 1024,
        "ws_heartbeat_sec": 30.0,
    },
    "paths": {
        "recordings_dir": str(_PROJECT_ROOT / "recordings"),
        # URL prefix the recordings directory is served under.
        "static_prefix": "recordings",
    },
    "ffmpeg": {
        "path": None,
        "search_paths": ["/usr/bin/ffmpeg", "/usr/local/bin/ffmpeg", "/bin/ffmpeg"],
        "verify_on_startup": True,
    },
    "live": {
        "input_name": "input.webm",
        "playlist_name": "playlist.m3u8",
        "segment_prefix": "segment",
        "segment_time": 2,
        "list_size": 5,
        "warmup_sec": 2.0,
        "restart_backoff_sec": 2.0,
        "max_restarts": 1,
        "analyzeduration": 1000000,
        "probesize": 1000000,
        "follow_input": False,
        "stop_timeout_sec": 3.0,
    },
    "timelapse": {
        "factor": 60,
        "max_tempo_ratio": 2.0,
        "playlist_name": "timelapse.m3u8",
        "segment_prefix": "timelapse_segment",
        "segment_time": 2,
        "request_wait_sec": 30.0,
        "timeout_sec": None,
    },
    "session": {
        "duplicate_policy": "replace",
    },
    "logging": {
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore unreadable files and continue with other locations/defaults
        _log.warning("Ignoring config file %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    _log.warning("Ignoring config file %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("OUTBACK_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("/etc/outback/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        resolved = candidate.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    def _parse_bool(value: str) -> bool:
        return value.strip().lower() in {"1", "true", "yes", "on"}

    def _non_negative_int(value: str) -> int:
        return max(0, int(value))

    def _duplicate_policy(value: str) -> str:
        policy = value.strip().lower()
        if policy not in DUPLICATE_POLICIES:
            raise ValueError(policy)
        return policy

    if "HOST" in os.environ:
        value = os.environ["HOST"].strip()
        if value:
            cfg.setdefault("server", {})["host"] = value
    if "RECORDINGS_DIR" in os.environ:
        cfg.setdefault("paths", {})["recordings_dir"] = os.environ["RECORDINGS_DIR"]
    if "FFMPEG_PATH" in os.environ:
        value = os.environ["FFMPEG_PATH"].strip()
        if value:
            cfg.setdefault("ffmpeg", {})["path"] = value

    env_map = {
        "PORT": ("server", "port", int),
        "ACCESS_LOG": ("server", "access_log", _parse_bool),
        "LOG_LEVEL": ("logging", "level", lambda s: s.strip().upper()),
        "LIVE_WARMUP_SEC": ("live", "warmup_sec", float),
        "LIVE_RESTART_BACKOFF_SEC": ("live", "restart_backoff_sec", float),
        "LIVE_MAX_RESTARTS": ("live", "max_restarts", _non_negative_int),
        "LIVE_FOLLOW_INPUT": ("live", "follow_input", _parse_bool),
        "TIMELAPSE_REQUEST_WAIT_SEC": ("timelapse", "request_wait_sec", float),
        "SESSION_DUPLICATE_POLICY": ("session", "duplicate_policy", _duplicate_policy),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                _log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(_PROJECT_ROOT, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if candidate.exists():
            active = candidate
            break

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def section(cfg: Mapping[str, Any], name: str) -> Dict[str, Any]:
    """Return ``cfg[name]`` merged over its defaults.

    Callers frequently receive partial mappings (tests, embedded use), so
    every consumer reads its section through here instead of indexing.
    """
    defaults = copy.deepcopy(_DEFAULTS.get(name, {}))
    value = cfg.get(name) if isinstance(cfg, Mapping) else None
    if isinstance(value, Mapping):
        return _deep_merge(defaults, dict(value))
    return defaults
