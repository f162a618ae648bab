#!/usr/bin/env python3
"""
Unified configuration loader for the BeagleY bridge.

Load order (first found wins):
  1) BRIDGE_CONFIG (env, absolute or relative to CWD)
  2) /etc/beagley-bridge/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import math
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from bridge.clips import VIDEO_EXTENSIONS

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

_DEFAULTS: Dict[str, Any] = {
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 3000,
    },
    "device": {
        # BeagleY board reachable over USB gadget networking
        "host": "192.168.7.2",
    },
    "command": {
        "port": 12345,
    },
    "telemetry": {
        "listen_host": "0.0.0.0",
        "port": 12345,
    },
    "motion": {
        "listen_host": "0.0.0.0",
        "port": 12346,
    },
    "camera": {
        "port": 8554,
        "content_type": "multipart/x-mixed-replace; boundary=frame",
        "chunk_size": 64 * 1024,
    },
    "audio": {
        "port": 8555,
        "content_type": "audio/mpeg",
        "chunk_size": 16 * 1024,
    },
    "paths": {
        "clips_dir": str(_PROJECT_ROOT / "clips"),
        "public_dir": str(_PROJECT_ROOT / "public"),
    },
    "clips": {
        "max_clips": 5,
        "extensions": list(VIDEO_EXTENSIONS),
    },
    "events": {
        "max_queue_size": 128,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

log = logging.getLogger("bridge.config")


class ConfigError(ValueError):
    """Raised when configuration values cannot be turned into runtime settings."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid configuration")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        log.warning("Ignoring unreadable config file %s: %s", path, exc)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("BRIDGE_CONFIG")
    if env_cfg:
        try:
            search.append(Path(env_cfg).expanduser().resolve())
        except (OSError, RuntimeError):
            search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/beagley-bridge/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except (OSError, RuntimeError):
            resolved = candidate
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
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "LOG_LEVEL" in os.environ:
        value = os.environ["LOG_LEVEL"].strip()
        if value:
            cfg.setdefault("logging", {})["level"] = value.upper()
    if "DEVICE_HOST" in os.environ:
        value = os.environ["DEVICE_HOST"].strip()
        if value:
            cfg.setdefault("device", {})["host"] = value
    if "HTTP_HOST" in os.environ:
        value = os.environ["HTTP_HOST"].strip()
        if value:
            cfg.setdefault("web_server", {})["listen_host"] = value
    # Paths
    if "CLIPS_DIR" in os.environ:
        cfg.setdefault("paths", {})["clips_dir"] = os.environ["CLIPS_DIR"]
    if "PUBLIC_DIR" in os.environ:
        cfg.setdefault("paths", {})["public_dir"] = os.environ["PUBLIC_DIR"]

    env_map = {
        "HTTP_PORT": ("web_server", "listen_port", int),
        "COMMAND_PORT": ("command", "port", int),
        "TELEMETRY_PORT": ("telemetry", "port", int),
        "MOTION_PORT": ("motion", "port", int),
        "CAMERA_PORT": ("camera", "port", int),
        "AUDIO_PORT": ("audio", "port", int),
        "MAX_CLIPS": ("clips", "max_clips", int),
        "CLIP_EXTENSIONS": (
            "clips",
            "extensions",
            lambda s: [x.strip() for x in s.split(",") if x.strip()],
        ),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, RuntimeError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(_PROJECT_ROOT, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

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


def _coerce_int(
    value: Any,
    field: str,
    errors: list[str],
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int | None:
    if isinstance(value, bool):
        errors.append(f"{field} must be a number")
        return None
    candidate: int | None = None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            errors.append(f"{field} must be a finite number")
            return None
        candidate = int(round(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            errors.append(f"{field} is required")
            return None
        try:
            candidate = int(text, 10)
        except ValueError:
            errors.append(f"{field} must be an integer")
            return None
    else:
        errors.append(f"{field} must be an integer")
        return None

    if min_value is not None and candidate < min_value:
        errors.append(f"{field} must be at least {min_value}")
        return None

    if max_value is not None and candidate > max_value:
        errors.append(f"{field} must be at most {max_value}")
        return None

    return candidate


def _coerce_str(value: Any, field: str, errors: list[str], *, default: str = "") -> str:
    if value is None:
        if not default:
            errors.append(f"{field} is required")
        return default
    if not isinstance(value, str):
        errors.append(f"{field} must be a string")
        return default
    text = value.strip()
    if not text and not default:
        errors.append(f"{field} is required")
    return text or default


def _normalize_extension_list(value: Any, field: str, errors: list[str]) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [token for token in value.split(",")]
    if not isinstance(value, (list, tuple)):
        errors.append(f"{field} must be a list of extensions")
        return VIDEO_EXTENSIONS
    normalized: list[str] = []
    for item in value:
        if not isinstance(item, str):
            errors.append(f"{field} entries must be strings")
            continue
        token = item.strip()
        if not token:
            continue
        if not token.startswith("."):
            token = f".{token}"
        if token not in normalized:
            normalized.append(token)
    if not normalized:
        errors.append(f"{field} must name at least one extension")
        return VIDEO_EXTENSIONS
    return tuple(normalized)


def _section(cfg: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = cfg.get(name) if isinstance(cfg, Mapping) else None
    if isinstance(section, Mapping):
        return section
    return _DEFAULTS[name]


def runtime_settings(cfg: Mapping[str, Any]) -> dict[str, Any]:
    """Validate ``cfg`` and return the canonical settings used by the service.

    Raises :class:`ConfigError` listing every invalid field.
    """

    errors: list[str] = []
    port_bounds = {"min_value": 0, "max_value": 65535}

    web_cfg = _section(cfg, "web_server")
    device_cfg = _section(cfg, "device")
    command_cfg = _section(cfg, "command")
    telemetry_cfg = _section(cfg, "telemetry")
    motion_cfg = _section(cfg, "motion")
    paths_cfg = _section(cfg, "paths")
    clips_cfg = _section(cfg, "clips")
    events_cfg = _section(cfg, "events")
    logging_cfg = _section(cfg, "logging")

    device_host = _coerce_str(device_cfg.get("host"), "device.host", errors)

    def _stream(name: str) -> dict[str, Any]:
        stream_cfg = _section(cfg, name)
        defaults = _DEFAULTS[name]
        return {
            "host": device_host,
            "port": _coerce_int(
                stream_cfg.get("port", defaults["port"]), f"{name}.port", errors, **port_bounds
            ),
            "content_type": _coerce_str(
                stream_cfg.get("content_type"),
                f"{name}.content_type",
                errors,
                default=defaults["content_type"],
            ),
            "chunk_size": _coerce_int(
                stream_cfg.get("chunk_size", defaults["chunk_size"]),
                f"{name}.chunk_size",
                errors,
                min_value=1,
            ),
        }

    settings: dict[str, Any] = {
        "web_server": {
            "listen_host": _coerce_str(
                web_cfg.get("listen_host"), "web_server.listen_host", errors, default="0.0.0.0"
            ),
            "listen_port": _coerce_int(
                web_cfg.get("listen_port", 3000), "web_server.listen_port", errors, **port_bounds
            ),
        },
        "command": {
            "host": device_host,
            "port": _coerce_int(command_cfg.get("port"), "command.port", errors, **port_bounds),
        },
        "telemetry": {
            "listen_host": _coerce_str(
                telemetry_cfg.get("listen_host"),
                "telemetry.listen_host",
                errors,
                default="0.0.0.0",
            ),
            "port": _coerce_int(telemetry_cfg.get("port"), "telemetry.port", errors, **port_bounds),
        },
        "motion": {
            "listen_host": _coerce_str(
                motion_cfg.get("listen_host"), "motion.listen_host", errors, default="0.0.0.0"
            ),
            "port": _coerce_int(motion_cfg.get("port"), "motion.port", errors, **port_bounds),
        },
        "camera": _stream("camera"),
        "audio": _stream("audio"),
        "paths": {
            "clips_dir": Path(
                _coerce_str(paths_cfg.get("clips_dir"), "paths.clips_dir", errors)
            ).expanduser(),
            "public_dir": Path(
                _coerce_str(paths_cfg.get("public_dir"), "paths.public_dir", errors)
            ).expanduser(),
        },
        "clips": {
            "max_clips": _coerce_int(
                clips_cfg.get("max_clips", 5), "clips.max_clips", errors, min_value=0
            ),
            "extensions": _normalize_extension_list(
                clips_cfg.get("extensions", list(VIDEO_EXTENSIONS)), "clips.extensions", errors
            ),
        },
        "events": {
            "max_queue_size": _coerce_int(
                events_cfg.get("max_queue_size", 128),
                "events.max_queue_size",
                errors,
                min_value=1,
            ),
        },
        "logging": {
            "dev_mode": bool(logging_cfg.get("dev_mode", False)),
            "level": _coerce_str(
                logging_cfg.get("level"), "logging.level", errors, default="INFO"
            ).upper(),
        },
    }

    if errors:
        raise ConfigError(errors)
    return settings


def log_level_name(settings: Mapping[str, Any]) -> str:
    logging_cfg = settings.get("logging", {})
    if logging_cfg.get("dev_mode"):
        return "DEBUG"
    return str(logging_cfg.get("level") or "INFO")
