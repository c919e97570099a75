# elquest/config.py
# -*- coding: utf-8 -*-
"""
elquest central configuration loader

Features:
- Read YAML/JSON config from multiple locations (env override, cwd, user, system)
- Merge with authoritative DEFAULTS, expand paths and coerce types
- Validate structure and types, warn or error (fatal optional)
- Provide access via Config dataclass (get_config(), get("a.b"), helpers)
- Thread-safe load/reload with watcher callbacks
- Save writes only the overrides (diff against DEFAULTS)
"""

from __future__ import annotations

import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from elquest.errors import ConfigError

logger = logging.getLogger("elquest.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.elquest/log/events.jsonl"},
    },
    "db": {
        "path": "~/.elquest/state.sqlite3",
    },
    "archive": {
        "name": "elquest",
        "dir": "~/.elquest/packages",
    },
    "build": {
        "dir": "~/.elquest/build",
        "timeout": 600,
        "stable": False,
    },
    "recipes": {
        "dir": "~/.elquest/melpa",
        "remote": "https://github.com/melpa/melpa.git",
        "branch": "master",
        "update": True,
    },
    "host": {
        "state_dir": "~/.elquest/host",
        "package_dir": "~/.elquest/elpa",
    },
}

_PATH_KEYS: List[Tuple[str, str]] = [
    ("db", "path"),
    ("archive", "dir"),
    ("build", "dir"),
    ("recipes", "dir"),
    ("host", "state_dir"),
    ("host", "package_dir"),
    ("logging", "file"),
]

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()
_WATCH_CALLBACKS: List[Callable[[Config], None]] = []

# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("ELQUEST_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "elquest.yaml",
        Path.cwd() / "elquest.yml",
        Path.cwd() / "elquest.json",
        Path.home() / ".config" / "elquest" / "config.yaml",
        Path("/etc") / "elquest" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at top level")
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Expand path fields and coerce basic types."""
    out = deepcopy(cfg)
    for section, key in _PATH_KEYS:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str) and ref[key]:
            ref[key] = _expand_path(ref[key])
    jsonl = out.get("logging", {}).get("jsonl")
    if isinstance(jsonl, dict) and isinstance(jsonl.get("path"), str):
        jsonl["path"] = _expand_path(jsonl["path"])

    try:
        out["build"]["timeout"] = int(out["build"].get("timeout", 0))
    except (KeyError, TypeError, ValueError):
        logger.debug("config: failed to coerce build.timeout", exc_info=True)
    for section, key in (("build", "stable"), ("recipes", "update")):
        val = out.get(section, {}).get(key)
        if isinstance(val, str):
            out[section][key] = val.strip().lower() in ("1", "true", "yes", "on")
    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless called with fatal=True in load."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    for section in ("archive", "build", "recipes", "host"):
        if not isinstance(cfg.get(section), dict):
            warnings.append(f"{section} must be a mapping")
    name = cfg.get("archive", {}).get("name") if isinstance(cfg.get("archive"), dict) else None
    if not name or not isinstance(name, str):
        warnings.append("archive.name must be a non-empty string")
    timeout = cfg.get("build", {}).get("timeout") if isinstance(cfg.get("build"), dict) else None
    if not isinstance(timeout, int) or timeout < 1:
        warnings.append("build.timeout must be integer >= 1")
    return (len(warnings) == 0, warnings)

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False, overrides: Optional[Dict[str, Any]] = None) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    `overrides` are merged last (used by tests and the CLI).
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = _load_file(cfg_path) if cfg_path else {}
        merged = _deep_merge(DEFAULTS, raw)
        if overrides:
            merged = _deep_merge(merged, overrides)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                raise ConfigError(msg)
            logger.warning(msg)
        _CONFIG = Config(raw=raw, merged=normalized, path=cfg_path)
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return _CONFIG

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def reload(explicit_path: Optional[str] = None) -> Config:
    cfg = load(explicit_path)
    _notify_watchers(cfg)
    return cfg

def reset() -> None:
    """Forget the loaded config; the next get_config() reloads from disk."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = None

# ----------------------------
# Save: write only override (diff) to avoid clobbering defaults
# ----------------------------
def _compute_override(merged: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    def diff(a: Any, b: Any) -> Any:
        if type(a) != type(b):
            return deepcopy(a)
        if isinstance(a, dict):
            out = {}
            for k, v in a.items():
                if k not in b:
                    out[k] = deepcopy(v)
                else:
                    d = diff(v, b[k])
                    if d is not None:
                        out[k] = d
            return out or None
        if a != b:
            return deepcopy(a)
        return None
    return diff(merged, _normalize_and_coerce(defaults)) or {}

def save(path: Optional[str] = None) -> Path:
    with _CONFIG_LOCK:
        cfg = get_config()
        out_path = Path(path) if path else (cfg.path or (Path.home() / ".config" / "elquest" / "config.yaml"))
        out_path.parent.mkdir(parents=True, exist_ok=True)
        to_write = _compute_override(cfg.as_dict(), DEFAULTS)
        with open(out_path, "w", encoding="utf-8") as fh:
            yaml.safe_dump(to_write, fh, default_flow_style=False, sort_keys=False)
        logger.info("config: saved config to %s", out_path)
        return out_path

# ----------------------------
# Watcher API
# ----------------------------
def register_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb not in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.append(cb)

def _notify_watchers(cfg: Config) -> None:
    with _CONFIG_LOCK:
        cbs = list(_WATCH_CALLBACKS)
    for cb in cbs:
        try:
            cb(cfg)
        except Exception:
            logger.exception("config: watcher callback error")

# ----------------------------
# Convenience helpers for modules
# ----------------------------
def validate_config() -> Tuple[bool, List[str]]:
    cfg = get_config()
    ok, issues = _validate_structure(cfg.merged)
    for section, key in (("archive", "dir"), ("build", "dir"), ("host", "state_dir")):
        p = cfg.get(f"{section}.{key}")
        if not p:
            continue
        try:
            Path(p).mkdir(parents=True, exist_ok=True)
            if not os.access(p, os.W_OK):
                issues.append(f"{section}.{key} {p} not writable")
        except OSError:
            issues.append(f"{section}.{key} {p} not creatable")
    return (len(issues) == 0, issues)
