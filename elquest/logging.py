# elquest/logging.py
# -*- coding: utf-8 -*-
"""
elquest logging

Features:
 - Integration with elquest.config (reload via watch callback)
 - Console color formatter
 - Rotating file handler
 - JSONL event log for build/install transparency
 - Module-level configurable log levels (module_levels)
 - Thread-safe reconfiguration and per-level counters
"""

from __future__ import annotations

import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from elquest.config import get_config, register_watch_callback

_logger = logging.getLogger("elquest.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg

# ----------------------
# JSONL formatter
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "elquest_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Filters
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "elquest_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True


class _ModuleNameFilter(logging.Filter):
    """Records from plain stdlib loggers under 'elquest' get a module name too."""

    def filter(self, record):
        if not hasattr(record, "elquest_module"):
            record.elquest_module = record.name.rsplit(".", 1)[-1]
        return True

# ----------------------
# ElquestLogger (singleton)
# ----------------------
class ElquestLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("elquest")
        self._root.setLevel(logging.DEBUG)
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None

        self._apply_config(get_config().merged.get("logging", {}))
        register_watch_callback(lambda new_cfg: self.reload_config())
        self._inited = True

    # ----------------------
    # Configuration (apply/hot-reload)
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            if self._module_filter is not None:
                self._root.removeFilter(self._module_filter)
            self._module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            self._root.addFilter(self._module_filter)

            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(elquest_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            # console handler
            console_cfg = cfg.get("console", {"enabled": True})
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO))
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=cfg.get("color", True)))
                ch.addFilter(_ModuleNameFilter())
                self._root.addHandler(ch)
                self._handlers.append(ch)

            # rotating file handler
            if cfg.get("file"):
                try:
                    file_path = Path(cfg["file"]).expanduser()
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    max_bytes = _parse_size(cfg.get("max_size", "10M"))
                    fh = logging.handlers.RotatingFileHandler(
                        str(file_path),
                        maxBytes=max_bytes or 10 * 1024 * 1024,
                        backupCount=int(cfg.get("backups", 5)),
                        encoding="utf-8",
                    )
                    fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                    fh.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
                    fh.addFilter(_ModuleNameFilter())
                    self._root.addHandler(fh)
                    self._handlers.append(fh)
                except OSError:
                    _logger.exception("logging: failed to configure file handler")

            # jsonl event log
            jsonl_cfg = cfg.get("jsonl", {}) or {}
            if jsonl_cfg.get("enabled"):
                try:
                    path = Path(jsonl_cfg.get("path", "~/.elquest/log/events.jsonl")).expanduser()
                    path.parent.mkdir(parents=True, exist_ok=True)
                    jh = logging.FileHandler(str(path), encoding="utf-8")
                    jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                    jh.setFormatter(JSONLineFormatter())
                    self._root.addHandler(jh)
                    self._handlers.append(jh)
                except OSError:
                    _logger.exception("logging: failed to configure jsonl handler")

            self._root.setLevel(logging.DEBUG if cfg.get("file") else getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO))

    def reload_config(self):
        """Re-apply logging config from elquest.config."""
        self._apply_config(get_config().merged.get("logging", {}))
        _logger.debug("logging: reloaded configuration from central config")

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'elquest_module' into records."""
        base = logging.getLogger("elquest")
        return logging.LoggerAdapter(base, {"elquest_module": module_name})

# ----------------------
# Helper parse size (public)
# ----------------------
def _parse_size(s: Any) -> Optional[int]:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    ss = str(s).strip().upper()
    units = (("KB", 1024), ("K", 1024), ("MB", 1024**2), ("M", 1024**2), ("GB", 1024**3), ("G", 1024**3))
    try:
        for suffix, mul in units:
            if ss.endswith(suffix):
                return int(float(ss[: -len(suffix)]) * mul)
        return int(float(ss))
    except ValueError:
        _logger.debug("logging: parse size failed for %s", s)
        return None

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER: Optional[ElquestLogger] = None
_GLOBAL_LOCK = threading.Lock()

def _instance() -> ElquestLogger:
    global _GLOBAL_LOGGER
    with _GLOBAL_LOCK:
        if _GLOBAL_LOGGER is None:
            _GLOBAL_LOGGER = ElquestLogger()
        return _GLOBAL_LOGGER

def get_logger(module: str) -> logging.LoggerAdapter:
    return _instance().get_logger(module)

def reload_config():
    return _instance().reload_config()
