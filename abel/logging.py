# abel/logging.py
# -*- coding: utf-8 -*-
"""
Abel logging

Features:
 - Integration with abel.config (logging section)
 - Console color formatter on stderr, kept apart from build progress on stdout
 - Rotating file handler
 - Module-level configurable log levels (module_levels)
 - Thread-safe reconfiguration
"""

from __future__ import annotations
import sys
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, List, Optional

from abel.config import get_config

_logger = logging.getLogger("abel.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m", # white on red
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
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "abel_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

class _DefaultModuleFilter(logging.Filter):
    """Records from plain stdlib loggers under 'abel.*' carry no abel_module; give them one."""
    def filter(self, record):
        if not hasattr(record, "abel_module"):
            record.abel_module = record.name.split(".", 1)[-1]
        return True

# ----------------------
# AbelLogger (singleton)
# ----------------------
class AbelLogger:
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
        self._root = logging.getLogger("abel")
        self._root.propagate = False
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._console: Optional[logging.Handler] = None
        self._apply_config(get_config().section("logging"))
        self._inited = True

    # ----------------------
    # Configuration
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            if self._module_filter is not None:
                self._root.removeFilter(self._module_filter)

            self._module_filter = ModuleLevelFilter(cfg.get("module_levels") or {})
            self._root.addFilter(self._module_filter)

            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(abel_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            # console handler
            ch = logging.StreamHandler(sys.stderr)
            ch.setLevel(getattr(logging, str(cfg.get("level", "WARNING")).upper(), logging.WARNING))
            ch.addFilter(_DefaultModuleFilter())
            color = bool(cfg.get("color", True)) and sys.stderr.isatty()
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=color))
            self._root.addHandler(ch)
            self._handlers.append(ch)
            self._console = ch

            # rotating file handler
            if cfg.get("file"):
                try:
                    file_path = Path(cfg["file"]).expanduser()
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    max_bytes = cfg.get("max_size_bytes") or 5 * 1024 * 1024
                    fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 3)), encoding="utf-8")
                    fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                    fh.addFilter(_DefaultModuleFilter())
                    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(abel_module)s] %(message)s"))
                    self._root.addHandler(fh)
                    self._handlers.append(fh)
                except OSError:
                    _logger.exception("logging: failed to configure file handler")

            # root accepts everything the handlers might want
            self._root.setLevel(min(h.level for h in self._handlers))

    def reload_config(self):
        self._apply_config(get_config().section("logging"))

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'abel_module' into records."""
        return logging.LoggerAdapter(self._root, {"abel_module": module_name})

    def set_level(self, level: int):
        with self._lock:
            if self._console is not None:
                self._console.setLevel(level)
            self._root.setLevel(min(h.level for h in self._handlers))

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER: Optional[AbelLogger] = None
_GLOBAL_LOCK = threading.Lock()

def _instance() -> AbelLogger:
    global _GLOBAL_LOGGER
    with _GLOBAL_LOCK:
        if _GLOBAL_LOGGER is None:
            _GLOBAL_LOGGER = AbelLogger()
        return _GLOBAL_LOGGER

def get_logger(module: str) -> logging.LoggerAdapter:
    return _instance().get_logger(module)

def set_level(level: int):
    return _instance().set_level(level)

def reload_config():
    return _instance().reload_config()
