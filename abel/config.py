# abel/config.py
# -*- coding: utf-8 -*-
"""
Abel central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user)
- Merge with authoritative DEFAULTS, normalize/coerce types (human sizes to bytes)
- Validate structure and types, warn or error (fatal optional)
- Provide typed access via Config dataclass (get_config(), Config.section())
- Thread-safe load
"""

from __future__ import annotations
import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple, Union

import yaml

# logger (stdlib; abel.logging reads its own settings from here)
logger = logging.getLogger("abel.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "WARNING",
        "file": None,
        "file_level": "DEBUG",
        "color": True,
        "max_size": "5M",
        "backups": 3,
        "module_levels": {},
    },
    "build": {
        "configuration": "Release",
        "generator": "Ninja",
        "cmake": "cmake",
        "retry": True,
        "export_compile_commands": True,
        "timeout": 0,
    },
    "git": {
        "executable": "git",
        "cache_dir": None,
        "shallow": True,
    },
    "registry": {
        "user_file": "~/.abel/registry.json",
        "project_file": "abel-registry.json",
    },
    "supervisor": {
        "grace_period": 0.25,
        "diagnostics_lines": 300,
        "context_lines": 3,
        "fallback_lines": 12,
        "spinner_interval": 0.12,
    },
}

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
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

    def section(self, name: str) -> Dict[str, Any]:
        value = self.merged.get(name)
        return deepcopy(value) if isinstance(value, dict) else {}

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()

# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "K": 1024, "MB": 1024**2, "M": 1024**2, "GB": 1024**3, "G": 1024**3}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                return int(float(s[: -len(suffix)].strip()) * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None

def _expand_path(val: Optional[str]) -> Optional[str]:
    if not val:
        return val
    return os.path.abspath(os.path.expanduser(os.path.expandvars(val)))

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
    env = os.environ.get("ABEL_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "abel.yaml",
        Path.cwd() / "abel.yml",
        Path.cwd() / "abel.json",
        Path.home() / ".abel" / "config.yaml",
        Path.home() / ".config" / "abel" / "config.yaml",
    ])
    return candidates

def load_structured_file(path: Path) -> Any:
    """Parse a YAML or JSON file by suffix. Raises ValueError on unreadable or malformed content."""
    try:
        txt = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ValueError(f"{path}: cannot read ({e})") from e
    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            return yaml.safe_load(txt)
        except yaml.YAMLError as e:
            raise ValueError(f"{path}: invalid YAML: {e}") from e
    try:
        return json.loads(txt) if txt.strip() else None
    except json.JSONDecodeError as e:
        raise ValueError(f"{path}: invalid JSON: {e}") from e

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields, convert human sizes and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("logging", "file"),
        ("git", "cache_dir"),
        ("registry", "user_file"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str):
            ref[key] = _expand_path(ref[key])

    log_cfg = out.get("logging")
    if isinstance(log_cfg, dict) and "max_size" in log_cfg:
        ms = _human_size_to_bytes(log_cfg["max_size"])
        if ms is not None:
            log_cfg["max_size_bytes"] = ms

    sup = out.get("supervisor")
    if isinstance(sup, dict):
        for key in ("diagnostics_lines", "context_lines", "fallback_lines"):
            try:
                sup[key] = int(sup.get(key, DEFAULTS["supervisor"][key]))
            except (TypeError, ValueError):
                logger.debug("config: cannot coerce supervisor.%s", key)
                sup[key] = DEFAULTS["supervisor"][key]
        for key in ("grace_period", "spinner_interval"):
            try:
                sup[key] = float(sup.get(key, DEFAULTS["supervisor"][key]))
            except (TypeError, ValueError):
                logger.debug("config: cannot coerce supervisor.%s", key)
                sup[key] = DEFAULTS["supervisor"][key]

    build = out.get("build")
    if isinstance(build, dict):
        try:
            build["timeout"] = int(build.get("timeout") or 0)
        except (TypeError, ValueError):
            logger.debug("config: failed to coerce build.timeout")
            build["timeout"] = 0
    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless load() is called with fatal=True."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    for section in DEFAULTS:
        if section in cfg and not isinstance(cfg[section], dict):
            warnings.append(f"{section} must be a mapping")
    build = cfg.get("build") or {}
    if isinstance(build, dict) and not isinstance(build.get("configuration"), str):
        warnings.append("build.configuration must be a string")
    sup = cfg.get("supervisor") or {}
    if isinstance(sup, dict) and sup.get("diagnostics_lines", 1) < 1:
        warnings.append("supervisor.diagnostics_lines must be >= 1")
    levels = (cfg.get("logging") or {}).get("module_levels")
    if levels is not None and not isinstance(levels, dict):
        warnings.append("logging.module_levels should be a mapping")
    return (len(warnings) == 0, warnings)

# ----------------------------
# Loading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    for p in _find_candidates(explicit):
        if p and p.is_file():
            return p
    if explicit:
        logger.warning("config: explicit config %s not found, using defaults", explicit)
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    Returns Config object.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            try:
                data = load_structured_file(cfg_path)
            except (OSError, ValueError) as e:
                if fatal:
                    raise
                logger.warning("config: file found but could not be parsed: %s", e)
                data = None
            if isinstance(data, dict):
                raw = data
            elif data is not None:
                logger.warning("config: %s does not hold a mapping, ignoring", cfg_path)
        merged = _deep_merge(DEFAULTS, raw)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                logger.error(msg)
                raise ValueError(msg)
            logger.warning(msg)
        _CONFIG = Config(merged=normalized, path=cfg_path)
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return _CONFIG

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG
