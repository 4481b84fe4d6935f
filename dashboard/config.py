"""
goal: configuration loader for PortWarden. loads settings from data/config.json and PORTWARDEN_*
      environment variables, with sensible defaults. handles PyInstaller frozen executables by
      detecting the base directory correctly. returns a frozen Config dataclass with the paths and
      tuning knobs the monitor, scanner, journal and local API need.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "PORTWARDEN_"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


# install directory: next to the exe when bundled, the repo root otherwise
def _resolve_base_dir() -> Path:
    import sys

    # PyInstaller sets sys.frozen
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    # dashboard/config.py -> repo root
    return Path(__file__).resolve().parents[1]


# resolved settings, read-only after load_config()
@dataclass(frozen=True)
class Config:
    base_dir: Path  # install directory; data/ lives under it
    journal_path: Path  # CSV event journal (pm_logs.csv)
    rules_path: Path  # optional operator rules JSON for the classifier
    listeners_path: Path  # saved listeners restored at launch
    host: str  # local API host address
    port: int  # local API port number
    tick_sec: float  # foreground tick period
    new_port_alerts: bool  # raise NEW_PORT events for endpoints appearing mid-run
    suspicious_alerts: bool  # raise SUSPICIOUS events for flagged records
    scan_host_workers: int  # max hosts probed at once during a subnet scan
    scan_chunk_size: int  # max port connects in flight per target
    journal_cap: int  # entries kept in memory


# PORTWARDEN_<KEY> > data/config.json > default; env strings take the default's type
def _get(obj: dict, key: str, default):
    env = os.getenv(f"{ENV_PREFIX}{key.upper()}")
    if env is not None:
        # bool before int, bool is an int subclass
        if isinstance(default, bool):
            v = env.strip().lower()
            if v in _TRUE:
                return True
            if v in _FALSE:
                return False
            return default
        if isinstance(default, int):
            try:
                return int(env)
            except ValueError:
                return default
        if isinstance(default, float):
            try:
                return float(env)
            except ValueError:
                return default
        return env
    return obj.get(key, default)


# PORTWARDEN_BASE_DIR relocates the data directory (tests, portable installs)
def load_config() -> Config:
    base = Path(os.getenv(f"{ENV_PREFIX}BASE_DIR") or _resolve_base_dir())
    cfg_file = base / "data" / "config.json"
    obj = {}
    if cfg_file.exists():
        try:
            obj = json.loads(cfg_file.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            # unreadable or broken file: defaults only
            obj = {}
    if not isinstance(obj, dict):
        obj = {}

    return Config(
        base_dir=base,
        journal_path=base / _get(obj, "journal_path", "data/pm_logs.csv"),
        rules_path=base / _get(obj, "rules_path", "data/rules.json"),
        listeners_path=base / _get(obj, "listeners_path", "data/listeners.json"),
        host=_get(obj, "host", "127.0.0.1"),
        port=_get(obj, "port", 8765),
        tick_sec=_get(obj, "tick_sec", 1.0),
        new_port_alerts=_get(obj, "new_port_alerts", True),
        suspicious_alerts=_get(obj, "suspicious_alerts", False),
        scan_host_workers=_get(obj, "scan_host_workers", 32),
        scan_chunk_size=_get(obj, "scan_chunk_size", 20),
        journal_cap=_get(obj, "journal_cap", 500),
    )
