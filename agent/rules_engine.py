"""
goal: classifies enriched connection records as suspicious or not. a fixed chain of built-in rules
runs first (threat ports, temp/downloads locations, masquerading system binaries, interpreters talking
to the internet), then any operator rules loaded from a JSON file. rules are evaluated in order and the
first match wins, so the chain is ordered from most specific to most general.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import ipaddress  # for deciding whether a remote address is private/loopback
import json  # for loading operator rules from JSON files
import ntpath  # for splitting Windows paths on any host
import os  # for checking if the rules file exists
from collections.abc import Callable, Sequence  # type hints for rule predicates and sequences
from typing import Any  # type hint for flexible dictionary values

from agent.models import ConnectionRecord, Protocol

# type alias for things that can be either a string or a list/sequence of strings
StrOrList = str | Sequence[str]

THREAT_PORTS = frozenset(
    {
        4444,  # Metasploit
        31337,  # Back Orifice
        6667,  # IRC botnets
        12345,  # NetBus
        27374,  # Sub7
        5554,  # Sasser
    }
)

SENSITIVE_PROCESS_NAMES = frozenset(
    {"svchost.exe", "csrss.exe", "lsass.exe", "winlogon.exe", "services.exe", "explorer.exe"}
)

INTERPRETER_NAMES = frozenset(
    {"powershell.exe", "pwsh.exe", "cmd.exe", "wscript.exe", "cscript.exe"}
)

TEMP_SEGMENTS = ("\\appdata\\local\\temp\\", "\\windows\\temp\\", "/tmp/")
DOWNLOADS_SEGMENTS = ("\\downloads\\", "/downloads/")
SYSTEM_DIRS = ("\\windows\\system32", "\\windows\\syswow64")


def _ensure_list(x: StrOrList | None) -> list[str]:
    if x is None:  # if it is None, return empty list
        return []
    if isinstance(x, str):  # if it is a single string, wrap it in a list
        return [x]
    return [
        str(v) for v in x
    ]  # if it is already a sequence, convert each item to string and return as list


def is_local_address(address: str) -> bool:
    """private, loopback, link-local or unspecified addresses never count as external"""
    if not address:
        return True
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified


def _file_name(path: str) -> str:
    return ntpath.basename(path.replace("/", "\\")).lower()


# --- built-in rule chain ---


def _threat_local_port(r: ConnectionRecord) -> str | None:
    if r.local_port in THREAT_PORTS:
        return f"Port {r.local_port} is a known malware port."
    return None


def _threat_remote_port(r: ConnectionRecord) -> str | None:
    if r.protocol is Protocol.TCP and r.remote_port in THREAT_PORTS:
        return f"Connected to remote port {r.remote_port} (Known threat)."
    return None


def _temp_directory(r: ConnectionRecord) -> str | None:
    path = r.process_path.lower()
    if any(seg in path for seg in TEMP_SEGMENTS):
        return "Process running from Temp directory."
    return None


def _downloads_directory(r: ConnectionRecord) -> str | None:
    path = r.process_path.lower()
    if any(seg in path for seg in DOWNLOADS_SEGMENTS):
        return "Process running from Downloads folder."
    return None


def _masquerading_system_process(r: ConnectionRecord) -> str | None:
    if not r.process_path:
        return None
    path = r.process_path.lower().replace("/", "\\")
    name = _file_name(path)
    if name not in SENSITIVE_PROCESS_NAMES:
        return None
    in_system = any(d in path for d in SYSTEM_DIRS)
    # explorer.exe legitimately lives directly under the Windows folder
    if name == "explorer.exe" and "\\windows\\explorer.exe" in path:
        in_system = True
    if in_system:
        return None
    return f"System process '{name}' running from non-standard location."


def _interpreter_external(r: ConnectionRecord) -> str | None:
    name = (r.process_name or _file_name(r.process_path)).lower()
    if not name.endswith(".exe"):
        name += ".exe"
    if name not in INTERPRETER_NAMES:
        return None
    if r.protocol is not Protocol.TCP or r.state == "LISTEN":
        return None
    if is_local_address(r.remote_address):
        return None
    return f"{name} making external network connections."


BUILTIN_RULES: tuple[tuple[str, Callable[[ConnectionRecord], str | None]], ...] = (
    ("threat_local_port", _threat_local_port),
    ("threat_remote_port", _threat_remote_port),
    ("temp_directory", _temp_directory),
    ("downloads_directory", _downloads_directory),
    ("masquerading_system_process", _masquerading_system_process),
    ("interpreter_external", _interpreter_external),
)


class SuspiciousActivityClassifier:
    def __init__(self, path: str | None = None) -> None:
        self.path = path  # optional JSON file with extra operator rules
        self.rules: list[dict[str, Any]] = self._load_rules()

    def _load_rules(self) -> list[dict[str, Any]]:
        if not self.path or not os.path.exists(self.path):  # no rules file, built-ins only
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return []  # a broken rules file must not take the monitor down
        return data if isinstance(data, list) else []

    def _match(self, when: dict[str, Any], r: ConnectionRecord) -> bool:
        proto = when.get("protocol")
        if proto and str(proto).upper() != r.protocol.value:
            return False

        local_in = when.get("local_port_in")
        if local_in and r.local_port not in set(local_in):
            return False

        remote_in = when.get("remote_port_in")
        if remote_in and r.remote_port not in set(remote_in):
            return False

        state = when.get("state")
        if state and str(state).upper() != r.state:
            return False

        names = _ensure_list(when.get("name_contains"))
        if names:
            nm = (r.process_name or "").lower()
            if not any(s.lower() in nm for s in names):
                return False

        paths = _ensure_list(when.get("path_contains"))
        if paths:
            p = (r.process_path or "").lower()
            if not any(s.lower() in p for s in paths):
                return False

        if "remote_public" in when:
            want_public = bool(when["remote_public"])
            is_public = bool(r.remote_address) and not is_local_address(r.remote_address)
            if want_public != is_public:
                return False

        return True

    def classify(self, record: ConnectionRecord) -> tuple[bool, str]:
        """pure: reads the record, never mutates it; same input, same answer"""
        for _name, rule in BUILTIN_RULES:
            reason = rule(record)
            if reason:
                return True, reason
        for rule in self.rules:  # operator rules, first match wins
            when = rule.get("when") or {}
            if when and self._match(when, record):
                then = rule.get("then") or {}
                return True, str(then.get("reason") or rule.get("name") or "rule triggered")
        return False, ""

    def apply(self, record: ConnectionRecord) -> ConnectionRecord:
        record.suspicious, record.suspicious_reason = self.classify(record)
        return record
