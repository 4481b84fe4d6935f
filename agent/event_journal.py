# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: append-only event journal feeding alerts and export. keeps the newest 500 entries in memory
(newest first) and mirrors every write to a CSV file that is never truncated. the file is read back on
startup; rows that don't parse are skipped. critical events raise an "unseen" flag until the alert
view marks them seen. disk trouble is swallowed because memory stays authoritative for the session.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import csv  # for writing and reading the journal file
import logging  # for debug output when the journal file can't be touched
import os  # for checking/deleting the journal file
import threading  # for guarding the ring buffer across threads
from collections import deque  # bounded ring buffer
from collections.abc import Callable  # type hint for the clock
from datetime import datetime  # for entry timestamps

from agent.change_detector import NotifiedKeySet
from agent.models import LogEntry

log = logging.getLogger(__name__)

HEADER = [
    "Timestamp",
    "EventType",
    "Category",
    "Port",
    "Protocol",
    "Application",
    "Details",
    "IsCritical",
]
TIME_FMT = "%Y-%m-%d %H:%M:%S"
DEFAULT_CAP = 500


def _escape(text: str) -> str:
    # the delimiter never appears inside a field; ';' stands in for ','
    return (text or "").replace(",", ";").replace("\r", " ").replace("\n", " ")


def _unescape(text: str) -> str:
    return text.replace(";", ",")


def _to_row(e: LogEntry) -> list[str]:
    return [
        e.timestamp.strftime(TIME_FMT),
        e.event_type,
        e.category,
        str(e.port),
        e.protocol,
        _escape(e.application),
        _escape(e.details),
        str(e.is_critical),
    ]


def _from_row(row: list[str]) -> LogEntry | None:
    if len(row) < 7:
        return None  # malformed, skip it
    try:
        ts = datetime.strptime(row[0], TIME_FMT)
    except ValueError:
        ts = datetime.now()
    try:
        port = int(row[3])
    except ValueError:
        port = 0
    return LogEntry(
        timestamp=ts,
        event_type=row[1],
        category=row[2],
        port=port,
        protocol=row[4],
        application=_unescape(row[5]),
        details=_unescape(row[6]),
        is_critical=len(row) > 7 and row[7].strip().lower() == "true",
    )


class EventJournal:
    def __init__(
        self,
        path: str | None = None,
        cap: int = DEFAULT_CAP,
        notified: NotifiedKeySet | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.path = path  # CSV mirror; None keeps the journal memory-only
        self.cap = cap
        self.notified = notified if notified is not None else NotifiedKeySet()
        self._clock = clock
        self._entries: deque[LogEntry] = deque(maxlen=cap)  # index 0 is the newest
        self._lock = threading.Lock()
        self.has_critical_unseen = False
        self._load()

    # --- persistence ---

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        loaded: list[LogEntry] = []
        try:
            with open(self.path, encoding="utf-8", newline="") as f:
                reader = csv.reader(f)
                next(reader, None)  # header
                for row in reader:
                    entry = _from_row(row)
                    if entry is not None:
                        loaded.append(entry)
        except (OSError, csv.Error, UnicodeDecodeError):
            log.debug("could not read journal %s", self.path, exc_info=True)
        loaded.reverse()  # file is oldest first; ties keep newest-first after the stable sort
        loaded.sort(key=lambda e: e.timestamp, reverse=True)
        with self._lock:
            self._entries.extend(loaded[: self.cap])

    def _append_to_file(self, entry: LogEntry) -> None:
        if not self.path:
            return
        try:
            needs_header = not os.path.exists(self.path)
            with open(self.path, "a", encoding="utf-8", newline="") as f:
                w = csv.writer(f)
                if needs_header:
                    w.writerow(HEADER)
                w.writerow(_to_row(entry))
        except OSError:
            log.debug("could not append to journal %s", self.path, exc_info=True)

    # --- write path ---

    def log(
        self,
        event_type: str,
        category: str,
        details: str,
        application: str = "",
        port: int = 0,
        protocol: str = "",
        is_critical: bool = False,
    ) -> LogEntry:
        entry = LogEntry(
            timestamp=self._clock(),
            event_type=event_type,
            category=category,
            details=details,
            application=application,
            port=port,
            protocol=protocol,
            is_critical=is_critical,
        )
        with self._lock:
            self._entries.appendleft(entry)  # maxlen drops the oldest from the right
            if is_critical:
                self.has_critical_unseen = True
            self._append_to_file(entry)
        return entry

    def log_port_opened(self, port: int, protocol: str, application: str) -> LogEntry:
        return self.log(
            "PORT_OPENED", "NETWORK", f"Port {port}/{protocol} opened", application, port, protocol
        )

    def log_port_closed(self, port: int, protocol: str, application: str = "") -> LogEntry:
        return self.log(
            "PORT_CLOSED", "NETWORK", f"Port {port}/{protocol} closed", application, port, protocol
        )

    def log_process_killed(self, port: int, protocol: str, application: str) -> LogEntry:
        return self.log(
            "PORT_CLOSED",
            "NETWORK",
            f"Killed process {application} on port {port}",
            application,
            port,
            protocol,
        )

    def log_new_port(self, port: int, protocol: str, application: str) -> bool:
        """returns False when this endpoint was already alerted this run"""
        if not self.notified.add_if_absent(f"{port}:{protocol}:{application}"):
            return False
        self.log(
            "NEW_PORT",
            "NETWORK",
            f"New active port: {port}/{protocol}",
            application,
            port,
            protocol,
            is_critical=True,
        )
        return True

    def log_suspicious(self, port: int, application: str, reason: str) -> bool:
        if not self.notified.add_if_absent(f"SUSP:{port}:{application}"):
            return False
        self.log(
            "SUSPICIOUS", "SECURITY", f"{reason} - Port {port}", application, port, "", True
        )
        return True

    def log_firewall(self, rule_name: str, action: str) -> LogEntry:
        return self.log("FIREWALL", "FIREWALL", f"Rule '{rule_name}' {action}")

    def log_upnp(self, port: int, protocol: str, action: str) -> LogEntry:
        return self.log("UPNP", "SYSTEM", f"UPnP {action} {port}/{protocol}", "", port, protocol)

    def log_system(self, message: str) -> LogEntry:
        return self.log("SYSTEM", "SYSTEM", message)

    # --- read path ---

    def entries(self, critical_only: bool = False) -> list[LogEntry]:
        with self._lock:
            items = list(self._entries)
        if critical_only:
            return [e for e in items if e.is_critical]
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def mark_seen(self) -> None:
        self.has_critical_unseen = False

    def export_csv(self, path: str) -> None:
        """write the in-memory entries (newest first) to a fresh CSV file; errors propagate"""
        with open(path, "w", encoding="utf-8", newline="") as f:
            w = csv.writer(f)
            w.writerow(HEADER)
            for e in self.entries():
                w.writerow(_to_row(e))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.has_critical_unseen = False
            self.notified.clear()
            if self.path:
                try:
                    os.remove(self.path)
                except FileNotFoundError:
                    pass
                except OSError:
                    log.debug("could not delete journal %s", self.path, exc_info=True)
