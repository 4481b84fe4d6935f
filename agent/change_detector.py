# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: spots endpoints that appeared since the previous enumeration and raises one alert per endpoint
for the lifetime of the run. keys are (local port, protocol, process name); the previous key set is
replaced wholesale each cycle and the notified set only ever grows until the journal is cleared.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import threading  # for guarding the notified-key set across background tasks
from collections.abc import Iterable  # type hint for snapshots
from typing import TYPE_CHECKING

from agent.models import ConnectionRecord

if TYPE_CHECKING:
    from agent.event_journal import EventJournal


class NotifiedKeySet:
    """monotonically growing set of keys already alerted this run"""

    def __init__(self) -> None:
        self._keys: set[str] = set()
        self._lock = threading.Lock()

    def add_if_absent(self, key: str) -> bool:
        # check-and-add in one step so two tasks can't both alert on the same key
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def clear(self) -> None:
        """only the explicit journal clear calls this"""
        with self._lock:
            self._keys.clear()


class ChangeDetector:
    def __init__(
        self,
        journal: EventJournal,
        new_port_alerts: bool = True,
        suspicious_alerts: bool = False,
    ) -> None:
        self.journal = journal  # where NEW_PORT / SUSPICIOUS events go
        self.new_port_alerts = new_port_alerts
        self.suspicious_alerts = suspicious_alerts
        self.previous_keys: set[str] = set()
        self._seeded = False  # first snapshot only primes previous_keys

    def observe(self, snapshot: Iterable[ConnectionRecord]) -> list[ConnectionRecord]:
        """diff against the previous cycle, alert on new keys; returns only the records that alerted"""
        current: dict[str, ConnectionRecord] = {}
        for rec in snapshot:
            current.setdefault(rec.key, rec)  # first record per key wins (display order)

        alerted: list[ConnectionRecord] = []
        if self._seeded and self.new_port_alerts:
            for key in sorted(set(current) - self.previous_keys):
                rec = current[key]
                # the journal consults the notified set, so a key fires at most once per run
                if self.journal.log_new_port(rec.local_port, rec.protocol.value, rec.process_name):
                    alerted.append(rec)

        if self.suspicious_alerts:
            for rec in current.values():
                if rec.suspicious:
                    self.journal.log_suspicious(
                        rec.local_port, rec.process_name, rec.suspicious_reason
                    )

        self.previous_keys = set(current)  # replace, never merge
        self._seeded = True
        return alerted
