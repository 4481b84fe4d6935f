# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: owned, lock-guarded caches shared by the background enrichment tasks. the DNS cache schedules
one reverse lookup per remote address for the lifetime of the process and shows a placeholder while
it is pending; the keyed cache stores per-socket results (service names, reachability) so repeated
work on the next tick is served from memory.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for debug output on failed lookups
import socket  # for reverse DNS
import threading  # one lock per cache
from collections.abc import Callable  # type hint for the resolver
from concurrent.futures import Executor, ThreadPoolExecutor  # background resolution pool
from typing import Any

from agent.models import ConnectionRecord

log = logging.getLogger(__name__)

PENDING = "Resolving..."
UNKNOWN = "Unknown"
NOT_APPLICABLE = "-"

# remote addresses that have nothing useful to resolve
_SKIP_ADDRESSES = frozenset({"", "0.0.0.0", "::", "*", "127.0.0.1"})

ResolverFn = Callable[[str], Any]


class DnsResolutionCache:
    """address -> hostname; unscheduled -> pending -> resolved, never rescheduled"""

    def __init__(
        self,
        resolver: ResolverFn = socket.gethostbyaddr,
        executor: Executor | None = None,
        max_workers: int = 8,
    ) -> None:
        self._resolver = resolver
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="dns"
        )
        self._names: dict[str, str] = {}
        self._lock = threading.Lock()

    def lookup(self, address: str) -> str:
        if address in _SKIP_ADDRESSES:
            return NOT_APPLICABLE
        with self._lock:
            cached = self._names.get(address)
            if cached is not None:
                return cached
            self._names[address] = PENDING  # placeholder until the lookup lands
        try:
            self._executor.submit(self._resolve, address)
        except RuntimeError:  # pool already shut down
            log.debug("dns lookup for %s not scheduled", address, exc_info=True)
            with self._lock:
                self._names[address] = UNKNOWN
            return UNKNOWN
        return PENDING

    def _resolve(self, address: str) -> None:
        try:
            result = self._resolver(address)
            name = result[0] if isinstance(result, tuple) else str(result)
        except (OSError, UnicodeError, ValueError):
            name = UNKNOWN
        with self._lock:
            self._names[address] = name or UNKNOWN

    def get(self, address: str) -> str | None:
        with self._lock:
            return self._names.get(address)

    def enrich(self, record: ConnectionRecord) -> ConnectionRecord:
        record.set_derived("remote_hostname", self.lookup(record.remote_address))
        return record

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class KeyedCache:
    """small str -> str map behind a single lock; last write wins"""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
