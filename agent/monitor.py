"""
goal: runs the connection inventory cycle: read the socket tables, resolve each owning process, apply
the suspicious-activity rules, attach whatever the enrichment caches already know, sort for display and
diff against the previous cycle. the cycle runs on a background worker; the foreground tick only submits
work and collects finished snapshots so it never blocks.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for debug output when a cycle fails
import threading  # for guarding the latest snapshot
import time  # for the standalone polling loop
from collections.abc import Callable  # type hint for function callbacks
from concurrent.futures import Future, ThreadPoolExecutor  # single background cycle worker
from typing import Any  # type hint for flexible dict values

import psutil  # library for getting process information

from agent.caches import DnsResolutionCache
from agent.change_detector import ChangeDetector
from agent.fingerprint import ServiceFingerprinter
from agent.models import ConnectionRecord, sort_snapshot
from agent.reachability import ExternalReachabilityChecker
from agent.rules_engine import SuspiciousActivityClassifier
from agent.socket_table import SocketTableReader

log = logging.getLogger(__name__)

# type alias for the publish callback, takes an event dict and returns nothing
PublishFn = Callable[[dict[str, Any]], None]

SYSTEM_NAME = "System"
EXITED_NAME = "Unknown (Exited)"
UNKNOWN_NAME = "Unknown"
ACCESS_DENIED_PATH = "Access Denied / System"


class ProcessEnricher:
    """pid -> (name, path), tolerant of processes vanishing or refusing access"""

    def lookup(self, pid: int) -> tuple[str, str]:
        if pid <= 0:
            return SYSTEM_NAME, ""
        try:
            p = psutil.Process(pid)
            name = p.name()
        except psutil.NoSuchProcess:  # includes ZombieProcess
            return EXITED_NAME, ""  # ended between the table read and now
        except Exception:
            return UNKNOWN_NAME, ""
        try:
            path = p.exe() or ""
        except psutil.AccessDenied:
            path = ACCESS_DENIED_PATH  # system processes hide their image path
        except psutil.NoSuchProcess:
            return EXITED_NAME, ""
        except Exception:
            path = ACCESS_DENIED_PATH
        return name, path

    def enrich(self, record: ConnectionRecord, memo: dict[int, tuple[str, str]] | None = None) -> ConnectionRecord:
        if memo is not None and record.pid in memo:
            name, path = memo[record.pid]
        else:
            name, path = self.lookup(record.pid)
            if memo is not None:
                memo[record.pid] = (name, path)
        record.set_derived("process_name", name)
        record.set_derived("process_path", path)
        return record


class ProcessKillError(RuntimeError):
    """the owning process could not be terminated"""


def kill_process(pid: int) -> None:
    """force-close a port by terminating the process that owns it"""
    if pid <= 0:
        raise ProcessKillError(f"Failed to kill process {pid}: system process")
    try:
        psutil.Process(pid).kill()
    except psutil.NoSuchProcess as exc:  # includes ZombieProcess
        raise ProcessKillError(f"Failed to kill process {pid}: process has exited") from exc
    except psutil.AccessDenied as exc:
        raise ProcessKillError(f"Failed to kill process {pid}: access denied") from exc


class ConnectionMonitor:
    """enumerate -> enrich -> classify -> diff, handed back to the caller asynchronously"""

    def __init__(
        self,
        detector: ChangeDetector,
        publish: PublishFn | None = None,
        reader: SocketTableReader | None = None,
        enricher: ProcessEnricher | None = None,
        classifier: SuspiciousActivityClassifier | None = None,
        dns: DnsResolutionCache | None = None,
        fingerprinter: ServiceFingerprinter | None = None,
        reachability: ExternalReachabilityChecker | None = None,
        interval_sec: float = 1.0,
    ) -> None:
        self.detector = detector
        self.publish = publish  # callback for new-endpoint events (may be None)
        self.reader = reader or SocketTableReader()
        self.enricher = enricher or ProcessEnricher()
        self.classifier = classifier or SuspiciousActivityClassifier()
        self.dns = dns
        self.fingerprinter = fingerprinter
        self.reachability = reachability
        self.interval = interval_sec
        self._latest: list[ConnectionRecord] = []
        self._latest_at: float = 0.0
        self._lock = threading.Lock()
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="inventory")
        self._inflight: Future[list[ConnectionRecord]] | None = None

    def run_cycle(self) -> list[ConnectionRecord]:
        records = self.reader.get_snapshot()
        memo: dict[int, tuple[str, str]] = {}  # one process lookup per pid per cycle
        for rec in records:
            self.enricher.enrich(rec, memo)
            self.classifier.apply(rec)
            if self.fingerprinter is not None:
                self.fingerprinter.apply_cached(rec)
            if self.reachability is not None:
                self.reachability.apply_cached(rec)
            if self.dns is not None:
                self.dns.enrich(rec)
        snapshot = sort_snapshot(records)
        alerted = self.detector.observe(snapshot)  # already deduplicated against the notified set
        with self._lock:
            self._latest = snapshot
            self._latest_at = time.time()
        if self.publish is not None:
            for rec in alerted:
                self.publish({"source": "network", "type": "new_port", **rec.to_dict()})
        return snapshot

    def _safe_cycle(self) -> list[ConnectionRecord]:
        try:
            return self.run_cycle()
        except Exception:
            # nothing from the background cycle may escape as an unhandled fault
            log.exception("inventory cycle failed")
            return self.latest

    def tick(self) -> bool:
        """non-blocking: harvest a finished cycle, start the next one if idle. True if submitted"""
        fut = self._inflight
        if fut is not None and not fut.done():
            return False  # previous cycle still running, skip this tick
        self._inflight = self._worker.submit(self._safe_cycle)
        return True

    @property
    def latest(self) -> list[ConnectionRecord]:
        with self._lock:
            return list(self._latest)

    @property
    def latest_at(self) -> float:
        with self._lock:
            return self._latest_at

    def wait(self, timeout: float | None = None) -> list[ConnectionRecord]:
        """block until the in-flight cycle finishes (tests and one-shot mode)"""
        fut = self._inflight
        if fut is not None:
            return fut.result(timeout=timeout)
        return self.latest

    def run(self) -> None:
        while True:  # run forever until the process is killed
            self.tick()
            time.sleep(self.interval)  # wait before the next tick

    def shutdown(self) -> None:
        self._worker.shutdown(wait=False)
