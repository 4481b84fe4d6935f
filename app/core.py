"""
goal: wires the PortWarden components together from a Config: one journal, one change detector, one
monitor, the scanner, the listener manager and the on-demand enrichment services. the launcher and the
local API both work against this object instead of reaching for module globals.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agent.caches import DnsResolutionCache
from agent.change_detector import ChangeDetector
from agent.event_journal import EventJournal
from agent.fingerprint import ServiceFingerprinter
from agent.listeners import ListenerLifecycleManager, load_descriptors, save_descriptors
from agent.monitor import ConnectionMonitor
from agent.network_scan import NetworkScanner, ScanOptions
from agent.reachability import ExternalReachabilityChecker
from agent.rules_engine import SuspiciousActivityClassifier
from dashboard.config import Config

log = logging.getLogger(__name__)

PublishFn = Callable[[dict[str, Any]], None]


@dataclass
class Core:
    journal: EventJournal
    monitor: ConnectionMonitor
    scanner: NetworkScanner
    listeners: ListenerLifecycleManager
    fingerprinter: ServiceFingerprinter
    reachability: ExternalReachabilityChecker
    dns: DnsResolutionCache | None = None
    listeners_path: str = ""

    def restore_listeners(self) -> int:
        """start the listeners saved by the previous run; returns how many came back"""
        if not self.listeners_path:
            return 0
        results = self.listeners.restore(load_descriptors(self.listeners_path))
        return sum(1 for r in results if r.ok)

    def save_listeners(self) -> None:
        if not self.listeners_path:
            return
        try:
            save_descriptors(self.listeners_path, self.listeners.descriptors())
        except OSError:
            log.debug("could not save listeners to %s", self.listeners_path, exc_info=True)

    def shutdown(self) -> None:
        """persist the live listener set, tear the listeners down, stop background workers"""
        self.save_listeners()
        self.listeners.stop_all()
        self.journal.log_system("PortWarden closed")
        self.monitor.shutdown()
        if self.dns is not None:
            self.dns.shutdown(wait=False)


def build_core(cfg: Config, publish: PublishFn | None = None) -> Core:
    cfg.journal_path.parent.mkdir(parents=True, exist_ok=True)
    journal = EventJournal(str(cfg.journal_path), cap=cfg.journal_cap)
    detector = ChangeDetector(
        journal,
        new_port_alerts=cfg.new_port_alerts,
        suspicious_alerts=cfg.suspicious_alerts,
    )
    dns = DnsResolutionCache()
    fingerprinter = ServiceFingerprinter()
    reachability = ExternalReachabilityChecker()
    monitor = ConnectionMonitor(
        detector,
        publish=publish,
        classifier=SuspiciousActivityClassifier(str(cfg.rules_path)),
        dns=dns,
        fingerprinter=fingerprinter,
        reachability=reachability,
        interval_sec=cfg.tick_sec,
    )
    scanner = NetworkScanner(
        ScanOptions(chunk_size=cfg.scan_chunk_size, max_host_workers=cfg.scan_host_workers),
        journal=journal,
    )
    return Core(
        journal=journal,
        monitor=monitor,
        scanner=scanner,
        listeners=ListenerLifecycleManager(journal),
        fingerprinter=fingerprinter,
        reachability=reachability,
        dns=dns,
        listeners_path=str(cfg.listeners_path),
    )
