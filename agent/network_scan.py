# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: LAN discovery and port probing. a subnet scan checks every host .1-.254 concurrently (ICMP first,
then quick TCP probes for hosts that drop pings), resolves names best-effort and checks a short list of
well-known ports. a single-device scan always walks the larger curated list. ports are probed in chunks:
chunks run one after another, connects inside a chunk run together, so a target never sees more than
chunk_size attempts at once. host fan-out is bounded by a worker pool.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for debug output on failed probes
import socket  # for TCP connect probes and reverse DNS
from collections.abc import Callable, Sequence  # type hints for injected probes and port lists
from concurrent.futures import ThreadPoolExecutor  # bounded fan-out for hosts and port chunks
from dataclasses import dataclass  # for scan tuning options
from typing import TYPE_CHECKING

import ping3  # ICMP echo without shelling out to ping
import psutil  # for finding the local IPv4 subnet

from agent.models import Device, DeviceStatus

if TYPE_CHECKING:
    from agent.event_journal import EventJournal

log = logging.getLogger(__name__)

BASIC_PORTS: tuple[int, ...] = (21, 22, 23, 25, 53, 80, 110, 135, 139, 443, 445, 3306, 3389, 8080)
TOP_PORTS: tuple[int, ...] = (
    7, 20, 21, 22, 23, 25, 26, 53, 80, 81, 88, 110, 111, 113, 119, 135, 137, 138, 139, 143, 179,
    199, 389, 443, 445, 465, 513, 514, 515, 548, 554, 587, 631, 636, 873, 993, 995, 1433, 1521,
    1723, 2000, 2049, 2121, 2222, 2375, 2376, 2525, 3000, 3128, 3306, 3389, 3690, 4000, 4444,
    4567, 5000, 5001, 5060, 5432, 5800, 5900, 5901, 6000, 6001, 6379, 6667, 8000, 8008, 8080,
    8081, 8090, 8181, 8443, 8500, 8888, 9000, 9090, 9200, 9300, 10000, 27017, 27018, 50000,
)  # fmt: skip
# hosts that drop ICMP (Windows defaults) usually still answer on one of these
LIVENESS_PORTS: tuple[int, ...] = (135, 445, 80)
DEFAULT_PREFIX = "192.168.1."

PingFn = Callable[[str, float], bool]
ConnectFn = Callable[[str, int, float], bool]
ResolveFn = Callable[[str], str]


@dataclass(frozen=True)
class ScanOptions:
    ping_timeout: float = 0.5
    probe_timeout: float = 0.2
    connect_timeout: float = 0.3
    chunk_size: int = 20
    max_host_workers: int = 32


def icmp_ping(address: str, timeout: float) -> bool:
    try:
        delay = ping3.ping(address, timeout=timeout, unit="ms")
    except Exception:  # raw-socket permission errors, bad addresses
        return False
    return delay is not None and delay is not False


def tcp_connect(address: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:  # refused, unreachable, timed out
        return False


def reverse_lookup(address: str) -> str:
    try:
        return socket.gethostbyaddr(address)[0] or "Unknown"
    except (OSError, UnicodeError):
        return "Unknown"


def normalize_prefix(prefix: str) -> str:
    """'192.168.1', '192.168.1.' and '192.168.1.0/24' all mean the same /24"""
    p = prefix.strip().split("/", 1)[0]
    parts = [x for x in p.split(".") if x != ""]
    if len(parts) == 4:
        parts = parts[:3]
    if len(parts) != 3 or not all(x.isdigit() and 0 <= int(x) <= 255 for x in parts):
        raise ValueError(f"not a /24 prefix: {prefix!r}")
    return ".".join(parts) + "."


def local_subnet_prefix() -> str:
    """first up, non-loopback, non-APIPA IPv4 address's /24 prefix"""
    try:
        stats = psutil.net_if_stats()
        for name, addrs in psutil.net_if_addrs().items():
            st = stats.get(name)
            if st is not None and not st.isup:
                continue
            for a in addrs:
                if a.family != socket.AF_INET:
                    continue
                ip = a.address
                if ip.startswith("127.") or ip.startswith("169.254."):
                    continue
                return ip[: ip.rfind(".") + 1]
    except (OSError, psutil.Error):
        log.debug("could not enumerate interfaces", exc_info=True)
    return DEFAULT_PREFIX


class NetworkScanner:
    def __init__(
        self,
        options: ScanOptions | None = None,
        ping: PingFn = icmp_ping,
        connect: ConnectFn = tcp_connect,
        resolve: ResolveFn = reverse_lookup,
        journal: EventJournal | None = None,
    ) -> None:
        self.options = options or ScanOptions()
        self._ping = ping
        self._connect = connect
        self._resolve = resolve
        self.journal = journal

    def liveness(self, address: str) -> DeviceStatus:
        if self._ping(address, self.options.ping_timeout):
            return DeviceStatus.ONLINE
        for port in LIVENESS_PORTS:  # stop at the first answer
            if self._connect(address, port, self.options.probe_timeout):
                return DeviceStatus.ONLINE_NO_PING
        return DeviceStatus.OFFLINE

    def scan_ports(self, address: str, ports: Sequence[int]) -> list[int]:
        """chunks run strictly one after another, connects within a chunk run concurrently"""
        size = max(1, self.options.chunk_size)
        timeout = self.options.connect_timeout
        found: set[int] = set()
        with ThreadPoolExecutor(max_workers=size, thread_name_prefix="portscan") as pool:
            for start in range(0, len(ports), size):
                chunk = ports[start : start + size]
                # map() is drained before the next chunk starts
                results = list(pool.map(lambda p: (p, self._connect(address, p, timeout)), chunk))
                found.update(p for p, ok in results if ok)
        return sorted(found)

    def check_device(
        self, address: str, ports: Sequence[int] = BASIC_PORTS, force: bool = False
    ) -> Device | None:
        """liveness first; port-scan live hosts (or any host when force is set)"""
        try:
            status = self.liveness(address)
            online = status is not DeviceStatus.OFFLINE
            if not online and not force:
                return None
            hostname = self._resolve(address)
            open_ports = self.scan_ports(address, ports)
        except Exception:
            log.debug("scan of %s failed", address, exc_info=True)
            return None
        if not online and not open_ports:
            return None
        return Device(address=address, hostname=hostname, status=status, open_ports=open_ports)

    def scan_subnet(self, prefix: str) -> list[Device]:
        base = normalize_prefix(prefix)
        addresses = [f"{base}{i}" for i in range(1, 255)]
        workers = max(1, self.options.max_host_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hostscan") as pool:
            results = list(pool.map(self.check_device, addresses))
        devices = sorted((d for d in results if d is not None), key=lambda d: d.sort_key)
        if self.journal is not None:
            self.journal.log_system(f"Subnet scan {base}0/24 found {len(devices)} device(s)")
        return devices

    def scan_single_device(self, address: str, full_scan: bool = True) -> Device | None:
        return self.check_device(address.strip(), TOP_PORTS, force=full_scan)
