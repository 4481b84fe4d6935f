# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: works out which service sits behind a port by connecting, nudging it with an empty line and
reading whatever banner comes back. known keywords win, short unknown banners are shown as-is, and
when nothing useful comes back we fall back to a static port -> service table.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import re  # for pulling version tokens out of banners
import socket  # for the connect-and-read probe

from agent.caches import KeyedCache
from agent.models import ConnectionRecord

CONNECT_TIMEOUT = 3.0
READ_TIMEOUT = 2.0
PROBE = b"\r\n"
BANNER_MAX = 256
SHORT_BANNER = 50

STATIC_SERVICES = {
    21: "FTP",
    22: "SSH",
    23: "Telnet",
    25: "SMTP",
    53: "DNS",
    80: "HTTP",
    110: "POP3",
    143: "IMAP",
    443: "HTTPS",
    445: "SMB",
    993: "IMAPS",
    995: "POP3S",
    1433: "MSSQL",
    1521: "Oracle DB",
    3306: "MySQL",
    3389: "RDP",
    5432: "PostgreSQL",
    5900: "VNC",
    6379: "Redis",
    8080: "HTTP Proxy",
    8443: "HTTPS Alt",
    27017: "MongoDB",
}

# keyword -> label, checked in order; versioned ones get a version suffix
_VERSIONED = (("ssh", "SSH"), ("http", "HTTP"), ("ftp", "FTP"), ("smtp", "SMTP"))
_PLAIN = (("mysql", "MySQL"), ("postgresql", "PostgreSQL"), ("redis", "Redis"), ("mongo", "MongoDB"))

_UNDERSCORE_VERSION = re.compile(r"_(\d[^\s]*)")


def guess_service(port: int) -> str:
    return STATIC_SERVICES.get(port, "Unknown")


def extract_version(banner: str) -> str:
    """token after the first '/' up to whitespace (nginx/1.18); OpenSSH_8.9 style as a fallback"""
    idx = banner.find("/")
    if 0 < idx < len(banner) - 1 and not banner[idx + 1].isspace():
        return banner[idx + 1 :].split(None, 1)[0]
    m = _UNDERSCORE_VERSION.search(banner)
    return m.group(1) if m else ""


def identify_banner(banner: str, port: int) -> str:
    lower = banner.lower()
    for keyword, label in _VERSIONED:
        if keyword in lower:
            version = extract_version(banner)
            return f"{label} {version}" if version else label
    for keyword, label in _PLAIN:
        if keyword in lower:
            return label
    if banner.strip() and len(banner) < SHORT_BANNER:
        return f"Banner: {banner}"
    return guess_service(port)


class ServiceFingerprinter:
    def __init__(
        self,
        connect_timeout: float = CONNECT_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
        cache: KeyedCache | None = None,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.cache = cache if cache is not None else KeyedCache()

    def _read_banner(self, host: str, port: int) -> str:
        with socket.create_connection((host, port), timeout=self.connect_timeout) as sock:
            sock.settimeout(self.read_timeout)
            sock.sendall(PROBE)
            data = sock.recv(BANNER_MAX)
        return data.decode("ascii", errors="replace").strip()

    def identify(self, host: str, port: int) -> str:
        try:
            banner = self._read_banner(host, port)
        except OSError:  # refused, timed out, reset: all mean "no banner"
            return guess_service(port)
        if not banner:
            return guess_service(port)
        return identify_banner(banner, port)

    def identify_record(self, record: ConnectionRecord, host: str = "127.0.0.1") -> str:
        """probe the record's local port and remember the answer under its socket key"""
        service = self.identify(host, record.local_port) or "Unknown"
        self.cache.put(record.cache_key, service)
        record.set_derived("service_name", service)
        return service

    def apply_cached(self, record: ConnectionRecord) -> ConnectionRecord:
        cached = self.cache.get(record.cache_key)
        if cached:
            record.set_derived("service_name", cached)
        return record
