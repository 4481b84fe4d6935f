# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: answers "what does the internet see?". detects the public IP through a primary and a fallback
HTTP endpoint, asks a public port-checking service whether a port is open and, when that service is
unreachable, tries a self-connect against the detected public IP. every failure turns into a
placeholder or a negative answer, never an exception.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import ipaddress  # for spotting private public-IPs (double NAT)
import logging  # for debug output on failed lookups
import socket  # for the self-connect fallback

import requests  # HTTP client for the public-IP and port-check services

from agent.caches import KeyedCache
from agent.models import ConnectionRecord

log = logging.getLogger(__name__)

UNABLE = "Unable to detect"
PUBLIC_IP_ENDPOINTS = ("https://api.ipify.org", "https://icanhazip.com")
PORT_CHECK_URL = "https://portchecker.co/check?port={port}"
HTTP_TIMEOUT = 10.0
SELF_CONNECT_TIMEOUT = 5.0


class ExternalReachabilityChecker:
    def __init__(
        self,
        session: requests.Session | None = None,
        ip_endpoints: tuple[str, ...] = PUBLIC_IP_ENDPOINTS,
        port_check_url: str = PORT_CHECK_URL,
        http_timeout: float = HTTP_TIMEOUT,
        connect_timeout: float = SELF_CONNECT_TIMEOUT,
        cache: KeyedCache | None = None,
    ) -> None:
        self.session = session or requests.Session()
        self.ip_endpoints = ip_endpoints
        self.port_check_url = port_check_url
        self.http_timeout = http_timeout
        self.connect_timeout = connect_timeout
        self.cache = cache if cache is not None else KeyedCache()

    def public_ip(self) -> str:
        for url in self.ip_endpoints:
            try:
                resp = self.session.get(url, timeout=self.http_timeout)
                resp.raise_for_status()
            except requests.RequestException:
                log.debug("public IP lookup via %s failed", url, exc_info=True)
                continue
            ip = (resp.text or "").strip()
            if ip:
                return ip
        return UNABLE

    def check_port(self, port: int) -> tuple[bool, str]:
        try:
            resp = self.session.get(
                self.port_check_url.format(port=port), timeout=self.http_timeout
            )
            resp.raise_for_status()
        except requests.RequestException:
            return self._self_connect(port)
        if "open" in (resp.text or "").lower():
            return True, "Port is OPEN from internet"
        return False, "Port is CLOSED from internet"

    def _self_connect(self, port: int) -> tuple[bool, str]:
        ip = self.public_ip()
        if ip == UNABLE:
            return False, "Could not verify: public IP unavailable"
        try:
            with socket.create_connection((ip, port), timeout=self.connect_timeout):
                return True, f"Port {port} reachable on {ip}"
        except socket.timeout:
            return False, f"Port {port} not reachable on {ip} (timeout)"
        except OSError as exc:
            return False, f"Could not verify: {exc}"

    def nat_status(self) -> str:
        ip = self.public_ip()
        if ip == UNABLE:
            return "Unable to determine NAT status"
        try:
            addr = ipaddress.ip_address(ip)
            if addr.is_private or not addr.is_global:  # 100.64/10 is neither
                return "Double NAT detected (CGNAT or nested router)"
        except ValueError:
            return "Unable to determine NAT status"
        return "Single NAT (normal router)"

    def check_record(self, record: ConnectionRecord) -> tuple[str, str]:
        """test the record's local port from outside; cache OPEN/CLOSED under its socket key"""
        is_open, message = self.check_port(record.local_port)
        status = "OPEN" if is_open else "CLOSED"
        self.cache.put(record.cache_key, status)
        record.set_derived("external_status", status)
        return status, message

    def apply_cached(self, record: ConnectionRecord) -> ConnectionRecord:
        cached = self.cache.get(record.cache_key)
        if cached:
            record.set_derived("external_status", cached)
        return record
