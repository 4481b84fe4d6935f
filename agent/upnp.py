# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: asks the home router (a UPnP Internet Gateway Device) to forward external ports to this host.
discovery is an SSDP M-SEARCH followed by a fetch of the device description to find the WAN connection
service's control URL; mappings are SOAP calls against that URL. the gateway handle is discovered once
per process and concurrent first callers wait on the same discovery instead of racing their own.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for debug output on discovery failures
import socket  # for the SSDP multicast search
import threading  # for the one-shot discovery guard
import time  # for the discovery deadline
import xml.etree.ElementTree as ET  # for parsing device descriptions and SOAP replies
from collections.abc import Callable  # type hint for the injected discovery function
from dataclasses import dataclass  # for the gateway handle
from urllib.parse import urljoin, urlparse  # for resolving control URLs
from xml.sax.saxutils import escape  # for argument values in SOAP bodies

import requests  # HTTP client for description fetch and SOAP calls

log = logging.getLogger(__name__)

SSDP_ADDR = ("239.255.255.250", 1900)
SEARCH_TARGET = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"
WAN_SERVICES = (
    "urn:schemas-upnp-org:service:WANIPConnection:2",
    "urn:schemas-upnp-org:service:WANIPConnection:1",
    "urn:schemas-upnp-org:service:WANPPPConnection:1",
)
DISCOVER_TIMEOUT = 5.0
SOAP_TIMEOUT = 5.0


class UpnpError(RuntimeError):
    """no gateway, or the gateway refused the request"""


@dataclass(frozen=True)
class Gateway:
    control_url: str
    service_type: str
    local_address: str  # our address as seen on the gateway's LAN


DiscoverFn = Callable[[float], "Gateway | None"]


def _strip_ns(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _ssdp_locations(timeout: float) -> list[str]:
    msearch = "\r\n".join(
        [
            "M-SEARCH * HTTP/1.1",
            f"HOST: {SSDP_ADDR[0]}:{SSDP_ADDR[1]}",
            'MAN: "ssdp:discover"',
            "MX: 2",
            f"ST: {SEARCH_TARGET}",
            "",
            "",
        ]
    ).encode("utf-8")
    locations: list[str] = []
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
        sock.settimeout(0.3)
        sock.sendto(msearch, SSDP_ADDR)
        end = time.time() + timeout
        while time.time() < end:
            try:
                data, _addr = sock.recvfrom(65535)
            except socket.timeout:
                if locations:
                    break  # got answers and the line went quiet
                continue
            for line in data.decode("utf-8", errors="ignore").split("\r\n")[1:]:
                if ":" not in line:
                    continue
                k, v = line.split(":", 1)
                if k.strip().lower() == "location" and v.strip() not in locations:
                    locations.append(v.strip())
    finally:
        sock.close()
    return locations


def parse_description(xml_text: str, location: str) -> tuple[str, str] | None:
    """find (control URL, service type) of the first WAN connection service in a description"""
    root = ET.fromstring(xml_text)
    base = location
    for el in root.iter():
        if _strip_ns(el.tag) == "URLBase" and el.text and el.text.strip():
            base = el.text.strip()
    services: dict[str, str] = {}
    for el in root.iter():
        if _strip_ns(el.tag) != "service":
            continue
        fields = {_strip_ns(c.tag): (c.text or "").strip() for c in el}
        stype = fields.get("serviceType", "")
        if stype in WAN_SERVICES and fields.get("controlURL"):
            services[stype] = urljoin(base, fields["controlURL"])
    for stype in WAN_SERVICES:  # preference order
        if stype in services:
            return services[stype], stype
    return None


def _local_address_towards(url: str) -> str:
    host = urlparse(url).hostname or SSDP_ADDR[0]
    port = urlparse(url).port or 80
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.connect((host, port))  # no packets sent, just picks the outgoing interface
        return s.getsockname()[0]


def ssdp_discover_gateway(timeout: float, session: requests.Session | None = None) -> Gateway | None:
    http = session or requests.Session()
    deadline = time.time() + timeout
    for location in _ssdp_locations(timeout):
        remaining = max(0.5, deadline - time.time())
        try:
            resp = http.get(location, timeout=remaining)
            resp.raise_for_status()
            found = parse_description(resp.text, location)
        except (requests.RequestException, ET.ParseError):
            log.debug("bad gateway description at %s", location, exc_info=True)
            continue
        if found:
            control_url, stype = found
            return Gateway(control_url, stype, _local_address_towards(control_url))
    return None


def soap_envelope(service_type: str, action: str, args: list[tuple[str, str]]) -> str:
    body = "".join(f"<{k}>{escape(str(v))}</{k}>" for k, v in args)
    return (
        '<?xml version="1.0"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
        's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
        f'<s:Body><u:{action} xmlns:u="{service_type}">{body}</u:{action}></s:Body>'
        "</s:Envelope>"
    )


class UpnpManager:
    def __init__(
        self,
        session: requests.Session | None = None,
        discover: DiscoverFn | None = None,
        discover_timeout: float = DISCOVER_TIMEOUT,
    ) -> None:
        self.session = session or requests.Session()
        self._discover = discover or (lambda t: ssdp_discover_gateway(t, self.session))
        self.discover_timeout = discover_timeout
        self._gateway: Gateway | None = None
        self._init_lock = threading.Lock()
        self.discoveries = 0  # how many discovery rounds actually ran

    @property
    def gateway(self) -> Gateway | None:
        return self._gateway

    def discover_gateway(self, timeout: float | None = None) -> Gateway | None:
        if self._gateway is not None:
            return self._gateway
        with self._init_lock:
            # whoever got the lock first already did the work
            if self._gateway is not None:
                return self._gateway
            self.discoveries += 1
            try:
                self._gateway = self._discover(timeout or self.discover_timeout)
            except (OSError, requests.RequestException):
                log.debug("gateway discovery failed", exc_info=True)
                self._gateway = None
            return self._gateway

    def _soap(self, action: str, args: list[tuple[str, str]]) -> None:
        gw = self._gateway
        if gw is None:
            raise UpnpError("No UPnP Gateway found.")
        headers = {
            "Content-Type": 'text/xml; charset="utf-8"',
            "SOAPAction": f'"{gw.service_type}#{action}"',
        }
        try:
            resp = self.session.post(
                gw.control_url,
                data=soap_envelope(gw.service_type, action, args).encode("utf-8"),
                headers=headers,
                timeout=SOAP_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise UpnpError(f"{action} failed: {exc}") from exc
        if resp.status_code != 200:
            raise UpnpError(f"{action} rejected by gateway (HTTP {resp.status_code})")

    def create_mapping(
        self, protocol: str, internal_port: int, external_port: int, description: str
    ) -> None:
        gw = self.discover_gateway()
        if gw is None:
            raise UpnpError("No UPnP Gateway found.")
        self._soap(
            "AddPortMapping",
            [
                ("NewRemoteHost", ""),
                ("NewExternalPort", str(external_port)),
                ("NewProtocol", protocol.upper()),
                ("NewInternalPort", str(internal_port)),
                ("NewInternalClient", gw.local_address),
                ("NewEnabled", "1"),
                ("NewPortMappingDescription", description),
                ("NewLeaseDuration", "0"),
            ],
        )

    def delete_mapping(self, protocol: str, port: int) -> None:
        if self._gateway is None:
            return  # never initialized, so nothing was mapped
        self._soap(
            "DeletePortMapping",
            [
                ("NewRemoteHost", ""),
                ("NewExternalPort", str(port)),
                ("NewProtocol", protocol.upper()),
            ],
        )
