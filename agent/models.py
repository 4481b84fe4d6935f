# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: shared data model for PortWarden. connection records read from the OS tables, scanned LAN
devices, tool-created listeners and journal entries all live here so every agent speaks the same types.
raw socket fields are fixed at construction; enrichment fields only ever move from empty to filled.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import ipaddress  # for sorting scan results by numeric address
from dataclasses import dataclass, field  # for the record types
from datetime import datetime  # for journal timestamps
from enum import Enum  # for protocol / status / step enums
from typing import Any  # type hint for the bound socket object

TCP_STATES = (
    "CLOSED",
    "LISTEN",
    "SYN_SENT",
    "SYN_RCVD",
    "ESTABLISHED",
    "FIN_WAIT1",
    "FIN_WAIT2",
    "CLOSE_WAIT",
    "CLOSING",
    "LAST_ACK",
    "TIME_WAIT",
    "DELETE_TCB",
)
UDP_STATE = "N/A"

# derived fields filled in by enrichers after the OS read
_DERIVED_FIELDS = (
    "process_name",
    "process_path",
    "suspicious_reason",
    "remote_hostname",
    "service_name",
    "external_status",
)


class Protocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"

    @classmethod
    def parse(cls, value: str | Protocol) -> Protocol:
        if isinstance(value, Protocol):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"unknown protocol: {value!r}") from None


class DeviceStatus(str, Enum):
    ONLINE = "Online"
    ONLINE_NO_PING = "Online (No Ping)"
    OFFLINE = "Offline"


class StepResult(str, Enum):
    """outcome of one optional sub-step of a listener start"""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ConnectionRecord:
    protocol: Protocol
    local_address: str
    local_port: int
    remote_address: str = ""
    remote_port: int = 0
    state: str = UDP_STATE
    pid: int = 0
    # derived, filled asynchronously
    process_name: str = ""
    process_path: str = ""
    suspicious: bool = False
    suspicious_reason: str = ""
    remote_hostname: str = ""
    service_name: str = ""
    external_status: str = ""

    def __post_init__(self) -> None:
        self.protocol = Protocol.parse(self.protocol)
        if not 0 <= int(self.local_port) <= 0xFFFF:
            raise ValueError(f"local port out of range: {self.local_port}")
        if self.protocol is Protocol.UDP:
            # UDP rows carry no remote endpoint or state
            self.remote_address = ""
            self.remote_port = 0
            self.state = UDP_STATE

    @property
    def key(self) -> str:
        """dedup identity used for change detection and alert suppression"""
        return f"{self.local_port}:{self.protocol.value}:{self.process_name}"

    @property
    def cache_key(self) -> str:
        """per-socket identity for the service and reachability caches"""
        return f"{self.local_port}:{self.protocol.value}:{self.pid}"

    def set_derived(self, name: str, value: str) -> None:
        if name not in _DERIVED_FIELDS:
            raise AttributeError(f"{name} is not a derived field")
        if not value and getattr(self, name):
            return  # never regress a filled field back to empty
        setattr(self, name, value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol.value,
            "local_address": self.local_address,
            "local_port": self.local_port,
            "remote_address": self.remote_address,
            "remote_port": self.remote_port,
            "state": self.state,
            "pid": self.pid,
            "process_name": self.process_name,
            "process_path": self.process_path,
            "suspicious": self.suspicious,
            "suspicious_reason": self.suspicious_reason,
            "remote_hostname": self.remote_hostname,
            "service_name": self.service_name,
            "external_status": self.external_status,
        }


def sort_snapshot(records: list[ConnectionRecord]) -> list[ConnectionRecord]:
    """display order: suspicious first, then protocol, then local port"""
    return sorted(records, key=lambda r: (not r.suspicious, r.protocol.value, r.local_port))


@dataclass
class Device:
    address: str
    hostname: str = "Unknown"
    status: DeviceStatus = DeviceStatus.OFFLINE
    open_ports: list[int] = field(default_factory=list)

    @property
    def open_ports_display(self) -> str:
        if not self.open_ports:
            return "None (scanned)"
        return ", ".join(str(p) for p in self.open_ports)

    @property
    def sort_key(self) -> Any:
        try:
            return (0, ipaddress.ip_address(self.address))
        except ValueError:
            return (1, self.address)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "hostname": self.hostname,
            "status": self.status.value,
            "open_ports": list(self.open_ports),
        }


@dataclass
class ActiveListener:
    port: int
    protocol: Protocol
    resource: Any = None  # bound socket, None when forward-only
    firewall_rule_added: bool = False
    firewall_rule_name: str = ""
    port_mapping_added: bool = False
    forward_only: bool = False

    @property
    def key(self) -> tuple[int, Protocol]:
        return (self.port, self.protocol)

    @property
    def display(self) -> str:
        fwd = " [FWD]" if self.forward_only else ""
        upnp = " [UPnP]" if self.port_mapping_added else ""
        return f"{self.protocol.value} :{self.port}{fwd}{upnp}"

    @property
    def firewall_status(self) -> str:
        return f"FW: {self.firewall_rule_name}" if self.firewall_rule_added else "FW: None"

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "protocol": self.protocol.value,
            "bound": self.resource is not None,
            "firewall_rule_added": self.firewall_rule_added,
            "firewall_rule_name": self.firewall_rule_name,
            "port_mapping_added": self.port_mapping_added,
            "forward_only": self.forward_only,
            "display": self.display,
        }


@dataclass
class ListenerStartResult:
    listener: ActiveListener | None
    bind: StepResult = StepResult.SKIPPED
    firewall: StepResult = StepResult.SKIPPED
    port_mapping: StepResult = StepResult.SKIPPED
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.listener is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "bind": self.bind.value,
            "firewall": self.firewall.value,
            "port_mapping": self.port_mapping.value,
            "message": self.message,
            "listener": self.listener.to_dict() if self.listener else None,
        }


@dataclass
class ListenerDescriptor:
    """saved-listener entry owned by the persistence collaborator"""

    port: int
    protocol: Protocol
    firewall_rule_name: str = ""
    upnp_enabled: bool = False
    forward_only: bool = False

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> ListenerDescriptor:
        return cls(
            port=int(obj["port"]),
            protocol=Protocol.parse(obj.get("protocol", "TCP")),
            firewall_rule_name=str(obj.get("firewall_rule_name") or ""),
            upnp_enabled=bool(obj.get("upnp_enabled", False)),
            forward_only=bool(obj.get("forward_only", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "protocol": self.protocol.value,
            "firewall_rule_name": self.firewall_rule_name,
            "upnp_enabled": self.upnp_enabled,
            "forward_only": self.forward_only,
        }


@dataclass
class LogEntry:
    timestamp: datetime
    event_type: str
    category: str
    details: str = ""
    application: str = ""
    port: int = 0
    protocol: str = ""
    is_critical: bool = False

    @property
    def display_time(self) -> str:
        return self.timestamp.strftime("%H:%M:%S")

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            "event_type": self.event_type,
            "category": self.category,
            "details": self.details,
            "application": self.application,
            "port": self.port,
            "protocol": self.protocol,
            "is_critical": self.is_critical,
        }
