# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: reads the OS connection tables (IPv4 TCP and UDP) and turns every row into a ConnectionRecord.
on Windows it talks to the IP Helper API directly through ctypes with the two-phase size-then-fetch
protocol; everywhere else psutil provides the same rows. a failed read never escapes: the cycle just
gets an empty snapshot and the next tick tries again.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import ctypes  # for calling GetExtendedTcpTable / GetExtendedUdpTable on Windows
import logging  # for debug output when a table read fails
import socket  # for turning packed addresses into dotted strings
import struct  # for decoding the raw table rows
import sys  # for checking the platform (Windows vs other)
from collections.abc import Callable  # type hint for the table query callback
from typing import Any  # type hint for psutil connection tuples

import psutil  # library for getting network connection information

from agent.models import TCP_STATES, ConnectionRecord, Protocol

log = logging.getLogger(__name__)

AF_INET = 2
NO_ERROR = 0
ERROR_INSUFFICIENT_BUFFER = 122
TCP_TABLE_OWNER_PID_ALL = 5
UDP_TABLE_OWNER_PID = 1

_TCP_ROW = struct.Struct("<6I")  # state, localAddr, localPort, remoteAddr, remotePort, owningPid
_UDP_ROW = struct.Struct("<3I")  # localAddr, localPort, owningPid
_COUNT = struct.Struct("<I")  # dwNumEntries header

# (buffer or None, in/out size) -> status code, same shape as the IP Helper calls
QueryFn = Callable[[Any, ctypes.c_ulong], int]

# psutil status strings -> the MIB_TCP_STATE names we report
_PSUTIL_STATES = {
    psutil.CONN_ESTABLISHED: "ESTABLISHED",
    psutil.CONN_SYN_SENT: "SYN_SENT",
    psutil.CONN_SYN_RECV: "SYN_RCVD",
    psutil.CONN_FIN_WAIT1: "FIN_WAIT1",
    psutil.CONN_FIN_WAIT2: "FIN_WAIT2",
    psutil.CONN_TIME_WAIT: "TIME_WAIT",
    psutil.CONN_CLOSE: "CLOSED",
    psutil.CONN_CLOSE_WAIT: "CLOSE_WAIT",
    psutil.CONN_LAST_ACK: "LAST_ACK",
    psutil.CONN_LISTEN: "LISTEN",
    psutil.CONN_CLOSING: "CLOSING",
}


def decode_port(dword: int) -> int:
    """the 16-bit port sits in network byte order in the low half of a 32-bit word"""
    return ((dword & 0xFF) << 8) | ((dword >> 8) & 0xFF)


def decode_ipv4(dword: int) -> str:
    return socket.inet_ntoa(struct.pack("<I", dword & 0xFFFFFFFF))


def tcp_state_name(state: int) -> str:
    # MIB_TCP_STATE is 1-based (1 = CLOSED ... 12 = DELETE_TCB)
    if 1 <= state <= len(TCP_STATES):
        return TCP_STATES[state - 1]
    return "UNKNOWN"


def fetch_table(query: QueryFn) -> bytes | None:
    """
    two-phase read: ask for the size with no buffer, then fetch into a buffer of exactly that size.
    if the table grew between the calls, retry once with the new size, then give up for this cycle.
    """
    size = ctypes.c_ulong(0)
    query(None, size)  # first call only fills in the required size
    for _attempt in range(2):
        buf = ctypes.create_string_buffer(max(size.value, _COUNT.size))
        status = query(buf, size)
        if status == NO_ERROR:
            return buf.raw[: size.value]
        if status != ERROR_INSUFFICIENT_BUFFER:
            log.debug("connection table query failed with status %s", status)
            return None
        # size now holds the grown requirement, loop once more
    log.debug("connection table kept growing, skipping this cycle")
    return None


def parse_tcp_table(raw: bytes) -> list[ConnectionRecord]:
    (count,) = _COUNT.unpack_from(raw, 0)
    out: list[ConnectionRecord] = []
    offset = _COUNT.size
    for _ in range(count):
        if offset + _TCP_ROW.size > len(raw):
            break  # truncated buffer, keep what we decoded
        state, laddr, lport, raddr, rport, pid = _TCP_ROW.unpack_from(raw, offset)
        offset += _TCP_ROW.size
        out.append(
            ConnectionRecord(
                protocol=Protocol.TCP,
                local_address=decode_ipv4(laddr),
                local_port=decode_port(lport),
                remote_address=decode_ipv4(raddr),
                remote_port=decode_port(rport),
                state=tcp_state_name(state),
                pid=int(pid),
            )
        )
    return out


def parse_udp_table(raw: bytes) -> list[ConnectionRecord]:
    (count,) = _COUNT.unpack_from(raw, 0)
    out: list[ConnectionRecord] = []
    offset = _COUNT.size
    for _ in range(count):
        if offset + _UDP_ROW.size > len(raw):
            break
        laddr, lport, pid = _UDP_ROW.unpack_from(raw, offset)
        offset += _UDP_ROW.size
        out.append(
            ConnectionRecord(
                protocol=Protocol.UDP,
                local_address=decode_ipv4(laddr),
                local_port=decode_port(lport),
                pid=int(pid),
            )
        )
    return out


class _IpHelperTables:
    """Windows backend: GetExtendedTcpTable / GetExtendedUdpTable for AF_INET."""

    def __init__(self) -> None:
        iphlpapi = ctypes.WinDLL("iphlpapi.dll")  # type: ignore[attr-defined]
        self._tcp = iphlpapi.GetExtendedTcpTable
        self._udp = iphlpapi.GetExtendedUdpTable

    def _query_tcp(self, buf: Any, size: ctypes.c_ulong) -> int:
        return int(self._tcp(buf, ctypes.byref(size), False, AF_INET, TCP_TABLE_OWNER_PID_ALL, 0))

    def _query_udp(self, buf: Any, size: ctypes.c_ulong) -> int:
        return int(self._udp(buf, ctypes.byref(size), False, AF_INET, UDP_TABLE_OWNER_PID, 0))

    def read(self) -> list[ConnectionRecord]:
        records: list[ConnectionRecord] = []
        raw = fetch_table(self._query_tcp)
        if raw:
            records.extend(parse_tcp_table(raw))
        raw = fetch_table(self._query_udp)
        if raw:
            records.extend(parse_udp_table(raw))
        return records


class _PsutilTables:
    """portable backend built on psutil.net_connections"""

    def read(self) -> list[ConnectionRecord]:
        records: list[ConnectionRecord] = []
        for c in psutil.net_connections(kind="inet4"):
            rec = self._to_record(c)
            if rec is not None:
                records.append(rec)
        return records

    @staticmethod
    def _to_record(c: Any) -> ConnectionRecord | None:
        if not c.laddr:
            return None
        pid = int(c.pid or 0)
        if c.type == socket.SOCK_DGRAM:
            return ConnectionRecord(
                protocol=Protocol.UDP,
                local_address=c.laddr.ip,
                local_port=c.laddr.port,
                pid=pid,
            )
        if c.type != socket.SOCK_STREAM:
            return None
        return ConnectionRecord(
            protocol=Protocol.TCP,
            local_address=c.laddr.ip,
            local_port=c.laddr.port,
            remote_address=c.raddr.ip if c.raddr else "0.0.0.0",
            remote_port=c.raddr.port if c.raddr else 0,
            state=_PSUTIL_STATES.get(c.status, "UNKNOWN"),
            pid=pid,
        )


class SocketTableReader:
    """produces the current snapshot of bound/connected IPv4 sockets; never raises"""

    def __init__(self, backend: Any = None) -> None:
        if backend is None:
            backend = _IpHelperTables() if sys.platform == "win32" else _PsutilTables()
        self._backend = backend

    def get_snapshot(self) -> list[ConnectionRecord]:
        try:
            return list(self._backend.read())
        except Exception:  # psutil.AccessDenied, OSError, decoding trouble
            log.debug("socket table read failed", exc_info=True)
            return []
