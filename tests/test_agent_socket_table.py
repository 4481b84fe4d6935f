"""
Tests for agent.socket_table - OS connection table reading
Tests the two-phase fetch, row decoding and the never-raise contract.
"""

from __future__ import annotations

import ctypes
import socket
import struct
from types import SimpleNamespace
from unittest.mock import Mock, patch

import psutil
import pytest

from agent.models import Protocol
from agent.socket_table import (
    ERROR_INSUFFICIENT_BUFFER,
    NO_ERROR,
    SocketTableReader,
    _PsutilTables,
    decode_ipv4,
    decode_port,
    fetch_table,
    parse_tcp_table,
    parse_udp_table,
    tcp_state_name,
)


def _port_word(port: int) -> int:
    # network byte order in the low 16 bits, as the IP Helper API stores it
    return struct.unpack("<I", struct.pack(">H", port) + b"\x00\x00")[0]


def _addr_word(ip: str) -> int:
    return struct.unpack("<I", socket.inet_aton(ip))[0]


def _tcp_table(rows) -> bytes:
    out = struct.pack("<I", len(rows))
    for state, laddr, lport, raddr, rport, pid in rows:
        out += struct.pack(
            "<6I", state, _addr_word(laddr), _port_word(lport), _addr_word(raddr), _port_word(rport), pid
        )
    return out


class FakeQuery:
    """Mimics GetExtendedTcpTable: size probe, then fetch; tables may grow between calls."""

    def __init__(self, payloads, error=None):
        self.payloads = list(payloads)  # table contents seen by each successive call
        self.error = error
        self.calls = 0

    def __call__(self, buf, size):
        payload = self.payloads[min(self.calls, len(self.payloads) - 1)]
        self.calls += 1
        if buf is None or len(buf) < len(payload):
            size.value = len(payload)
            return ERROR_INSUFFICIENT_BUFFER
        if self.error is not None:
            return self.error
        ctypes.memmove(buf, payload, len(payload))
        size.value = len(payload)
        return NO_ERROR


class TestDecoding:
    """Tests for low-level decoding helpers"""

    def test_decode_port_byte_swaps(self):
        """Test that the port word is byte-swapped and masked"""
        assert decode_port(_port_word(8080)) == 8080
        assert decode_port(_port_word(443)) == 443
        # garbage in the high half is masked off
        assert decode_port(_port_word(80) | 0xABCD0000) == 80

    def test_decode_ipv4(self):
        assert decode_ipv4(_addr_word("192.168.1.20")) == "192.168.1.20"

    def test_tcp_state_names_are_one_based(self):
        assert tcp_state_name(1) == "CLOSED"
        assert tcp_state_name(2) == "LISTEN"
        assert tcp_state_name(5) == "ESTABLISHED"
        assert tcp_state_name(12) == "DELETE_TCB"
        assert tcp_state_name(0) == "UNKNOWN"
        assert tcp_state_name(99) == "UNKNOWN"


class TestFetchTable:
    """Tests for the two-phase size-then-fetch protocol"""

    def test_fetch_after_size_probe(self):
        raw = _tcp_table([(2, "0.0.0.0", 80, "0.0.0.0", 0, 4)])
        q = FakeQuery([raw])
        assert fetch_table(q) == raw
        assert q.calls == 2

    def test_retries_once_when_table_grows(self):
        small = _tcp_table([(2, "0.0.0.0", 80, "0.0.0.0", 0, 4)])
        big = _tcp_table([(2, "0.0.0.0", 80, "0.0.0.0", 0, 4), (2, "0.0.0.0", 81, "0.0.0.0", 0, 4)])
        q = FakeQuery([small, big])
        assert fetch_table(q) == big

    def test_gives_up_when_table_keeps_growing(self):
        sizes = [_tcp_table([(2, "0.0.0.0", p, "0.0.0.0", 0, 1)] * n) for n, p in ((1, 1), (2, 2), (3, 3), (4, 4))]
        q = FakeQuery(sizes)
        assert fetch_table(q) is None
        assert q.calls == 3

    def test_other_error_returns_none(self):
        q = FakeQuery([_tcp_table([])], error=87)
        assert fetch_table(q) is None


class TestParsing:
    """Tests for row decoding"""

    def test_parse_tcp_rows(self):
        raw = _tcp_table(
            [
                (2, "0.0.0.0", 445, "0.0.0.0", 0, 4),
                (5, "192.168.1.5", 50123, "93.184.216.34", 443, 1234),
            ]
        )
        recs = parse_tcp_table(raw)
        assert len(recs) == 2
        assert recs[0].local_port == 445 and recs[0].state == "LISTEN"
        assert recs[1].remote_address == "93.184.216.34"
        assert recs[1].remote_port == 443
        assert recs[1].pid == 1234
        assert all(r.protocol is Protocol.TCP for r in recs)

    def test_parse_udp_rows(self):
        raw = struct.pack("<I", 1) + struct.pack("<3I", _addr_word("0.0.0.0"), _port_word(53), 900)
        (rec,) = parse_udp_table(raw)
        assert rec.protocol is Protocol.UDP
        assert rec.local_port == 53
        assert rec.state == "N/A"
        assert rec.remote_address == ""

    def test_truncated_table_keeps_decoded_rows(self):
        raw = _tcp_table([(2, "0.0.0.0", 80, "0.0.0.0", 0, 4)])
        raw = struct.pack("<I", 3) + raw[4:]  # claims three rows, holds one
        assert len(parse_tcp_table(raw)) == 1


class TestSocketTableReader:
    """Tests for SocketTableReader"""

    def test_never_raises(self):
        backend = Mock()
        backend.read.side_effect = OSError("boom")
        assert SocketTableReader(backend=backend).get_snapshot() == []

    def test_psutil_backend_maps_rows(self):
        rows = [
            SimpleNamespace(
                laddr=SimpleNamespace(ip="0.0.0.0", port=8080),
                raddr=(),
                status=psutil.CONN_LISTEN,
                type=socket.SOCK_STREAM,
                pid=10,
            ),
            SimpleNamespace(
                laddr=SimpleNamespace(ip="0.0.0.0", port=5353),
                raddr=(),
                status=psutil.CONN_NONE,
                type=socket.SOCK_DGRAM,
                pid=None,
            ),
        ]
        with patch("agent.socket_table.psutil.net_connections", return_value=rows):
            recs = SocketTableReader(backend=_PsutilTables()).get_snapshot()
        assert [(r.protocol, r.local_port, r.state) for r in recs] == [
            (Protocol.TCP, 8080, "LISTEN"),
            (Protocol.UDP, 5353, "N/A"),
        ]
        assert recs[1].pid == 0

    @pytest.mark.parametrize("exc", [psutil.AccessDenied(), PermissionError()])
    def test_psutil_errors_give_empty_snapshot(self, exc):
        with patch("agent.socket_table.psutil.net_connections", side_effect=exc):
            assert SocketTableReader(backend=_PsutilTables()).get_snapshot() == []
