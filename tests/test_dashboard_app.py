"""
Tests for dashboard.app - local JSON API
Tests the live feed drain, inventory filters, journal endpoints, export formats and listener routes.
"""

from __future__ import annotations

import csv
import io
import json
from unittest.mock import Mock, patch

import pytest
from conftest import assert_has_keys

from agent.event_journal import HEADER, EventJournal
from agent.listeners import ListenerLifecycleManager
from agent.models import ConnectionRecord, Device, DeviceStatus, Protocol
from app.core import Core
from dashboard.app import LIVE, build_app


class TestDashboardRoutes:
    """Tests for dashboard Flask routes"""

    @pytest.fixture
    def mock_bus(self):
        """Create mock event bus that has one event queued, then goes idle"""
        mock_bus = Mock()

        def mock_subscribe():
            yield {"source": "network", "type": "new_port", "local_port": 4444}
            while True:
                yield None

        mock_bus.subscribe = Mock(return_value=mock_subscribe())
        return mock_bus

    @pytest.fixture
    def records(self):
        tcp = ConnectionRecord(Protocol.TCP, "0.0.0.0", 4444, state="LISTEN", pid=7)
        tcp.suspicious, tcp.suspicious_reason = True, "Port 4444 is a known malware port."
        udp = ConnectionRecord(Protocol.UDP, "0.0.0.0", 5353, pid=8)
        return [tcp, udp]

    @pytest.fixture
    def core(self, records):
        journal = EventJournal(None)
        monitor = Mock()
        monitor.latest = records
        monitor.latest_at = 1700000000.0
        listeners = ListenerLifecycleManager(
            journal, firewall=Mock(), upnp=Mock(), binder=Mock(side_effect=lambda p, proto: Mock())
        )
        return Core(
            journal=journal,
            monitor=monitor,
            scanner=Mock(),
            listeners=listeners,
            fingerprinter=Mock(),
            reachability=Mock(),
        )

    @pytest.fixture
    def client(self, core, mock_bus):
        LIVE.clear()
        app = build_app(core, mock_bus)
        app.config["TESTING"] = True
        return app.test_client()

    def test_api_ping_drains_bus(self, client, core):
        """Test that /api/ping moves queued bus events into the live buffer"""
        data = client.get("/api/ping").get_json()
        assert_has_keys(data, ("ok", "drained", "live", "connections", "critical_unseen", "admin"))
        assert data["drained"] == 1
        assert data["connections"] == 2
        live = client.get("/api/live").get_json()
        assert live[0]["local_port"] == 4444
        assert "ts" in live[0]

    def test_connections_filters(self, client):
        data = client.get("/api/connections").get_json()
        assert data["count"] == 2
        assert data["updated"] == 1700000000.0
        assert client.get("/api/connections?protocol=udp").get_json()["connections"][0]["local_port"] == 5353
        susp = client.get("/api/connections?suspicious=1").get_json()
        assert [c["local_port"] for c in susp["connections"]] == [4444]

    def test_events_and_seen(self, client, core):
        core.journal.log_system("started")
        core.journal.log_new_port(4444, "TCP", "evil.exe")
        data = client.get("/api/events").get_json()
        assert data["critical_unseen"] is True
        assert len(data["events"]) == 2
        critical = client.get("/api/events?critical=1").get_json()["events"]
        assert [e["event_type"] for e in critical] == ["NEW_PORT"]
        assert client.post("/api/events/seen").status_code == 200
        assert core.journal.has_critical_unseen is False

    def test_events_clear(self, client, core):
        core.journal.log_system("x")
        client.post("/api/events/clear")
        assert client.get("/api/events").get_json()["events"] == []

    def test_export_csv(self, client, core):
        core.journal.log_new_port(8080, "TCP", "app.exe")
        resp = client.get("/api/export")
        assert resp.status_code == 200
        assert "text/csv" in resp.headers["Content-Type"]
        text = resp.data.decode("utf-8")
        assert text.startswith("\ufeff")
        rows = list(csv.reader(io.StringIO(text.lstrip("\ufeff"))))
        assert rows[0] == HEADER
        assert rows[1][1] == "NEW_PORT"
        assert rows[1][3] == "8080"

    def test_export_json(self, client, core):
        core.journal.log_system("hello")
        resp = client.get("/api/export?format=json")
        assert resp.headers["Content-Type"] == "application/json"
        assert json.loads(resp.data)[0]["details"] == "hello"

    def test_export_xlsx(self, client, core):
        pytest.importorskip("openpyxl")
        core.journal.log_system("sheet")
        resp = client.get("/api/export?format=xlsx")
        assert resp.status_code == 200
        assert resp.data[:2] == b"PK"  # zip container

    def test_listener_lifecycle(self, client):
        resp = client.post("/api/listeners", json={"port": 8080, "protocol": "TCP"})
        assert resp.status_code == 200
        (result,) = resp.get_json()["results"]
        assert result["ok"] is True
        assert result["message"] == "Port 8080/TCP started!"
        assert client.get("/api/listeners").get_json()[0]["port"] == 8080
        # duplicate start conflicts
        assert client.post("/api/listeners", json={"port": 8080, "protocol": "TCP"}).status_code == 409
        assert client.delete("/api/listeners", json={"port": 8080, "protocol": "TCP"}).status_code == 200
        assert client.delete("/api/listeners", json={"port": 8080, "protocol": "TCP"}).status_code == 404

    def test_listener_both_protocols(self, client):
        results = client.post("/api/listeners", json={"port": 9000, "protocol": "BOTH"}).get_json()["results"]
        assert [r["listener"]["protocol"] for r in results] == ["TCP", "UDP"]

    def test_forward_only_implies_rule_and_mapping(self, client, core):
        client.post("/api/listeners", json={"port": 25565, "forward_only": True})
        core.listeners.firewall.add_rule.assert_called_once()
        core.listeners.upnp.create_mapping.assert_called_once()

    @pytest.mark.parametrize("body", [{}, {"port": "abc"}, {"port": 70000}])
    def test_listener_bad_port(self, client, body):
        assert client.post("/api/listeners", json=body).status_code == 400

    def test_listener_bad_protocol(self, client):
        assert client.post("/api/listeners", json={"port": 80, "protocol": "SCTP"}).status_code == 400

    def test_scan_subnet(self, client, core):
        core.scanner.scan_subnet.return_value = [Device("10.0.0.2", "nas", DeviceStatus.ONLINE_NO_PING, [445])]
        data = client.post("/api/scan/subnet", json={"prefix": "10.0.0"}).get_json()
        assert data["devices"][0]["status"] == "Online (No Ping)"
        core.scanner.scan_subnet.return_value = None
        core.scanner.scan_subnet.side_effect = ValueError("not a /24 prefix")
        assert client.post("/api/scan/subnet", json={"prefix": "x"}).status_code == 400

    def test_scan_subnet_default_prefix(self, client, core):
        core.scanner.scan_subnet.return_value = []
        with patch("dashboard.app.local_subnet_prefix", return_value="192.168.50."):
            data = client.post("/api/scan/subnet").get_json()
        assert data["prefix"] == "192.168.50."

    def test_scan_device(self, client, core):
        core.scanner.scan_single_device.return_value = None
        data = client.post("/api/scan/device", json={"address": "10.0.0.9"}).get_json()
        assert data["device"] is None
        core.scanner.scan_single_device.assert_called_once_with("10.0.0.9", full_scan=True)
        assert client.post("/api/scan/device", json={}).status_code == 400

    def test_fingerprint_uses_known_record(self, client, core, records):
        core.fingerprinter.identify_record.return_value = "Metasploit"
        data = client.post("/api/fingerprint", json={"port": 4444}).get_json()
        assert data["service"] == "Metasploit"
        core.fingerprinter.identify_record.assert_called_once_with(records[0], host="127.0.0.1")

    def test_fingerprint_unknown_port(self, client, core):
        core.fingerprinter.identify.return_value = "HTTP"
        data = client.post("/api/fingerprint", json={"port": 80, "host": "10.0.0.1"}).get_json()
        assert data["service"] == "HTTP"
        core.fingerprinter.identify.assert_called_once_with("10.0.0.1", 80)

    def test_external_check(self, client, core):
        core.reachability.check_port.return_value = (False, "Port is CLOSED from internet")
        data = client.post("/api/external", json={"port": 80}).get_json()
        assert data == {"port": 80, "open": False, "message": "Port is CLOSED from internet"}
        core.reachability.check_record.return_value = ("OPEN", "Port is OPEN from internet")
        assert client.post("/api/external", json={"port": 4444}).get_json()["open"] is True

    def test_public_ip(self, client, core):
        core.reachability.public_ip.return_value = "198.51.100.1"
        core.reachability.nat_status.return_value = "Single NAT (normal router)"
        data = client.get("/api/public-ip").get_json()
        assert data == {"public_ip": "198.51.100.1", "nat": "Single NAT (normal router)"}

    @pytest.mark.parametrize(
        "query,expected",
        [("4444", [4444]), ("MDNS", [5353]), ("8.8", [4444]), ("dns.google", [4444]), ("nothing", [])],
    )
    def test_connections_search(self, client, records, query, expected):
        """Test that ?q= matches port, process name, remote address and hostname"""
        records[0].process_name = "evil.exe"
        records[0].remote_address, records[0].remote_hostname = "8.8.4.4", "dns.google"
        records[1].process_name = "mdnsresponder.exe"
        data = client.get(f"/api/connections?q={query}").get_json()
        assert [c["local_port"] for c in data["connections"]] == expected

    def test_kill_owning_process(self, client, core, records):
        records[0].process_name = "evil.exe"
        with patch("dashboard.app.kill_process") as kill:
            data = client.post("/api/connections/kill", json={"port": 4444}).get_json()
        kill.assert_called_once_with(7)
        assert data["message"] == "Killed process evil.exe on port 4444"
        entry = core.journal.entries()[0]
        assert (entry.event_type, entry.category, entry.port) == ("PORT_CLOSED", "NETWORK", 4444)

    def test_kill_refused(self, client, core):
        from agent.monitor import ProcessKillError

        with patch("dashboard.app.kill_process", side_effect=ProcessKillError("Failed to kill process 7: access denied")):
            resp = client.post("/api/connections/kill", json={"port": 4444, "protocol": "TCP"})
        assert resp.status_code == 409
        assert "access denied" in resp.get_json()["error"]
        assert len(core.journal) == 0

    def test_kill_unknown_port(self, client):
        with patch("dashboard.app.kill_process") as kill:
            assert client.post("/api/connections/kill", json={"port": 4444, "protocol": "UDP"}).status_code == 404
            assert client.post("/api/connections/kill", json={"port": 1}).status_code == 404
        kill.assert_not_called()

    def test_kill_invalid_port(self, client):
        assert client.post("/api/connections/kill", json={"port": "http"}).status_code == 400
