"""
Tests for agent.monitor - ProcessEnricher and ConnectionMonitor
Tests process resolution fallbacks, the inventory cycle and the non-blocking tick.
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, Mock, patch

import psutil
import pytest

from agent.change_detector import ChangeDetector
from agent.event_journal import EventJournal
from agent.models import ConnectionRecord, Protocol
from agent.monitor import (
    ACCESS_DENIED_PATH,
    EXITED_NAME,
    SYSTEM_NAME,
    UNKNOWN_NAME,
    ConnectionMonitor,
    ProcessEnricher,
    ProcessKillError,
    kill_process,
)
from app.console import format_alert


class TestProcessEnricher:
    """Tests for the ProcessEnricher class"""

    def test_pid_zero_is_system(self):
        """Test that pid 0 and 4-style kernel owners never hit psutil"""
        with patch("agent.monitor.psutil.Process") as proc:
            assert ProcessEnricher().lookup(0) == (SYSTEM_NAME, "")
        proc.assert_not_called()

    def test_name_and_path(self):
        p = MagicMock()
        p.name.return_value = "nginx.exe"
        p.exe.return_value = "C:\\nginx\\nginx.exe"
        with patch("agent.monitor.psutil.Process", return_value=p):
            assert ProcessEnricher().lookup(1234) == ("nginx.exe", "C:\\nginx\\nginx.exe")

    def test_process_exited(self):
        with patch("agent.monitor.psutil.Process", side_effect=psutil.NoSuchProcess(1234)):
            assert ProcessEnricher().lookup(1234) == (EXITED_NAME, "")

    def test_path_access_denied(self):
        """Test that a hidden image path still keeps the name"""
        p = MagicMock()
        p.name.return_value = "svchost.exe"
        p.exe.side_effect = psutil.AccessDenied(900)
        with patch("agent.monitor.psutil.Process", return_value=p):
            assert ProcessEnricher().lookup(900) == ("svchost.exe", ACCESS_DENIED_PATH)

    def test_name_access_denied(self):
        with patch("agent.monitor.psutil.Process", side_effect=psutil.AccessDenied(900)):
            assert ProcessEnricher().lookup(900) == (UNKNOWN_NAME, "")

    def test_enrich_memoizes_per_pid(self):
        enricher = ProcessEnricher()
        memo = {}
        with patch.object(enricher, "lookup", return_value=("a.exe", "")) as lookup:
            for port in (1, 2, 3):
                enricher.enrich(ConnectionRecord(Protocol.TCP, "0.0.0.0", port, pid=42), memo)
        assert lookup.call_count == 1


class TestConnectionMonitor:
    """Tests for the ConnectionMonitor class"""

    @pytest.fixture
    def snapshots(self):
        return [
            [ConnectionRecord(Protocol.TCP, "0.0.0.0", 22, state="LISTEN", pid=10)],
            [
                ConnectionRecord(Protocol.TCP, "0.0.0.0", 22, state="LISTEN", pid=10),
                ConnectionRecord(Protocol.TCP, "0.0.0.0", 4444, state="LISTEN", pid=11),
            ],
        ]

    @pytest.fixture
    def monitor(self, snapshots):
        reader = Mock()
        reader.get_snapshot.side_effect = lambda: [ConnectionRecord(**vars(r)) for r in snapshots.pop(0)]
        enricher = Mock()
        enricher.enrich.side_effect = lambda rec, memo=None: (
            rec.set_derived("process_name", f"p{rec.pid}.exe"),
            rec,
        )[1]
        publish = MagicMock()
        mon = ConnectionMonitor(
            detector=ChangeDetector(EventJournal(None)),
            publish=publish,
            reader=reader,
            enricher=enricher,
        )
        yield mon
        mon.shutdown()

    def test_first_cycle_publishes_nothing(self, monitor):
        snap = monitor.run_cycle()
        assert [r.local_port for r in snap] == [22]
        monitor.publish.assert_not_called()

    def test_new_port_published_and_classified(self, monitor):
        monitor.run_cycle()
        snap = monitor.run_cycle()
        assert [r.local_port for r in snap] == [22, 4444]
        assert snap[1].suspicious is True
        monitor.publish.assert_called_once()
        event = monitor.publish.call_args.args[0]
        assert event["type"] == "new_port"
        assert event["source"] == "network"
        assert event["local_port"] == 4444
        assert event["process_name"] == "p11.exe"

    def test_reappearing_port_published_once(self):
        """Test that S1={}, S2={80}, S3={}, S4={80} prints a single [NEW] line"""
        def http():
            return ConnectionRecord(Protocol.TCP, "0.0.0.0", 80, state="LISTEN", pid=5)

        snapshots = [[], [http()], [], [http()]]
        mon = self._monitor(snapshots, ChangeDetector(EventJournal(None)))
        try:
            for _ in range(4):
                mon.run_cycle()
        finally:
            mon.shutdown()
        lines = [format_alert(c.args[0]) for c in mon.publish.call_args_list]
        assert lines == ["[NEW] TCP :80 p5.exe"]

    def test_alerts_disabled_publishes_nothing(self):
        snapshots = [[], [ConnectionRecord(Protocol.TCP, "0.0.0.0", 8080, state="LISTEN", pid=5)]]
        mon = self._monitor(snapshots, ChangeDetector(EventJournal(None), new_port_alerts=False))
        try:
            mon.run_cycle()
            mon.run_cycle()
        finally:
            mon.shutdown()
        mon.publish.assert_not_called()

    @staticmethod
    def _monitor(snapshots, detector):
        reader = Mock()
        reader.get_snapshot.side_effect = lambda: snapshots.pop(0)
        enricher = Mock()
        enricher.enrich.side_effect = lambda rec, memo=None: (
            rec.set_derived("process_name", f"p{rec.pid}.exe"),
            rec,
        )[1]
        return ConnectionMonitor(detector=detector, publish=MagicMock(), reader=reader, enricher=enricher)

    def test_latest_updated(self, monitor):
        assert monitor.latest == []
        monitor.run_cycle()
        assert len(monitor.latest) == 1
        assert monitor.latest_at > 0

    def test_tick_skips_while_busy(self, monitor):
        gate = threading.Event()
        with patch.object(monitor, "run_cycle", side_effect=lambda: (gate.wait(2), [])[1]):
            assert monitor.tick() is True
            assert monitor.tick() is False  # previous cycle still in flight
            gate.set()
            monitor.wait(timeout=2)
            assert monitor.tick() is True
            monitor.wait(timeout=2)

    def test_cycle_errors_are_swallowed(self, monitor):
        monitor.reader.get_snapshot.side_effect = OSError("table read failed")
        assert monitor.tick() is True
        assert monitor.wait(timeout=2) == []


class TestKillProcess:
    """Tests for kill_process"""

    def test_kills_owner(self):
        with patch("agent.monitor.psutil.Process") as proc:
            kill_process(1234)
        proc.assert_called_once_with(1234)
        proc.return_value.kill.assert_called_once_with()

    @pytest.mark.parametrize(
        "error,reason",
        [(psutil.NoSuchProcess(1234), "process has exited"), (psutil.AccessDenied(1234), "access denied")],
    )
    def test_failures_raise(self, error, reason):
        with patch("agent.monitor.psutil.Process") as proc:
            proc.return_value.kill.side_effect = error
            with pytest.raises(ProcessKillError, match=reason):
                kill_process(1234)

    def test_system_process_refused(self):
        with patch("agent.monitor.psutil.Process") as proc:
            with pytest.raises(ProcessKillError, match="system process"):
                kill_process(0)
        proc.assert_not_called()
